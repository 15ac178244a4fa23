"""Payment network client, wallet signing and the wallet callback bridge."""

from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
from gig_escrow_service.clients.wallet_bridge import CallbackWalletBridge, WalletIntegration
from gig_escrow_service.clients.wallet_signer import WalletSigner

__all__ = ["CallbackWalletBridge", "PaymentNetworkClient", "WalletIntegration", "WalletSigner"]
