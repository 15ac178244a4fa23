"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.clients.wallet_bridge import CallbackWalletBridge
    from gig_escrow_service.clients.wallet_signer import WalletSigner
    from gig_escrow_service.services.escrow_ledger import EscrowLedger
    from gig_escrow_service.services.escrow_store import EscrowStore
    from gig_escrow_service.services.handshake_controller import HandshakeController
    from gig_escrow_service.services.payout_dispatcher import PayoutDispatcher
    from gig_escrow_service.services.reconciler import IncompletePaymentReconciler
    from gig_escrow_service.services.session_manager import SessionManager


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: EscrowStore | None = None
    network_client: PaymentNetworkClient | None = None
    wallet_signer: WalletSigner | None = None
    wallet_bridge: CallbackWalletBridge | None = None
    payout_dispatcher: PayoutDispatcher | None = None
    escrow_ledger: EscrowLedger | None = None
    handshake_controller: HandshakeController | None = None
    reconciler: IncompletePaymentReconciler | None = None
    session_manager: SessionManager | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
