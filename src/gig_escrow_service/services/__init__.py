"""Service layer components."""

from gig_escrow_service.services.escrow_ledger import EscrowLedger
from gig_escrow_service.services.escrow_store import EscrowStore
from gig_escrow_service.services.handshake_controller import HandshakeController
from gig_escrow_service.services.payout_dispatcher import PayoutDispatcher
from gig_escrow_service.services.reconciler import IncompletePaymentReconciler
from gig_escrow_service.services.session_manager import SessionManager

__all__ = [
    "EscrowLedger",
    "EscrowStore",
    "HandshakeController",
    "IncompletePaymentReconciler",
    "PayoutDispatcher",
    "SessionManager",
]
