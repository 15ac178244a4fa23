"""API routers."""

from gig_escrow_service.routers import a2u_payments, escrow, handshakes, health, payments, sessions

__all__ = ["a2u_payments", "escrow", "handshakes", "health", "payments", "sessions"]
