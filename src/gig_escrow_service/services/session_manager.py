"""Identity handshake: verify the wallet user and reconcile their payments."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.payments import parse_payment

if TYPE_CHECKING:
    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.services.escrow_store import EscrowStore
    from gig_escrow_service.services.reconciler import IncompletePaymentReconciler


class SessionManager:
    """Turns a wallet access token into a durable, reconciled profile."""

    def __init__(
        self,
        network_client: PaymentNetworkClient,
        store: EscrowStore,
        reconciler: IncompletePaymentReconciler,
        sandbox: bool,
    ) -> None:
        self._network_client = network_client
        self._store = store
        self._reconciler = reconciler
        self._sandbox = sandbox
        self._logger = get_logger(__name__)

    async def authenticate(
        self,
        access_token: str,
        incomplete_payments: list[Any],
        skip_reason: str | None = None,
    ) -> dict[str, Any]:
        """
        Verify the token, upsert the profile and reconcile reported payments.

        Reported payments are parsed before any side effect, so a malformed
        payment fails the whole request with INVALID_PAYMENT (400).

        In sandbox mode a wallet that cannot report incomplete payments may
        pass ``skip_reason`` instead; the skip is recorded for the actor.

        Returns:
            dict with keys: uid, username, created_at, reconciliation
        """
        if skip_reason is not None and not self._sandbox:
            raise ServiceError(
                "RECONCILIATION_SKIP_NOT_ALLOWED",
                "Reconciliation can only be skipped in sandbox mode",
                400,
                {},
            )
        payments = [parse_payment(item) for item in incomplete_payments]
        user = await self._network_client.get_me(access_token)
        profile = self._store.upsert_profile(user["uid"], user["username"])

        if skip_reason is not None:
            outcomes = await self._reconciler.reconcile(payments, user["uid"])
            self._reconciler.skip(user["uid"], skip_reason)
        else:
            outcomes = await self._reconciler.reconcile_actor(user["uid"], payments)
        self._logger.info(
            "Session established",
            extra={"uid": user["uid"], "incomplete_payments": len(payments)},
        )
        return {
            "uid": profile["uid"],
            "username": profile["username"],
            "created_at": profile["created_at"],
            "reconciliation": [outcome.to_dict() for outcome in outcomes],
        }
