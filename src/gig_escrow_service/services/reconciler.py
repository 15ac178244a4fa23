"""Recovery of payments a wallet left dangling in an earlier session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.payments import (
    PAYMENT_TYPE_RELEASE,
    TERMINAL_LIFECYCLES,
    PaymentLifecycle,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.services.escrow_ledger import EscrowLedger
    from gig_escrow_service.services.escrow_store import EscrowStore
    from gig_escrow_service.services.payments import Payment


@dataclass(frozen=True)
class ReconciliationOutcome:
    """What reconciliation did for one payment."""

    payment_id: str
    action: str
    escrow_id: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "action": self.action,
            "escrow_id": self.escrow_id,
            "error": self.error,
        }


class IncompletePaymentReconciler:
    """
    Brings each dangling payment to a terminal state.

    The network's current status decides the action:
    completed or cancelled/expired payments are left alone, a broadcast
    payment (txid known) is completed, anything else is cancelled.
    Completed funding payments are correlated to their pending escrow
    through ``metadata.taskId``.
    """

    def __init__(
        self,
        network_client: PaymentNetworkClient,
        store: EscrowStore,
        ledger: EscrowLedger,
    ) -> None:
        self._network_client = network_client
        self._store = store
        self._ledger = ledger
        self._logger = get_logger(__name__)

    async def reconcile(
        self,
        payments: Iterable[Payment],
        actor_id: str | None = None,
    ) -> list[ReconciliationOutcome]:
        """Reconcile each payment independently. Never raises."""
        return [await self._reconcile_one(payment, actor_id) for payment in payments]

    async def reconcile_actor(
        self,
        actor_id: str,
        payments: Iterable[Payment],
    ) -> list[ReconciliationOutcome]:
        """Reconcile an actor's dangling payments and unblock new payments."""
        outcomes = await self.reconcile(payments, actor_id)
        self._store.mark_reconciled(actor_id, "completed", None)
        self._logger.info(
            "Actor reconciled",
            extra={
                "actor_id": actor_id,
                "payments": len(outcomes),
                "failed": sum(1 for outcome in outcomes if outcome.action == "failed"),
            },
        )
        return outcomes

    def skip(self, actor_id: str, reason: str) -> None:
        """Record that reconciliation was deliberately skipped for an actor."""
        self._store.mark_reconciled(actor_id, "skipped", reason)
        self._logger.info(
            "Actor reconciliation skipped", extra={"actor_id": actor_id, "reason": reason}
        )

    async def _reconcile_one(
        self,
        reported: Payment,
        actor_id: str | None,
    ) -> ReconciliationOutcome:
        payment_id = reported.identifier
        if actor_id is not None and reported.user_uid is not None and reported.user_uid != actor_id:
            self._logger.warning(
                "Ignoring payment reported for another user",
                extra={"payment_id": payment_id, "actor_id": actor_id},
            )
            return ReconciliationOutcome(payment_id, "failed", error="FOREIGN_PAYMENT")

        try:
            current = await self._network_client.get_payment(payment_id)
            lifecycle = current.lifecycle

            if lifecycle == PaymentLifecycle.COMPLETED:
                escrow_id = self._record_completion(current, current.txid, actor_id)
                return ReconciliationOutcome(payment_id, "already_completed", escrow_id)

            if lifecycle in TERMINAL_LIFECYCLES:
                return ReconciliationOutcome(payment_id, "already_terminal")

            txid = current.txid or reported.txid
            if txid is not None:
                completed = await self._network_client.complete_payment(payment_id, txid)
                if completed.lifecycle != PaymentLifecycle.COMPLETED:
                    self._record_state(completed, txid, actor_id)
                    self._logger.warning(
                        "Payment network did not confirm completion",
                        extra={
                            "payment_id": payment_id,
                            "txid": txid,
                            "lifecycle": completed.lifecycle.value,
                        },
                    )
                    return ReconciliationOutcome(
                        payment_id, "failed", error="PAYMENT_NOT_VERIFIED"
                    )
                escrow_id = self._record_completion(completed, txid, actor_id)
                self._logger.info(
                    "Completed dangling payment",
                    extra={"payment_id": payment_id, "txid": txid},
                )
                return ReconciliationOutcome(payment_id, "completed", escrow_id)

            cancelled = await self._network_client.cancel_payment(payment_id)
            self._store.upsert_payment_record(
                payment_id,
                actor_id=actor_id,
                direction=cancelled.direction or "user_to_app",
                amount=cancelled.amount,
                task_id=cancelled.task_id,
                txid=None,
                state=PaymentLifecycle.CANCELLED.value,
                source="reconciler",
            )
            self._logger.info("Cancelled dangling payment", extra={"payment_id": payment_id})
            return ReconciliationOutcome(payment_id, "cancelled")
        except ServiceError as exc:
            self._logger.warning(
                "Reconciliation failed for payment",
                extra={"payment_id": payment_id, "error": exc.error},
            )
            return ReconciliationOutcome(payment_id, "failed", error=exc.error)
        except Exception:
            self._logger.exception(
                "Unexpected error reconciling payment", extra={"payment_id": payment_id}
            )
            return ReconciliationOutcome(payment_id, "failed", error="INTERNAL_ERROR")

    def _record_state(
        self,
        payment: Payment,
        txid: str | None,
        actor_id: str | None,
    ) -> None:
        self._store.upsert_payment_record(
            payment.identifier,
            actor_id=actor_id or payment.user_uid,
            direction=payment.direction or "user_to_app",
            amount=payment.amount,
            task_id=payment.task_id,
            txid=txid,
            state=payment.lifecycle.value,
            source="reconciler",
        )

    def _record_completion(
        self,
        payment: Payment,
        txid: str | None,
        actor_id: str | None,
    ) -> str | None:
        """Record a completed payment and fund the pending escrow it pays for."""
        self._record_state(payment, txid, actor_id)
        if payment.payment_type == PAYMENT_TYPE_RELEASE or payment.task_id is None or txid is None:
            return None

        escrow = self._store.get_active_escrow_for_task(payment.task_id)
        if escrow is None or escrow["status"] != "pending":
            return None
        if escrow["payment_id"] not in (None, payment.identifier):
            return None

        try:
            if escrow["payment_id"] is None:
                self._ledger.attach_payment(escrow["escrow_id"], payment.identifier)
            funded = self._ledger.mark_funded(escrow["escrow_id"], txid)
        except ServiceError as exc:
            self._logger.warning(
                "Could not fund escrow from reconciled payment",
                extra={
                    "payment_id": payment.identifier,
                    "escrow_id": escrow["escrow_id"],
                    "error": exc.error,
                },
            )
            return None
        return str(funded["escrow_id"])
