"""Worker payout (app-to-user) dispatch with resume after partial failure."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.payments import (
    PAYMENT_TYPE_RELEASE,
    Payment,
    PaymentLifecycle,
)

if TYPE_CHECKING:
    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.services.escrow_store import EscrowStore

_DISCARDED_LIFECYCLES = frozenset({PaymentLifecycle.CANCELLED, PaymentLifecycle.EXPIRED})


class PayoutDispatcher:
    """
    Pays a worker from the app wallet for a funded escrow.

    The payout payment id is persisted on the escrow right after creation,
    so a dispatch that fails halfway is resumed on the next attempt instead
    of creating a second payout. An escrow with no recorded payout id may
    still have one on the network (the process died between create and
    persist): matching incomplete server payments are adopted first.
    """

    def __init__(
        self,
        network_client: PaymentNetworkClient,
        store: EscrowStore,
        memo: str,
    ) -> None:
        self._network_client = network_client
        self._store = store
        self._memo = memo
        self._logger = get_logger(__name__)

    async def dispatch(self, escrow: dict[str, Any], recipient_uid: str) -> dict[str, str]:
        """
        Create (or resume), submit and complete the payout for an escrow.

        Returns:
            dict with keys: payment_id, txid

        Raises:
            ServiceError: PAYOUT_NOT_VERIFIED (502) if the network does not
                confirm a verified, completed transaction
            ServiceError: AMOUNT_MISMATCH (422) if a resumed payout does not
                match the escrow
            ServiceError: INVALID_ESCROW_STATUS (409) if the escrow was
                refunded or claimed by another payout meanwhile
            ServiceError: PAYMENT_NETWORK_UNAVAILABLE (502)
        """
        payment_id, payment = await self._resume_or_create(escrow, recipient_uid)

        if payment is not None and payment.lifecycle == PaymentLifecycle.COMPLETED:
            final = payment
        else:
            txid = payment.txid if payment is not None else None
            if txid is None:
                txid = await self._network_client.submit_payment(payment_id)
            final = await self._network_client.complete_payment(payment_id, txid)

        if not final.status.developer_completed or final.transaction is None or not (
            final.transaction.verified
        ):
            self._logger.error(
                "Payout not verified by payment network",
                extra={"escrow_id": escrow["escrow_id"], "payment_id": payment_id},
            )
            raise ServiceError(
                "PAYOUT_NOT_VERIFIED",
                "Payment network did not confirm the payout transaction",
                502,
                {},
            )

        self._store.upsert_payment_record(
            payment_id,
            actor_id=recipient_uid,
            direction="app_to_user",
            amount=escrow["amount"],
            task_id=escrow["task_id"],
            txid=final.transaction.txid,
            state=final.lifecycle.value,
            source="payout",
        )
        self._logger.info(
            "Payout completed",
            extra={
                "escrow_id": escrow["escrow_id"],
                "payment_id": payment_id,
                "txid": final.transaction.txid,
            },
        )
        return {"payment_id": payment_id, "txid": final.transaction.txid}

    async def _resume_or_create(
        self,
        escrow: dict[str, Any],
        recipient_uid: str,
    ) -> tuple[str, Payment | None]:
        existing_id = escrow["release_payment_id"]
        if existing_id:
            existing = await self._fetch_if_known(existing_id)
            if existing is not None and existing.lifecycle not in _DISCARDED_LIFECYCLES:
                self._check_matches(escrow, recipient_uid, existing)
                self._logger.info(
                    "Resuming payout",
                    extra={
                        "escrow_id": escrow["escrow_id"],
                        "payment_id": existing_id,
                        "lifecycle": existing.lifecycle.value,
                    },
                )
                return existing_id, existing
            self._logger.warning(
                "Discarding unusable payout, creating a new one",
                extra={"escrow_id": escrow["escrow_id"], "payment_id": existing_id},
            )
        else:
            adopted = await self._find_incomplete_payout(escrow["task_id"])
            if adopted is not None:
                self._check_matches(escrow, recipient_uid, adopted)
                if self._store.record_release_payment(escrow["escrow_id"], adopted.identifier) == 0:
                    raise self._claim_lost(escrow, adopted.identifier)
                self._logger.info(
                    "Adopting incomplete payout",
                    extra={"escrow_id": escrow["escrow_id"], "payment_id": adopted.identifier},
                )
                return adopted.identifier, adopted

        payment_id = await self._network_client.create_a2u_payment(
            amount=escrow["amount"],
            recipient_uid=recipient_uid,
            memo=self._memo,
            metadata={
                "type": PAYMENT_TYPE_RELEASE,
                "taskId": escrow["task_id"],
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
        claimed = self._store.record_release_payment(
            escrow["escrow_id"], payment_id, replaces=existing_id
        )
        if claimed == 0:
            error = self._claim_lost(escrow, payment_id)
            try:
                await self._network_client.cancel_payment(payment_id)
            except ServiceError as exc:
                self._logger.error(
                    "Could not cancel unclaimed payout",
                    extra={"escrow_id": escrow["escrow_id"], "payment_id": payment_id},
                )
                raise error from exc
            raise error
        self._logger.info(
            "Payout created",
            extra={"escrow_id": escrow["escrow_id"], "payment_id": payment_id},
        )
        return payment_id, None

    def _claim_lost(self, escrow: dict[str, Any], payment_id: str) -> ServiceError:
        current = self._store.get_escrow(escrow["escrow_id"]) or escrow
        self._logger.warning(
            "Escrow no longer open for this payout",
            extra={
                "escrow_id": escrow["escrow_id"],
                "payment_id": payment_id,
                "status": current["status"],
                "release_payment_id": current["release_payment_id"],
            },
        )
        return ServiceError(
            "INVALID_ESCROW_STATUS",
            "Escrow changed while the payout was being prepared",
            409,
            {"status": current["status"]},
        )

    async def _fetch_if_known(self, payment_id: str) -> Payment | None:
        try:
            return await self._network_client.get_payment(payment_id)
        except ServiceError as exc:
            if exc.error == "PAYMENT_NOT_FOUND":
                return None
            raise

    async def _find_incomplete_payout(self, task_id: str) -> Payment | None:
        for payment in await self._network_client.get_incomplete_server_payments():
            if (
                payment.payment_type == PAYMENT_TYPE_RELEASE
                and payment.task_id == task_id
                and payment.lifecycle not in _DISCARDED_LIFECYCLES
            ):
                return payment
        return None

    def _check_matches(
        self,
        escrow: dict[str, Any],
        recipient_uid: str,
        payment: Payment,
    ) -> None:
        if payment.amount != escrow["amount"] or (
            payment.user_uid is not None and payment.user_uid != recipient_uid
        ):
            self._logger.error(
                "Payout on the network does not match escrow",
                extra={
                    "escrow_id": escrow["escrow_id"],
                    "payment_id": payment.identifier,
                    "escrow_amount": str(escrow["amount"]),
                    "network_amount": str(payment.amount),
                },
            )
            raise ServiceError(
                "AMOUNT_MISMATCH",
                "Existing payout does not match the escrow",
                422,
                {},
            )
