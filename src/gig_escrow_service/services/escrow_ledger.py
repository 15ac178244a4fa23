"""Escrow lifecycle: pending -> funded -> released, funded -> refunded."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.escrow_store import (
    DuplicateEscrowError,
    EscrowStateError,
    StaleTaskStateError,
)
from gig_escrow_service.services.payments import PaymentLifecycle, parse_amount

if TYPE_CHECKING:
    from gig_escrow_service.services.escrow_store import EscrowStore
    from gig_escrow_service.services.payout_dispatcher import PayoutDispatcher


def _escrow_not_found() -> ServiceError:
    return ServiceError("ESCROW_NOT_FOUND", "Escrow not found", 404, {})


def _escrow_conflict(task_id: str) -> ServiceError:
    return ServiceError(
        "ESCROW_CONFLICT",
        "Task already has an active escrow",
        409,
        {"task_id": task_id},
    )


def _stale_task_state(task_id: str) -> ServiceError:
    return ServiceError(
        "STALE_TASK_STATE",
        "Task status changed concurrently",
        409,
        {"task_id": task_id},
    )


def _invalid_escrow_status(escrow: dict[str, Any], required: str) -> ServiceError:
    return ServiceError(
        "INVALID_ESCROW_STATUS",
        f"Escrow must be {required}",
        409,
        {"status": escrow["status"]},
    )


class EscrowLedger:
    """
    Owns the escrow row for each task and its transitions.

    The amount is fixed at creation from the accepted bid and never
    re-derived from what the payment network reports later.
    """

    def __init__(self, store: EscrowStore, payout_dispatcher: PayoutDispatcher) -> None:
        self._store = store
        self._payout_dispatcher = payout_dispatcher
        self._release_locks: dict[str, asyncio.Lock] = {}
        self._logger = get_logger(__name__)

    def create(
        self,
        task_id: str,
        bid_id: str | None,
        amount: object,
        payment_id: str | None,
    ) -> dict[str, Any]:
        """
        Create a pending escrow for an open task.

        Raises:
            ServiceError: TASK_NOT_FOUND, BID_NOT_FOUND (404)
            ServiceError: INVALID_TASK_STATUS, BID_NOT_ACCEPTED, ESCROW_CONFLICT (409)
            ServiceError: AMOUNT_MISMATCH (422)
        """
        escrow_amount = parse_amount(amount)

        task = self._store.get_task(task_id)
        if task is None:
            raise ServiceError("TASK_NOT_FOUND", "Task not found", 404, {})
        if self._store.get_active_escrow_for_task(task_id) is not None:
            raise _escrow_conflict(task_id)
        if task["status"] != "open":
            raise ServiceError(
                "INVALID_TASK_STATUS",
                "Escrow can only be created for an open task",
                409,
                {"status": task["status"]},
            )

        if bid_id is None:
            accepted = self._store.get_accepted_bid(task_id)
            bid_id = accepted["bid_id"] if accepted is not None else None
            bid = accepted
        else:
            bid = self._store.get_bid(bid_id)
            if bid is None or bid["task_id"] != task_id:
                raise ServiceError("BID_NOT_FOUND", "Bid not found for task", 404, {})
            if bid["status"] != "accepted":
                raise ServiceError(
                    "BID_NOT_ACCEPTED",
                    "Escrow requires the task's accepted bid",
                    409,
                    {"status": bid["status"]},
                )

        if bid is not None and bid["amount"] != escrow_amount:
            self._logger.warning(
                "Escrow amount does not match accepted bid",
                extra={
                    "task_id": task_id,
                    "bid_id": bid_id,
                    "bid_amount": str(bid["amount"]),
                    "amount": str(escrow_amount),
                },
            )
            raise ServiceError(
                "AMOUNT_MISMATCH",
                "Escrow amount must equal the accepted bid amount",
                422,
                {},
            )

        escrow_id = f"esc-{uuid4()}"
        try:
            escrow = self._store.insert_escrow(
                escrow_id=escrow_id,
                task_id=task_id,
                bid_id=bid_id,
                amount=escrow_amount,
                payment_id=payment_id,
            )
        except DuplicateEscrowError as exc:
            raise _escrow_conflict(task_id) from exc

        self._logger.info(
            "Escrow created",
            extra={"escrow_id": escrow_id, "task_id": task_id, "amount": str(escrow_amount)},
        )
        return escrow

    def attach_payment(self, escrow_id: str, payment_id: str) -> dict[str, Any]:
        """Record the funding payment id on a pending escrow."""
        escrow = self.get(escrow_id)
        if escrow["status"] != "pending":
            raise _invalid_escrow_status(escrow, "pending")
        if escrow["payment_id"] is not None and escrow["payment_id"] != payment_id:
            raise ServiceError(
                "PAYMENT_CONFLICT",
                "Escrow is already linked to a different payment",
                409,
                {},
            )
        if self._store.set_escrow_payment_id(escrow_id, payment_id) == 0:
            raise _invalid_escrow_status(self.get(escrow_id), "pending")
        return self.get(escrow_id)

    def mark_funded(self, escrow_id: str, txid: str) -> dict[str, Any]:
        """
        Mark a pending escrow funded and its task in progress.

        The funding payment must already be recorded as completed locally
        with the same txid.

        Raises:
            ServiceError: PAYMENT_NOT_VERIFIED (409)
            ServiceError: STALE_TASK_STATE (409), escrow stays pending
        """
        escrow = self.get(escrow_id)
        task_id = escrow["task_id"]

        payment_id = escrow["payment_id"]
        record = self._store.get_payment_record(payment_id) if payment_id else None
        if (
            record is None
            or record["state"] != PaymentLifecycle.COMPLETED.value
            or record["txid"] != txid
        ):
            raise ServiceError(
                "PAYMENT_NOT_VERIFIED",
                "Funding payment is not a completed payment with this txid",
                409,
                {},
            )
        if record["amount"] != escrow["amount"]:
            self._logger.error(
                "Funding payment amount differs from escrow amount",
                extra={
                    "escrow_id": escrow_id,
                    "payment_id": payment_id,
                    "escrow_amount": str(escrow["amount"]),
                    "payment_amount": str(record["amount"]),
                },
            )
            raise ServiceError(
                "AMOUNT_MISMATCH",
                "Funding payment amount does not match the escrow",
                422,
                {},
            )

        bid = self._store.get_accepted_bid(task_id)
        if bid is None:
            raise ServiceError(
                "BID_NOT_ACCEPTED",
                "Task has no accepted bid",
                409,
                {},
            )

        try:
            self._store.fund_escrow(escrow_id, task_id, bid["bidder_id"], txid)
        except StaleTaskStateError as exc:
            self._logger.info(
                "Escrow funding lost task race",
                extra={"escrow_id": escrow_id, "task_id": task_id},
            )
            raise _stale_task_state(task_id) from exc
        except EscrowStateError as exc:
            raise _invalid_escrow_status(self.get(escrow_id), "pending") from exc

        self._logger.info(
            "Escrow funded",
            extra={"escrow_id": escrow_id, "task_id": task_id, "txid": txid},
        )
        return self.get(escrow_id)

    async def release(self, escrow_id: str) -> dict[str, Any]:
        """
        Pay the worker and close the escrow.

        Failure anywhere before the final transaction leaves the escrow
        funded; calling release again resumes the same payout. Releases of
        the same escrow run one at a time.
        """
        async with self._release_locks.setdefault(escrow_id, asyncio.Lock()):
            return await self._release(escrow_id)

    async def _release(self, escrow_id: str) -> dict[str, Any]:
        escrow = self.get(escrow_id)
        if escrow["status"] != "funded":
            raise _invalid_escrow_status(escrow, "funded")

        task_id = escrow["task_id"]
        if not self._store.has_approved_submission(task_id):
            raise ServiceError(
                "SUBMISSION_NOT_APPROVED",
                "Task has no approved submission",
                409,
                {},
            )
        bid = self._store.get_accepted_bid(task_id)
        if bid is None:
            raise ServiceError("BID_NOT_ACCEPTED", "Task has no accepted bid", 409, {})

        payout = await self._payout_dispatcher.dispatch(escrow, bid["bidder_id"])

        try:
            self._store.finalize_release(escrow_id, task_id, payout["txid"])
        except StaleTaskStateError as exc:
            self._logger.error(
                "Payout completed but task is not in progress",
                extra={"escrow_id": escrow_id, "task_id": task_id, **payout},
            )
            raise _stale_task_state(task_id) from exc
        except EscrowStateError as exc:
            raise _invalid_escrow_status(self.get(escrow_id), "funded") from exc

        self._logger.info(
            "Escrow released",
            extra={"escrow_id": escrow_id, "task_id": task_id, **payout},
        )
        return self.get(escrow_id)

    def refund(self, escrow_id: str) -> dict[str, Any]:
        """Mark a funded escrow with no payout refunded and its task disputed."""
        escrow = self.get(escrow_id)
        try:
            self._store.refund_escrow(escrow_id, escrow["task_id"])
        except EscrowStateError as exc:
            current = self.get(escrow_id)
            if current["status"] == "funded" and current["release_payment_id"]:
                self._logger.warning(
                    "Refund refused, payout already claimed",
                    extra={
                        "escrow_id": escrow_id,
                        "release_payment_id": current["release_payment_id"],
                    },
                )
                raise ServiceError(
                    "INVALID_ESCROW_STATUS",
                    "Escrow has a payout in progress",
                    409,
                    {"status": current["status"]},
                ) from exc
            raise _invalid_escrow_status(current, "funded") from exc
        except StaleTaskStateError as exc:
            raise _stale_task_state(escrow["task_id"]) from exc

        self._logger.info(
            "Escrow refunded",
            extra={"escrow_id": escrow_id, "task_id": escrow["task_id"]},
        )
        return self.get(escrow_id)

    def get(self, escrow_id: str) -> dict[str, Any]:
        escrow = self._store.get_escrow(escrow_id)
        if escrow is None:
            raise _escrow_not_found()
        return escrow

    def get_for_task(self, task_id: str) -> dict[str, Any]:
        """Active escrow for a task, else its most recent refunded one."""
        escrow = self._store.get_latest_escrow_for_task(task_id)
        if escrow is None:
            raise _escrow_not_found()
        return escrow

    def get_stats(self) -> dict[str, Any]:
        counts = self._store.count_escrows_by_status()
        return {"total_escrows": sum(counts.values()), "escrows_by_status": counts}
