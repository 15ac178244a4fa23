"""Client-driven payment handshake with single-resolution outcome."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from gig_escrow_service.clients.wallet_bridge import PaymentCallbacks, PaymentData, TerminalReason
from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.logging import get_logger
from gig_escrow_service.services.payments import parse_amount

if TYPE_CHECKING:
    from decimal import Decimal

    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.clients.wallet_bridge import WalletIntegration
    from gig_escrow_service.services.escrow_store import EscrowStore

_CONSENT_MARKERS = ("consent", "scope", "permission", "denied")


class HandshakeStatus(StrEnum):
    """Observable state of a handshake flow."""

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class HandshakeOutcome:
    """Final, single-assignment result of a handshake."""

    status: HandshakeStatus
    payment_id: str | None = None
    txid: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "payment_id": self.payment_id,
            "txid": self.txid,
            "error": self.error,
        }


@dataclass
class HandshakeFlow:
    """One payment flow between creation and its outcome."""

    handshake_id: str
    actor_id: str
    amount: Decimal
    memo: str
    metadata: dict[str, Any]
    future: asyncio.Future[HandshakeOutcome]
    created_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat(timespec="seconds").replace(
            "+00:00", "Z"
        )
    )
    created_monotonic: float = field(default_factory=time.monotonic)
    payment_id: str | None = None
    amount_verified: bool = False
    timer: asyncio.TimerHandle | None = None

    @property
    def done(self) -> bool:
        return self.future.done()

    @property
    def outcome(self) -> HandshakeOutcome | None:
        return self.future.result() if self.future.done() else None

    def to_dict(self) -> dict[str, Any]:
        outcome = self.outcome
        return {
            "handshake_id": self.handshake_id,
            "uid": self.actor_id,
            "status": outcome.status.value if outcome else HandshakeStatus.PENDING.value,
            "payment_data": {
                "amount": float(self.amount),
                "memo": self.memo,
                "metadata": self.metadata,
            },
            "payment_id": outcome.payment_id if outcome else self.payment_id,
            "txid": outcome.txid if outcome else None,
            "error": outcome.error if outcome else None,
            "created_at": self.created_at,
        }


def classify_wallet_error(message: str | None) -> str:
    """Map a wallet error message to a handshake error code."""
    lowered = (message or "").lower()
    if any(marker in lowered for marker in _CONSENT_MARKERS):
        return "CONSENT_DENIED"
    return "PAYMENT_NETWORK_UNAVAILABLE"


class HandshakeController:
    """
    Drives a wallet-created payment through approval and completion.

    Each flow owns one ``asyncio.Future``. Wallet callbacks and a timer
    compete to resolve it; the first resolution wins, later ones are
    no-ops. Every resolution releases the actor's payment lock.
    """

    def __init__(
        self,
        network_client: PaymentNetworkClient,
        wallet: WalletIntegration,
        store: EscrowStore,
        timeout_seconds: float,
        lock_grace_seconds: float,
    ) -> None:
        self._network_client = network_client
        self._wallet = wallet
        self._store = store
        self._timeout_seconds = timeout_seconds
        self._lock_grace_seconds = lock_grace_seconds
        self._flows: dict[str, HandshakeFlow] = {}
        self._logger = get_logger(__name__)

    async def start(
        self,
        actor_id: str,
        amount: object,
        memo: str,
        metadata: dict[str, Any],
    ) -> HandshakeFlow:
        """
        Create a handshake and hand the payment request to the wallet.

        Raises:
            ServiceError: RECONCILIATION_REQUIRED (409)
            ServiceError: PAYMENT_IN_PROGRESS (409)
        """
        requested = parse_amount(amount)
        if self._store.get_reconciliation(actor_id) is None:
            raise ServiceError(
                "RECONCILIATION_REQUIRED",
                "Incomplete payments must be reconciled before a new payment",
                409,
                {},
            )

        self._prune_resolved()
        handshake_id = f"hs-{uuid4()}"
        acquired = self._store.acquire_payment_lock(
            actor_id,
            handshake_id,
            stale_after_seconds=self._timeout_seconds + self._lock_grace_seconds,
        )
        if not acquired:
            raise ServiceError(
                "PAYMENT_IN_PROGRESS",
                "Another payment is already in progress",
                409,
                {},
            )

        loop = asyncio.get_running_loop()
        flow = HandshakeFlow(
            handshake_id=handshake_id,
            actor_id=actor_id,
            amount=requested,
            memo=memo,
            metadata=dict(metadata),
            future=loop.create_future(),
        )
        flow.timer = loop.call_later(self._timeout_seconds, self._expire, flow)
        self._flows[handshake_id] = flow

        callbacks = PaymentCallbacks(
            on_ready_for_approval=lambda payment_id: self._on_ready_for_approval(
                flow, payment_id
            ),
            on_ready_for_completion=lambda payment_id, txid: self._on_ready_for_completion(
                flow, payment_id, txid
            ),
            on_terminal=lambda reason, payment_id, message: self._on_terminal(
                flow, reason, payment_id, message
            ),
        )
        try:
            self._wallet.create_payment(
                handshake_id,
                PaymentData(amount=requested, memo=memo, metadata=flow.metadata),
                callbacks,
            )
        except Exception:
            self._logger.exception(
                "Wallet refused payment request", extra={"handshake_id": handshake_id}
            )
            self._resolve(
                flow,
                HandshakeOutcome(HandshakeStatus.FAILED, error="PAYMENT_NETWORK_UNAVAILABLE"),
            )
            raise

        self._logger.info(
            "Handshake started",
            extra={"handshake_id": handshake_id, "actor_id": actor_id, "amount": str(requested)},
        )
        return flow

    def get(self, handshake_id: str) -> HandshakeFlow:
        flow = self._flows.get(handshake_id)
        if flow is None:
            raise ServiceError("HANDSHAKE_NOT_FOUND", "Handshake not found", 404, {})
        return flow

    async def wait(self, handshake_id: str) -> HandshakeOutcome:
        """Await the flow's single outcome."""
        flow = self.get(handshake_id)
        return await asyncio.shield(flow.future)

    async def close(self) -> None:
        """Resolve every pending flow so actor locks are released on shutdown."""
        for flow in list(self._flows.values()):
            self._resolve(
                flow,
                HandshakeOutcome(HandshakeStatus.FAILED, flow.payment_id, error="SERVICE_SHUTDOWN"),
            )

    # ------------------------------------------------------------------
    # Continuations
    # ------------------------------------------------------------------

    async def _on_ready_for_approval(self, flow: HandshakeFlow, payment_id: str) -> None:
        if flow.done:
            return
        if flow.payment_id is not None and flow.payment_id != payment_id:
            self._fail(flow, "PAYMENT_CONFLICT", payment_id)
            return
        flow.payment_id = payment_id

        try:
            payment = await self._network_client.get_payment(payment_id)
        except ServiceError as exc:
            self._fail(flow, exc.error, payment_id)
            return

        if payment.amount != flow.amount or (
            payment.user_uid is not None and payment.user_uid != flow.actor_id
        ):
            self._logger.warning(
                "Payment does not match handshake request, refusing approval",
                extra={
                    "handshake_id": flow.handshake_id,
                    "payment_id": payment_id,
                    "requested_amount": str(flow.amount),
                    "network_amount": str(payment.amount),
                },
            )
            self._fail(flow, "AMOUNT_MISMATCH", payment_id)
            return
        flow.amount_verified = True

        if flow.done:
            return
        try:
            await self._network_client.approve_payment(payment_id)
        except ServiceError as exc:
            self._fail(flow, exc.error, payment_id)
            return

        self._store.upsert_payment_record(
            payment_id,
            actor_id=flow.actor_id,
            direction="user_to_app",
            amount=payment.amount,
            task_id=payment.task_id,
            txid=None,
            state="approved",
            source="handshake",
        )
        self._logger.info(
            "Handshake payment approved",
            extra={"handshake_id": flow.handshake_id, "payment_id": payment_id},
        )

    async def _on_ready_for_completion(
        self,
        flow: HandshakeFlow,
        payment_id: str,
        txid: str,
    ) -> None:
        if flow.done:
            return
        if flow.payment_id is not None and flow.payment_id != payment_id:
            self._fail(flow, "PAYMENT_CONFLICT", payment_id)
            return
        flow.payment_id = payment_id

        expected = None if flow.amount_verified else flow.amount
        try:
            payment = await self._network_client.complete_payment(
                payment_id, txid, expected_amount=expected
            )
        except ServiceError as exc:
            error = exc.error
            if expected is not None and exc.error == "PAYMENT_CONFLICT":
                error = "AMOUNT_MISMATCH"
            self._fail(flow, error, payment_id)
            return

        # Recorded even if the flow timed out during the call; the network completed it.
        self._store.upsert_payment_record(
            payment_id,
            actor_id=flow.actor_id,
            direction="user_to_app",
            amount=flow.amount,
            task_id=payment.task_id,
            txid=txid,
            state=payment.lifecycle.value,
            source="handshake",
        )
        self._resolve(flow, HandshakeOutcome(HandshakeStatus.COMPLETED, payment_id, txid))

    async def _on_terminal(
        self,
        flow: HandshakeFlow,
        reason: TerminalReason,
        payment_id: str | None,
        message: str | None,
    ) -> None:
        resolved_payment_id = payment_id or flow.payment_id
        if reason == TerminalReason.CANCELLED:
            self._resolve(
                flow,
                HandshakeOutcome(
                    HandshakeStatus.CANCELLED, resolved_payment_id, error="USER_CANCELLED"
                ),
            )
            return
        self._logger.warning(
            "Wallet reported payment error",
            extra={"handshake_id": flow.handshake_id, "wallet_message": message},
        )
        self._fail(flow, classify_wallet_error(message), resolved_payment_id)

    def _expire(self, flow: HandshakeFlow) -> None:
        if self._resolve(
            flow,
            HandshakeOutcome(HandshakeStatus.TIMEOUT, flow.payment_id, error="HANDSHAKE_TIMEOUT"),
        ):
            self._logger.warning(
                "Handshake timed out",
                extra={"handshake_id": flow.handshake_id, "payment_id": flow.payment_id},
            )

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def _fail(self, flow: HandshakeFlow, error: str, payment_id: str | None) -> None:
        self._resolve(flow, HandshakeOutcome(HandshakeStatus.FAILED, payment_id, error=error))

    def _resolve(self, flow: HandshakeFlow, outcome: HandshakeOutcome) -> bool:
        if flow.future.done():
            return False
        flow.future.set_result(outcome)
        if flow.timer is not None:
            flow.timer.cancel()
        # A payment that reached the network may still be live.
        unsettled_payment_id = outcome.payment_id or flow.payment_id
        if outcome.status != HandshakeStatus.COMPLETED and unsettled_payment_id:
            self._store.clear_reconciliation(flow.actor_id)
            self._logger.info(
                "Actor must reconcile before next payment",
                extra={
                    "handshake_id": flow.handshake_id,
                    "actor_id": flow.actor_id,
                    "payment_id": unsettled_payment_id,
                },
            )
        self._store.release_payment_lock(flow.actor_id, flow.handshake_id)
        self._wallet.forget(flow.handshake_id)
        self._logger.info(
            "Handshake resolved",
            extra={
                "handshake_id": flow.handshake_id,
                "status": outcome.status.value,
                "error": outcome.error,
                "payment_id": outcome.payment_id,
            },
        )
        return True

    def _prune_resolved(self) -> None:
        horizon = time.monotonic() - 10 * self._timeout_seconds
        for handshake_id, flow in list(self._flows.items()):
            if flow.done and flow.created_monotonic < horizon:
                del self._flows[handshake_id]
