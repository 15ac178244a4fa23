"""Wallet integration interface and the HTTP callback bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from threading import RLock
from typing import TYPE_CHECKING, Any, Protocol

from gig_escrow_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from decimal import Decimal


class TerminalReason(StrEnum):
    """Why a wallet ended a payment flow without completing it."""

    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(frozen=True)
class PaymentData:
    """What the payer's wallet is asked to pay."""

    amount: Decimal
    memo: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"amount": float(self.amount), "memo": self.memo, "metadata": self.metadata}


@dataclass(frozen=True)
class PaymentCallbacks:
    """
    The three continuations a wallet flow reports back through.

    on_ready_for_approval(payment_id)
    on_ready_for_completion(payment_id, txid)
    on_terminal(reason, payment_id, message)
    """

    on_ready_for_approval: Callable[[str], Awaitable[None]]
    on_ready_for_completion: Callable[[str, str], Awaitable[None]]
    on_terminal: Callable[[TerminalReason, str | None, str | None], Awaitable[None]]


class WalletIntegration(Protocol):
    """Capability to ask a payer's wallet to create a payment."""

    def create_payment(
        self,
        handshake_id: str,
        data: PaymentData,
        callbacks: PaymentCallbacks,
    ) -> None: ...

    def forget(self, handshake_id: str) -> None: ...


class CallbackWalletBridge:
    """
    Wallet integration for browser wallets that report over HTTP.

    ``create_payment`` registers the flow; the wallet client reads the
    payment data back, opens its own payment dialog, and posts each wallet
    event to the handshake endpoints, which land in the ``deliver_*``
    methods and are routed to the registered continuations.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._flows: dict[str, tuple[PaymentData, PaymentCallbacks]] = {}

    def create_payment(
        self,
        handshake_id: str,
        data: PaymentData,
        callbacks: PaymentCallbacks,
    ) -> None:
        with self._lock:
            self._flows[handshake_id] = (data, callbacks)
        get_logger(__name__).info(
            "Wallet payment requested",
            extra={"handshake_id": handshake_id, "amount": str(data.amount)},
        )

    def forget(self, handshake_id: str) -> None:
        with self._lock:
            self._flows.pop(handshake_id, None)

    def is_open(self, handshake_id: str) -> bool:
        with self._lock:
            return handshake_id in self._flows

    def payment_data(self, handshake_id: str) -> PaymentData | None:
        with self._lock:
            entry = self._flows.get(handshake_id)
        return entry[0] if entry is not None else None

    def _callbacks(self, handshake_id: str) -> PaymentCallbacks | None:
        with self._lock:
            entry = self._flows.get(handshake_id)
        if entry is None:
            # Late events for resolved flows are dropped.
            get_logger(__name__).info(
                "Ignoring wallet event for closed handshake",
                extra={"handshake_id": handshake_id},
            )
            return None
        return entry[1]

    async def deliver_approval(self, handshake_id: str, payment_id: str) -> None:
        callbacks = self._callbacks(handshake_id)
        if callbacks is not None:
            await callbacks.on_ready_for_approval(payment_id)

    async def deliver_completion(self, handshake_id: str, payment_id: str, txid: str) -> None:
        callbacks = self._callbacks(handshake_id)
        if callbacks is not None:
            await callbacks.on_ready_for_completion(payment_id, txid)

    async def deliver_cancel(self, handshake_id: str, payment_id: str | None) -> None:
        callbacks = self._callbacks(handshake_id)
        if callbacks is not None:
            await callbacks.on_terminal(TerminalReason.CANCELLED, payment_id, None)

    async def deliver_error(
        self,
        handshake_id: str,
        message: str,
        payment_id: str | None,
    ) -> None:
        callbacks = self._callbacks(handshake_id)
        if callbacks is not None:
            await callbacks.on_terminal(TerminalReason.ERROR, payment_id, message)
