"""Payment network payment model and derived lifecycle."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import StrEnum
from functools import cached_property
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_serializer

from gig_escrow_service.core.exceptions import ServiceError

PAYMENT_TYPE_TASK = "task_payment"
PAYMENT_TYPE_RELEASE = "task_payment_release"
PAYMENT_TYPE_TEST = "test_payment"


class PaymentLifecycle(StrEnum):
    """Single local view of a payment's raw status flags."""

    CREATED = "created"
    APPROVED = "approved"
    BROADCAST = "broadcast"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


TERMINAL_LIFECYCLES: frozenset[PaymentLifecycle] = frozenset(
    {PaymentLifecycle.COMPLETED, PaymentLifecycle.CANCELLED, PaymentLifecycle.EXPIRED}
)


class PaymentStatusFlags(BaseModel):
    """Raw status flag vector as reported by the payment network."""

    model_config = ConfigDict(extra="ignore")
    developer_approved: bool = False
    transaction_verified: bool = False
    developer_completed: bool = False
    cancelled: bool = False
    user_cancelled: bool = False
    expired: bool = False


class PaymentTransaction(BaseModel):
    """Blockchain transaction attached once the payer's wallet broadcast it."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    txid: str
    verified: bool = False
    link: str | None = Field(default=None, alias="_link")


def derive_lifecycle(
    flags: PaymentStatusFlags,
    transaction: PaymentTransaction | None,
) -> PaymentLifecycle:
    """
    Collapse the raw flag vector into one lifecycle state.

    Precedence matters: a completed payment stays completed even if the
    network later also reports it cancelled.
    """
    if flags.developer_completed:
        return PaymentLifecycle.COMPLETED
    if flags.cancelled or flags.user_cancelled:
        return PaymentLifecycle.CANCELLED
    if flags.expired:
        return PaymentLifecycle.EXPIRED
    if transaction is not None and transaction.txid:
        return PaymentLifecycle.BROADCAST
    if flags.developer_approved:
        return PaymentLifecycle.APPROVED
    return PaymentLifecycle.CREATED


class Payment(BaseModel):
    """A payment owned by the payment network, mirrored by reference."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)
    identifier: str
    user_uid: str | None = None
    amount: Decimal
    memo: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    from_address: str | None = None
    to_address: str | None = None
    direction: str | None = None
    created_at: str | None = None
    network: str | None = None
    status: PaymentStatusFlags = Field(default_factory=PaymentStatusFlags)
    transaction: PaymentTransaction | None = None

    @computed_field  # type: ignore[prop-decorator]
    @cached_property
    def lifecycle(self) -> PaymentLifecycle:
        """Derived lifecycle, computed once per parsed payment."""
        return derive_lifecycle(self.status, self.transaction)

    @property
    def txid(self) -> str | None:
        """Transaction id if the payment has been broadcast."""
        if self.transaction is None or not self.transaction.txid:
            return None
        return self.transaction.txid

    @property
    def task_id(self) -> str | None:
        """Correlation task id carried in metadata."""
        value = self.metadata.get("taskId")
        return value if isinstance(value, str) and value else None

    @property
    def payment_type(self) -> str | None:
        """Metadata payment type."""
        value = self.metadata.get("type")
        return value if isinstance(value, str) else None

    @property
    def is_terminal(self) -> bool:
        """True when no further network action can move funds."""
        return self.lifecycle in TERMINAL_LIFECYCLES

    @field_serializer("amount")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)

    def to_response(self) -> dict[str, Any]:
        """JSON-ready representation for relay responses."""
        return self.model_dump(mode="json", by_alias=True)


def parse_payment(data: object) -> Payment:
    """
    Parse a payment object received from the network or a wallet client.

    Raises:
        ServiceError: INVALID_PAYMENT (400) if the object is not a payment
    """
    if not isinstance(data, dict):
        raise ServiceError("INVALID_PAYMENT", "Payment must be a JSON object", 400, {})
    try:
        return Payment.model_validate(data)
    except ValueError as exc:
        raise ServiceError("INVALID_PAYMENT", "Payment object is malformed", 400, {}) from exc


def parse_amount(value: object) -> Decimal:
    """
    Parse a positive, finite currency amount.

    Raises:
        ServiceError: INVALID_AMOUNT (400)
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {})
    try:
        amount = Decimal(str(value))
    except InvalidOperation as exc:
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {}) from exc
    if not amount.is_finite() or amount <= 0:
        raise ServiceError("INVALID_AMOUNT", "Amount must be a positive number", 400, {})
    return amount
