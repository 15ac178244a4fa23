"""Unit tests for HandshakeController single-resolution flows."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from gig_escrow_service.clients.wallet_bridge import CallbackWalletBridge
from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.services.escrow_store import EscrowStore
from gig_escrow_service.services.handshake_controller import (
    HandshakeController,
    HandshakeStatus,
    classify_wallet_error,
)
from gig_escrow_service.services.payments import parse_payment
from tests.helpers import network_payment

pytestmark = pytest.mark.unit

ACTOR = "uid-payer"


@pytest.fixture
def store(tmp_path):
    escrow_store = EscrowStore(db_path=str(tmp_path / "escrow.db"))
    escrow_store.mark_reconciled(ACTOR, "completed", None)
    yield escrow_store
    escrow_store.close()


@pytest.fixture
def network():
    client = AsyncMock()
    client.get_payment = AsyncMock(return_value=parse_payment(network_payment(amount=5)))
    client.approve_payment = AsyncMock(return_value=None)
    client.complete_payment = AsyncMock(
        return_value=parse_payment(
            network_payment(approved=True, completed=True, txid="tx-1", verified=True)
        )
    )
    return client


@pytest.fixture
def wallet():
    return CallbackWalletBridge()


def _controller(network, wallet, store, timeout: float = 30.0) -> HandshakeController:
    return HandshakeController(
        network_client=network,
        wallet=wallet,
        store=store,
        timeout_seconds=timeout,
        lock_grace_seconds=60.0,
    )


async def _start(controller: HandshakeController, amount: object = 5):
    return await controller.start(ACTOR, amount, "Task payment", {"taskId": "t-1"})


async def test_happy_path_completes_and_records_payment(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)
    assert wallet.is_open(flow.handshake_id)
    assert store.get_payment_lock(ACTOR) is not None

    await wallet.deliver_approval(flow.handshake_id, "pay-1")
    network.approve_payment.assert_awaited_once_with("pay-1")
    assert store.get_payment_record("pay-1")["state"] == "approved"

    await wallet.deliver_completion(flow.handshake_id, "pay-1", "tx-1")
    outcome = await controller.wait(flow.handshake_id)

    assert outcome.status == HandshakeStatus.COMPLETED
    assert outcome.payment_id == "pay-1"
    assert outcome.txid == "tx-1"
    # Amount was checked at approval, so completion does not re-check it
    assert network.complete_payment.await_args.kwargs["expected_amount"] is None
    record = store.get_payment_record("pay-1")
    assert record["state"] == "completed"
    assert record["txid"] == "tx-1"
    assert record["amount"] == Decimal("5")
    assert store.get_payment_lock(ACTOR) is None
    assert not wallet.is_open(flow.handshake_id)


async def test_amount_mismatch_fails_without_approval(network, wallet, store) -> None:
    """The wallet reports an amount of 3 for a 5 request: no approve call."""
    network.get_payment.return_value = parse_payment(network_payment(amount=3))
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_approval(flow.handshake_id, "pay-1")
    outcome = await controller.wait(flow.handshake_id)

    assert outcome.status == HandshakeStatus.FAILED
    assert outcome.error == "AMOUNT_MISMATCH"
    network.approve_payment.assert_not_awaited()
    assert store.get_payment_record("pay-1") is None
    assert store.get_payment_lock(ACTOR) is None


async def test_payment_for_other_user_fails(network, wallet, store) -> None:
    network.get_payment.return_value = parse_payment(network_payment(user_uid="uid-someone"))
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_approval(flow.handshake_id, "pay-1")

    assert flow.outcome is not None
    assert flow.outcome.error == "AMOUNT_MISMATCH"
    network.approve_payment.assert_not_awaited()


async def test_completion_without_approval_checks_amount(network, wallet, store) -> None:
    network.complete_payment.side_effect = ServiceError("PAYMENT_CONFLICT", "mismatch", 409, {})
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_completion(flow.handshake_id, "pay-1", "tx-1")

    assert network.complete_payment.await_args.kwargs["expected_amount"] == Decimal("5")
    assert flow.outcome is not None
    assert flow.outcome.error == "AMOUNT_MISMATCH"


async def test_first_resolution_wins(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_cancel(flow.handshake_id, "pay-1")
    # Late completion for the closed flow is dropped
    await wallet.deliver_completion(flow.handshake_id, "pay-1", "tx-1")
    await wallet.deliver_error(flow.handshake_id, "boom", "pay-1")

    outcome = await controller.wait(flow.handshake_id)
    assert outcome.status == HandshakeStatus.CANCELLED
    assert outcome.error == "USER_CANCELLED"
    network.complete_payment.assert_not_awaited()


async def test_late_network_reply_does_not_override_timeout(network, wallet, store) -> None:
    gate = asyncio.Event()

    async def slow_get_payment(payment_id):
        await gate.wait()
        return parse_payment(network_payment(amount=5))

    network.get_payment.side_effect = slow_get_payment
    controller = _controller(network, wallet, store, timeout=0.05)
    flow = await _start(controller)

    approval = asyncio.create_task(wallet.deliver_approval(flow.handshake_id, "pay-1"))
    outcome = await controller.wait(flow.handshake_id)
    gate.set()
    await approval

    assert outcome.status == HandshakeStatus.TIMEOUT
    assert outcome.error == "HANDSHAKE_TIMEOUT"
    assert flow.outcome == outcome
    network.approve_payment.assert_not_awaited()
    assert store.get_payment_lock(ACTOR) is None


async def test_second_payment_while_first_pending(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    await _start(controller)

    with pytest.raises(ServiceError) as exc_info:
        await _start(controller)
    assert exc_info.value.error == "PAYMENT_IN_PROGRESS"
    assert exc_info.value.status_code == 409


async def test_lock_released_after_resolution_allows_next_payment(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    first = await _start(controller)
    await wallet.deliver_cancel(first.handshake_id, None)

    second = await _start(controller)
    assert second.handshake_id != first.handshake_id


async def test_unreconciled_actor_cannot_start(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    with pytest.raises(ServiceError) as exc_info:
        await controller.start("uid-new", 5, "memo", {})
    assert exc_info.value.error == "RECONCILIATION_REQUIRED"


async def test_invalid_amount_rejected_before_lock(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    with pytest.raises(ServiceError) as exc_info:
        await _start(controller, amount=-1)
    assert exc_info.value.error == "INVALID_AMOUNT"
    assert store.get_payment_lock(ACTOR) is None


async def test_wallet_error_is_classified(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_error(flow.handshake_id, "User denied payments scope", None)

    assert flow.outcome is not None
    assert flow.outcome.status == HandshakeStatus.FAILED
    assert flow.outcome.error == "CONSENT_DENIED"


async def test_close_resolves_pending_flows(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await controller.close()

    assert flow.outcome is not None
    assert flow.outcome.error == "SERVICE_SHUTDOWN"
    assert store.get_payment_lock(ACTOR) is None


async def test_unknown_handshake(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    with pytest.raises(ServiceError) as exc_info:
        controller.get("hs-missing")
    assert exc_info.value.status_code == 404


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("Missing payments scope", "CONSENT_DENIED"),
        ("permission denied by user", "CONSENT_DENIED"),
        ("socket closed", "PAYMENT_NETWORK_UNAVAILABLE"),
        (None, "PAYMENT_NETWORK_UNAVAILABLE"),
    ],
)
def test_classify_wallet_error(message, expected) -> None:
    assert classify_wallet_error(message) == expected


async def test_timeout_after_approval_requires_reconciliation(network, wallet, store) -> None:
    controller = _controller(network, wallet, store, timeout=0.05)
    flow = await _start(controller)
    await wallet.deliver_approval(flow.handshake_id, "pay-1")

    outcome = await controller.wait(flow.handshake_id)

    assert outcome.status == HandshakeStatus.TIMEOUT
    network.approve_payment.assert_awaited_once_with("pay-1")
    assert store.get_payment_lock(ACTOR) is None
    assert store.get_reconciliation(ACTOR) is None
    with pytest.raises(ServiceError) as exc_info:
        await _start(controller)
    assert exc_info.value.error == "RECONCILIATION_REQUIRED"


async def test_failure_with_known_payment_requires_reconciliation(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)

    await wallet.deliver_error(flow.handshake_id, "boom", "pay-1")

    assert flow.outcome is not None
    assert flow.outcome.status == HandshakeStatus.FAILED
    with pytest.raises(ServiceError) as exc_info:
        await _start(controller)
    assert exc_info.value.error == "RECONCILIATION_REQUIRED"


async def test_completed_flow_keeps_reconciliation(network, wallet, store) -> None:
    controller = _controller(network, wallet, store)
    flow = await _start(controller)
    await wallet.deliver_approval(flow.handshake_id, "pay-1")
    await wallet.deliver_completion(flow.handshake_id, "pay-1", "tx-1")

    assert flow.outcome is not None
    assert flow.outcome.status == HandshakeStatus.COMPLETED
    assert store.get_reconciliation(ACTOR) is not None
