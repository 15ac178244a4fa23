"""Unit tests for EscrowStore."""

from __future__ import annotations

import sqlite3
from decimal import Decimal

import pytest
from freezegun import freeze_time

from gig_escrow_service.services.escrow_store import (
    BidStateError,
    DuplicateEscrowError,
    DuplicateRecordError,
    EscrowStateError,
    EscrowStore,
    StaleTaskStateError,
)
from tests.helpers import seed_task_with_accepted_bid

pytestmark = pytest.mark.unit


@pytest.fixture
def store(tmp_path):
    escrow_store = EscrowStore(db_path=str(tmp_path / "escrow.db"))
    yield escrow_store
    escrow_store.close()


def test_task_and_bid_round_trip_decimal_amounts(store) -> None:
    store.insert_task("t-1", "uid-creator", "Logo design", Decimal("12.5"))
    store.insert_bid("bid-1", "t-1", "uid-worker", Decimal("10.25"))

    task = store.get_task("t-1")
    bid = store.get_bid("bid-1")
    assert task is not None and bid is not None
    assert task["status"] == "open"
    assert task["payment_amount"] == Decimal("12.5")
    assert bid["amount"] == Decimal("10.25")
    assert bid["status"] == "pending"


def test_duplicate_task_is_rejected(store) -> None:
    store.insert_task("t-1", "uid-creator", "Task", Decimal("5"))
    with pytest.raises(DuplicateRecordError):
        store.insert_task("t-1", "uid-creator", "Task", Decimal("5"))


def test_accept_bid_rejects_other_pending_bids(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)

    accepted = store.get_accepted_bid("t-1")
    other = store.get_bid("bid-t-1-other")
    assert accepted is not None and accepted["bid_id"] == bid_id
    assert other is not None and other["status"] == "rejected"


def test_second_acceptance_fails(store) -> None:
    seed_task_with_accepted_bid(store)
    with pytest.raises(BidStateError):
        store.accept_bid("t-1", "bid-t-1-other")


def test_one_active_escrow_per_task(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")

    with pytest.raises(DuplicateEscrowError):
        store.insert_escrow("esc-2", "t-1", bid_id, Decimal("5"), "pay-2")


def test_escrow_amount_cannot_be_updated(store, tmp_path) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")

    raw = sqlite3.connect(str(tmp_path / "escrow.db"))
    with pytest.raises(sqlite3.IntegrityError, match="immutable"):
        raw.execute("UPDATE escrow_payments SET amount = '3' WHERE escrow_id = 'esc-1'")
    raw.close()

    escrow = store.get_escrow("esc-1")
    assert escrow is not None
    assert escrow["amount"] == Decimal("5")


def test_fund_escrow_is_atomic_on_stale_task(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")
    store.fund_escrow("esc-1", "t-1", "uid-worker", "tx-1")

    with pytest.raises(StaleTaskStateError):
        store.fund_escrow("esc-1", "t-1", "uid-worker", "tx-2")

    escrow = store.get_escrow("esc-1")
    task = store.get_task("t-1")
    assert escrow is not None and task is not None
    assert escrow["status"] == "funded"
    assert escrow["funding_txid"] == "tx-1"
    assert task["status"] == "in_progress"
    assert task["executor_id"] == "uid-worker"


def test_finalize_release_requires_funded_escrow(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")

    with pytest.raises(EscrowStateError):
        store.finalize_release("esc-1", "t-1", "tx-payout")


def test_refund_frees_the_task_for_a_new_escrow(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")
    store.fund_escrow("esc-1", "t-1", "uid-worker", "tx-1")
    store.refund_escrow("esc-1", "t-1")

    task = store.get_task("t-1")
    assert task is not None and task["status"] == "disputed"
    assert store.get_active_escrow_for_task("t-1") is None
    latest = store.get_latest_escrow_for_task("t-1")
    assert latest is not None and latest["status"] == "refunded"
    assert store.count_escrows_by_status() == {"refunded": 1}


def test_release_payment_claim_is_single(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")
    store.fund_escrow("esc-1", "t-1", "uid-worker", "tx-1")

    assert store.record_release_payment("esc-1", "a2u-1") == 1
    assert store.record_release_payment("esc-1", "a2u-2") == 0
    assert store.record_release_payment("esc-1", "a2u-3", replaces="a2u-other") == 0
    assert store.get_escrow("esc-1")["release_payment_id"] == "a2u-1"

    assert store.record_release_payment("esc-1", "a2u-4", replaces="a2u-1") == 1
    assert store.get_escrow("esc-1")["release_payment_id"] == "a2u-4"


def test_refund_refused_once_payout_is_claimed(store) -> None:
    bid_id = seed_task_with_accepted_bid(store)
    store.insert_escrow("esc-1", "t-1", bid_id, Decimal("5"), "pay-1")
    store.fund_escrow("esc-1", "t-1", "uid-worker", "tx-1")
    store.record_release_payment("esc-1", "a2u-1")

    with pytest.raises(EscrowStateError):
        store.refund_escrow("esc-1", "t-1")

    assert store.get_escrow("esc-1")["status"] == "funded"
    task = store.get_task("t-1")
    assert task is not None and task["status"] == "in_progress"


def test_payment_record_upsert_keeps_known_fields(store) -> None:
    store.upsert_payment_record(
        "pay-1",
        actor_id="uid-payer",
        direction="user_to_app",
        amount=Decimal("5"),
        task_id="t-1",
        txid=None,
        state="approved",
        source="handshake",
    )
    store.upsert_payment_record(
        "pay-1",
        actor_id=None,
        direction="user_to_app",
        amount=Decimal("5"),
        task_id=None,
        txid="tx-1",
        state="completed",
        source="reconciler",
    )

    record = store.get_payment_record("pay-1")
    assert record is not None
    assert record["actor_id"] == "uid-payer"
    assert record["task_id"] == "t-1"
    assert record["txid"] == "tx-1"
    assert record["state"] == "completed"
    assert record["source"] == "reconciler"


def test_payment_lock_is_exclusive_per_actor(store) -> None:
    assert store.acquire_payment_lock("uid-1", "hs-1", stale_after_seconds=90) is True
    assert store.acquire_payment_lock("uid-1", "hs-2", stale_after_seconds=90) is False
    assert store.acquire_payment_lock("uid-2", "hs-3", stale_after_seconds=90) is True

    # Only the owning handshake can release it
    assert store.release_payment_lock("uid-1", "hs-2") == 0
    assert store.release_payment_lock("uid-1", "hs-1") == 1
    assert store.acquire_payment_lock("uid-1", "hs-4", stale_after_seconds=90) is True


def test_stale_payment_lock_is_reclaimed(store) -> None:
    with freeze_time("2026-01-01 12:00:00") as frozen:
        assert store.acquire_payment_lock("uid-1", "hs-1", stale_after_seconds=90) is True
        frozen.tick(60)
        assert store.acquire_payment_lock("uid-1", "hs-2", stale_after_seconds=90) is False
        frozen.tick(31)
        assert store.acquire_payment_lock("uid-1", "hs-2", stale_after_seconds=90) is True

    lock = store.get_payment_lock("uid-1")
    assert lock is not None and lock["handshake_id"] == "hs-2"


def test_reconciliation_mark_and_profile(store) -> None:
    assert store.get_reconciliation("uid-1") is None
    store.mark_reconciled("uid-1", "skipped", "sandbox wallet")
    store.mark_reconciled("uid-1", "completed", None)

    mark = store.get_reconciliation("uid-1")
    assert mark is not None
    assert mark["status"] == "completed"
    assert mark["reason"] is None

    first = store.upsert_profile("uid-1", "alice")
    second = store.upsert_profile("uid-1", "alice2")
    assert second["username"] == "alice2"
    assert second["created_at"] == first["created_at"]


def test_clear_reconciliation(store) -> None:
    store.mark_reconciled("uid-1", "completed", None)

    assert store.clear_reconciliation("uid-1") == 1
    assert store.get_reconciliation("uid-1") is None
    assert store.clear_reconciliation("uid-1") == 0
