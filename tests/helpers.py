"""Shared test helpers for building seeds, payments and escrow fixtures."""

from __future__ import annotations

import os
from decimal import Decimal
from typing import Any

from gig_escrow_service.clients.wallet_signer import encode_secret_seed
from gig_escrow_service.services.escrow_store import EscrowStore
from gig_escrow_service.services.payments import PAYMENT_TYPE_TASK

ALLOWED_ORIGIN = "https://app.example.test"


def make_wallet_seed() -> str:
    """Generate a fresh ``S...`` wallet seed."""
    return encode_secret_seed(os.urandom(32))


def network_payment(
    identifier: str = "pay-1",
    *,
    amount: float | str = 5,
    user_uid: str = "uid-payer",
    task_id: str | None = "t-1",
    payment_type: str = PAYMENT_TYPE_TASK,
    approved: bool = False,
    completed: bool = False,
    cancelled: bool = False,
    user_cancelled: bool = False,
    txid: str | None = None,
    verified: bool = False,
    direction: str = "user_to_app",
) -> dict[str, Any]:
    """Build a payment object in the payment network's JSON shape."""
    metadata: dict[str, Any] = {"type": payment_type}
    if task_id is not None:
        metadata["taskId"] = task_id
    payment: dict[str, Any] = {
        "identifier": identifier,
        "user_uid": user_uid,
        "amount": amount,
        "memo": "Task payment",
        "metadata": metadata,
        "from_address": "GFROM",
        "to_address": "GTO",
        "direction": direction,
        "created_at": "2026-01-01T00:00:00Z",
        "network": "Pi Testnet",
        "status": {
            "developer_approved": approved,
            "transaction_verified": verified,
            "developer_completed": completed,
            "cancelled": cancelled,
            "user_cancelled": user_cancelled,
        },
        "transaction": None,
    }
    if txid is not None:
        payment["transaction"] = {"txid": txid, "verified": verified, "_link": f"https://tx/{txid}"}
    return payment


def seed_task_with_accepted_bid(
    store: EscrowStore,
    task_id: str = "t-1",
    *,
    amount: Decimal = Decimal("5"),
    worker_uid: str = "uid-worker",
) -> str:
    """Insert an open task with one accepted bid and return the bid id."""
    bid_id = f"bid-{task_id}"
    store.insert_task(task_id, "uid-creator", f"Task {task_id}", amount)
    store.insert_bid(bid_id, task_id, worker_uid, amount)
    store.insert_bid(f"bid-{task_id}-other", task_id, "uid-other", amount + 1)
    store.accept_bid(task_id, bid_id)
    return bid_id


def record_completed_payment(
    store: EscrowStore,
    payment_id: str,
    txid: str,
    *,
    amount: Decimal = Decimal("5"),
    task_id: str = "t-1",
) -> None:
    """Store a completed funding payment record."""
    store.upsert_payment_record(
        payment_id,
        actor_id="uid-creator",
        direction="user_to_app",
        amount=amount,
        task_id=task_id,
        txid=txid,
        state="completed",
        source="handshake",
    )
