"""Session endpoint tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.services.payments import parse_payment
from tests.helpers import network_payment

pytestmark = pytest.mark.unit


async def test_session_reconciles_and_unblocks_payments(client, store, network) -> None:
    network.get_payment = AsyncMock(return_value=parse_payment(network_payment(approved=True)))
    network.cancel_payment = AsyncMock(
        return_value=parse_payment(network_payment(approved=True, cancelled=True))
    )

    response = await client.post(
        "/sessions",
        json={"access_token": "token-1", "incomplete_payments": [network_payment(approved=True)]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["uid"] == "uid-payer"
    assert body["username"] == "alice"
    assert body["reconciliation"][0]["action"] == "cancelled"
    assert store.get_reconciliation("uid-payer")["status"] == "completed"

    handshake = await client.post(
        "/handshakes", json={"uid": "uid-payer", "amount": 1, "memo": "Task payment"}
    )
    assert handshake.status_code == 201


async def test_session_rejects_non_list_payments(client) -> None:
    response = await client.post(
        "/sessions", json={"access_token": "token-1", "incomplete_payments": "nope"}
    )

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_FIELD"


async def test_session_invalid_token(client, network) -> None:
    network.get_me = AsyncMock(
        side_effect=ServiceError("INVALID_ACCESS_TOKEN", "rejected", 401, {})
    )

    response = await client.post("/sessions", json={"access_token": "bad"})

    assert response.status_code == 401
    assert response.json()["error"] == "INVALID_ACCESS_TOKEN"


async def test_sandbox_session_may_skip_reconciliation(client, store) -> None:
    response = await client.post(
        "/sessions",
        json={"access_token": "token-1", "skip_reconciliation_reason": "old wallet build"},
    )

    assert response.status_code == 200
    assert store.get_reconciliation("uid-payer")["status"] == "skipped"
