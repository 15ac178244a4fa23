"""Payment relay and A2U endpoint tests."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.services.payments import parse_payment
from tests.helpers import network_payment

pytestmark = pytest.mark.unit


async def test_get_payment_relays_network_object(client, network) -> None:
    response = await client.get("/payments/pay-1")

    assert response.status_code == 200
    body = response.json()
    assert body["identifier"] == "pay-1"
    assert body["lifecycle"] == "created"
    network.get_payment.assert_awaited_once_with("pay-1")


async def test_get_payment_not_found(client, network) -> None:
    network.get_payment = AsyncMock(
        side_effect=ServiceError("PAYMENT_NOT_FOUND", "Payment not found", 404, {})
    )

    response = await client.get("/payments/pay-x")

    assert response.status_code == 404
    assert response.json()["error"] == "PAYMENT_NOT_FOUND"


async def test_approve_payment(client, network) -> None:
    response = await client.post("/payments/pay-1/approve")

    assert response.status_code == 200
    assert response.json() == {"payment_id": "pay-1", "status": "approved"}


async def test_complete_payment_records_it(client, store, network) -> None:
    network.complete_payment = AsyncMock(
        return_value=parse_payment(network_payment(completed=True, txid="tx-1", verified=True))
    )

    response = await client.post("/payments/pay-1/complete", json={"txid": "tx-1"})

    assert response.status_code == 200
    assert response.json()["lifecycle"] == "completed"
    record = store.get_payment_record("pay-1")
    assert record["state"] == "completed"
    assert record["source"] == "relay"


async def test_complete_payment_requires_txid(client) -> None:
    response = await client.post("/payments/pay-1/complete", json={})

    assert response.status_code == 400
    assert response.json()["error"] == "MISSING_FIELD"


async def test_cancel_payment(client, network) -> None:
    network.cancel_payment = AsyncMock(
        return_value=parse_payment(network_payment(cancelled=True))
    )

    response = await client.post("/payments/pay-1/cancel")

    assert response.status_code == 200
    assert response.json()["lifecycle"] == "cancelled"


async def test_report_incomplete_payment(client, network) -> None:
    network.get_payment = AsyncMock(
        return_value=parse_payment(network_payment(completed=True, txid="tx-1", verified=True))
    )

    response = await client.post(
        "/payments/incomplete", json={"payment": network_payment(txid="tx-1")}
    )

    assert response.status_code == 200
    assert response.json()["action"] == "already_completed"


async def test_report_incomplete_payment_rejects_garbage(client) -> None:
    response = await client.post("/payments/incomplete", json={"payment": "nope"})

    assert response.status_code == 400
    assert response.json()["error"] == "INVALID_PAYMENT"


async def test_a2u_create_submit_complete(client, network) -> None:
    network.create_a2u_payment = AsyncMock(return_value="a2u-1")
    network.submit_payment = AsyncMock(return_value="tx-payout")
    network.complete_payment = AsyncMock(
        return_value=parse_payment(
            network_payment("a2u-1", completed=True, txid="tx-payout", verified=True)
        )
    )

    created = await client.post(
        "/a2u-payments/create",
        json={"amount": 2, "memo": "Payout", "uid": "uid-worker", "metadata": {"taskId": "t-1"}},
    )
    submitted = await client.post("/a2u-payments/a2u-1/submit")
    completed = await client.post("/a2u-payments/a2u-1/complete", json={"txid": "tx-payout"})

    assert created.status_code == 201
    assert created.json() == {"payment_id": "a2u-1"}
    assert submitted.json() == {"payment_id": "a2u-1", "txid": "tx-payout"}
    assert completed.json()["lifecycle"] == "completed"


async def test_a2u_create_requires_uid(client) -> None:
    response = await client.post("/a2u-payments/create", json={"amount": 2, "memo": "Payout"})

    assert response.status_code == 400
    assert response.json()["details"] == {"field": "uid"}
