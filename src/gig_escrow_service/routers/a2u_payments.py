"""App-to-user payment primitives exposed for operators."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gig_escrow_service.routers.payments import network_client
from gig_escrow_service.routers.validation import (
    optional_object,
    parse_json_body,
    require_string,
)
from gig_escrow_service.services.payments import parse_amount

router = APIRouter()


@router.post("/a2u-payments/create", status_code=201)
async def create_a2u_payment(request: Request) -> JSONResponse:
    """Create an app-to-user payment."""
    data = parse_json_body(await request.body())
    amount = parse_amount(data.get("amount"))
    memo = require_string(data, "memo")
    uid = require_string(data, "uid")
    metadata = optional_object(data, "metadata")

    payment_id = await network_client().create_a2u_payment(
        amount=amount,
        recipient_uid=uid,
        memo=memo,
        metadata=metadata,
    )
    return JSONResponse(status_code=201, content={"payment_id": payment_id})


@router.post("/a2u-payments/{payment_id}/submit")
async def submit_a2u_payment(payment_id: str) -> JSONResponse:
    """Sign and submit an app-to-user payment's transaction."""
    txid = await network_client().submit_payment(payment_id)
    return JSONResponse(status_code=200, content={"payment_id": payment_id, "txid": txid})


@router.post("/a2u-payments/{payment_id}/complete")
async def complete_a2u_payment(payment_id: str, request: Request) -> JSONResponse:
    """Complete a submitted app-to-user payment."""
    data = parse_json_body(await request.body())
    txid = require_string(data, "txid")
    payment = await network_client().complete_payment(payment_id, txid)
    return JSONResponse(status_code=200, content=payment.to_response())


@router.get("/a2u-payments/{payment_id}")
async def get_a2u_payment(payment_id: str) -> JSONResponse:
    """Fetch an app-to-user payment."""
    payment = await network_client().get_payment(payment_id)
    return JSONResponse(status_code=200, content=payment.to_response())
