"""User-to-app payment relay and dangling-payment reporting endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from gig_escrow_service.core.state import get_app_state
from gig_escrow_service.routers.validation import parse_json_body, require_string
from gig_escrow_service.services.payments import parse_payment

if TYPE_CHECKING:
    from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
    from gig_escrow_service.services.payments import Payment

router = APIRouter()


def network_client() -> PaymentNetworkClient:
    state = get_app_state()
    if state.network_client is None:
        msg = "PaymentNetworkClient not initialized"
        raise RuntimeError(msg)
    return state.network_client


async def _record(payment: Payment) -> None:
    state = get_app_state()
    if state.store is None:
        msg = "EscrowStore not initialized"
        raise RuntimeError(msg)
    await run_in_threadpool(
        state.store.upsert_payment_record,
        payment.identifier,
        actor_id=payment.user_uid,
        direction=payment.direction or "user_to_app",
        amount=payment.amount,
        task_id=payment.task_id,
        txid=payment.txid,
        state=payment.lifecycle.value,
        source="relay",
    )


# ---------------------------------------------------------------------------
# POST /payments/incomplete (MUST be before /payments/{payment_id} routes)
# ---------------------------------------------------------------------------


@router.post("/payments/incomplete")
async def report_incomplete_payment(request: Request) -> JSONResponse:
    """Reconcile one dangling payment reported by a wallet client."""
    data = parse_json_body(await request.body())
    payment = parse_payment(data.get("payment"))

    state = get_app_state()
    if state.reconciler is None:
        msg = "IncompletePaymentReconciler not initialized"
        raise RuntimeError(msg)

    outcomes = await state.reconciler.reconcile([payment], payment.user_uid)
    return JSONResponse(status_code=200, content=outcomes[0].to_dict())


@router.post("/payments/{payment_id}/approve")
async def approve_payment(payment_id: str) -> JSONResponse:
    """Approve a wallet-created payment."""
    await network_client().approve_payment(payment_id)
    return JSONResponse(status_code=200, content={"payment_id": payment_id, "status": "approved"})


@router.post("/payments/{payment_id}/complete")
async def complete_payment(payment_id: str, request: Request) -> JSONResponse:
    """Complete a broadcast payment with its txid."""
    data = parse_json_body(await request.body())
    txid = require_string(data, "txid")

    payment = await network_client().complete_payment(payment_id, txid)
    await _record(payment)
    return JSONResponse(status_code=200, content=payment.to_response())


@router.post("/payments/{payment_id}/cancel")
async def cancel_payment(payment_id: str) -> JSONResponse:
    """Cancel a payment that has not been completed."""
    payment = await network_client().cancel_payment(payment_id)
    await _record(payment)
    return JSONResponse(status_code=200, content=payment.to_response())


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str) -> JSONResponse:
    """Fetch a payment from the payment network."""
    payment = await network_client().get_payment(payment_id)
    return JSONResponse(status_code=200, content=payment.to_response())
