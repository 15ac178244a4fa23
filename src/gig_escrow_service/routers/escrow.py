"""Escrow lifecycle endpoints."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from gig_escrow_service.core.state import get_app_state
from gig_escrow_service.routers.validation import (
    escrow_to_response,
    optional_string,
    parse_json_body,
    require_string,
)

if TYPE_CHECKING:
    from gig_escrow_service.services.escrow_ledger import EscrowLedger

router = APIRouter()


def _ledger() -> EscrowLedger:
    state = get_app_state()
    if state.escrow_ledger is None:
        msg = "EscrowLedger not initialized"
        raise RuntimeError(msg)
    return state.escrow_ledger


@router.post("/escrow", status_code=201)
async def create_escrow(request: Request) -> JSONResponse:
    """Create a pending escrow for an open task."""
    data = parse_json_body(await request.body())
    task_id = require_string(data, "task_id")
    bid_id = optional_string(data, "bid_id")
    payment_id = optional_string(data, "payment_id")

    escrow = await run_in_threadpool(
        _ledger().create, task_id, bid_id, data.get("amount"), payment_id
    )
    return JSONResponse(status_code=201, content=escrow_to_response(escrow))


@router.get("/escrow/{escrow_id}")
async def get_escrow(escrow_id: str) -> JSONResponse:
    """Fetch an escrow."""
    escrow = await run_in_threadpool(_ledger().get, escrow_id)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))


@router.get("/tasks/{task_id}/escrow")
async def get_task_escrow(task_id: str) -> JSONResponse:
    """Fetch the escrow of a task."""
    escrow = await run_in_threadpool(_ledger().get_for_task, task_id)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))


@router.post("/escrow/{escrow_id}/payment")
async def attach_payment(escrow_id: str, request: Request) -> JSONResponse:
    """Link the funding payment to a pending escrow."""
    data = parse_json_body(await request.body())
    payment_id = require_string(data, "payment_id")

    escrow = await run_in_threadpool(_ledger().attach_payment, escrow_id, payment_id)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))


@router.post("/escrow/{escrow_id}/fund")
async def fund_escrow(escrow_id: str, request: Request) -> JSONResponse:
    """Mark a pending escrow funded by its completed payment."""
    data = parse_json_body(await request.body())
    txid = require_string(data, "txid")

    escrow = await run_in_threadpool(_ledger().mark_funded, escrow_id, txid)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))


@router.post("/escrow/{escrow_id}/release")
async def release_escrow(escrow_id: str) -> JSONResponse:
    """Pay the worker and close the escrow."""
    escrow = await _ledger().release(escrow_id)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))


@router.post("/escrow/{escrow_id}/refund")
async def refund_escrow(escrow_id: str) -> JSONResponse:
    """Refund a funded escrow and mark its task disputed."""
    escrow = await run_in_threadpool(_ledger().refund, escrow_id)
    return JSONResponse(status_code=200, content=escrow_to_response(escrow))
