"""Payment handshake endpoints driven by the payer's wallet client."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gig_escrow_service.core.state import get_app_state
from gig_escrow_service.routers.validation import (
    optional_object,
    optional_string,
    parse_json_body,
    require_string,
)

if TYPE_CHECKING:
    from gig_escrow_service.clients.wallet_bridge import CallbackWalletBridge
    from gig_escrow_service.services.handshake_controller import HandshakeController

router = APIRouter()


def _components() -> tuple[HandshakeController, CallbackWalletBridge]:
    state = get_app_state()
    if state.handshake_controller is None or state.wallet_bridge is None:
        msg = "HandshakeController not initialized"
        raise RuntimeError(msg)
    return state.handshake_controller, state.wallet_bridge


@router.post("/handshakes", status_code=201)
async def start_handshake(request: Request) -> JSONResponse:
    """Start a payment handshake for a reconciled user."""
    data = parse_json_body(await request.body())
    uid = require_string(data, "uid")
    memo = require_string(data, "memo")
    metadata = optional_object(data, "metadata")

    controller, _ = _components()
    flow = await controller.start(uid, data.get("amount"), memo, metadata)
    return JSONResponse(status_code=201, content=flow.to_dict())


@router.get("/handshakes/{handshake_id}")
async def get_handshake(handshake_id: str) -> JSONResponse:
    """Current state of a handshake."""
    controller, _ = _components()
    return JSONResponse(status_code=200, content=controller.get(handshake_id).to_dict())


@router.post("/handshakes/{handshake_id}/approval")
async def ready_for_approval(handshake_id: str, request: Request) -> JSONResponse:
    """Wallet reports the payment id and waits for server approval."""
    data = parse_json_body(await request.body())
    payment_id = require_string(data, "payment_id")

    controller, bridge = _components()
    flow = controller.get(handshake_id)
    await bridge.deliver_approval(handshake_id, payment_id)
    return JSONResponse(status_code=200, content=flow.to_dict())


@router.post("/handshakes/{handshake_id}/completion")
async def ready_for_completion(handshake_id: str, request: Request) -> JSONResponse:
    """Wallet reports the broadcast transaction."""
    data = parse_json_body(await request.body())
    payment_id = require_string(data, "payment_id")
    txid = require_string(data, "txid")

    controller, bridge = _components()
    flow = controller.get(handshake_id)
    await bridge.deliver_completion(handshake_id, payment_id, txid)
    return JSONResponse(status_code=200, content=flow.to_dict())


@router.post("/handshakes/{handshake_id}/cancel")
async def cancel_handshake(handshake_id: str, request: Request) -> JSONResponse:
    """User cancelled the payment in the wallet."""
    data = parse_json_body(await request.body())
    payment_id = optional_string(data, "payment_id")

    controller, bridge = _components()
    flow = controller.get(handshake_id)
    await bridge.deliver_cancel(handshake_id, payment_id)
    return JSONResponse(status_code=200, content=flow.to_dict())


@router.post("/handshakes/{handshake_id}/error")
async def report_error(handshake_id: str, request: Request) -> JSONResponse:
    """Wallet reported an error for the payment."""
    data = parse_json_body(await request.body())
    message = require_string(data, "message")
    payment_id = optional_string(data, "payment_id")

    controller, bridge = _components()
    flow = controller.get(handshake_id)
    await bridge.deliver_error(handshake_id, message, payment_id)
    return JSONResponse(status_code=200, content=flow.to_dict())
