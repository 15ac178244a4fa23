"""Identity handshake endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from gig_escrow_service.core.exceptions import ServiceError
from gig_escrow_service.core.state import get_app_state
from gig_escrow_service.routers.validation import (
    optional_string,
    parse_json_body,
    require_string,
)

router = APIRouter()


@router.post("/sessions")
async def create_session(request: Request) -> JSONResponse:
    """Verify a wallet access token and reconcile the user's dangling payments."""
    data = parse_json_body(await request.body())
    access_token = require_string(data, "access_token")
    skip_reason = optional_string(data, "skip_reconciliation_reason")

    incomplete_payments = data.get("incomplete_payments")
    if incomplete_payments is None:
        incomplete_payments = []
    if not isinstance(incomplete_payments, list):
        raise ServiceError(
            "INVALID_FIELD",
            "Field 'incomplete_payments' must be a list",
            400,
            {"field": "incomplete_payments"},
        )

    state = get_app_state()
    if state.session_manager is None:
        msg = "SessionManager not initialized"
        raise RuntimeError(msg)

    result = await state.session_manager.authenticate(
        access_token, incomplete_payments, skip_reason
    )
    return JSONResponse(status_code=200, content=result)
