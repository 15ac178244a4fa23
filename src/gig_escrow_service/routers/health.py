"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from gig_escrow_service.core.state import get_app_state
from gig_escrow_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return escrow statistics."""
    state = get_app_state()
    total_escrows = 0
    escrows_by_status: dict[str, int] = {}
    if state.escrow_ledger is not None:
        stats = await run_in_threadpool(state.escrow_ledger.get_stats)
        total_escrows = stats["total_escrows"]
        escrows_by_status = stats["escrows_by_status"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_escrows=total_escrows,
        escrows_by_status=escrows_by_status,
    )
