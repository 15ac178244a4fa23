"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gig_escrow_service.config import get_settings
from gig_escrow_service.core.exceptions import register_exception_handlers
from gig_escrow_service.core.lifespan import lifespan
from gig_escrow_service.core.middleware import RequestValidationMiddleware
from gig_escrow_service.routers import (
    a2u_payments,
    escrow,
    handshakes,
    health,
    payments,
    sessions,
)


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    settings = get_settings()

    app = FastAPI(
        title=f"{settings.service.name} Service",
        version=settings.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(sessions.router, tags=["Sessions"])
    app.include_router(handshakes.router, tags=["Handshakes"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(a2u_payments.router, tags=["A2U Payments"])
    app.include_router(escrow.router, tags=["Escrow"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=settings.request.max_body_size,
    )
    # Outermost, so preflight requests bypass body validation
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors.allowed_origin],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )

    return app
