"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from gig_escrow_service.clients.payment_network_client import PaymentNetworkClient
from gig_escrow_service.clients.wallet_bridge import CallbackWalletBridge
from gig_escrow_service.clients.wallet_signer import WalletSigner
from gig_escrow_service.config import get_settings
from gig_escrow_service.core.state import init_app_state
from gig_escrow_service.logging import get_logger, setup_logging
from gig_escrow_service.services.escrow_ledger import EscrowLedger
from gig_escrow_service.services.escrow_store import EscrowStore
from gig_escrow_service.services.handshake_controller import HandshakeController
from gig_escrow_service.services.payout_dispatcher import PayoutDispatcher
from gig_escrow_service.services.reconciler import IncompletePaymentReconciler
from gig_escrow_service.services.session_manager import SessionManager

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    network = settings.payment_network

    # An unusable wallet seed is a fatal startup error
    wallet_signer = WalletSigner(network.wallet_private_seed)
    state.wallet_signer = wallet_signer

    network_client = PaymentNetworkClient(
        base_url=network.base_url,
        api_key=network.api_key,
        timeout_seconds=network.timeout_seconds,
        max_retries=network.max_retries,
        retry_backoff_seconds=network.retry_backoff_seconds,
        wallet_signer=wallet_signer,
    )
    state.network_client = network_client

    store = EscrowStore(db_path=settings.database.path)
    state.store = store

    wallet_bridge = CallbackWalletBridge()
    state.wallet_bridge = wallet_bridge

    payout_dispatcher = PayoutDispatcher(
        network_client=network_client,
        store=store,
        memo=settings.payout.memo,
    )
    state.payout_dispatcher = payout_dispatcher

    escrow_ledger = EscrowLedger(store=store, payout_dispatcher=payout_dispatcher)
    state.escrow_ledger = escrow_ledger

    handshake_controller = HandshakeController(
        network_client=network_client,
        wallet=wallet_bridge,
        store=store,
        timeout_seconds=settings.handshake.timeout_seconds,
        lock_grace_seconds=settings.handshake.lock_grace_seconds,
    )
    state.handshake_controller = handshake_controller

    reconciler = IncompletePaymentReconciler(
        network_client=network_client,
        store=store,
        ledger=escrow_ledger,
    )
    state.reconciler = reconciler

    state.session_manager = SessionManager(
        network_client=network_client,
        store=store,
        reconciler=reconciler,
        sandbox=network.sandbox,
    )

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "payment_network_base_url": network.base_url,
            "sandbox": network.sandbox,
            "wallet_address": wallet_signer.address,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})

    await handshake_controller.close()
    await network_client.close()
    store.close()
