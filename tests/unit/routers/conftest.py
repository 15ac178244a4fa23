"""Router test fixtures with a mocked payment network."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any
from unittest.mock import AsyncMock

import pytest
from httpx import ASGITransport, AsyncClient

from gig_escrow_service.app import create_app
from gig_escrow_service.config import clear_settings_cache
from gig_escrow_service.core.lifespan import lifespan
from gig_escrow_service.core.state import get_app_state, reset_app_state
from gig_escrow_service.services.payments import parse_payment
from tests.helpers import ALLOWED_ORIGIN, make_wallet_seed, network_payment

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


@pytest.fixture
async def app(tmp_path: Path) -> AsyncIterator[Any]:
    """Create a test app with temp database and a mocked payment network."""
    db_path = tmp_path / "test.db"
    config_content = f"""\
service:
  name: "gig-escrow"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{db_path}"
payment_network:
  base_url: "http://localhost:9000/v2"
  api_key: "test-api-key"
  wallet_private_seed: "{make_wallet_seed()}"
  sandbox: true
  timeout_seconds: 5
  max_retries: 0
  retry_backoff_seconds: 0
datastore:
  url: "http://localhost:9100"
  key: "test-datastore-key"
handshake:
  timeout_seconds: 30
  lock_grace_seconds: 30
payout:
  memo: "Task payment release"
cors:
  allowed_origin: "{ALLOWED_ORIGIN}"
request:
  max_body_size: 4096
"""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(config_content)

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        state = get_app_state()

        # Mock payment network, by default payment pay-1 for 5 by uid-payer
        mock_network = AsyncMock()
        mock_network.close = AsyncMock()
        mock_network.get_payment = AsyncMock(return_value=parse_payment(network_payment()))
        mock_network.approve_payment = AsyncMock(return_value=None)
        mock_network.get_me = AsyncMock(return_value={"uid": "uid-payer", "username": "alice"})
        mock_network.get_incomplete_server_payments = AsyncMock(return_value=[])
        state.network_client = mock_network

        # Propagate mock to extracted services
        for service in (
            state.handshake_controller,
            state.reconciler,
            state.payout_dispatcher,
            state.session_manager,
        ):
            if service is not None:
                service._network_client = mock_network

        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def network(app: Any) -> AsyncMock:
    """The mocked payment network client."""
    return get_app_state().network_client


@pytest.fixture
def store(app: Any) -> Any:
    """The app's EscrowStore."""
    return get_app_state().store
