"""API-specific test fixtures.

Route tests run against the real application factory (exception handlers,
middleware and routers) with service objects on ``app.state`` replaced by
mocks. The lifespan is never entered, so no Redis, database or sandbox
provider is touched.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from vibeforge.core.auth import ClerkUser, require_auth


def override_auth(user: ClerkUser):
    """Create auth override for a specific user."""

    async def _override():
        return user

    return _override


@pytest.fixture
def user_a():
    return ClerkUser(user_id="user_a", claims={"sub": "user_a"})


@pytest.fixture
def generation_service():
    service = MagicMock()
    for name in ("submit_job", "run_job", "list_jobs", "get_stats", "get_job_status", "preview_job"):
        setattr(service, name, AsyncMock())
    return service


@pytest.fixture
def cancellation_service():
    service = MagicMock()
    service.cancel_job = AsyncMock()
    return service


@pytest.fixture
def credit_ledger():
    ledger = MagicMock()
    ledger.get_status = AsyncMock()
    ledger.get_usage_history = AsyncMock()
    ledger.set_tier = AsyncMock()
    return ledger


@pytest.fixture
def app(generation_service, cancellation_service, credit_ledger) -> FastAPI:
    from vibeforge.main import create_app

    app = create_app()
    app.state.generation_service = generation_service
    app.state.cancellation_service = cancellation_service
    app.state.credit_ledger = credit_ledger
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app, user_a) -> TestClient:
    """Authenticated as user_a."""
    app.dependency_overrides[require_auth] = override_auth(user_a)
    return TestClient(app)


@pytest.fixture
def anonymous_client(app) -> TestClient:
    return TestClient(app)
