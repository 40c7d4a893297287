"""Root conftest - test infrastructure for all tests.

Provides:
- API client with dependency overrides (no database, no JWT)
- Autouse mock for external services (Postmark, Stripe)

Tests outside tests/integration run without a database: sessions are
AsyncMocks and the domain operations are patched per test.
"""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from tests.helpers.mock_factories import make_mock_session, make_mock_user


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers", "integration: real PostgreSQL tests (opt in with RECONCILER_DB_TESTS=1)"
    )


# ─────────────────────────────────────────────────────────────────────────────
# Identity Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def test_user():
    return make_mock_user(email="owner@example.com")


@pytest.fixture
def test_workspace_id():
    return uuid.uuid4()


@pytest.fixture
def workspace_role():
    """Role of test_user in the test workspace. Override per test module."""
    return "owner"


@pytest.fixture
def db_session():
    return make_mock_session()


# ─────────────────────────────────────────────────────────────────────────────
# API Client
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
async def api_client(db_session, test_user, test_workspace_id, workspace_role):
    """HTTP client that bypasses JWT auth and uses a mocked DB session.

    Overrides: get_current_user, get_db, get_workspace_context
    """
    from reconciler.api.deps.auth import get_current_user
    from reconciler.api.deps.workspace import WorkspaceContext, get_workspace_context
    from reconciler.core.database import get_db
    from reconciler.core.rate_limit import rate_limiter
    from reconciler.main import app

    app.dependency_overrides[get_current_user] = lambda: test_user

    async def override_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_db

    app.dependency_overrides[get_workspace_context] = lambda: WorkspaceContext(
        user_id=test_user.id,
        user_email=test_user.email,
        workspace_id=test_workspace_id,
        user_role=workspace_role,
    )

    rate_limiter._requests.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ─────────────────────────────────────────────────────────────────────────────
# External Service Mocks (autouse)
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def mock_external_services():
    """SAFETY: Always mock external services.

    Prevents accidental email sends or Stripe API calls.
    """
    with (
        patch("reconciler.services.email.postmark.postmark_service", new_callable=MagicMock) as mock_pm,
        patch("reconciler.services.stripe_service.stripe_service", new_callable=MagicMock) as mock_stripe,
    ):
        mock_pm.send = AsyncMock(return_value=True)
        mock_stripe.get_subscription = MagicMock(return_value=None)
        mock_stripe.get_checkout_session = MagicMock(return_value=None)
        mock_stripe.get_product = MagicMock(return_value=None)

        yield {"postmark": mock_pm, "stripe": mock_stripe}
