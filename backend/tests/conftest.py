"""
Test configuration and fixtures for Billing Sync.

Provides shared fixtures for unit and integration tests. Billing services
are wired with in-memory stores and a fake provider; the application
dependencies are overridden to use them.
"""

from typing import AsyncGenerator
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from app.config.settings import Settings
from app.domain.plan_catalog import StaticPlanCatalog
from app.infrastructure.payments.event_verifier import EventVerifier
from app.infrastructure.services.billing_services import build_billing_services, build_catalog

from fakes import (
    ADMIN_KEY,
    JWT_SECRET,
    WEBHOOK_SECRET,
    FakeProvider,
    FakeSubscriptionRepository,
    FakeUsageLedgerRepository,
    FakeUserStore,
    FakeWebhookEventLog,
    make_token,
)


# =============================================================================
# Settings & Catalog
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="testing",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_premium_monthly="price_premium_monthly",
        stripe_price_id_pro_monthly="price_pro_monthly",
        stripe_price_id_enterprise_yearly="price_enterprise_yearly",
        admin_api_key=ADMIN_KEY,
        jwt_secret=JWT_SECRET,
        retry_base_delay=0.01,
        retry_max_delay=0.02,
        projection_retry_attempts=3,
    )


@pytest.fixture
def catalog(test_settings) -> StaticPlanCatalog:
    return build_catalog(test_settings)


# =============================================================================
# Fakes & Services
# =============================================================================

@pytest.fixture
def subscriptions() -> FakeSubscriptionRepository:
    return FakeSubscriptionRepository()


@pytest.fixture
def users(subscriptions) -> FakeUserStore:
    store = FakeUserStore(subscriptions)
    store.add("user_1", customer_id="cus_1")
    store.add("user_2")
    return store


@pytest.fixture
def ledgers() -> FakeUsageLedgerRepository:
    return FakeUsageLedgerRepository()


@pytest.fixture
def event_log() -> FakeWebhookEventLog:
    return FakeWebhookEventLog()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def billing(test_settings, catalog, provider, subscriptions, ledgers, users, event_log):
    """Billing services over the in-memory stores."""
    return build_billing_services(
        test_settings,
        catalog=catalog,
        provider=provider,
        subscriptions=subscriptions,
        ledgers=ledgers,
        users=users,
        event_log=event_log,
        verifier=EventVerifier(WEBHOOK_SECRET),
    )


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(billing, test_settings):
    """Get the FastAPI application wired to the in-memory billing services."""
    from app.main import app
    from app.api.dependencies import get_billing_services

    app.dependency_overrides[get_billing_services] = lambda: billing
    with patch("app.api.dependencies.get_settings", return_value=test_settings):
        yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Get async test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


@pytest.fixture
def auth_headers():
    def _headers(user_id: str = "user_1") -> dict:
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Key": ADMIN_KEY}
