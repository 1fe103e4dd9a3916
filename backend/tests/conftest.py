"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite + StaticPool) so
no PostgreSQL instance is needed. Vendor APIs are never called: adapters get
mocked Stripe clients or httpx ``MockTransport``s.
"""

import os

# Must be set before paybridge.config is imported
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("PAYMENT_PROVIDER", "stripe")

import uuid
from collections.abc import AsyncGenerator
from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from paybridge.auth.jwt import create_token_pair
from paybridge.billing.plans import PlanCatalog, build_plan_catalog
from paybridge.config import Settings
from paybridge.database import Base, get_db
from paybridge.main import app
from paybridge.models.user import User

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Vendor ids used throughout the billing tests
STRIPE_PRICES = {
    "stripe_price_starter_monthly": "price_starter_monthly",
    "stripe_price_starter_yearly": "price_starter_yearly",
    "stripe_price_pro_monthly": "price_pro_monthly",
    "stripe_price_pro_yearly": "price_pro_yearly",
    "stripe_price_enterprise_monthly": "price_enterprise_monthly",
    "stripe_price_enterprise_yearly": "price_enterprise_yearly",
}
POLAR_PRODUCTS = {
    "polar_product_starter_monthly": "polar-prod-starter",
    "polar_product_pro_monthly": "polar-prod-pro",
    "polar_product_enterprise_monthly": "polar-prod-enterprise",
}
LEMONSQUEEZY_VARIANTS = {
    "lemonsqueezy_variant_starter_monthly": "101",
    "lemonsqueezy_variant_pro_monthly": "102",
    "lemonsqueezy_variant_enterprise_monthly": "103",
}


# ---------------------------------------------------------------------------
# Settings and plan catalog with every provider configured
# ---------------------------------------------------------------------------


@pytest.fixture
def billing_settings() -> Settings:
    """Settings with credentials and price ids for all three providers."""
    return Settings(
        jwt_secret_key="test-secret-key-for-pytest-only",
        frontend_url="https://app.example.com",
        payment_provider="stripe",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret="whsec_test_secret",
        polar_access_token="polar_oat_test",
        polar_webhook_secret="polar_whs_test_secret",
        polar_environment="sandbox",
        lemonsqueezy_api_key="ls_test_key",
        lemonsqueezy_store_id="4242",
        lemonsqueezy_webhook_secret="ls_signing_secret",
        **STRIPE_PRICES,
        **POLAR_PRODUCTS,
        **LEMONSQUEEZY_VARIANTS,
    )


@pytest.fixture
def plan_catalog(billing_settings: Settings) -> PlanCatalog:
    return build_plan_catalog(billing_settings)


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database.

    Request handlers share ``db_session``; the webhook route opens its own
    sessions from ``session_factory``.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    with patch("paybridge.api.v1.webhooks.async_session_factory", session_factory):
        async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
            yield ac

    app.dependency_overrides.clear()
    if hasattr(app.state, "payment_adapter"):
        del app.state.payment_adapter


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and commit a test user."""
    unique = uuid.uuid4().hex[:8]
    user = User(email=f"testuser-{unique}@test.com", name="Test User", is_active=True)
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    tokens = create_token_pair(str(test_user.id))
    return {"Authorization": f"Bearer {tokens['access_token']}"}
