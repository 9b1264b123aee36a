"""
Test fixtures for the subscription backend tests.

Provides:
- In-memory SQLite database for isolated testing
- Async test client with session, session-factory and cache overrides
- Fixtures for a merchant, the active plan and auth headers
"""
# IMPORTANT: Set environment variables BEFORE any other imports
import os

TEST_ADMIN_SECRET = "test_admin_secret"
TEST_CRON_SECRET = "test_cron_secret"

os.environ.setdefault("ADMIN_SECRET", TEST_ADMIN_SECRET)
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
os.environ.setdefault("CRON_SECRET", TEST_CRON_SECRET)
# DB settings required by Settings validation (tests use SQLite in-memory, these are not actually used)
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("DB_NAME", "test")
# Development mode for tests (disables ALLOWED_ORIGINS requirement)
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
# StaticPool shares one connection: sweep merchants one at a time
os.environ.setdefault("CRON_SWEEP_CONCURRENCY", "1")
os.environ.setdefault("AUTO_SWITCH_CHECK_TIMEOUT_SECONDS", "10")

import pytest
from typing import AsyncGenerator

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from backend.app.core.base import Base
from backend.app.main import app
from backend.app.api.deps import get_session, get_cache, get_session_factory
from backend.app.core.auth import create_merchant_token
from backend.app.core.timeutils import utcnow
from backend.app.models.merchant import Merchant
from backend.app.models.subscription import SubscriptionPlan
import backend.app.models.balance  # noqa: F401 - register with Base.metadata
import backend.app.models.order  # noqa: F401
import backend.app.models.payment_request  # noqa: F401
import backend.app.models.notification  # noqa: F401
import backend.app.models.cron_lock  # noqa: F401
from backend.tests.factories import IDR_PRICING, create_merchant


# Test database URL - SQLite in-memory
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
    echo=False,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class MockCacheService:
    """Mock Redis cache for testing without actual Redis."""

    def __init__(self):
        self._cache = {}

    async def get(self, key: str):
        return self._cache.get(key)

    async def set(self, key: str, value, ttl: int = 300):
        self._cache[key] = value

    async def delete(self, key: str):
        self._cache.pop(key, None)

    async def get_plan(self, plan_key: str = "default"):
        return self._cache.get(f"subscription:plan:{plan_key}")

    async def set_plan(self, plan: dict, plan_key: str = "default"):
        self._cache[f"subscription:plan:{plan_key}"] = plan

    async def invalidate_plan(self, plan_key: str = "default"):
        self._cache.pop(f"subscription:plan:{plan_key}", None)


@pytest.fixture(scope="function")
async def test_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh database session for each test.
    Creates all tables before and drops after each test.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(test_session: AsyncSession) -> async_sessionmaker:
    """Factory for code that opens its own sessions (engine checks, cron)."""
    return TestSessionLocal


@pytest.fixture
async def mock_cache() -> MockCacheService:
    """Provide mock cache service for testing."""
    return MockCacheService()


@pytest.fixture
async def client(
    test_session: AsyncSession,
    mock_cache: MockCacheService,
) -> AsyncGenerator[AsyncClient, None]:
    """
    Async HTTP client for testing API endpoints.

    Each API request gets its own session so it never shares a
    transaction with the test_session used for fixtures.
    """
    async def override_get_session():
        async with TestSessionLocal() as session:
            yield session

    async def override_get_cache():
        yield mock_cache

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_cache] = override_get_cache
    app.dependency_overrides[get_session_factory] = lambda: TestSessionLocal

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# --- Test Data Fixtures ---

@pytest.fixture
async def test_merchant(test_session: AsyncSession) -> Merchant:
    """A Jakarta merchant billed in IDR."""
    return await create_merchant(test_session)


@pytest.fixture
async def test_plan(test_session: AsyncSession) -> SubscriptionPlan:
    """Active plan row: 30-day trial, 3 grace days for trial/monthly, deposit grace until midnight."""
    plan = SubscriptionPlan(
        plan_key="default",
        trial_days=30,
        trial_grace_days=3,
        monthly_grace_days=3,
        deposit_grace_days=0,
        payment_request_expiry_hours=24,
        pricing={"IDR": IDR_PRICING},
        updated_at=utcnow(),
    )
    test_session.add(plan)
    await test_session.commit()
    await test_session.refresh(plan)
    return plan


# --- Auth Helpers ---

@pytest.fixture
def owner_headers(test_merchant: Merchant) -> dict:
    return {"X-Merchant-Token": create_merchant_token(test_merchant.id, user_id=1)}


@pytest.fixture
def staff_headers(test_merchant: Merchant) -> dict:
    return {"X-Merchant-Token": create_merchant_token(test_merchant.id, user_id=2, role="staff")}


@pytest.fixture
def admin_headers() -> dict:
    return {"X-Admin-Token": TEST_ADMIN_SECRET}


@pytest.fixture
def cron_headers() -> dict:
    return {"Authorization": f"Bearer {TEST_CRON_SECRET}"}
