"""Shared test configuration and fixtures.

Every test gets a fresh in-memory SQLite database with all tables created:
- One shared connection (StaticPool), so data must be committed before a
  second session (e.g. the webhook applier's) can rely on it.
- Billing settings are pinned through environment variables before any
  ``realstaging`` module reads them.
"""

import os

os.environ["JWT_SECRET_KEY"] = "test-secret-key-not-for-production"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["STRIPE_FREE_PRICE_ID"] = "price_free"
os.environ["STRIPE_PRO_PRICE_ID"] = "price_pro"
os.environ["STRIPE_BUSINESS_PRICE_ID"] = "price_business"
os.environ["PLAN_SYNC_ON_STARTUP"] = "false"
os.environ["PLAN_SYNC_INTERVAL_SECONDS"] = "0"

import uuid  # noqa: E402
from collections.abc import AsyncGenerator  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from realstaging.api.deps import get_plan_catalog, get_stripe_gateway  # noqa: E402
from realstaging.auth.jwt import create_access_token  # noqa: E402
from realstaging.billing.plans import PlanCatalog  # noqa: E402
from realstaging.billing.stripe_client import StripeCredentials, StripeGateway  # noqa: E402
from realstaging.config import settings  # noqa: E402
from realstaging.database import Base, get_db, get_session_factory  # noqa: E402
from realstaging.main import app  # noqa: E402
from realstaging.models.user import User  # noqa: E402

# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine():
    """Fresh in-memory SQLite database with the full schema."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
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


@pytest.fixture
def catalog() -> PlanCatalog:
    """free=100, pro=100, business=500 with price_free / price_pro / price_business."""
    return PlanCatalog.from_settings(settings)


@pytest.fixture
def stripe_gateway() -> MagicMock:
    """Stripe gateway stand-in; tests set ``construct_event`` behaviour."""
    gateway = MagicMock(spec=StripeGateway)
    gateway.credentials = StripeCredentials(secret_key="", webhook_secret="whsec_test")
    return gateway


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    catalog: PlanCatalog,
    stripe_gateway: MagicMock,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test database and collaborators."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_plan_catalog] = lambda: catalog
    app.dependency_overrides[get_stripe_gateway] = lambda: stripe_gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: authenticated users
# ---------------------------------------------------------------------------


async def _create_user(db_session: AsyncSession, role: str = "user", **kwargs) -> User:
    unique = uuid.uuid4().hex[:8]
    user = User(email=f"{role}-{unique}@test.com", is_active=True, role=role, **kwargs)
    db_session.add(user)
    await db_session.commit()
    return user


def _auth_headers(user: User) -> dict[str, str]:
    token = create_access_token({"sub": str(user.id)})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and commit a regular user."""
    return await _create_user(db_session)


@pytest_asyncio.fixture
async def auth_headers(test_user: User) -> dict[str, str]:
    return _auth_headers(test_user)


@pytest_asyncio.fixture
async def admin_user(db_session: AsyncSession) -> User:
    """Create and commit an admin user."""
    return await _create_user(db_session, role="admin")


@pytest_asyncio.fixture
async def admin_headers(admin_user: User) -> dict[str, str]:
    return _auth_headers(admin_user)
