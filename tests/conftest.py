"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fixtures for testing:
- A file-backed SQLite ledger per test (real row locking via BEGIN IMMEDIATE)
- Session factories for concurrent callers
- Funded account helpers
- API test client with the database dependency overridden
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Set required environment variables BEFORE importing creditguard modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./creditguard-test.db")
os.environ.setdefault("API_KEY", "test-service-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "console")

from creditguard.config import settings
from creditguard.db.models import Base
from creditguard.db.session import build_engine, build_session_factory, get_write_db
from creditguard.models.domain import BalanceSnapshot
from creditguard.services.accounts import AccountService
from creditguard.services.balance_store import BalanceStore

# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh ledger schema in a temporary SQLite file."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory; open one session per concurrent caller."""
    return build_session_factory(engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Single session for sequential tests."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Account Fixtures
# ============================================================================

AccountFactory = Callable[..., Awaitable[str]]
BalanceReader = Callable[[str], Awaitable[BalanceSnapshot]]


@pytest.fixture
def account_factory(session_factory: async_sessionmaker[AsyncSession]) -> AccountFactory:
    """Factory for creating funded accounts."""

    async def _create_account(
        account_id: str = "org-1",
        available_minor: int = 100,
        billing_enabled: bool = True,
        cost_per_minute_minor: int = 15,
    ) -> str:
        async with session_factory() as session:
            service = AccountService(session)
            await service.get_or_create_account(
                account_id,
                billing_enabled=billing_enabled,
                cost_per_minute_minor=cost_per_minute_minor,
            )
            if available_minor:
                await service.add_credits(account_id, available_minor, "Initial funding")
        return account_id

    return _create_account


@pytest.fixture
def balance_reader(session_factory: async_sessionmaker[AsyncSession]) -> BalanceReader:
    """Read an account balance through a fresh session."""

    async def _read(account_id: str) -> BalanceSnapshot:
        async with session_factory() as session:
            snapshot = await BalanceStore(session).get_balance(account_id)
            await session.rollback()
            return snapshot

    return _read


@pytest.fixture
async def funded_account(account_factory: AccountFactory) -> str:
    """Billing-enabled account with 100 minor units available."""
    return await account_factory()


@pytest.fixture
async def unmetered_account(account_factory: AccountFactory) -> str:
    """Billing-disabled account with 100 minor units available."""
    return await account_factory(account_id="org-unmetered", billing_enabled=False)


# ============================================================================
# API Client
# ============================================================================


@pytest.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app, authenticated with the service key."""
    from creditguard.main import app

    async def override_get_write_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_write_db] = override_get_write_db
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"X-API-Key": settings.api_key or ""},
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
