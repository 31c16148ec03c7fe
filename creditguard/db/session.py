"""
Database Session Management - Async SQLAlchemy session factory.

PostgreSQL serializes balance mutations with SELECT ... FOR UPDATE on the
account row. SQLite ignores FOR UPDATE, so SQLite engines open every
transaction with BEGIN IMMEDIATE, which takes the database write lock up front.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from creditguard.config import settings
from creditguard.observability.tracing import instrument_sqlalchemy

# Global engine instance
_write_engine: AsyncEngine | None = None

# Session factory
_write_session_factory: async_sessionmaker[AsyncSession] | None = None


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make pysqlite/aiosqlite emit BEGIN IMMEDIATE for every transaction."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with the locking discipline the ledger needs."""
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            poolclass=NullPool,
            connect_args={"timeout": settings.sqlite_busy_timeout_seconds},
            echo=echo,
        )
        _use_immediate_transactions(engine)
        return engine

    return create_async_engine(
        database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        echo=echo,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to an engine; objects stay usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def get_write_engine() -> AsyncEngine:
    """Get or create the database engine."""
    global _write_engine
    if _write_engine is None:
        _write_engine = build_engine(
            settings.database_url,
            echo=settings.log_level == "DEBUG",
        )
        instrument_sqlalchemy(_write_engine)
    return _write_engine


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the session factory."""
    global _write_session_factory
    if _write_session_factory is None:
        _write_session_factory = build_session_factory(get_write_engine())
    return _write_session_factory


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Get an async database session outside of a request.

    Usage:
        async with get_write_session() as session:
            manager = FinalizationManager(session)
            ...
    """
    factory = get_write_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for a database session.

    Usage:
        @router.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    factory = get_write_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def close_engines() -> None:
    """Close the database engine (for graceful shutdown)."""
    global _write_engine, _write_session_factory

    if _write_engine:
        await _write_engine.dispose()
        _write_engine = None
        _write_session_factory = None
