"""
Engine and session management.

PostgreSQL (asyncpg) in production. SQLite URLs are accepted for local runs
and tests:
- an in-memory database is pinned to a single connection so every session
  sees the same data
- a file database opens every transaction with BEGIN IMMEDIATE; SQLite
  ignores SELECT ... FOR UPDATE, and taking the write lock up front gives
  concurrent sessions the same serialisation the row locks give on PostgreSQL
"""
from collections.abc import AsyncGenerator
from typing import Any, Dict

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from gavel.config import Settings, get_settings
from gavel.database.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


SQLITE_BUSY_TIMEOUT = 30


def is_memory_sqlite(database_url: str) -> bool:
    url = make_url(database_url)
    return url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:")


def _serialise_sqlite_writers(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_implicit_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        # Let SQLAlchemy emit BEGIN itself
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def engine_options(database_url: str, settings: Settings | None = None) -> Dict[str, Any]:
    """Pool options suited to the database behind the URL."""
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        if is_memory_sqlite(database_url):
            return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
        # Writers queue on the database lock instead of failing at once
        return {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}

    settings = settings or get_settings()
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }


def build_engine(database_url: str | None = None, settings: Settings | None = None) -> AsyncEngine:
    """
    Create an async engine.

    Args:
        database_url: Overrides settings.database_url
        settings: Optional settings override
    """
    settings = settings or get_settings()
    url = database_url or settings.database_url
    engine = create_async_engine(url, echo=settings.database_echo, **engine_options(url, settings))
    if make_url(url).get_backend_name() == "sqlite" and not is_memory_sqlite(url):
        _serialise_sqlite_writers(engine)
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Core operations read ORM rows after commit
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory bound to get_engine()."""
    global _session_factory
    if _session_factory is None:
        _session_factory = make_session_factory(get_engine())
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """
    Request-scoped session dependency.

    Core operations commit their own transactions; anything left open when
    the request ends is rolled back.

    Yields:
        AsyncSession: Database session
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.rollback()


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create missing tables, including the partial index on active checkout items."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the process-wide engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
