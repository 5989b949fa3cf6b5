"""Async engine and session factory for the CRM store.

One engine per process, created lazily from DatabaseSettings. The session
factory it backs is shared by the TransactionCoordinator, the entity
loader and the change-log store, so the change_logs and leads tables are
always written through the same connection pool.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from config.database import DatabaseSettings, get_database_settings

logger = logging.getLogger(__name__)


_async_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _pool_options(settings: DatabaseSettings) -> Dict[str, Any]:
    if settings.is_sqlite:
        # aiosqlite opens one file handle per connection
        return {"poolclass": NullPool}
    return {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_timeout": settings.pool_timeout,
        "pool_recycle": settings.pool_recycle,
        "pool_pre_ping": settings.pool_pre_ping,
    }


def create_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """
    Build an async engine for the configured backend.

    Args:
        settings: Database settings. If None, loads from environment.
    """
    settings = settings or get_database_settings()

    engine = create_async_engine(
        settings.async_url,
        echo=settings.echo_sql,
        connect_args=settings.get_connect_args(),
        **_pool_options(settings),
    )
    if settings.is_sqlite:
        _enable_sqlite_pragmas(engine, settings)

    logger.info(f"Database engine created ({settings.describe()})")
    return engine


def _enable_sqlite_pragmas(engine: AsyncEngine, settings: DatabaseSettings) -> None:
    """WAL lets history reads run beside an open tracked transaction."""

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={settings.query_timeout * 1000}")
        cursor.close()


def get_session_factory(engine: Optional[AsyncEngine] = None) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for tracked units of work.

    Objects stay readable after commit, and nothing is flushed implicitly:
    repositories flush explicitly between the pre- and post-mutation hooks.
    """
    return async_sessionmaker(
        bind=engine or get_async_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_async_engine(settings: Optional[DatabaseSettings] = None) -> AsyncEngine:
    """Get or create the process-wide engine."""
    global _async_engine

    if _async_engine is None:
        _async_engine = create_engine(settings)
    return _async_engine


def get_async_session_factory(
    settings: Optional[DatabaseSettings] = None,
) -> async_sessionmaker[AsyncSession]:
    """Get or create the process-wide session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = get_session_factory(get_async_engine(settings))
    return _async_session_factory


async def check_database_connection(engine: Optional[AsyncEngine] = None) -> bool:
    """Return True if a trivial query succeeds."""
    try:
        async with (engine or get_async_engine()).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False


async def init_database(
    settings: Optional[DatabaseSettings] = None,
    engine: Optional[AsyncEngine] = None,
) -> None:
    """Create the leads and change_logs tables if they do not exist."""
    from database.models import Base

    engine = engine or get_async_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Dispose of the process-wide engine. Call during shutdown."""
    global _async_engine

    if _async_engine is not None:
        await _async_engine.dispose()
        logger.info("Database engine closed")
    reset_database_state()


def reset_database_state() -> None:
    """Forget the process-wide engine and session factory without disposing them."""
    global _async_engine, _async_session_factory

    _async_engine = None
    _async_session_factory = None
