"""
Database connection management.
Handles async SQLAlchemy engine and session creation.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from jobstream.config import get_settings
from jobstream.db.models import Base

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
AsyncSessionLocal: async_sessionmaker[AsyncSession] | None = None


def create_engine(database_url: str, **overrides: Any) -> AsyncEngine:
    """
    Create an async engine with dialect-appropriate pool settings.

    Args:
        database_url: SQLAlchemy database URL.
        **overrides: Extra keyword arguments for create_async_engine.

    Returns:
        AsyncEngine: A new engine instance.
    """
    settings = get_settings()
    options: dict[str, Any] = {
        "echo": settings.log_level == "DEBUG",
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        # Writers wait on the database lock instead of failing immediately
        options["connect_args"] = {"timeout": 30}
    else:
        options["pool_size"] = settings.database_pool_size
        options["max_overflow"] = settings.database_max_overflow
    options.update(overrides)
    return create_async_engine(database_url, **options)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create a session factory bound to an engine.

    Args:
        engine: The async engine.

    Returns:
        async_sessionmaker: Factory producing AsyncSession objects.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        _engine = create_engine(get_settings().database_url)
    return _engine


async def create_schema(engine: AsyncEngine | None = None) -> None:
    """
    Create all tables and indexes that do not exist yet.

    Args:
        engine: Engine to use. Defaults to the global engine.
    """
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ensured")


async def init_db() -> async_sessionmaker[AsyncSession]:
    """
    Initialize the database connection and session factory.
    Should be called on application startup.

    Returns:
        async_sessionmaker: The global session factory.
    """
    global AsyncSessionLocal
    engine = get_engine()
    await create_schema(engine)
    AsyncSessionLocal = create_session_factory(engine)
    logger.info("Database connection initialized")
    return AsyncSessionLocal


async def close_db() -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    global _engine, AsyncSessionLocal
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        AsyncSessionLocal = None
        logger.info("Database connection closed")


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """
    Context manager running one unit of work.
    Commits on success, rolls back and re-raises on error.

    Yields:
        AsyncSession: An async database session.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise

