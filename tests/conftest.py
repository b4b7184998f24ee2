"""
Pytest configuration and shared fixtures.

Tests run against TEST_DATABASE_URL when it is set (PostgreSQL via asyncpg),
otherwise against a fresh SQLite file per test via aiosqlite.
"""

import os
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from uuid import UUID

import pytest
import pytest_asyncio
import sqlalchemy as sa
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from jobstream.clock import utcnow
from jobstream.config import Settings
from jobstream.db.connection import create_engine, create_schema, create_session_factory
from jobstream.db.models import Job
from jobstream.dispatcher import Dispatcher
from jobstream.observability.metrics import MetricsCollector
from jobstream.types.queue import QueueConfig

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """Get the test database URL."""
    if TEST_DATABASE_URL:
        return TEST_DATABASE_URL
    return f"sqlite+aiosqlite:///{tmp_path / 'jobstream.db'}"


@pytest_asyncio.fixture
async def async_engine(database_url: str) -> AsyncGenerator[AsyncEngine]:
    """Create an async database engine with the schema in place."""
    engine = create_engine(database_url)
    await create_schema(engine)

    if not database_url.startswith("sqlite"):
        # Clean up test data before each test to ensure clean state
        async with engine.begin() as conn:
            await conn.execute(sa.text("TRUNCATE TABLE jobs, queues"))

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def test_settings(database_url: str) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=database_url,
        default_queues=[],
        log_level="DEBUG",
        log_format="console",
        worker_poll_interval_seconds=0.01,
        queue_default_concurrency=2,
        queue_default_attempts=3,
        queue_default_backoff_type="exponential",
        queue_default_backoff_delay_seconds=5.0,
        queue_default_backoff_multiplier=2.0,
        reaper_interval_seconds=0.05,
    )


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest_asyncio.fixture
async def dispatcher(
    session_factory: async_sessionmaker[AsyncSession],
    metrics: MetricsCollector,
    test_settings: Settings,
) -> AsyncGenerator[Dispatcher]:
    dispatcher = Dispatcher(session_factory, metrics=metrics, settings=test_settings)
    yield dispatcher
    await dispatcher.close()


@pytest_asyncio.fixture
async def queue(dispatcher: Dispatcher) -> QueueConfig:
    """An active queue named q1 with default options."""
    return await dispatcher.create_queue("q1")


@pytest.fixture
def make_due(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[UUID], Awaitable[None]]:
    """Move a DELAYED job's next_retry_at into the past."""

    async def _make_due(job_id: UUID) -> None:
        async with session_factory() as session:
            await session.execute(
                sa.update(Job)
                .where(Job.id == job_id)
                .values(next_retry_at=utcnow() - timedelta(seconds=1))
            )
            await session.commit()

    return _make_due
