"""
Pytest configuration and shared fixtures.
"""

import asyncio
import time
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqueue.config import Settings
from docqueue.db import Collection, build_queue_table, close_db, get_session_factory, init_db
from docqueue.queue.engine import QueueEngine


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every wait shrunk so tests run in milliseconds."""
    return Settings(
        node_name="test-node",
        consumer_version="v-test",
        log_level="DEBUG",
        log_format="console",
        channel_idle_poll_seconds=0.01,
        channel_backoff_unit_seconds=0.01,
        connector_scan_retry_seconds=0.005,
        connector_empty_wait_seconds=0.02,
        connector_warmup_seconds=0.0,
        queue_expiry_interval_seconds=0.1,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path: Path) -> AsyncGenerator[async_sessionmaker[AsyncSession]]:
    """
    Session factory on a temporary SQLite file.

    A file rather than :memory: so concurrent tasks get separate connections.
    """
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    yield get_session_factory()
    await close_db()


@pytest_asyncio.fixture
async def pending(session_factory: async_sessionmaker[AsyncSession]) -> Collection:
    """A bare pending collection with the queue indexes."""
    collection = Collection(build_queue_table(MetaData(), "items"), session_factory)
    await collection.ensure_created()
    await collection.create_index("owner")
    await collection.create_index("keys")
    return collection


@pytest_asyncio.fixture
async def history(session_factory: async_sessionmaker[AsyncSession]) -> Collection:
    """A bare history collection with a one hour TTL."""
    collection = Collection(build_queue_table(MetaData(), "items_consumed"), session_factory)
    await collection.ensure_created()
    await collection.create_index("last_updated_time", expire_after_seconds=3600)
    return collection


@pytest_asyncio.fixture
async def engine(
    session_factory: async_sessionmaker[AsyncSession],
    test_settings: Settings,
) -> AsyncGenerator[QueueEngine]:
    """An initialized engine; consumers are shut down after the test."""
    queue = await QueueEngine.create(
        "jobs",
        settings=test_settings,
        session_factory=session_factory,
    )
    yield queue
    await queue.shutdown()


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    """Poll an async predicate until it holds or the timeout expires."""

    async def _wait(
        predicate: Callable[[], Awaitable[bool]],
        timeout: float = 15.0,
        interval: float = 0.02,
    ) -> None:
        deadline = time.monotonic() + timeout
        while not await predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)

    return _wait
