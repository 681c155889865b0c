"""
Queue engine: producer API and consumer bootstrap over the shared store.

Any number of processes may run an engine against the same collections;
they coordinate only through the store's atomic claim.
"""

import asyncio
import logging
from collections.abc import Iterable
from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from docqueue.config import Settings, get_settings
from docqueue.constants import (
    HISTORY_SUFFIX,
    MAX_CHANNELS,
    MIN_CHANNELS,
    NONE,
    SPAN_PUSH_ITEM,
)
from docqueue.db.collection import Collection
from docqueue.db.connection import get_session_factory
from docqueue.db.models import build_queue_table
from docqueue.errors import InitializationError, QueueError
from docqueue.observability.metrics import get_metrics
from docqueue.observability.tracing import queue_span
from docqueue.queue.channel import Channel
from docqueue.queue.connector import Connector
from docqueue.queue.expiry import ExpiryReaper
from docqueue.types.item import Handler, QueueItem

logger = logging.getLogger(__name__)


def clamp_channel_count(count: int) -> int:
    """Bound a requested pool size to [MIN_CHANNELS, MAX_CHANNELS]."""
    return max(MIN_CHANNELS, min(MAX_CHANNELS, count))


class QueueEngine:
    """
    A named queue backed by two collections.

    - ``<name>``: pending items, claimable while owner is NONE
    - ``<name>_consumed``: processed items, expired after the history TTL

    Usage:
        engine = await QueueEngine.create("emails")
        await engine.push({"to": "a@example.com"})
        await engine.start_consumer(send_email, channel_count=5)

    Every operation raises InitializationError until init() has completed.
    """

    def __init__(self, name: str | None = None, settings: Settings | None = None):
        """
        Initialize the engine. Call init() before using it.

        Args:
            name: Base collection name, defaults to the configured queue name.
            settings: Configuration, defaults to the cached settings.
        """
        self._settings = settings or get_settings()
        self.name = name or self._settings.queue_name

        self._pending: Collection | None = None
        self._history: Collection | None = None
        self._reaper: ExpiryReaper | None = None
        self._channels: list[Channel] = []
        self._connector: Connector | None = None
        self._tasks: list[asyncio.Task] = []
        self._metrics = get_metrics()

    @classmethod
    async def create(
        cls,
        name: str | None = None,
        settings: Settings | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        history_ttl_seconds: int | None = None,
    ) -> "QueueEngine":
        """Build an engine and initialize it."""
        engine = cls(name, settings)
        await engine.init(session_factory, history_ttl_seconds)
        return engine

    @property
    def ready(self) -> bool:
        return self._pending is not None and self._history is not None

    @property
    def pending(self) -> Collection:
        self._require_ready()
        return self._pending

    @property
    def history(self) -> Collection:
        self._require_ready()
        return self._history

    @property
    def channels(self) -> list[Channel]:
        return list(self._channels)

    @property
    def connector(self) -> Connector | None:
        """The connector, once the warm-up delay has passed."""
        return self._connector

    def _require_ready(self) -> None:
        if not self.ready:
            raise InitializationError(
                f"Queue '{self.name}' must be initialized with init() before use"
            )

    async def init(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        history_ttl_seconds: int | None = None,
    ) -> None:
        """
        Bind the pending and history collections and create their indexes.

        Args:
            session_factory: Store to bind to, defaults to the one set up by init_db().
            history_ttl_seconds: History retention, defaults to the configured TTL.

        Raises:
            InitializationError: If no store is available.
            StoreError: If creating collections or indexes fails.
        """
        if self.ready:
            return

        if session_factory is None:
            try:
                session_factory = get_session_factory()
            except RuntimeError as e:
                raise InitializationError(str(e)) from e

        if history_ttl_seconds is None:
            history_ttl_seconds = self._settings.queue_history_ttl_seconds

        metadata = MetaData()
        pending = Collection(build_queue_table(metadata, self.name), session_factory)
        history = Collection(
            build_queue_table(metadata, f"{self.name}{HISTORY_SUFFIX}"),
            session_factory,
        )

        await pending.ensure_created()
        await pending.create_index("owner")
        await pending.create_index("keys")

        await history.ensure_created()
        await history.create_index("last_updated_time", expire_after_seconds=history_ttl_seconds)
        await history.create_index("keys")

        self._pending = pending
        self._history = history
        self._reaper = ExpiryReaper([history], self._settings.queue_expiry_interval_seconds)

        logger.info(
            "Queue initialized",
            extra={"queue": self.name, "history_ttl_seconds": history_ttl_seconds},
        )

    async def start_consumer(
        self,
        handler: Handler,
        channel_count: int | None = None,
    ) -> list[Channel]:
        """
        Start consuming with a pool of channels.

        The connector starts after the warm-up delay so every channel loop
        is running before the first claim.

        Args:
            handler: Called once per claimed item; raising marks the attempt failed.
            channel_count: Pool size, clamped to [1, 50].

        Returns:
            The started channels.
        """
        self._require_ready()
        if self._channels:
            raise QueueError(f"Consumer for queue '{self.name}' is already started")

        if channel_count is None:
            channel_count = self._settings.queue_channel_count
        count = clamp_channel_count(channel_count)

        node = self._settings.node_name
        self._channels = [
            Channel(f"{node}/{i + 1}", handler, self._pending, self._history, self._settings)
            for i in range(count)
        ]
        for channel in self._channels:
            self._tasks.append(channel.start())

        self._tasks.append(
            asyncio.create_task(self._start_connector(), name=f"{node}/connector")
        )
        self._tasks.append(
            asyncio.create_task(self._reaper.run(), name=f"{self.name}-expiry")
        )

        logger.info(
            "Consumer started",
            extra={"queue": self.name, "channels": count, "requested": channel_count},
        )
        return list(self._channels)

    async def _start_connector(self) -> None:
        await asyncio.sleep(self._settings.connector_warmup_seconds)

        self._connector = Connector(
            name=f"{self._settings.node_name}/connector",
            channels=self._channels,
            pending=self._pending,
            version=self._settings.consumer_version,
            settings=self._settings,
        )
        await self._connector.run()

    async def push(self, payload: Any) -> str:
        """
        Add an item to the queue.

        Returns:
            The new item id.

        Raises:
            InitializationError: If the engine is not initialized.
            StoreError: If the insert fails.
        """
        return await self.push_with_keys(payload, None)

    async def push_with_keys(self, payload: Any, keys: Iterable[str] | None) -> str:
        """
        Add an item tagged with lookup keys.

        Returns:
            The new item id.
        """
        self._require_ready()
        item = QueueItem(payload=payload, keys=list(keys) if keys is not None else None)

        with queue_span(SPAN_PUSH_ITEM, self.name, keys=len(item.keys or [])) as span:
            item_id = await self._pending.insert(item.to_document())
            span.set_attribute("item_id", item_id)

        self._metrics.record_item_pushed(self.name)
        logger.debug("Pushed item", extra={"queue": self.name, "item_id": item_id})
        return item_id

    async def get(self, item_id: str) -> QueueItem | None:
        """Get a pending item by id."""
        self._require_ready()
        document = await self._pending.get(item_id)
        return QueueItem.from_document(document) if document is not None else None

    async def find_by_key(self, key: str, history: bool = False) -> list[QueueItem]:
        """
        List items tagged with ``key``.

        Args:
            key: The lookup key.
            history: Search processed items instead of pending ones.
        """
        self._require_ready()
        collection = self._history if history else self._pending
        return [QueueItem.from_document(d) for d in await collection.find_by_key(key)]

    async def stats(self) -> dict[str, int]:
        """Count pending, claimed and processed items."""
        self._require_ready()
        return {
            "pending": await self._pending.count(),
            "claimed": await self._pending.count(self._pending.c.owner != NONE),
            "history": await self._history.count(),
        }

    async def shutdown(self) -> None:
        """
        Cancel the channels, connector and expiry reaper.

        In-flight items are not drained; their leases stay taken until stale
        lease reclamation makes them claimable again. The engine stays
        initialized and start_consumer() may be called again.
        """
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._channels = []
        self._connector = None
        logger.info("Consumer stopped", extra={"queue": self.name})
