"""
Channel: a worker slot that processes at most one queue item at a time.

The connector reserves a free channel, claims an item in the store and hands
it over with assign(). The channel then runs the handler and either archives
the item to the history collection or releases it back to the pending
collection with the failure appended to its log.
"""

import asyncio
import inspect
import logging
import time

from docqueue.config import Settings, get_settings
from docqueue.constants import NONE, SPAN_PROCESS_ITEM, ChannelState
from docqueue.db.collection import Collection
from docqueue.errors import QueueError, StoreError
from docqueue.observability.logging import bind_context, item_context
from docqueue.observability.metrics import get_metrics
from docqueue.observability.tracing import queue_span
from docqueue.types.item import Handler, QueueItem, utcnow

logger = logging.getLogger(__name__)


class Channel:
    """
    A single worker slot.

    ``item`` and ``processing`` are written both by the connector (reserve,
    assign, release) and by the channel itself (finish). Every transition
    holds the channel lock; the handler never runs under it.
    """

    def __init__(
        self,
        name: str,
        handler: Handler,
        pending: Collection,
        history: Collection,
        settings: Settings | None = None,
    ):
        """
        Initialize the channel.

        Args:
            name: Channel name, "<node>/<index>".
            handler: Called once per claimed item; raising marks a failure.
            pending: Collection of live items.
            history: Collection successful items are archived to.
            settings: Timing configuration.
        """
        self.name = name
        self._handler = handler
        self._pending = pending
        self._history = history
        self._settings = settings or get_settings()

        self._lock = asyncio.Lock()
        self._item: QueueItem | None = None
        self._processing = False
        self._state = ChannelState.IDLE
        self._task: asyncio.Task | None = None
        self._metrics = get_metrics()

    @property
    def item(self) -> QueueItem | None:
        return self._item

    @property
    def processing(self) -> bool:
        return self._processing

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def is_free(self) -> bool:
        """Unassigned and not reserved by the connector."""
        return self._item is None and not self._processing

    async def try_reserve(self) -> bool:
        """
        Reserve the channel for an upcoming claim.

        Returns:
            True if the channel was free and is now reserved.
        """
        if not self.is_free:
            return False
        async with self._lock:
            if not self.is_free:
                return False
            self._processing = True
            return True

    async def assign(self, item: QueueItem) -> None:
        """
        Hand a claimed item to a reserved channel.

        Raises:
            QueueError: If the channel was not reserved or already holds an item.
        """
        async with self._lock:
            if not self._processing or self._item is not None:
                raise QueueError(f"Channel {self.name} is not reserved for an item")
            self._item = item
            self._state = ChannelState.CLAIMED

    async def release(self) -> None:
        """Drop a reservation that did not lead to a claim."""
        async with self._lock:
            if self._item is None:
                self._processing = False

    async def _finish(self) -> None:
        async with self._lock:
            self._item = None
            self._processing = False
            self._state = ChannelState.IDLE

    def start(self) -> asyncio.Task:
        """Start the channel loop as its own task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=self.name)
        return self._task

    async def stop(self) -> None:
        """Cancel the channel loop. An in-flight item is not drained."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run(self) -> None:
        """Poll for an assigned item and process it, forever."""
        bind_context(channel=self.name)
        logger.debug("Channel started", extra={"channel": self.name})

        while True:
            item = self._item
            if item is None:
                await asyncio.sleep(self._settings.channel_idle_poll_seconds)
                continue

            try:
                with item_context(item.id):
                    await self.process(item)
            except Exception as e:
                logger.exception(
                    f"Unexpected error processing item: {e}",
                    extra={"channel": self.name, "item_id": item.id},
                )
            finally:
                await self._finish()

    async def process(self, item: QueueItem) -> bool:
        """
        Run the handler on one claimed item and record the outcome.

        An item that failed less than the backoff window ago waits
        ``len(log)`` backoff units first, which the log cap bounds.

        Returns:
            True if the handler succeeded.
        """
        self._state = ChannelState.PROCESSING

        if item.failed_recently(self._settings.channel_backoff_window_seconds):
            delay = len(item.log) * self._settings.channel_backoff_unit_seconds
            logger.info(
                "Backing off before retry",
                extra={"item_id": item.id, "delay_seconds": delay},
            )
            await asyncio.sleep(delay)

        start_time = time.monotonic()

        with queue_span(
            SPAN_PROCESS_ITEM,
            self._pending.name,
            item_id=item.id,
            channel=self.name,
            attempt_log_size=len(item.log),
        ) as span:
            try:
                await self._invoke(item)
            except Exception as e:
                duration = time.monotonic() - start_time
                span.record_exception(e)
                self._metrics.record_item_completed(self._pending.name, "failed", duration)
                await self._fail(item, e)
                return False

        duration = time.monotonic() - start_time
        self._metrics.record_item_completed(self._pending.name, "succeeded", duration)
        await self._complete(item, int(duration * 1000))
        return True

    async def _invoke(self, item: QueueItem) -> None:
        if inspect.iscoroutinefunction(self._handler):
            await self._handler(item)
            return

        # Plain functions run off the event loop
        result = await asyncio.to_thread(self._handler, item)
        if inspect.isawaitable(result):
            await result

    async def _complete(self, item: QueueItem, elapsed_ms: int) -> None:
        """
        Move a processed item from pending to history.

        Only the lease holder may archive: if stale reclamation handed the
        item to another channel meanwhile, the pending document is left to
        that channel and nothing is written to history.
        """
        item_id = item.id
        c = self._pending.c
        try:
            deleted = await self._pending.delete((c.id == item_id) & (c.owner == item.owner))
            if deleted == 0:
                logger.warning(
                    "Lease lost before archiving, leaving item to its new owner",
                    extra={"item_id": item_id, "channel": self.name},
                )
                return

            item.process_time_ms = elapsed_ms
            item.id = None
            history_id = await self._history.insert(item.to_document())
        except StoreError:
            logger.exception(
                "Failed to archive processed item",
                extra={"item_id": item_id, "channel": self.name},
            )
            return

        logger.info(
            "Item processed",
            extra={
                "item_id": item_id,
                "history_id": history_id,
                "process_time_ms": elapsed_ms,
            },
        )

    async def _fail(self, item: QueueItem, error: Exception) -> None:
        """Record a failed attempt and make the item claimable again."""
        now = utcnow()
        message = f"{self.name} {now.strftime('%Y-%m-%dT%H:%M:%SZ')} {str(error) or repr(error)}"
        held_by = item.owner
        item.record_failure(message, self._settings.channel_log_limit, now=now)
        item.owner = NONE

        logger.warning(
            "Item failed",
            extra={"item_id": item.id, "error": str(error), "failures_logged": len(item.log)},
        )

        c = self._pending.c
        try:
            released = await self._pending.update_many(
                (c.id == item.id) & (c.owner == held_by),
                {
                    "owner": NONE,
                    "log": item.log,
                    "last_failure_time": item.last_failure_time,
                },
            )
        except StoreError:
            # The lease stays taken until stale reclamation resets it
            logger.exception(
                "Failed to release failed item",
                extra={"item_id": item.id, "channel": self.name},
            )
            return

        if released == 0:
            logger.warning(
                "Lease lost before release, failure not recorded",
                extra={"item_id": item.id, "channel": self.name},
            )
