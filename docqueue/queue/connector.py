"""
Connector: feeds claimed items to free channels and reclaims stale leases.

Claim order across items is whatever the store returns first; no FIFO or
priority ordering is promised.
"""

import asyncio
import logging
from datetime import timedelta

from pydantic import ValidationError

from docqueue.config import Settings, get_settings
from docqueue.constants import NONE, SPAN_CLAIM_ITEM, SPAN_RECLAIM_STALE, ReclaimReason
from docqueue.db.collection import Collection
from docqueue.errors import StoreError
from docqueue.observability.logging import bind_context
from docqueue.observability.metrics import get_metrics
from docqueue.observability.tracing import queue_span
from docqueue.queue.channel import Channel
from docqueue.types.item import QueueItem, utcnow

logger = logging.getLogger(__name__)


class Connector:
    """
    Assigns pending items to a fixed channel pool, round-robin.

    Each cycle reserves the next free channel, claims one item for it with
    an atomic conditional update, and hands the item over. Every
    ``connector_reclaim_every_cycles`` cycles two corrective passes reset
    leases abandoned by crashed or superseded workers:

    - owner set, different consumer version, idle past the version drift window
    - owner set, any version, idle past the stale lease window
    """

    def __init__(
        self,
        name: str,
        channels: list[Channel],
        pending: Collection,
        version: str,
        settings: Settings | None = None,
    ):
        """
        Initialize the connector.

        Args:
            name: Connector name, "<node>/connector".
            channels: The channel pool, non-empty.
            pending: Collection of live items.
            version: Consumer version stamped on every claim.
            settings: Timing configuration.
        """
        if not channels:
            raise ValueError("Connector needs at least one channel")

        self.name = name
        self.channels = channels
        self.version = version
        self._pending = pending
        self._settings = settings or get_settings()

        self._cursor = 0
        self._cycles = 0
        self._metrics = get_metrics()

    @property
    def cursor(self) -> int:
        return self._cursor

    def owner_for(self, channel: Channel) -> str:
        return f"{self.name}/{channel.name}"

    async def pick_free_channel(self) -> int | None:
        """
        Reserve the first free channel at or after the cursor.

        Scans at most one full turn of the pool and advances the cursor past
        the picked index.

        Returns:
            Index of the reserved channel, or None if all are busy.
        """
        size = len(self.channels)
        index = self._cursor
        for _ in range(size):
            if await self.channels[index].try_reserve():
                self._cursor = (index + 1) % size
                return index
            index = (index + 1) % size
        return None

    async def claim_for(self, channel: Channel) -> QueueItem | None:
        """
        Claim one claimable item on behalf of a channel.

        Store errors count as an empty queue. A claimed document that does
        not parse as a QueueItem is skipped and keeps its lease, so it is
        not claimed again before the stale lease window passes.
        """
        owner = self.owner_for(channel)

        with queue_span(SPAN_CLAIM_ITEM, self._pending.name, owner=owner) as span:
            try:
                document = await self._pending.claim_one(
                    self._pending.c.owner == NONE,
                    {"owner": owner, "consumer_version": self.version},
                )
            except StoreError as e:
                logger.warning(
                    "Claim failed, treating queue as empty",
                    extra={"owner": owner, "error": str(e)},
                )
                return None

            if document is None:
                return None

            try:
                item = QueueItem.from_document(document)
            except ValidationError:
                # Stays leased to this connector until stale reclamation
                logger.exception(
                    "Claimed document is not a valid queue item",
                    extra={"item_id": document.get("id"), "owner": owner},
                )
                return None

            span.set_attribute("item_id", str(item.id))

        self._metrics.record_item_claimed(self._pending.name)
        logger.debug("Claimed item", extra={"item_id": item.id, "owner": owner})
        return item

    async def run_once(self) -> bool:
        """
        Run one assignment cycle.

        Waits for a free channel, claims an item for it, and runs the
        corrective passes when the cycle counter comes due.

        Returns:
            True if an item was handed to a channel, False if the queue was empty.
        """
        index = await self.pick_free_channel()
        while index is None:
            await asyncio.sleep(self._settings.connector_scan_retry_seconds)
            index = await self.pick_free_channel()

        channel = self.channels[index]
        assigned = False
        try:
            item = await self.claim_for(channel)
            if item is not None:
                await channel.assign(item)
                assigned = True
        finally:
            if not assigned:
                await channel.release()

        self._cycles += 1
        if self._cycles >= self._settings.connector_reclaim_every_cycles:
            self._cycles = 0
            try:
                await self.reclaim_stale()
            except StoreError:
                logger.exception("Stale lease reclamation failed")

        return assigned

    async def run(self) -> None:
        """Assign items to channels, forever."""
        bind_context(connector=self.name)
        logger.info(
            "Connector started",
            extra={"channels": len(self.channels), "version": self.version},
        )

        while True:
            try:
                assigned = await self.run_once()
            except Exception as e:
                logger.exception(f"Error in connector loop: {e}")
                assigned = False

            if not assigned:
                await asyncio.sleep(self._settings.connector_empty_wait_seconds)

    async def reclaim_stale(self) -> dict[ReclaimReason, int]:
        """
        Reset abandoned leases back to claimable.

        Returns:
            Number of items reset by each pass.
        """
        now = utcnow()
        c = self._pending.c
        released = {"owner": NONE, "consumer_version": NONE}

        with queue_span(SPAN_RECLAIM_STALE, self._pending.name, version=self.version):
            drift_cutoff = now - timedelta(minutes=self._settings.connector_version_drift_minutes)
            drifted = await self._pending.update_many(
                (c.owner != NONE)
                & c.consumer_version.is_distinct_from(self.version)
                & (c.last_updated_time < drift_cutoff),
                released,
            )

            stale_cutoff = now - timedelta(minutes=self._settings.connector_stale_lease_minutes)
            stale = await self._pending.update_many(
                (c.owner != NONE) & (c.last_updated_time < stale_cutoff),
                released,
            )

        counts = {
            ReclaimReason.VERSION_DRIFT: drifted,
            ReclaimReason.STALE_LEASE: stale,
        }
        for reason, count in counts.items():
            if count > 0:
                self._metrics.record_leases_reclaimed(self._pending.name, reason, count)
                logger.info(
                    f"Reclaimed {count} stale leases",
                    extra={"reason": reason.value, "version": self.version},
                )
        return counts
