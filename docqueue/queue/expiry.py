"""
Expiry reaper for the history collection.

The SQL store has no TTL monitor of its own, so TTL indexes registered
with Collection.create_index() are enforced here: the reaper runs
periodically and deletes documents past their expiry.
"""

import asyncio
import logging

from docqueue.db.collection import Collection
from docqueue.errors import StoreError
from docqueue.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class ExpiryReaper:
    """
    Periodically purges expired documents from TTL-indexed collections.
    """

    def __init__(self, collections: list[Collection], interval_seconds: float):
        """
        Initialize the reaper.

        Args:
            collections: Collections to purge; those without a TTL are skipped.
            interval_seconds: Seconds between purge runs.
        """
        self.collections = collections
        self.interval = interval_seconds
        self._metrics = get_metrics()

    async def run(self) -> None:
        """Run the purge loop, forever."""
        logger.info(f"Expiry reaper starting with interval {self.interval}s")

        while True:
            try:
                await self.run_once()
            except Exception as e:
                logger.exception(f"Error in expiry reaper loop: {e}")

            await asyncio.sleep(self.interval)

    async def run_once(self) -> int:
        """
        Purge every collection once.

        Returns:
            Number of documents removed.
        """
        total = 0
        for collection in self.collections:
            if collection.ttl_seconds is None:
                continue
            try:
                removed = await collection.purge_expired()
            except StoreError:
                logger.exception(
                    "Failed to purge expired documents",
                    extra={"collection": collection.name},
                )
                continue

            if removed > 0:
                self._metrics.record_history_expired(collection.name, removed)
                logger.info(
                    f"Expired {removed} documents",
                    extra={"collection": collection.name},
                )
            total += removed
        return total
