"""
Unit tests for the expiry reaper.
"""

from datetime import timedelta

from docqueue.db import Collection
from docqueue.queue.expiry import ExpiryReaper
from docqueue.types.item import utcnow


class TestExpiryReaper:
    """Tests for ExpiryReaper."""

    async def test_purges_expired_history(self, pending: Collection, history: Collection):
        """Test that only TTL-indexed collections lose old documents."""
        old = utcnow() - timedelta(hours=2)
        await history.insert({"payload": "old", "last_updated_time": old})
        await history.insert({"payload": "new"})
        await pending.insert({"payload": "old pending", "last_updated_time": old})

        reaper = ExpiryReaper([pending, history], interval_seconds=0.1)

        assert await reaper.run_once() == 1
        assert await history.count() == 1
        assert await pending.count() == 1

    async def test_nothing_to_purge(self, history: Collection):
        """Test a run over fresh documents."""
        await history.insert({"payload": "new"})

        assert await ExpiryReaper([history], interval_seconds=0.1).run_once() == 0
