"""
Unit tests for the connector.
"""

from datetime import timedelta

import pytest

from docqueue.config import Settings
from docqueue.constants import NONE, ReclaimReason
from docqueue.db import Collection
from docqueue.queue.channel import Channel
from docqueue.queue.connector import Connector
from docqueue.types.item import QueueItem, utcnow


async def noop(item: QueueItem) -> None:
    return None


def make_channels(
    count: int,
    pending: Collection,
    history: Collection,
    settings: Settings,
) -> list[Channel]:
    return [
        Channel(f"test-node/{i + 1}", noop, pending, history, settings)
        for i in range(count)
    ]


async def insert_claimed(
    pending: Collection,
    version: str,
    idle_minutes: int,
) -> str:
    """Insert an item held by some other worker, untouched for a while."""
    stamp = utcnow() - timedelta(minutes=idle_minutes)
    return await pending.insert(
        {
            "payload": {"x": 1},
            "owner": "old-node/connector/old-node/3",
            "consumer_version": version,
            "created_time": stamp,
            "last_updated_time": stamp,
        }
    )


class TestChannelSelection:
    """Tests for the round-robin free channel scan."""

    @pytest.fixture
    def connector(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ) -> Connector:
        channels = make_channels(3, pending, history, test_settings)
        return Connector("test-node/connector", channels, pending, "v2", test_settings)

    async def test_round_robin(self, connector: Connector):
        """Test that consecutive picks walk the pool in order."""
        assert await connector.pick_free_channel() == 0
        assert await connector.pick_free_channel() == 1
        assert await connector.pick_free_channel() == 2
        assert connector.cursor == 0

    async def test_skips_busy_channels(self, connector: Connector):
        """Test that reserved channels are skipped and the cursor moves past the pick."""
        await connector.channels[0].try_reserve()

        assert await connector.pick_free_channel() == 1
        assert connector.cursor == 2

    async def test_wraps_around(self, connector: Connector):
        """Test that the scan wraps from the end of the pool."""
        await connector.pick_free_channel()
        await connector.pick_free_channel()
        await connector.channels[0].release()

        assert await connector.pick_free_channel() == 2
        assert await connector.pick_free_channel() == 0

    async def test_none_when_saturated(self, connector: Connector):
        """Test that a full pool yields no channel."""
        for channel in connector.channels:
            await channel.try_reserve()

        assert await connector.pick_free_channel() is None

    def test_requires_channels(self, pending: Collection, test_settings: Settings):
        """Test that an empty pool is rejected."""
        with pytest.raises(ValueError):
            Connector("test-node/connector", [], pending, "v2", test_settings)


class TestAssignment:
    """Tests for claim and handoff."""

    async def test_run_once_assigns_claimed_item(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ):
        """Test that a cycle claims an item and hands it to the reserved channel."""
        item_id = await pending.insert(QueueItem(payload={"x": 1}).to_document())
        channels = make_channels(2, pending, history, test_settings)
        connector = Connector("test-node/connector", channels, pending, "v2", test_settings)

        assert await connector.run_once() is True

        channel = channels[0]
        assert channel.item is not None
        assert channel.item.id == item_id
        assert channel.item.owner == "test-node/connector/test-node/1"
        assert channel.item.consumer_version == "v2"

        stored = await pending.get(item_id)
        assert stored["owner"] == "test-node/connector/test-node/1"
        assert stored["consumer_version"] == "v2"

    async def test_run_once_on_empty_queue_releases_channel(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ):
        """Test that a failed claim gives the reservation back."""
        channels = make_channels(2, pending, history, test_settings)
        connector = Connector("test-node/connector", channels, pending, "v2", test_settings)

        assert await connector.run_once() is False

        assert all(channel.is_free for channel in channels)

    async def test_claimed_items_are_not_claimed_again(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ):
        """Test that a held item is invisible to later cycles."""
        await pending.insert(QueueItem(payload=1).to_document())
        channels = make_channels(2, pending, history, test_settings)
        connector = Connector("test-node/connector", channels, pending, "v2", test_settings)

        assert await connector.run_once() is True
        assert await connector.run_once() is False
        assert channels[1].item is None

    async def test_malformed_document_does_not_hold_channel(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ):
        """Test that a claimed document that fails to parse frees its channel."""
        bad_id = await pending.insert({"payload": 1, "keys": [1, 2], "owner": NONE})
        channels = make_channels(1, pending, history, test_settings)
        connector = Connector("test-node/connector", channels, pending, "v2", test_settings)

        assert await connector.run_once() is False
        assert channels[0].is_free
        assert (await pending.get(bad_id))["owner"] == "test-node/connector/test-node/1"

        good_id = await pending.insert(QueueItem(payload={"ok": True}).to_document())

        assert await connector.run_once() is True
        assert channels[0].item.id == good_id

    async def test_unexpected_claim_error_frees_channel(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
        monkeypatch: pytest.MonkeyPatch,
    ):
        """Test that the reservation is dropped when claiming raises."""
        channels = make_channels(2, pending, history, test_settings)
        connector = Connector("test-node/connector", channels, pending, "v2", test_settings)

        async def broken_claim(channel: Channel) -> QueueItem | None:
            raise RuntimeError("tracer exploded")

        monkeypatch.setattr(connector, "claim_for", broken_claim)

        with pytest.raises(RuntimeError):
            await connector.run_once()

        assert all(channel.is_free for channel in channels)


class TestStaleReclamation:
    """Tests for the corrective passes."""

    @pytest.fixture
    def connector(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ) -> Connector:
        channels = make_channels(1, pending, history, test_settings)
        return Connector("test-node/connector", channels, pending, "v2", test_settings)

    async def test_reclaims_version_drift(self, connector: Connector, pending: Collection):
        """Test that an old-version lease idle for 16 minutes is reset."""
        item_id = await insert_claimed(pending, "v1", idle_minutes=16)

        counts = await connector.reclaim_stale()

        assert counts[ReclaimReason.VERSION_DRIFT] == 1
        stored = await pending.get(item_id)
        assert stored["owner"] == NONE
        assert stored["consumer_version"] == NONE

    async def test_keeps_recent_version_drift(self, connector: Connector, pending: Collection):
        """Test that an old-version lease idle for 10 minutes is kept."""
        item_id = await insert_claimed(pending, "v1", idle_minutes=10)

        await connector.reclaim_stale()

        assert (await pending.get(item_id))["owner"] != NONE

    async def test_keeps_same_version_under_an_hour(
        self,
        connector: Connector,
        pending: Collection,
    ):
        """Test that a current-version lease idle for 16 minutes is kept."""
        item_id = await insert_claimed(pending, "v2", idle_minutes=16)

        counts = await connector.reclaim_stale()

        assert counts[ReclaimReason.VERSION_DRIFT] == 0
        assert (await pending.get(item_id))["owner"] != NONE

    async def test_reclaims_same_version_stuck(self, connector: Connector, pending: Collection):
        """Test that a current-version lease idle for 61 minutes is reset."""
        item_id = await insert_claimed(pending, "v2", idle_minutes=61)

        counts = await connector.reclaim_stale()

        assert counts[ReclaimReason.STALE_LEASE] == 1
        stored = await pending.get(item_id)
        assert stored["owner"] == NONE
        assert stored["consumer_version"] == NONE

    async def test_reclaims_lease_without_version(
        self,
        connector: Connector,
        pending: Collection,
    ):
        """Test that a lease with no recorded version counts as drifted."""
        stamp = utcnow() - timedelta(minutes=20)
        item_id = await pending.insert(
            {"payload": 1, "owner": "someone", "created_time": stamp, "last_updated_time": stamp}
        )

        await connector.reclaim_stale()

        assert (await pending.get(item_id))["owner"] == NONE

    async def test_unclaimed_items_untouched(self, connector: Connector, pending: Collection):
        """Test that claimable items are not counted as reclaimed."""
        stamp = utcnow() - timedelta(hours=3)
        await pending.insert(
            {"payload": 1, "owner": NONE, "created_time": stamp, "last_updated_time": stamp}
        )

        counts = await connector.reclaim_stale()

        assert counts == {ReclaimReason.VERSION_DRIFT: 0, ReclaimReason.STALE_LEASE: 0}

    async def test_reclaim_runs_every_n_cycles(
        self,
        pending: Collection,
        history: Collection,
        test_settings: Settings,
    ):
        """Test that the assignment loop runs the passes when the counter comes due."""
        settings = test_settings.model_copy(update={"connector_reclaim_every_cycles": 3})
        channels = make_channels(1, pending, history, settings)
        connector = Connector("test-node/connector", channels, pending, "v2", settings)
        item_id = await insert_claimed(pending, "v2", idle_minutes=61)

        await connector.run_once()
        await connector.run_once()
        assert (await pending.get(item_id))["owner"] != NONE

        await connector.run_once()
        assert (await pending.get(item_id))["owner"] == NONE
