"""
Tests for the per-job telemetry channel.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.errors import PersistenceFailure
from pipeline.models import LogLevel
from pipeline.telemetry import TelemetryChannel


async def drain(subscription, timeout: float = 1.0):
    """Collect entries until end-of-stream."""
    entries = []

    async def _collect():
        async for entry in subscription:
            entries.append(entry)

    await asyncio.wait_for(_collect(), timeout)
    return entries


class TestTelemetryChannel:

    @pytest.mark.asyncio
    async def test_append_persists_entry(self, store, telemetry):
        entry = await telemetry.append("job-1", LogLevel.INFO, "job queued", {"url": "https://a"})

        stored = await store.list_logs("job-1")
        assert [e.id for e in stored] == [entry.id]
        assert stored[0].metadata == {"url": "https://a"}

    @pytest.mark.asyncio
    async def test_fan_out_to_every_subscriber(self, telemetry):
        first = telemetry.subscribe("job-1")
        second = telemetry.subscribe("job-1")

        await telemetry.append("job-1", LogLevel.INFO, "one")
        await telemetry.append("job-1", LogLevel.SUCCESS, "two")
        telemetry.close_job("job-1")

        assert [e.message for e in await drain(first)] == ["one", "two"]
        assert [e.message for e in await drain(second)] == ["one", "two"]

    @pytest.mark.asyncio
    async def test_subscriptions_are_scoped_by_job(self, telemetry):
        sub_a = telemetry.subscribe("job-a")
        sub_b = telemetry.subscribe("job-b")

        await telemetry.append("job-a", LogLevel.INFO, "for a")
        await telemetry.append("job-b", LogLevel.WARN, "for b")
        telemetry.close_job("job-a")
        telemetry.close_job("job-b")

        entries_a = await drain(sub_a)
        entries_b = await drain(sub_b)
        assert [e.message for e in entries_a] == ["for a"]
        assert [e.message for e in entries_b] == ["for b"]
        assert all(e.job_id == "job-a" for e in entries_a)

    @pytest.mark.asyncio
    async def test_delivery_order_matches_emission_order(self, telemetry):
        subscription = telemetry.subscribe("job-1")

        await asyncio.gather(*(telemetry.append("job-1", LogLevel.INFO, f"m{i}") for i in range(20)))
        telemetry.close_job("job-1")

        delivered = [e.message for e in await drain(subscription)]
        persisted = [e.message for e in await telemetry.store.list_logs("job-1")]
        assert delivered == persisted
        assert sorted(delivered) == sorted(f"m{i}" for i in range(20))

    @pytest.mark.asyncio
    async def test_backfill_replays_history_without_duplicates(self, telemetry):
        await telemetry.append("job-1", LogLevel.INFO, "before")
        subscription = telemetry.subscribe("job-1", backfill=True)
        await telemetry.append("job-1", LogLevel.SUCCESS, "after")
        telemetry.close_job("job-1")

        assert [e.message for e in await drain(subscription)] == ["before", "after"]

    @pytest.mark.asyncio
    async def test_without_backfill_only_new_entries(self, telemetry):
        await telemetry.append("job-1", LogLevel.INFO, "before")
        subscription = telemetry.subscribe("job-1")
        await telemetry.append("job-1", LogLevel.INFO, "after")
        telemetry.close_job("job-1")

        assert [e.message for e in await drain(subscription)] == ["after"]

    @pytest.mark.asyncio
    async def test_subscribing_to_closed_job_ends_immediately(self, telemetry):
        await telemetry.append("job-1", LogLevel.INFO, "done")
        telemetry.close_job("job-1")

        assert await drain(telemetry.subscribe("job-1")) == []
        assert [e.message for e in await drain(telemetry.subscribe("job-1", backfill=True))] == ["done"]

    @pytest.mark.asyncio
    async def test_closing_subscription_detaches_it(self, telemetry):
        async with telemetry.subscribe("job-1"):
            assert telemetry.subscriber_count("job-1") == 1
        assert telemetry.subscriber_count("job-1") == 0

        # Appending with nobody listening is fine
        await telemetry.append("job-1", LogLevel.INFO, "nobody listening")

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self, store):
        channel = TelemetryChannel(store, queue_size=3)
        subscription = channel.subscribe("job-1")

        for i in range(5):
            await channel.append("job-1", LogLevel.INFO, f"m{i}")

        assert subscription.dropped == 2
        # Room for end-of-stream means one more drop
        channel.close_job("job-1")
        assert [e.message for e in await drain(subscription)] == ["m3", "m4"]
        # Persistence is unaffected by slow subscribers
        assert len(await store.list_logs("job-1")) == 5

    @pytest.mark.asyncio
    async def test_persistence_failure_delivers_nothing(self, store):
        store.append_log = AsyncMock(side_effect=PersistenceFailure("database unavailable"))
        channel = TelemetryChannel(store)
        subscription = channel.subscribe("job-1")

        with pytest.raises(PersistenceFailure):
            await channel.append("job-1", LogLevel.ERROR, "lost")

        channel.close_job("job-1")
        assert await drain(subscription) == []


class TestSharedStoreFeed:
    """Following jobs that another worker runs against the same store."""

    @pytest.mark.asyncio
    async def test_follows_job_run_by_another_channel(self, store):
        store.shared_feed = True
        reader = TelemetryChannel(store)
        writer = TelemetryChannel(store)

        await writer.append("job-1", LogLevel.INFO, "job queued")
        subscription = reader.subscribe("job-1", backfill=True)
        assert subscription.follow_store
        collected = asyncio.create_task(drain(subscription))
        await asyncio.sleep(0.01)

        writer.open_job("job-1")
        await writer.append("job-1", LogLevel.INFO, "engaging target")
        await writer.append("job-1", LogLevel.SUCCESS, "job completed", {"final": True})
        writer.close_job("job-1")

        entries = await collected
        assert [e.message for e in entries] == ["job queued", "engaging target", "job completed"]
        assert reader.subscriber_count("job-1") == 0

    @pytest.mark.asyncio
    async def test_no_duplicates_when_the_run_starts_here(self, store):
        store.shared_feed = True
        channel = TelemetryChannel(store)
        subscription = channel.subscribe("job-1")
        collected = asyncio.create_task(drain(subscription))
        await asyncio.sleep(0.01)

        channel.open_job("job-1")
        await channel.append("job-1", LogLevel.INFO, "one")
        await channel.append("job-1", LogLevel.ERROR, "boom", {"final": True})
        channel.close_job("job-1")

        assert [e.message for e in await collected] == ["one", "boom"]

    @pytest.mark.asyncio
    async def test_local_job_uses_fan_out_only(self, store):
        store.shared_feed = True
        channel = TelemetryChannel(store)
        channel.open_job("job-1")

        subscription = channel.subscribe("job-1")
        assert subscription.follow_store is False

        await channel.append("job-1", LogLevel.INFO, "one")
        channel.close_job("job-1")
        assert [e.message for e in await drain(subscription)] == ["one"]

    def test_single_process_store_is_not_followed(self, telemetry):
        assert telemetry.subscribe("job-1").follow_store is False

    @pytest.mark.asyncio
    async def test_lost_feed_ends_stream(self, store):
        async def broken_feed(job_id, replay=False):
            raise PersistenceFailure("connection refused")
            yield

        store.shared_feed = True
        store.subscribe_logs = broken_feed

        assert await drain(TelemetryChannel(store).subscribe("job-1")) == []

    @pytest.mark.asyncio
    async def test_closing_subscription_stops_the_feed(self, store):
        store.shared_feed = True
        channel = TelemetryChannel(store)
        subscription = channel.subscribe("job-1")
        pending = asyncio.create_task(subscription.__anext__())
        await asyncio.sleep(0.01)

        subscription.close()
        pending.cancel()
        await asyncio.sleep(0.01)

        assert subscription._pump.done()
        assert store._feeds == {}
