"""Unit tests for calsync.sync.scheduler module."""

import asyncio
from unittest.mock import AsyncMock

import httpx
import pytest

from calsync.store.exceptions import StoreError
from calsync.store.models import SyncPlan
from calsync.sync.orchestrator import SyncOrchestrator
from calsync.sync.scheduler import SyncScheduler
from tests.fixtures.mock_ics_data import FEED_URL, ICSDataFactory, make_parsed_event

pytestmark = [pytest.mark.unit]


@pytest.fixture
def orchestrator(store, test_settings, fetcher, clock):
    return SyncOrchestrator(store, test_settings, fetcher=fetcher, clock=clock)


@pytest.fixture
def scheduler(store, orchestrator, test_settings, clock):
    return SyncScheduler(store, orchestrator, test_settings, clock=clock)


class TestSyncScheduler:
    """Tests for due-subscription dispatch."""

    @pytest.mark.critical_path
    async def test_run_once_when_subscription_due_then_synced(self, scheduler, store, feed_server):
        """Test a tick syncs never-synced subscriptions."""
        subscription = await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        feed_server.set_feed(FEED_URL, ICSDataFactory.create_basic_ics(2))

        results = await scheduler.run_once()

        assert [result.subscription_id for result in results] == [subscription.id]
        assert results[0].added == 2

    async def test_run_once_when_recently_synced_then_not_dispatched(
        self, scheduler, store, feed_server, clock
    ):
        """Test subscriptions only sync again once their frequency has elapsed."""
        await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        feed_server.set_feed(FEED_URL, ICSDataFactory.create_basic_ics(1))
        await scheduler.run_once()

        clock.advance(minutes=30)
        assert await scheduler.run_once() == []

        clock.advance(minutes=31)
        assert len(await scheduler.run_once()) == 1

    async def test_run_once_when_inactive_then_skipped(self, scheduler, store):
        """Test inactive subscriptions are never dispatched."""
        await store.create_subscription("tenant-a", "Team", FEED_URL, 60, is_active=False)

        assert await scheduler.run_once() == []

    async def test_run_once_when_sync_fails_then_retried_next_tick(
        self, scheduler, store, feed_server, clock
    ):
        """Test failed syncs stay due because last_synced_at is not advanced."""
        subscription = await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        feed_server.set_status(FEED_URL, 503)

        first = await scheduler.run_once()
        clock.advance(minutes=1)
        second = await scheduler.run_once()

        assert not first[0].success
        assert not second[0].success
        loaded = await store.get_subscription(subscription.id)
        assert loaded.consecutive_failures == 2

    async def test_tick_when_sync_in_flight_then_skipped(
        self, scheduler, orchestrator, store, feed_server
    ):
        """Test a subscription already syncing is not dispatched twice."""
        subscription = await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        release = asyncio.Event()

        async def blocked(request):
            await release.wait()
            return httpx.Response(200, content=ICSDataFactory.create_basic_ics(1).encode())

        feed_server.set_handler(FEED_URL, blocked)
        manual = asyncio.create_task(orchestrator.sync_one(subscription.id))
        while not orchestrator.is_in_flight(subscription.id):
            await asyncio.sleep(0.01)

        dispatched = await scheduler.tick()

        assert dispatched == []
        release.set()
        assert (await manual).success

    async def test_tick_when_store_fails_then_nothing_dispatched(self, store, orchestrator, test_settings):
        """Test a store error during selection does not break the loop."""
        store.get_due_subscriptions = AsyncMock(side_effect=StoreError("database is locked"))
        scheduler = SyncScheduler(store, orchestrator, test_settings)

        assert await scheduler.tick() == []


class TestSchedulerLifecycle:
    """Tests for start/stop."""

    async def test_start_when_running_then_due_subscriptions_synced(
        self, scheduler, store, feed_server
    ):
        """Test the background loop syncs due subscriptions and stops cleanly."""
        subscription = await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        feed_server.set_feed(FEED_URL, ICSDataFactory.create_basic_ics(2))

        await scheduler.start()
        assert scheduler.is_running
        for _ in range(100):
            if (await store.get_subscription(subscription.id)).last_synced_at is not None:
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert not scheduler.is_running
        assert await store.count_events(subscription.id) == 2

    async def test_stop_when_sync_outlives_timeout_then_cancelled(
        self, scheduler, store, feed_server
    ):
        """Test stop() cancels syncs still running after the shutdown timeout."""
        scheduler.shutdown_timeout = 0.05
        subscription = await store.create_subscription("tenant-a", "Team", FEED_URL, 60)
        await store.apply_plan(
            subscription.id,
            SyncPlan(subscription_id=subscription.id, to_add=[make_parsed_event("kept")]),
        )

        async def hang(request):
            await asyncio.sleep(10)
            return httpx.Response(200, content=ICSDataFactory.create_empty_ics().encode())

        feed_server.set_handler(FEED_URL, hang)
        await scheduler.tick()

        await scheduler.stop()

        assert scheduler.active_syncs == frozenset()
        assert await store.count_events(subscription.id) == 1

    async def test_start_when_called_twice_then_single_loop(self, scheduler):
        """Test start() is idempotent."""
        await scheduler.start()
        first_task = scheduler._loop_task
        await scheduler.start()

        assert scheduler._loop_task is first_task
        await scheduler.stop()

    async def test_start_after_stop_then_restarts(self, scheduler):
        """Test the scheduler can be restarted after stopping."""
        await scheduler.start()
        await scheduler.stop()

        await scheduler.start()
        assert scheduler.is_running
        await scheduler.stop()
