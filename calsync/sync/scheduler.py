"""Periodic scheduler that dispatches due subscriptions for sync."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from ..store.base import SubscriptionStore
from ..store.exceptions import StoreError
from ..utils.helpers import utc_now
from .exceptions import SyncInProgressError
from .orchestrator import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Process-scoped sync loop with explicit ``start()``/``stop()`` lifecycle.

    The scheduler keeps no subscription state of its own: each tick asks the
    store which subscriptions are due and hands them to the orchestrator,
    whose semaphores bound how many run at once. It can be stopped and
    restarted at any time without losing data.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        orchestrator: SyncOrchestrator,
        settings: Any,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.settings = settings
        self.clock = clock or utc_now

        self.tick_seconds = float(settings.scheduler_tick_seconds)
        self.shutdown_timeout = float(settings.shutdown_timeout_seconds)

        self._loop_task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._active: dict[str, asyncio.Task] = {}

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def active_syncs(self) -> frozenset[str]:
        """Subscription ids with a dispatched sync still running."""
        return frozenset(self._active)

    async def start(self) -> None:
        """Start the tick loop; the first tick runs immediately."""
        if self.is_running:
            logger.debug("Scheduler already running")
            return

        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(), name="calsync-scheduler")
        logger.info(f"Sync scheduler started (tick every {self.tick_seconds:g}s)")

    async def stop(self) -> None:
        """Stop the loop and wait for dispatched syncs.

        Syncs still running after ``shutdown_timeout_seconds`` are cancelled;
        since apply is atomic, a cancelled sync leaves stored events intact.
        """
        if self._stop_event is not None:
            self._stop_event.set()

        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None

        pending = list(self._active.values())
        if pending:
            logger.info(f"Waiting up to {self.shutdown_timeout:g}s for {len(pending)} running syncs")
            _, still_running = await asyncio.wait(pending, timeout=self.shutdown_timeout)
            for task in still_running:
                task.cancel()
            if still_running:
                logger.warning(f"Cancelled {len(still_running)} syncs at shutdown")
                await asyncio.gather(*still_running, return_exceptions=True)

        self._active.clear()
        logger.info("Sync scheduler stopped")

    async def tick(self) -> list[asyncio.Task]:
        """Dispatch every due subscription that is not already syncing.

        Returns:
            Tasks created for this tick
        """
        now = self.clock()
        try:
            due = await self.store.get_due_subscriptions(now)
        except StoreError:
            logger.exception("Could not load due subscriptions")
            return []

        dispatched: list[asyncio.Task] = []
        for subscription in due:
            subscription_id = subscription.id
            if subscription_id in self._active or self.orchestrator.is_in_flight(subscription_id):
                logger.debug(f"Skipping {subscription_id}: sync already in progress")
                continue

            task = asyncio.create_task(
                self._run_sync(subscription_id), name=f"calsync-sync-{subscription_id}"
            )
            self._active[subscription_id] = task
            task.add_done_callback(lambda _, sid=subscription_id: self._active.pop(sid, None))
            dispatched.append(task)

        if dispatched:
            logger.debug(f"Tick dispatched {len(dispatched)} of {len(due)} due subscriptions")
        return dispatched

    async def run_once(self) -> list[SyncResult]:
        """Run a single tick and wait for the syncs it dispatched."""
        tasks = await self.tick()
        if not tasks:
            return []
        results = await asyncio.gather(*tasks)
        return [result for result in results if result is not None]

    async def _run_sync(self, subscription_id: str) -> Optional[SyncResult]:
        try:
            return await self.orchestrator.sync_one(subscription_id)
        except SyncInProgressError:
            # A manual sync started between selection and dispatch
            logger.debug(f"Skipped {subscription_id}: manual sync in progress")
            return None
        except Exception:
            logger.exception(f"Unexpected error in scheduled sync of {subscription_id}")
            return None

    async def _run_loop(self) -> None:
        assert self._stop_event is not None
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                continue
