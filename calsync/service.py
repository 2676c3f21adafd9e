"""Public operations of the calendar subscription sync engine."""

import logging
from datetime import datetime
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field

from .config.settings import CalSyncSettings, get_settings
from .ics.exceptions import ICSContentError
from .ics.fetcher import ICSFetcher, normalize_feed_url
from .ics.parser import ICSParser
from .store.base import SubscriptionStore
from .store.database import SQLiteSubscriptionStore
from .store.exceptions import StoreError
from .store.models import BusyInterval, StoredEvent, Subscription
from .sync.exceptions import SyncError
from .sync.orchestrator import SyncOrchestrator, SyncResult
from .sync.reconciler import EventReconciler
from .sync.scheduler import SyncScheduler
from .utils.helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)

# URL recorded for calendars created from a one-time file import
IMPORTED_FEED_URL = "file://imported"


class ImportResult(BaseModel):
    """Result of a one-time ICS import."""

    subscription: Subscription
    imported: int = 0
    warnings: list[str] = Field(default_factory=list)
    calendar_name: Optional[str] = None


def merge_busy_intervals(intervals: list[BusyInterval]) -> list[BusyInterval]:
    """Merge overlapping or touching intervals into disjoint busy blocks.

    Events without an end count as instants. Merged blocks carry no event
    details and always have an end.
    """
    merged: list[BusyInterval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.effective_end)):
        if merged and interval.start <= merged[-1].effective_end:
            if interval.effective_end > merged[-1].effective_end:
                merged[-1].end = interval.effective_end
            continue
        merged.append(BusyInterval(start=interval.start, end=interval.effective_end))
    return merged


class CalendarSyncService:
    """Entry point used by management and booking collaborators.

    Wires the store, fetcher, parser, reconciler, orchestrator and scheduler
    together. Use as an async context manager, or call ``initialize()`` and
    ``close()`` explicitly.
    """

    def __init__(
        self,
        settings: Optional[CalSyncSettings] = None,
        store: Optional[SubscriptionStore] = None,
        fetcher: Optional[ICSFetcher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or utc_now
        self.store: SubscriptionStore = store or SQLiteSubscriptionStore(
            self.settings.database_file, clock=self.clock
        )
        self.parser = ICSParser(self.settings)
        self.reconciler = EventReconciler(self.settings)
        self.orchestrator = SyncOrchestrator(
            self.store,
            self.settings,
            fetcher=fetcher,
            parser=self.parser,
            reconciler=self.reconciler,
            clock=self.clock,
        )
        self.scheduler = SyncScheduler(self.store, self.orchestrator, self.settings, clock=self.clock)

    async def initialize(self) -> None:
        await self.store.initialize()

    async def close(self) -> None:
        """Stop the scheduler and release the HTTP client and database."""
        if self.scheduler.is_running:
            await self.scheduler.stop()
        await self.orchestrator.close()
        await self.store.close()

    async def __aenter__(self) -> "CalendarSyncService":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def start(self) -> None:
        """Start background scheduling of due subscriptions."""
        await self.initialize()
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()

    # Subscription management

    async def create_subscription(
        self,
        tenant_id: str,
        name: str,
        url: str,
        sync_frequency_minutes: Optional[int] = None,
        user_id: Optional[str] = None,
        validate_feed: bool = False,
    ) -> Subscription:
        """Create a subscription.

        The feed is not fetched unless ``validate_feed`` is set; the first
        scheduler tick syncs it.

        Args:
            tenant_id: Owning tenant
            name: Display name; with ``validate_feed`` an empty name falls back
                to the feed's calendar name
            url: Feed URL, ``webcal://`` accepted
            sync_frequency_minutes: Requested frequency, clamped to the
                configured bounds
            user_id: Optional owner within the tenant
            validate_feed: Fetch and parse the feed first, failing on error

        Raises:
            ValueError: If tenant or name is missing
            ICSSchemeError: If the URL scheme is not supported
            ICSFetchError: If validation was requested and the fetch failed
            ICSContentError: If validation was requested and the feed is not a calendar
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        normalized_url = normalize_feed_url(url)
        display_name = (name or "").strip()

        if validate_feed:
            response = await self.orchestrator.fetcher.fetch(normalized_url)
            result = self.parser.parse(response.content)
            if not result.success:
                raise ICSContentError(result.error_message or "Feed is not a calendar document")
            if not display_name and result.calendar_name:
                display_name = result.calendar_name.strip()
            logger.info(f"Validated feed {normalized_url}: {result.event_count} events")

        if not display_name:
            raise ValueError("Subscription name is required")

        return await self.store.create_subscription(
            tenant_id=tenant_id,
            name=display_name,
            url=normalized_url,
            sync_frequency_minutes=self.settings.clamp_frequency(sync_frequency_minutes),
            user_id=user_id,
            now=self.clock(),
        )

    async def update_subscription(
        self,
        subscription_id: str,
        name: Optional[str] = None,
        sync_frequency_minutes: Optional[int] = None,
        is_active: Optional[bool] = None,
    ) -> Subscription:
        """Update name, frequency or active flag; the URL cannot change.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
            ValueError: If the name is blank or an imported calendar is activated
        """
        changes: dict[str, Union[str, int, bool]] = {}
        if name is not None:
            if not name.strip():
                raise ValueError("Subscription name cannot be empty")
            changes["name"] = name.strip()
        if sync_frequency_minutes is not None:
            changes["sync_frequency_minutes"] = self.settings.clamp_frequency(sync_frequency_minutes)
        if is_active is not None:
            if is_active:
                subscription = await self.store.get_subscription(subscription_id)
                if subscription.url == IMPORTED_FEED_URL:
                    raise ValueError("Imported calendars have no feed and cannot be activated")
            changes["is_active"] = bool(is_active)

        return await self.store.update_subscription(subscription_id, **changes)

    async def delete_subscription(self, subscription_id: str) -> None:
        await self.store.delete_subscription(subscription_id)

    async def get_subscription(self, subscription_id: str) -> Subscription:
        return await self.store.get_subscription(subscription_id)

    async def list_subscriptions(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> list[Subscription]:
        return await self.store.list_subscriptions(tenant_id, user_id=user_id)

    # Sync

    async def sync_now(self, subscription_id: str) -> SyncResult:
        """Sync a subscription immediately, regardless of its due time.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
            SyncInProgressError: If the subscription is already syncing
            SyncError: If the subscription was imported from a file
            ICSError, StoreError, SyncError: The typed failure, after it is
                recorded on the subscription
        """
        subscription = await self.store.get_subscription(subscription_id)
        if subscription.url == IMPORTED_FEED_URL:
            raise SyncError("Imported calendars have no feed to sync", subscription_id)
        return await self.orchestrator.sync_one(subscription_id, raise_errors=True)

    # Reads

    async def list_events(
        self,
        subscription_id: str,
        upcoming_only: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[StoredEvent]:
        """List a subscription's events ordered by start time.

        Args:
            subscription_id: Subscription whose events to list
            upcoming_only: Only events starting now or later
            limit: Page size, defaulting to ``events_default_limit`` and capped
                at ``events_max_limit``
            offset: Events to skip
        """
        await self.store.get_subscription(subscription_id)

        if limit is None:
            limit = self.settings.events_default_limit
        limit = max(1, min(int(limit), self.settings.events_max_limit))
        offset = max(0, int(offset))

        return await self.store.list_events(
            subscription_id,
            upcoming_after=self.clock() if upcoming_only else None,
            limit=limit,
            offset=offset,
        )

    async def list_busy_intervals(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        merge: bool = False,
        user_id: Optional[str] = None,
    ) -> list[BusyInterval]:
        """Busy time of a tenant's active subscriptions within ``[start, end)``.

        Args:
            tenant_id: Tenant to query
            start: Window start (naive values are treated as UTC)
            end: Window end, exclusive
            merge: Collapse overlapping events into disjoint blocks
            user_id: Only subscriptions owned by this user

        Raises:
            ValueError: If the window is empty
        """
        window_start, window_end = ensure_utc(start), ensure_utc(end)
        if window_end <= window_start:
            raise ValueError("Busy interval window end must be after start")

        intervals = await self.store.list_busy_intervals(
            tenant_id, window_start, window_end, user_id=user_id
        )
        return merge_busy_intervals(intervals) if merge else intervals

    # Import

    async def import_ics(
        self,
        tenant_id: str,
        name: Optional[str],
        content: Union[bytes, str],
        user_id: Optional[str] = None,
    ) -> ImportResult:
        """Import a calendar file once as an inactive subscription.

        Raises:
            ICSContentError: If the content is not a calendar document
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        result = self.parser.parse(content)
        if not result.success:
            raise ICSContentError(result.error_message or "Content is not a calendar document")

        display_name = (name or "").strip() or (result.calendar_name or "").strip() or "Imported calendar"
        now = self.clock()
        subscription = await self.store.create_subscription(
            tenant_id=tenant_id,
            name=display_name,
            url=IMPORTED_FEED_URL,
            sync_frequency_minutes=self.settings.default_sync_frequency_minutes,
            user_id=user_id,
            is_active=False,
            now=now,
        )

        plan = self.reconciler.reconcile(subscription.id, [], result.events)
        try:
            outcome = await self.reconciler.apply(self.store, plan)
        except StoreError:
            logger.warning(f"Import into {subscription.id} failed, removing subscription")
            await self.store.delete_subscription(subscription.id)
            raise

        await self.store.record_sync_result(subscription.id, success=True, timestamp=now)
        logger.info(f"Imported {outcome.added} events into {subscription.id} ({display_name})")

        return ImportResult(
            subscription=await self.store.get_subscription(subscription.id),
            imported=outcome.added,
            warnings=result.warnings,
            calendar_name=result.calendar_name,
        )
