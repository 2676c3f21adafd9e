"""Sync orchestration for a single subscription."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field, field_serializer

from ..ics.exceptions import ICSContentError, ICSError
from ..ics.fetcher import ICSFetcher
from ..ics.models import FetchResponse
from ..ics.parser import ICSParser
from ..store.base import SubscriptionStore
from ..store.exceptions import StoreError, SubscriptionNotFoundError
from ..store.models import Subscription, SyncOutcome, SyncPlan
from ..utils.helpers import utc_now
from .exceptions import SuspiciousShrinkError, SyncError, SyncInProgressError, SyncTimeoutError
from .reconciler import EventReconciler

logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    """Outcome of one sync attempt."""

    subscription_id: str
    success: bool
    added: int = 0
    updated: int = 0
    deleted: int = 0
    not_modified: bool = False
    warnings: list[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    synced_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    @field_serializer("synced_at")
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @property
    def total_changes(self) -> int:
        return self.added + self.updated + self.deleted


def classify_error(error: BaseException) -> str:
    """Map a sync failure to a short machine-readable kind."""
    if isinstance(error, ICSContentError):
        return "invalid_content"
    if isinstance(error, ICSError) and error.kind is not None:
        return error.kind.value
    if isinstance(error, SyncTimeoutError):
        return "timeout"
    if isinstance(error, SuspiciousShrinkError):
        return "suspicious_shrink"
    if isinstance(error, SubscriptionNotFoundError):
        return "not_found"
    if isinstance(error, StoreError):
        return "store"
    return "internal"


class SyncOrchestrator:
    """Run fetch, parse, reconcile and apply for one subscription at a time.

    Scheduled and manual syncs share the same in-flight guard and the same
    global and per-tenant concurrency limits.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        settings: Any,
        fetcher: Optional[ICSFetcher] = None,
        parser: Optional[ICSParser] = None,
        reconciler: Optional[EventReconciler] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize sync orchestrator.

        Args:
            store: Subscription store
            settings: Application settings
            fetcher: Feed fetcher, created from settings if omitted
            parser: Feed parser, created from settings if omitted
            reconciler: Event reconciler, created from settings if omitted
            clock: Time source
        """
        self.store = store
        self.settings = settings
        self.fetcher = fetcher or ICSFetcher(settings)
        self.parser = parser or ICSParser(settings)
        self.reconciler = reconciler or EventReconciler(settings)
        self.clock = clock or utc_now

        self.per_tenant_limit = max(1, int(settings.max_concurrent_syncs_per_tenant))
        self._global_semaphore = asyncio.Semaphore(max(1, int(settings.max_concurrent_syncs)))
        self._tenant_semaphores: dict[str, asyncio.Semaphore] = {}
        # Syncs holding or waiting on each tenant semaphore
        self._tenant_users: dict[str, int] = {}
        self._in_flight: set[str] = set()

        logger.debug(
            f"Sync orchestrator initialized (global limit {settings.max_concurrent_syncs}, "
            f"per-tenant limit {self.per_tenant_limit})"
        )

    @property
    def deadline_seconds(self) -> float:
        """Overall budget for fetch through reconcile."""
        return float(self.settings.request_timeout_seconds) + float(
            self.settings.sync_processing_budget_seconds
        )

    @property
    def in_flight(self) -> frozenset[str]:
        return frozenset(self._in_flight)

    def is_in_flight(self, subscription_id: str) -> bool:
        return subscription_id in self._in_flight

    @property
    def tenants_tracked(self) -> frozenset[str]:
        """Tenants with a sync currently holding or waiting on their semaphore."""
        return frozenset(self._tenant_semaphores)

    def _acquire_tenant(self, tenant_id: str) -> asyncio.Semaphore:
        semaphore = self._tenant_semaphores.get(tenant_id)
        if semaphore is None:
            semaphore = asyncio.Semaphore(self.per_tenant_limit)
            self._tenant_semaphores[tenant_id] = semaphore
        self._tenant_users[tenant_id] = self._tenant_users.get(tenant_id, 0) + 1
        return semaphore

    def _release_tenant(self, tenant_id: str) -> None:
        remaining = self._tenant_users.get(tenant_id, 1) - 1
        if remaining > 0:
            self._tenant_users[tenant_id] = remaining
            return
        self._tenant_users.pop(tenant_id, None)
        self._tenant_semaphores.pop(tenant_id, None)

    async def close(self) -> None:
        await self.fetcher.close()

    async def sync_one(self, subscription_id: str, raise_errors: bool = False) -> SyncResult:
        """Sync one subscription.

        Args:
            subscription_id: Subscription to sync
            raise_errors: Re-raise the typed error after recording it, for
                manual syncs that report failures to the caller

        Returns:
            Sync result; on failure ``success`` is False and stored events
            are untouched

        Raises:
            SyncInProgressError: If a sync of this subscription is already running
        """
        if subscription_id in self._in_flight:
            logger.info(f"Sync already in progress for {subscription_id}, rejecting")
            raise SyncInProgressError(subscription_id)

        self._in_flight.add(subscription_id)
        try:
            try:
                subscription = await self.store.get_subscription(subscription_id)
            except SubscriptionNotFoundError as e:
                if raise_errors:
                    raise
                return SyncResult(
                    subscription_id=subscription_id,
                    success=False,
                    error_message=e.message,
                    error_kind=classify_error(e),
                )

            tenant_semaphore = self._acquire_tenant(subscription.tenant_id)
            try:
                async with self._global_semaphore, tenant_semaphore:
                    return await self._sync_subscription(subscription, raise_errors)
            finally:
                self._release_tenant(subscription.tenant_id)
        finally:
            self._in_flight.discard(subscription_id)

    async def _sync_subscription(self, subscription: Subscription, raise_errors: bool) -> SyncResult:
        started = time.monotonic()
        warnings: list[str] = []

        logger.debug(f"Starting sync of {subscription.id} ({subscription.url})")

        try:
            try:
                plan, response = await asyncio.wait_for(
                    self._prepare_plan(subscription, warnings), timeout=self.deadline_seconds
                )
            except asyncio.TimeoutError as e:
                raise SyncTimeoutError(
                    f"Sync exceeded deadline of {self.deadline_seconds:g}s", subscription.id
                ) from e

            outcome = SyncOutcome()
            if plan is not None:
                outcome = await self.reconciler.apply(self.store, plan)

            if response.not_modified:
                etag, last_modified = subscription.etag, subscription.last_modified
            else:
                etag, last_modified = response.etag, response.last_modified

            synced_at = self.clock()
            await self.store.record_sync_result(
                subscription.id,
                success=True,
                timestamp=synced_at,
                etag=etag,
                last_modified=last_modified,
            )

        except (ICSError, StoreError, SyncError) as e:
            return await self._handle_failure(subscription, e, warnings, started, raise_errors)

        except Exception as e:
            logger.exception(f"Unexpected error syncing subscription {subscription.id}")
            return await self._handle_failure(subscription, e, warnings, started, raise_errors)

        for warning in warnings:
            logger.warning(f"Subscription {subscription.id}: {warning}")

        result = SyncResult(
            subscription_id=subscription.id,
            success=True,
            added=outcome.added,
            updated=outcome.updated,
            deleted=outcome.deleted,
            not_modified=response.not_modified,
            warnings=warnings,
            synced_at=synced_at,
            duration_seconds=time.monotonic() - started,
        )

        not_modified = " (not modified)" if result.not_modified else ""
        logger.info(
            f"Synced {subscription.id}: {result.added} added, {result.updated} updated, "
            f"{result.deleted} deleted{not_modified} ({result.duration_seconds:.2f}s)"
        )
        return result

    async def _prepare_plan(
        self, subscription: Subscription, warnings: list[str]
    ) -> tuple[Optional[SyncPlan], FetchResponse]:
        """Fetch, parse and reconcile without touching stored events.

        Returns:
            The plan to apply (None when the feed was not modified) and the
            fetch response
        """
        headers = self.fetcher.get_conditional_headers(subscription.etag, subscription.last_modified)
        response = await self.fetcher.fetch(subscription.url, headers)
        if response.not_modified:
            return None, response

        parse_result = await asyncio.to_thread(self.parser.parse, response.content)
        if not parse_result.success:
            raise ICSContentError(parse_result.error_message or "Feed is not a calendar document")
        warnings.extend(parse_result.warnings)

        previous = await self.store.get_events(subscription.id)
        plan = self.reconciler.reconcile(subscription.id, previous, parse_result.events)
        self.reconciler.check_deletion_guard(plan, len(previous))
        return plan, response

    async def _handle_failure(
        self,
        subscription: Subscription,
        error: Exception,
        warnings: list[str],
        started: float,
        raise_errors: bool,
    ) -> SyncResult:
        """Record a failed attempt and either re-raise or return the failed result."""
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        kind = classify_error(error)

        logger.warning(f"Sync of {subscription.id} failed ({kind}): {message}")

        try:
            await self.store.record_sync_result(
                subscription.id, success=False, error=message, timestamp=self.clock()
            )
        except SubscriptionNotFoundError:
            logger.info(f"Subscription {subscription.id} was deleted during sync")
        except StoreError:
            logger.exception(f"Could not record sync failure for {subscription.id}")

        if raise_errors:
            raise error

        return SyncResult(
            subscription_id=subscription.id,
            success=False,
            warnings=warnings,
            error_message=message,
            error_kind=kind,
            duration_seconds=time.monotonic() - started,
        )
