"""Protocol definitions for the subscription store.

The sync engine only depends on these operations and on ``apply_plan`` and
``record_sync_result`` being atomic per subscription. ``SQLiteSubscriptionStore``
is the bundled implementation.
"""

from __future__ import annotations

import datetime
from typing import Any, Optional, Protocol

from .models import BusyInterval, StoredEvent, Subscription, SyncOutcome, SyncPlan


class SubscriptionStore(Protocol):
    """Persistence contract consumed by the orchestrator, scheduler and service."""

    async def initialize(self) -> None:
        """Create schema and open connections."""
        ...

    async def close(self) -> None:
        ...

    async def create_subscription(
        self,
        tenant_id: str,
        name: str,
        url: str,
        sync_frequency_minutes: int,
        user_id: Optional[str] = None,
        is_active: bool = True,
        now: Optional[datetime.datetime] = None,
    ) -> Subscription:
        ...

    async def get_subscription(self, subscription_id: str) -> Subscription:
        """Fetch one subscription.

        Raises:
            SubscriptionNotFoundError: If the id is unknown
        """
        ...

    async def update_subscription(self, subscription_id: str, **changes: Any) -> Subscription:
        """Apply field changes to a subscription and return the updated record."""
        ...

    async def delete_subscription(self, subscription_id: str) -> None:
        """Delete a subscription and, by cascade, all of its events."""
        ...

    async def list_subscriptions(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> list[Subscription]:
        ...

    async def get_due_subscriptions(self, now: datetime.datetime) -> list[Subscription]:
        """Active subscriptions never synced or whose next sync time has passed."""
        ...

    async def get_events(self, subscription_id: str) -> list[StoredEvent]:
        ...

    async def list_events(
        self,
        subscription_id: str,
        upcoming_after: Optional[datetime.datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[StoredEvent]:
        ...

    async def count_events(self, subscription_id: str) -> int:
        ...

    async def apply_plan(
        self, subscription_id: str, plan: SyncPlan, now: Optional[datetime.datetime] = None
    ) -> SyncOutcome:
        """Apply adds, updates and deletes in one transaction.

        Raises:
            SubscriptionNotFoundError: If the subscription no longer exists
            StoreConflictError: If the plan violates a constraint; nothing is applied
            StoreTransactionError: If the transaction fails; nothing is applied
        """
        ...

    async def record_sync_result(
        self,
        subscription_id: str,
        success: bool,
        error: Optional[str] = None,
        timestamp: Optional[datetime.datetime] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        ...

    async def list_busy_intervals(
        self,
        tenant_id: str,
        start: datetime.datetime,
        end: datetime.datetime,
        user_id: Optional[str] = None,
    ) -> list[BusyInterval]:
        """Events of the tenant's active subscriptions overlapping ``[start, end)``, optionally for one owner."""
        ...
