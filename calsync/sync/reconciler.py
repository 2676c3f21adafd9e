"""Set-diff reconciliation of fetched events against stored events."""

import logging
from collections.abc import Iterable
from typing import Any, Optional

from ..ics.models import ParsedEvent
from ..store.base import SubscriptionStore
from ..store.models import StoredEvent, SyncOutcome, SyncPlan
from .exceptions import SuspiciousShrinkError

logger = logging.getLogger(__name__)


class EventReconciler:
    """Diff fresh feed events against stored events by external UID.

    The resulting :class:`SyncPlan` only touches events whose UID appeared,
    disappeared or whose fingerprint changed, so re-running a sync with
    identical input produces an empty plan.
    """

    def __init__(self, settings: Any = None):
        """Initialize reconciler.

        Args:
            settings: Application settings; ``max_delete_ratio`` and
                ``deletion_guard_min_events`` configure the deletion guard
        """
        self.max_delete_ratio: Optional[float] = getattr(settings, "max_delete_ratio", None)
        self.guard_min_events = int(getattr(settings, "deletion_guard_min_events", 10))

    def reconcile(
        self,
        subscription_id: str,
        previous_events: Iterable[StoredEvent],
        fresh_events: Iterable[ParsedEvent],
    ) -> SyncPlan:
        """Build the add/update/delete plan for one subscription.

        Args:
            subscription_id: Subscription being synced
            previous_events: Events currently stored for the subscription
            fresh_events: Events parsed from the latest feed

        Returns:
            Plan of adds, updates and deletes (by UID)
        """
        stored_by_uid = {event.uid: event for event in previous_events}

        fresh_by_uid: dict[str, ParsedEvent] = {}
        for event in fresh_events:
            # Later occurrences win if the caller did not deduplicate
            fresh_by_uid.pop(event.uid, None)
            fresh_by_uid[event.uid] = event

        plan = SyncPlan(subscription_id=subscription_id)
        for uid, event in fresh_by_uid.items():
            stored = stored_by_uid.get(uid)
            if stored is None:
                plan.to_add.append(event)
            elif stored.fingerprint != event.fingerprint:
                plan.to_update.append(event)

        plan.to_delete = [uid for uid in stored_by_uid if uid not in fresh_by_uid]

        logger.debug(
            f"Reconciled {subscription_id}: {len(stored_by_uid)} stored, "
            f"{len(fresh_by_uid)} fresh, plan {plan.summary()}"
        )
        return plan

    def check_deletion_guard(self, plan: SyncPlan, previous_count: int) -> None:
        """Reject plans that would delete a suspicious share of stored events.

        The guard is off unless ``max_delete_ratio`` is configured, and only
        applies once at least ``deletion_guard_min_events`` events are stored.

        Raises:
            SuspiciousShrinkError: If the plan deletes more than the allowed share
        """
        if self.max_delete_ratio is None or previous_count < max(self.guard_min_events, 1):
            return

        ratio = len(plan.to_delete) / previous_count
        if ratio > self.max_delete_ratio:
            logger.warning(
                f"Deletion guard tripped for {plan.subscription_id}: "
                f"{len(plan.to_delete)} of {previous_count} events would be deleted"
            )
            raise SuspiciousShrinkError(
                plan.subscription_id, len(plan.to_delete), previous_count, self.max_delete_ratio
            )

    async def apply(self, store: SubscriptionStore, plan: SyncPlan) -> SyncOutcome:
        """Apply a plan through the store's atomic ``apply_plan``."""
        if plan.is_empty:
            return SyncOutcome()
        return await store.apply_plan(plan.subscription_id, plan)
