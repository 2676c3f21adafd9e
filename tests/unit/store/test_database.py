"""Unit tests for calsync.store.database module."""

from datetime import datetime, timedelta, timezone

import pytest

from calsync.ics.models import ParsedEvent
from calsync.store.database import SQLiteSubscriptionStore
from calsync.store.exceptions import StoreConflictError, StoreError, SubscriptionNotFoundError
from calsync.store.models import SyncPlan
from tests.fixtures.mock_ics_data import BASE_TIME, make_parsed_event

pytestmark = [pytest.mark.unit, pytest.mark.fast]

FEED = "https://calendar.example.com/team.ics"


async def _create(store, tenant_id="tenant-a", name="Team", frequency=60, **kwargs):
    return await store.create_subscription(tenant_id, name, FEED, frequency, **kwargs)


async def _add(store, subscription_id, *events):
    return await store.apply_plan(
        subscription_id, SyncPlan(subscription_id=subscription_id, to_add=list(events))
    )


class TestSubscriptionCrud:
    """Tests for subscription records."""

    async def test_create_subscription_when_valid_then_persisted(self, store, clock):
        """Test a created subscription can be read back unchanged."""
        created = await _create(store, user_id="user-1")

        loaded = await store.get_subscription(created.id)

        assert loaded.id == created.id
        assert loaded.tenant_id == "tenant-a"
        assert loaded.user_id == "user-1"
        assert loaded.url == FEED
        assert loaded.is_active
        assert loaded.last_synced_at is None
        assert loaded.consecutive_failures == 0
        assert loaded.created_at == clock.now

    async def test_get_subscription_when_unknown_then_not_found(self, store):
        """Test unknown ids raise SubscriptionNotFoundError."""
        with pytest.raises(SubscriptionNotFoundError) as exc_info:
            await store.get_subscription("missing")

        assert exc_info.value.subscription_id == "missing"

    async def test_update_subscription_when_editable_fields_then_changed(self, store, clock):
        """Test name, frequency and active flag can be changed."""
        created = await _create(store)
        clock.advance(minutes=5)

        updated = await store.update_subscription(
            created.id, name="Renamed", sync_frequency_minutes=30, is_active=False
        )

        assert updated.name == "Renamed"
        assert updated.sync_frequency_minutes == 30
        assert not updated.is_active
        assert updated.updated_at == clock.now
        assert updated.created_at == created.created_at

    async def test_update_subscription_when_url_given_then_rejected(self, store):
        """Test the URL cannot be changed after creation."""
        created = await _create(store)

        with pytest.raises(ValueError):
            await store.update_subscription(created.id, url="https://elsewhere.example.com/x.ics")

    async def test_update_subscription_when_unknown_then_not_found(self, store):
        """Test updating an unknown id raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await store.update_subscription("missing", name="x")

    async def test_list_subscriptions_when_filtered_then_tenant_and_user_scoped(self, store, clock):
        """Test listing is scoped to the tenant and optionally the user."""
        first = await _create(store, user_id="user-1")
        clock.advance(seconds=1)
        second = await _create(store, user_id="user-2")
        await _create(store, tenant_id="tenant-b")

        assert [s.id for s in await store.list_subscriptions("tenant-a")] == [first.id, second.id]
        assert [s.id for s in await store.list_subscriptions("tenant-a", "user-2")] == [second.id]
        assert await store.list_subscriptions("tenant-c") == []

    @pytest.mark.critical_path
    async def test_delete_subscription_when_events_exist_then_events_removed(self, store):
        """Test deleting a subscription cascades to its events."""
        created = await _create(store)
        await _add(store, created.id, make_parsed_event("a"), make_parsed_event("b"))

        await store.delete_subscription(created.id)

        assert await store.count_events(created.id) == 0
        with pytest.raises(SubscriptionNotFoundError):
            await store.get_subscription(created.id)

    async def test_delete_subscription_when_unknown_then_not_found(self, store):
        """Test deleting an unknown id raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await store.delete_subscription("missing")

    async def test_store_when_not_initialized_then_raises(self):
        """Test using the store before initialize() fails clearly."""
        store = SQLiteSubscriptionStore(":memory:")

        with pytest.raises(StoreError):
            await store.get_subscription("any")

    async def test_store_when_file_database_then_data_survives_reopen(self, tmp_path):
        """Test a file-backed store persists across connections."""
        path = tmp_path / "db" / "calsync.db"
        async with SQLiteSubscriptionStore(path) as first:
            created = await _create(first)

        async with SQLiteSubscriptionStore(path) as second:
            loaded = await second.get_subscription(created.id)

        assert loaded.name == "Team"


class TestDueSubscriptions:
    """Tests for due-time selection."""

    @pytest.mark.critical_path
    async def test_get_due_subscriptions_when_synced_61_minutes_ago_then_due(self, store, clock):
        """Test hourly subscriptions are due after 61 minutes but not after 30."""
        stale = await _create(store, name="Stale")
        fresh = await _create(store, name="Fresh")
        await store.record_sync_result(stale.id, True, timestamp=clock.now - timedelta(minutes=61))
        await store.record_sync_result(fresh.id, True, timestamp=clock.now - timedelta(minutes=30))

        due = await store.get_due_subscriptions(clock.now)

        assert [s.id for s in due] == [stale.id]

    async def test_get_due_subscriptions_when_never_synced_then_due(self, store, clock):
        """Test never-synced active subscriptions are always due."""
        created = await _create(store)

        assert [s.id for s in await store.get_due_subscriptions(clock.now)] == [created.id]

    async def test_get_due_subscriptions_when_inactive_then_not_due(self, store, clock):
        """Test inactive subscriptions are never selected."""
        await _create(store, is_active=False)

        assert await store.get_due_subscriptions(clock.now) == []

    @pytest.mark.parametrize(
        ("frequency", "synced_ago", "expected_due"),
        [
            (60, timedelta(minutes=60), True),
            (60, timedelta(minutes=59, seconds=59), False),
            (15, timedelta(minutes=20), True),
            (1440, timedelta(hours=23), False),
            (1440, timedelta(days=1, microseconds=1000), True),
        ],
    )
    async def test_get_due_subscriptions_when_frequency_boundary_then_matches_model(
        self, store, clock, frequency, synced_ago, expected_due
    ):
        """Test the due selection honors each subscription's own frequency, boundary included."""
        created = await _create(store, frequency=frequency)
        await store.record_sync_result(created.id, True, timestamp=clock.now - synced_ago)
        loaded = await store.get_subscription(created.id)

        due = await store.get_due_subscriptions(clock.now)

        assert (created.id in [s.id for s in due]) is expected_due
        assert loaded.is_due(clock.now) is expected_due
        assert loaded.next_sync_at == clock.now - synced_ago + timedelta(minutes=frequency)

    async def test_get_due_subscriptions_when_several_due_then_never_synced_first(self, store, clock):
        """Test never-synced subscriptions come before stale ones."""
        stale = await _create(store, name="Stale")
        await store.record_sync_result(stale.id, True, timestamp=clock.now - timedelta(hours=3))
        clock.advance(seconds=1)
        new = await _create(store, name="New")

        assert [s.id for s in await store.get_due_subscriptions(clock.now)] == [new.id, stale.id]


class TestApplyPlan:
    """Tests for atomic plan application."""

    @pytest.mark.critical_path
    async def test_apply_plan_when_mixed_changes_then_all_committed(self, store):
        """Test adds, updates and deletes are applied together."""
        created = await _create(store)
        await _add(store, created.id, make_parsed_event("a"), make_parsed_event("b"))
        plan = SyncPlan(
            subscription_id=created.id,
            to_add=[make_parsed_event("c")],
            to_update=[make_parsed_event("a", title="Renamed", location="Room 1")],
            to_delete=["b"],
        )

        outcome = await store.apply_plan(created.id, plan)

        assert (outcome.added, outcome.updated, outcome.deleted) == (1, 1, 1)
        events = {event.uid: event for event in await store.get_events(created.id)}
        assert set(events) == {"a", "c"}
        assert events["a"].title == "Renamed"
        assert events["a"].location == "Room 1"
        assert events["a"].tenant_id == "tenant-a"

    @pytest.mark.critical_path
    async def test_apply_plan_when_insert_conflicts_then_nothing_committed(self, store):
        """Test a failing plan rolls back its deletes and updates too."""
        created = await _create(store)
        await _add(store, created.id, make_parsed_event("a"), make_parsed_event("b"))
        plan = SyncPlan(
            subscription_id=created.id,
            to_update=[make_parsed_event("b", title="Changed")],
            to_delete=["a"],
            to_add=[make_parsed_event("b")],
        )

        with pytest.raises(StoreConflictError):
            await store.apply_plan(created.id, plan)

        events = {event.uid: event for event in await store.get_events(created.id)}
        assert set(events) == {"a", "b"}
        assert events["b"].title == "Meeting"

    async def test_apply_plan_when_subscription_missing_then_not_found(self, store):
        """Test a plan for a deleted subscription is rejected."""
        with pytest.raises(SubscriptionNotFoundError):
            await _add(store, "missing", make_parsed_event("a"))

    async def test_apply_plan_when_ids_differ_then_value_error(self, store):
        """Test a plan cannot be applied to another subscription."""
        created = await _create(store)

        with pytest.raises(ValueError):
            await store.apply_plan(created.id, SyncPlan(subscription_id="other"))

    async def test_apply_plan_when_same_uid_in_two_subscriptions_then_both_kept(self, store):
        """Test UIDs are unique per subscription, not globally."""
        first = await _create(store)
        second = await _create(store)

        await _add(store, first.id, make_parsed_event("shared"))
        await _add(store, second.id, make_parsed_event("shared"))

        assert await store.count_events(first.id) == 1
        assert await store.count_events(second.id) == 1


class TestListEvents:
    """Tests for paged event listing."""

    async def test_list_events_when_paged_then_ordered_by_start(self, store):
        """Test limit and offset page through events in start order."""
        created = await _create(store)
        await _add(
            store,
            created.id,
            *[make_parsed_event(f"e{i}", start=BASE_TIME + timedelta(hours=5 - i)) for i in range(5)],
        )

        page = await store.list_events(created.id, limit=2, offset=1)

        assert [event.uid for event in page] == ["e3", "e2"]

    async def test_list_events_when_upcoming_then_past_events_excluded(self, store):
        """Test the upcoming filter keeps events starting at or after the cutoff."""
        created = await _create(store)
        await _add(
            store,
            created.id,
            make_parsed_event("past", start=BASE_TIME - timedelta(days=1)),
            make_parsed_event("now", start=BASE_TIME),
            make_parsed_event("future", start=BASE_TIME + timedelta(days=1)),
        )

        events = await store.list_events(created.id, upcoming_after=BASE_TIME)

        assert [event.uid for event in events] == ["now", "future"]


class TestRecordSyncResult:
    """Tests for sync bookkeeping."""

    async def test_record_sync_result_when_failure_then_error_recorded(self, store, clock):
        """Test failures record the error and keep last_synced_at unchanged."""
        created = await _create(store)
        synced_at = clock.now
        await store.record_sync_result(created.id, True, timestamp=synced_at, etag='"v1"')

        await store.record_sync_result(created.id, False, error="HTTP 500", timestamp=synced_at + timedelta(hours=1))
        await store.record_sync_result(created.id, False, error="HTTP 502", timestamp=synced_at + timedelta(hours=2))

        loaded = await store.get_subscription(created.id)
        assert loaded.last_synced_at == synced_at
        assert loaded.last_error == "HTTP 502"
        assert loaded.last_error_at == synced_at + timedelta(hours=2)
        assert loaded.consecutive_failures == 2
        assert loaded.etag == '"v1"'

    async def test_record_sync_result_when_success_after_failure_then_error_cleared(self, store, clock):
        """Test a success clears the error and failure counter."""
        created = await _create(store)
        await store.record_sync_result(created.id, False, error="boom")

        await store.record_sync_result(
            created.id, True, etag='"v2"', last_modified="Wed, 15 Jan 2025 08:00:00 GMT"
        )

        loaded = await store.get_subscription(created.id)
        assert loaded.last_synced_at == clock.now
        assert loaded.last_error is None
        assert loaded.last_error_at is None
        assert loaded.consecutive_failures == 0
        assert loaded.etag == '"v2"'
        assert loaded.last_modified == "Wed, 15 Jan 2025 08:00:00 GMT"

    async def test_record_sync_result_when_unknown_then_not_found(self, store):
        """Test recording against a deleted subscription raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await store.record_sync_result("missing", True)


class TestBusyIntervals:
    """Tests for the busy-time query."""

    async def test_list_busy_intervals_when_events_overlap_window_then_returned(self, store):
        """Test only events overlapping the half-open window are returned."""
        created = await _create(store)
        day = datetime(2025, 1, 15, tzinfo=timezone.utc)
        await _add(
            store,
            created.id,
            make_parsed_event("before", start=day - timedelta(hours=2), end=day),
            make_parsed_event("straddle", start=day - timedelta(hours=1), end=day + timedelta(hours=1)),
            make_parsed_event("inside", start=day + timedelta(hours=9), end=day + timedelta(hours=10)),
            make_parsed_event("at-end", start=day + timedelta(days=1), end=day + timedelta(days=1, hours=1)),
        )

        intervals = await store.list_busy_intervals("tenant-a", day, day + timedelta(days=1))

        assert [interval.event_uid for interval in intervals] == ["straddle", "inside"]
        assert intervals[1].start == day + timedelta(hours=9)
        assert intervals[1].end == day + timedelta(hours=10)
        assert intervals[1].subscription_id == created.id

    async def test_list_busy_intervals_when_subscription_inactive_then_excluded(self, store):
        """Test events of inactive subscriptions do not block time."""
        active = await _create(store)
        inactive = await _create(store)
        await _add(store, active.id, make_parsed_event("a"))
        await _add(store, inactive.id, make_parsed_event("b"))
        await store.update_subscription(inactive.id, is_active=False)

        intervals = await store.list_busy_intervals(
            "tenant-a", BASE_TIME - timedelta(hours=1), BASE_TIME + timedelta(hours=2)
        )

        assert [interval.event_uid for interval in intervals] == ["a"]

    async def test_list_busy_intervals_when_other_tenant_then_excluded(self, store):
        """Test busy time is scoped to the tenant."""
        other = await _create(store, tenant_id="tenant-b")
        await _add(store, other.id, make_parsed_event("b"))

        intervals = await store.list_busy_intervals(
            "tenant-a", BASE_TIME - timedelta(hours=1), BASE_TIME + timedelta(hours=2)
        )

        assert intervals == []

    async def test_list_busy_intervals_when_user_given_then_only_owned_subscriptions(self, store):
        """Test busy time can be narrowed to one owner within the tenant."""
        alice = await _create(store, user_id="alice")
        bob = await _create(store, user_id="bob")
        shared = await _create(store)
        await _add(store, alice.id, make_parsed_event("a"))
        await _add(store, bob.id, make_parsed_event("b"))
        await _add(store, shared.id, make_parsed_event("s"))
        window = (BASE_TIME - timedelta(hours=1), BASE_TIME + timedelta(hours=2))

        owned = await store.list_busy_intervals("tenant-a", *window, user_id="alice")
        everyone = await store.list_busy_intervals("tenant-a", *window)

        assert [interval.event_uid for interval in owned] == ["a"]
        assert sorted(interval.event_uid for interval in everyone) == ["a", "b", "s"]

    async def test_list_busy_intervals_when_instant_at_window_start_then_included(self, store):
        """Test zero-length events are treated like events without an end."""
        created = await _create(store)
        day = datetime(2025, 1, 15, tzinfo=timezone.utc)
        await _add(
            store,
            created.id,
            ParsedEvent(uid="no-end", title="Reminder", start=day),
            make_parsed_event("zero-length", start=day, end=day),
            make_parsed_event("zero-length-before", start=day - timedelta(hours=1), end=day - timedelta(hours=1)),
        )

        intervals = await store.list_busy_intervals("tenant-a", day, day + timedelta(hours=1))

        assert sorted(interval.event_uid for interval in intervals) == ["no-end", "zero-length"]
