"""SQLite implementation of the subscription store."""

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

import aiosqlite

from ..ics.models import ParsedEvent
from ..utils.helpers import from_db_timestamp, to_db_timestamp, utc_now
from .exceptions import (
    StoreConflictError,
    StoreError,
    StoreTransactionError,
    SubscriptionNotFoundError,
)
from .models import BusyInterval, StoredEvent, Subscription, SyncOutcome, SyncPlan

logger = logging.getLogger(__name__)

MEMORY_DATABASE = ":memory:"

# Fields callers may change through update_subscription; url is fixed at creation
UPDATABLE_FIELDS = frozenset({"name", "sync_frequency_minutes", "is_active"})

SCHEMA = """
CREATE TABLE IF NOT EXISTS subscriptions (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT,
    name TEXT NOT NULL,
    url TEXT NOT NULL,
    sync_frequency_minutes INTEGER NOT NULL DEFAULT 60,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_synced_at TEXT,
    last_error TEXT,
    last_error_at TEXT,
    consecutive_failures INTEGER NOT NULL DEFAULT 0,
    etag TEXT,
    last_modified TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_subscriptions_tenant
ON subscriptions(tenant_id, user_id);

CREATE INDEX IF NOT EXISTS idx_subscriptions_active_synced
ON subscriptions(is_active, last_synced_at);

CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    subscription_id TEXT NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
    tenant_id TEXT NOT NULL,
    uid TEXT NOT NULL,
    title TEXT NOT NULL DEFAULT '',
    description TEXT,
    start_at TEXT NOT NULL,
    end_at TEXT,
    all_day INTEGER NOT NULL DEFAULT 0,
    location TEXT,
    fingerprint TEXT NOT NULL,
    raw_ical TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (subscription_id, uid)
);

CREATE INDEX IF NOT EXISTS idx_events_subscription_start
ON events(subscription_id, start_at);

CREATE INDEX IF NOT EXISTS idx_events_tenant_start
ON events(tenant_id, start_at, end_at);
"""


class SQLiteSubscriptionStore:
    """Subscription and event persistence on a single aiosqlite connection.

    All statements go through one connection guarded by an ``asyncio.Lock``.
    Writes that must be atomic run inside ``BEGIN IMMEDIATE`` transactions, so
    readers never see a half-applied sync.
    """

    def __init__(
        self,
        database_path: Union[Path, str],
        clock: Optional[Callable[[], datetime]] = None,
        timeout: float = 30.0,
    ):
        """Initialize the store.

        Args:
            database_path: Path to SQLite database file, or ``":memory:"``
            clock: Time source for record timestamps
            timeout: Seconds SQLite waits on a locked database before failing
        """
        self.database_path = str(database_path)
        self.clock = clock or utc_now
        self.timeout = timeout
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

        if self.database_path != MEMORY_DATABASE:
            Path(self.database_path).parent.mkdir(parents=True, exist_ok=True)

        logger.debug(f"Subscription store configured: {self.database_path}")

    async def initialize(self) -> None:
        """Open the connection and create the schema if needed."""
        if self._db is not None:
            return

        db = await aiosqlite.connect(self.database_path, timeout=self.timeout, isolation_level=None)
        db.row_factory = aiosqlite.Row

        try:
            if self.database_path != MEMORY_DATABASE:
                # WAL lets readers proceed while a sync transaction is open
                await db.execute("PRAGMA journal_mode=WAL")
                await db.execute("PRAGMA synchronous=NORMAL")

            # Required on every connection for ON DELETE CASCADE
            await db.execute("PRAGMA foreign_keys=ON")
            await db.executescript(SCHEMA)
        except sqlite3.Error as e:
            await db.close()
            logger.exception("Failed to initialize subscription store schema")
            raise StoreError(f"Failed to initialize database: {e}") from e

        self._db = db
        logger.info(f"Subscription store initialized: {self.database_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
            logger.debug("Subscription store closed")

    async def __aenter__(self) -> "SQLiteSubscriptionStore":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError("Subscription store is not initialized")
        return self._db

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements in one immediate transaction, rolling back on any error."""
        db = self._require_db()
        async with self._lock:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StoreTransactionError(f"Could not start transaction: {e}") from e

            try:
                yield db
            except sqlite3.IntegrityError as e:
                await self._rollback(db)
                raise StoreConflictError(f"Constraint violation: {e}") from e
            except sqlite3.Error as e:
                await self._rollback(db)
                raise StoreTransactionError(f"Transaction failed: {e}") from e
            except BaseException:
                await self._rollback(db)
                raise

            try:
                await db.execute("COMMIT")
            except sqlite3.Error as e:
                await self._rollback(db)
                raise StoreTransactionError(f"Commit failed: {e}") from e

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        try:
            await db.execute("ROLLBACK")
        except sqlite3.Error as e:
            # Raised when SQLite already rolled the transaction back itself
            logger.debug(f"Rollback skipped: {e}")

    async def _fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        db = self._require_db()
        async with self._lock:
            try:
                async with db.execute(sql, tuple(params)) as cursor:
                    return list(await cursor.fetchall())
            except sqlite3.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    async def _fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        rows = await self._fetchall(sql, params)
        return rows[0] if rows else None

    # Subscriptions

    async def create_subscription(
        self,
        tenant_id: str,
        name: str,
        url: str,
        sync_frequency_minutes: int,
        user_id: Optional[str] = None,
        is_active: bool = True,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Insert a new subscription record.

        Returns:
            The created subscription
        """
        timestamp = now or self.clock()
        subscription = Subscription(
            id=uuid.uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            name=name,
            url=url,
            sync_frequency_minutes=sync_frequency_minutes,
            is_active=is_active,
            created_at=timestamp,
            updated_at=timestamp,
        )

        async with self._transaction() as db:
            await db.execute(
                """
                INSERT INTO subscriptions (
                    id, tenant_id, user_id, name, url, sync_frequency_minutes,
                    is_active, consecutive_failures, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (
                    subscription.id,
                    tenant_id,
                    user_id,
                    name,
                    url,
                    sync_frequency_minutes,
                    int(is_active),
                    to_db_timestamp(timestamp),
                    to_db_timestamp(timestamp),
                ),
            )

        logger.info(f"Created subscription {subscription.id} for tenant {tenant_id}: {url}")
        return subscription

    async def get_subscription(self, subscription_id: str) -> Subscription:
        row = await self._fetchone("SELECT * FROM subscriptions WHERE id = ?", (subscription_id,))
        if row is None:
            raise SubscriptionNotFoundError(subscription_id)
        return self._row_to_subscription(row)

    async def update_subscription(self, subscription_id: str, **changes: Any) -> Subscription:
        """Update user-editable subscription fields.

        Args:
            subscription_id: Subscription to update
            **changes: Any of ``name``, ``sync_frequency_minutes``, ``is_active``

        Returns:
            The updated subscription

        Raises:
            ValueError: If a field outside the editable set is given
            SubscriptionNotFoundError: If the id is unknown
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated: {', '.join(sorted(unknown))}")

        if changes:
            assignments = ", ".join(f"{field} = ?" for field in changes)
            values = [int(v) if isinstance(v, bool) else v for v in changes.values()]
            async with self._transaction() as db:
                cursor = await db.execute(
                    f"UPDATE subscriptions SET {assignments}, updated_at = ? WHERE id = ?",
                    (*values, to_db_timestamp(self.clock()), subscription_id),
                )
                if cursor.rowcount == 0:
                    raise SubscriptionNotFoundError(subscription_id)
            logger.debug(f"Updated subscription {subscription_id}: {sorted(changes)}")

        return await self.get_subscription(subscription_id)

    async def delete_subscription(self, subscription_id: str) -> None:
        async with self._transaction() as db:
            cursor = await db.execute("DELETE FROM subscriptions WHERE id = ?", (subscription_id,))
            if cursor.rowcount == 0:
                raise SubscriptionNotFoundError(subscription_id)
        logger.info(f"Deleted subscription {subscription_id} and its events")

    async def list_subscriptions(
        self, tenant_id: str, user_id: Optional[str] = None
    ) -> list[Subscription]:
        if user_id is None:
            rows = await self._fetchall(
                "SELECT * FROM subscriptions WHERE tenant_id = ? ORDER BY created_at, id",
                (tenant_id,),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM subscriptions WHERE tenant_id = ? AND user_id = ? "
                "ORDER BY created_at, id",
                (tenant_id, user_id),
            )
        return [self._row_to_subscription(row) for row in rows]

    async def get_due_subscriptions(self, now: datetime) -> list[Subscription]:
        """Get active subscriptions due for a sync at ``now``.

        Never-synced subscriptions come first, then the stalest.
        """
        rows = await self._fetchall(
            """
            SELECT * FROM subscriptions
            WHERE is_active = 1
              AND (
                last_synced_at IS NULL
                OR strftime('%Y-%m-%dT%H:%M:%f', last_synced_at, '+' || sync_frequency_minutes || ' minutes')
                   <= strftime('%Y-%m-%dT%H:%M:%f', ?)
              )
            ORDER BY last_synced_at, created_at
            """,
            (to_db_timestamp(now),),
        )
        return [self._row_to_subscription(row) for row in rows]

    # Events

    async def get_events(self, subscription_id: str) -> list[StoredEvent]:
        rows = await self._fetchall(
            "SELECT * FROM events WHERE subscription_id = ? ORDER BY start_at, uid",
            (subscription_id,),
        )
        return [self._row_to_event(row) for row in rows]

    async def list_events(
        self,
        subscription_id: str,
        upcoming_after: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[StoredEvent]:
        """List a page of events ordered by start time.

        Args:
            subscription_id: Owning subscription
            upcoming_after: Only events starting at or after this time
            limit: Maximum events to return
            offset: Events to skip
        """
        sql = "SELECT * FROM events WHERE subscription_id = ?"
        params: list[Any] = [subscription_id]
        if upcoming_after is not None:
            sql += " AND start_at >= ?"
            params.append(to_db_timestamp(upcoming_after))
        sql += " ORDER BY start_at, uid LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        rows = await self._fetchall(sql, params)
        return [self._row_to_event(row) for row in rows]

    async def count_events(self, subscription_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS total FROM events WHERE subscription_id = ?", (subscription_id,)
        )
        return int(row["total"]) if row else 0

    async def apply_plan(
        self, subscription_id: str, plan: SyncPlan, now: Optional[datetime] = None
    ) -> SyncOutcome:
        """Apply a reconcile plan atomically.

        Deletes, updates and adds for the subscription commit together or not
        at all.

        Returns:
            Counts of rows actually changed
        """
        if plan.subscription_id != subscription_id:
            raise ValueError(
                f"Plan for {plan.subscription_id} cannot be applied to {subscription_id}"
            )

        timestamp = to_db_timestamp(now or self.clock())

        async with self._transaction() as db:
            async with db.execute(
                "SELECT tenant_id FROM subscriptions WHERE id = ?", (subscription_id,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                raise SubscriptionNotFoundError(subscription_id)
            tenant_id = row["tenant_id"]

            deleted = 0
            if plan.to_delete:
                cursor = await db.executemany(
                    "DELETE FROM events WHERE subscription_id = ? AND uid = ?",
                    [(subscription_id, uid) for uid in plan.to_delete],
                )
                deleted = max(cursor.rowcount, 0)

            updated = 0
            if plan.to_update:
                cursor = await db.executemany(
                    """
                    UPDATE events SET
                        title = ?, description = ?, start_at = ?, end_at = ?, all_day = ?,
                        location = ?, fingerprint = ?, raw_ical = ?, updated_at = ?
                    WHERE subscription_id = ? AND uid = ?
                    """,
                    [
                        (
                            event.title,
                            event.description,
                            to_db_timestamp(event.start),
                            to_db_timestamp(event.end),
                            int(event.all_day),
                            event.location,
                            event.fingerprint,
                            event.raw_ical,
                            timestamp,
                            subscription_id,
                            event.uid,
                        )
                        for event in plan.to_update
                    ],
                )
                updated = max(cursor.rowcount, 0)

            if plan.to_add:
                await db.executemany(
                    """
                    INSERT INTO events (
                        id, subscription_id, tenant_id, uid, title, description,
                        start_at, end_at, all_day, location, fingerprint, raw_ical,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        self._event_insert_params(subscription_id, tenant_id, event, timestamp)
                        for event in plan.to_add
                    ],
                )

        outcome = SyncOutcome(added=len(plan.to_add), updated=updated, deleted=deleted)
        logger.debug(f"Applied plan for {subscription_id}: {plan.summary()}")
        return outcome

    @staticmethod
    def _event_insert_params(
        subscription_id: str, tenant_id: str, event: ParsedEvent, timestamp: Optional[str]
    ) -> tuple[Any, ...]:
        return (
            uuid.uuid4().hex,
            subscription_id,
            tenant_id,
            event.uid,
            event.title,
            event.description,
            to_db_timestamp(event.start),
            to_db_timestamp(event.end),
            int(event.all_day),
            event.location,
            event.fingerprint,
            event.raw_ical,
            timestamp,
            timestamp,
        )

    async def record_sync_result(
        self,
        subscription_id: str,
        success: bool,
        error: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> None:
        """Record the outcome of a sync attempt.

        A success stamps ``last_synced_at``, clears the error fields and stores
        the HTTP validators. A failure records the error and leaves
        ``last_synced_at`` unchanged so staleness stays visible.
        """
        when = to_db_timestamp(timestamp or self.clock())

        async with self._transaction() as db:
            if success:
                cursor = await db.execute(
                    """
                    UPDATE subscriptions SET
                        last_synced_at = ?, last_error = NULL, last_error_at = NULL,
                        consecutive_failures = 0, etag = ?, last_modified = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (when, etag, last_modified, when, subscription_id),
                )
            else:
                cursor = await db.execute(
                    """
                    UPDATE subscriptions SET
                        last_error = ?, last_error_at = ?,
                        consecutive_failures = consecutive_failures + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (error or "Unknown error", when, when, subscription_id),
                )
            if cursor.rowcount == 0:
                raise SubscriptionNotFoundError(subscription_id)

    async def list_busy_intervals(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime,
        user_id: Optional[str] = None,
    ) -> list[BusyInterval]:
        """List busy intervals of the tenant's active subscriptions within a window.

        An event overlaps ``[start, end)`` when it ends after ``start`` and
        starts before ``end``. Instants (no end, or an end not after the
        start) count when they start inside the window. With ``user_id`` only
        subscriptions owned by that user are included.
        """
        window_start = to_db_timestamp(start)
        window_end = to_db_timestamp(end)
        sql = """
            SELECT e.subscription_id, e.uid, e.title, e.start_at, e.end_at
            FROM events e
            JOIN subscriptions s ON s.id = e.subscription_id
            WHERE e.tenant_id = ? AND s.is_active = 1 AND e.start_at < ?
              AND (
                ((e.end_at IS NULL OR e.end_at <= e.start_at) AND e.start_at >= ?)
                OR (e.end_at > e.start_at AND e.end_at > ?)
              )
        """
        params: list[Any] = [tenant_id, window_end, window_start, window_start]
        if user_id is not None:
            sql += " AND s.user_id = ?"
            params.append(user_id)
        sql += " ORDER BY e.start_at, e.end_at, e.uid"

        rows = await self._fetchall(sql, params)
        return [
            BusyInterval(
                start=from_db_timestamp(row["start_at"]),
                end=from_db_timestamp(row["end_at"]),
                subscription_id=row["subscription_id"],
                event_uid=row["uid"],
                title=row["title"],
            )
            for row in rows
        ]

    @staticmethod
    def _row_to_subscription(row: aiosqlite.Row) -> Subscription:
        return Subscription(
            id=row["id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            name=row["name"],
            url=row["url"],
            sync_frequency_minutes=row["sync_frequency_minutes"],
            is_active=bool(row["is_active"]),
            last_synced_at=from_db_timestamp(row["last_synced_at"]),
            last_error=row["last_error"],
            last_error_at=from_db_timestamp(row["last_error_at"]),
            consecutive_failures=row["consecutive_failures"],
            etag=row["etag"],
            last_modified=row["last_modified"],
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_event(row: aiosqlite.Row) -> StoredEvent:
        return StoredEvent(
            id=row["id"],
            subscription_id=row["subscription_id"],
            tenant_id=row["tenant_id"],
            uid=row["uid"],
            title=row["title"],
            description=row["description"],
            start=from_db_timestamp(row["start_at"]),
            end=from_db_timestamp(row["end_at"]),
            all_day=bool(row["all_day"]),
            location=row["location"],
            fingerprint=row["fingerprint"],
            raw_ical=row["raw_ical"],
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )
