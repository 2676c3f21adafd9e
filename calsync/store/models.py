"""Records owned by the subscription store."""

from datetime import datetime, timedelta
from typing import List, Optional

from pydantic import BaseModel, Field, field_serializer

from ..ics.models import ParsedEvent
from ..utils.helpers import ensure_utc


class Subscription(BaseModel):
    """External calendar feed subscribed to by a tenant."""

    # Identity
    id: str
    tenant_id: str
    user_id: Optional[str] = None

    # User-editable attributes (url is fixed at creation)
    name: str
    url: str
    sync_frequency_minutes: int = 60
    is_active: bool = True

    # Sync bookkeeping
    last_synced_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = 0

    # HTTP validators from the last successful fetch
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    created_at: datetime
    updated_at: datetime

    @field_serializer("last_synced_at", "last_error_at", "created_at", "updated_at")
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        """Serialize datetime fields to ISO format."""
        return dt.isoformat() if dt is not None else None

    @property
    def next_sync_at(self) -> Optional[datetime]:
        """When the subscription becomes due, or None if it has never synced."""
        if self.last_synced_at is None:
            return None
        return self.last_synced_at + timedelta(minutes=self.sync_frequency_minutes)

    def is_due(self, now: datetime) -> bool:
        """Check whether a scheduled sync should run at ``now``."""
        if not self.is_active:
            return False
        next_sync = self.next_sync_at
        return next_sync is None or ensure_utc(now) >= next_sync


class StoredEvent(BaseModel):
    """Event as persisted for one subscription."""

    id: str
    subscription_id: str
    tenant_id: str
    uid: str

    title: str = ""
    description: Optional[str] = None
    start: datetime
    end: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None

    fingerprint: str
    raw_ical: str = ""

    created_at: datetime
    updated_at: datetime

    @field_serializer("start", "end", "created_at", "updated_at")
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        """Serialize datetime fields to ISO format."""
        return dt.isoformat() if dt is not None else None


class BusyInterval(BaseModel):
    """Time range during which the tenant is busy because of an external event."""

    start: datetime
    end: Optional[datetime] = None
    subscription_id: Optional[str] = None
    event_uid: Optional[str] = None
    title: Optional[str] = Field(default=None, description="Event title, omitted after merging")

    @field_serializer("start", "end")
    def serialize_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @property
    def effective_end(self) -> datetime:
        """End of the interval, treating instants as zero length."""
        return self.end if self.end is not None else self.start


class SyncOutcome(BaseModel):
    """Counts of changes committed by one applied plan."""

    added: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total_changes(self) -> int:
        return self.added + self.updated + self.deleted


class SyncPlan(BaseModel):
    """Changes needed to bring one subscription's stored events in line with its feed."""

    subscription_id: str
    to_add: List[ParsedEvent] = Field(default_factory=list)
    to_update: List[ParsedEvent] = Field(default_factory=list)
    to_delete: List[str] = Field(default_factory=list, description="External UIDs to remove")

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete)

    def summary(self) -> str:
        return f"+{len(self.to_add)} ~{len(self.to_update)} -{len(self.to_delete)}"
