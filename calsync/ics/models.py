"""Data models for ICS feed fetching and parsing."""

import hashlib
import json
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

from ..utils.helpers import ensure_utc, utc_now


def compute_fingerprint(
    title: str,
    description: Optional[str],
    start: datetime,
    end: Optional[datetime],
    all_day: bool,
    location: Optional[str],
) -> str:
    """Compute the content fingerprint of an event's mutable fields.

    Two events with the same fingerprint are considered unchanged by the
    reconciler, so every field that matters to readers must be included here.
    """
    payload = json.dumps(
        [
            title,
            description,
            ensure_utc(start).isoformat(),
            ensure_utc(end).isoformat() if end else None,
            bool(all_day),
            location,
        ],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class FetchResponse(BaseModel):
    """Response from a successful feed fetch."""

    url: str
    content: bytes = b""
    status_code: int = 200
    content_type: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    fetch_time: datetime = Field(default_factory=utc_now)

    # HTTP caching support
    etag: Optional[str] = None
    last_modified: Optional[str] = None

    @property
    def not_modified(self) -> bool:
        """Check if response indicates content not modified (304)."""
        return self.status_code == 304

    @property
    def content_length(self) -> int:
        """Size of the downloaded body in bytes."""
        return len(self.content)


class ParsedEvent(BaseModel):
    """Normalized event record produced by the parser.

    All timestamps are UTC. ``end`` is ``None`` for events without an end or
    duration (instants).
    """

    uid: str = Field(..., description="External UID assigned by the feed producer")
    title: str = Field(default="", description="Event summary")
    description: Optional[str] = None
    start: datetime
    end: Optional[datetime] = None
    all_day: bool = False
    location: Optional[str] = None
    raw_ical: str = Field(default="", description="Original VEVENT text, not fingerprinted")
    fingerprint: str = ""

    @field_validator("start", "end")
    @classmethod
    def _normalize_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    @model_validator(mode="after")
    def _fill_fingerprint(self) -> "ParsedEvent":
        if not self.fingerprint:
            self.fingerprint = compute_fingerprint(
                self.title, self.description, self.start, self.end, self.all_day, self.location
            )
        return self

    @field_serializer("start", "end", when_used="unless-none")
    def serialize_datetime(self, dt: datetime) -> str:
        """Serialize datetime fields to ISO format."""
        return dt.isoformat()


class ICSParseResult(BaseModel):
    """Result of parsing one feed document."""

    success: bool
    events: List[ParsedEvent] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None

    # Calendar metadata
    calendar_name: Optional[str] = None
    calendar_description: Optional[str] = None
    timezone: Optional[str] = None
    prodid: Optional[str] = None
    ics_version: Optional[str] = None

    # Parse statistics
    total_blocks: int = 0
    skipped_blocks: int = 0

    parse_time: datetime = Field(default_factory=utc_now)

    @property
    def event_count(self) -> int:
        """Number of events that survived parsing."""
        return len(self.events)
