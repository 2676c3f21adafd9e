"""iCalendar feed parser tolerant of partially malformed documents."""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from icalendar import Calendar

from .models import ICSParseResult, ParsedEvent

logger = logging.getLogger(__name__)

DEFAULT_MAX_EVENTS = 10000

CALENDAR_PROPERTIES = ("X-WR-CALNAME", "X-WR-CALDESC", "X-WR-TIMEZONE", "PRODID", "VERSION")

# Properties whose parse errors make an event block unusable
REQUIRED_PROPERTIES = frozenset({"UID", "DTSTART", "DTEND", "DURATION"})

_PROPERTY_NAME_RE = re.compile(r"[;:]")


@dataclass
class EventBlock:
    """Raw lines of one VEVENT component, unfolded."""

    index: int
    lines: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\r\n".join(self.lines)

    def peek_uid(self) -> Optional[str]:
        """Best-effort UID lookup for warning messages, without a full parse."""
        for line in self.lines:
            if line.upper().startswith("UID:"):
                return line[4:].strip() or None
        return None


@dataclass
class FeedDocument:
    """Calendar document split into its parts."""

    has_calendar: bool = False
    is_terminated: bool = False
    properties: dict[str, str] = field(default_factory=dict)
    timezones: list[str] = field(default_factory=list)
    events: list[EventBlock] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


class EventBlockSplitter:
    """Split a calendar document into calendar properties and component blocks.

    Each VEVENT is kept as its own block so that the parser can hand blocks to
    icalendar one at a time; a corrupt block then costs only itself.
    """

    def split(self, text: str) -> FeedDocument:
        """Split ICS text into a :class:`FeedDocument`.

        Args:
            text: Decoded calendar document

        Returns:
            The split document, with warnings for unterminated blocks
        """
        document = FeedDocument()
        current: Optional[list[str]] = None
        current_kind: Optional[str] = None
        depth = 0
        event_index = 0

        for line in self._unfold(text):
            stripped = line.strip()
            if not stripped:
                continue
            upper = stripped.upper()

            if upper.startswith("BEGIN:"):
                name = upper[6:].strip()
                if name == "VCALENDAR":
                    document.has_calendar = True
                    continue

                if current is not None and name == "VEVENT" and current_kind == "VEVENT":
                    # A new event started before the previous one ended
                    event_index += 1
                    document.warnings.append(
                        f"Event block #{event_index} is not terminated; skipped"
                    )
                    current, current_kind, depth = None, None, 0

                if current is None:
                    current, current_kind, depth = [stripped], name, 1
                else:
                    current.append(stripped)
                    depth += 1
                continue

            if upper.startswith("END:"):
                name = upper[4:].strip()
                if current is None:
                    if name == "VCALENDAR":
                        document.is_terminated = True
                    continue

                current.append(stripped)
                depth -= 1
                if depth == 0:
                    if current_kind == "VEVENT":
                        event_index += 1
                        document.events.append(EventBlock(index=event_index, lines=current))
                    elif current_kind == "VTIMEZONE":
                        document.timezones.append("\r\n".join(current))
                    current, current_kind = None, None
                continue

            if current is not None:
                current.append(stripped)
                continue

            name = _PROPERTY_NAME_RE.split(stripped, maxsplit=1)[0].upper()
            if name in CALENDAR_PROPERTIES and ":" in stripped and name not in document.properties:
                document.properties[name] = stripped.split(":", 1)[1].strip()

        if current is not None and current_kind == "VEVENT":
            event_index += 1
            document.warnings.append(f"Event block #{event_index} is not terminated; skipped")

        return document

    @staticmethod
    def _unfold(text: str) -> list[str]:
        """Undo RFC 5545 line folding."""
        lines: list[str] = []
        for raw_line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
            if raw_line[:1] in (" ", "\t") and lines:
                lines[-1] += raw_line[1:]
            else:
                lines.append(raw_line)
        return lines


class _SkipBlock(Exception):
    """Internal signal that an event block must be dropped."""


class ICSParser:
    """Parse calendar feeds into normalized :class:`ParsedEvent` records.

    The parser never raises for malformed input. Unusable event blocks are
    skipped and reported through ``ICSParseResult.warnings``; a document that
    is not a calendar at all yields ``success=False``.
    """

    def __init__(self, settings: Any = None) -> None:
        """Initialize ICS parser.

        Args:
            settings: Application settings (only ``max_events_per_feed`` is read)
        """
        self.settings = settings
        self.max_events = int(getattr(settings, "max_events_per_feed", DEFAULT_MAX_EVENTS))
        self._splitter = EventBlockSplitter()
        logger.debug("ICS parser initialized")

    @staticmethod
    def decode(content: Union[bytes, str]) -> str:
        """Decode raw feed bytes, dropping a UTF-8 BOM if present."""
        if isinstance(content, bytes):
            return content.decode("utf-8-sig", errors="replace")
        return content.lstrip("\ufeff")

    def validate(self, content: Union[bytes, str]) -> tuple[bool, Optional[str]]:
        """Check that content looks like a complete calendar document.

        Returns:
            ``(True, None)`` when valid, otherwise ``(False, reason)``
        """
        text = self.decode(content)
        if not text.strip():
            return False, "Empty ICS content"

        upper = text.upper()
        if "BEGIN:VCALENDAR" not in upper:
            return False, "Missing BEGIN:VCALENDAR"
        if "END:VCALENDAR" not in upper:
            return False, "Missing END:VCALENDAR (truncated feed?)"
        return True, None

    def parse(self, content: Union[bytes, str]) -> ICSParseResult:
        """Parse a feed document into events and warnings.

        Args:
            content: Raw feed bytes or decoded text

        Returns:
            Parse result; ``success`` is False only when the document as a
            whole is unusable
        """
        valid, reason = self.validate(content)
        if not valid:
            logger.warning(f"Rejected feed content: {reason}")
            return ICSParseResult(success=False, error_message=reason, warnings=[reason or ""])

        document = self._splitter.split(self.decode(content))
        warnings = list(document.warnings)
        properties = document.properties

        default_tz, tz_label = self._resolve_default_timezone(properties.get("X-WR-TIMEZONE"), warnings)
        floating_count = 0

        events: dict[str, ParsedEvent] = {}
        skipped = len(document.warnings)

        for block in document.events:
            try:
                event, floating = self._parse_block(block, document.timezones, default_tz, warnings)
            except _SkipBlock as e:
                skipped += 1
                warnings.append(str(e))
                continue
            except Exception as e:
                skipped += 1
                warnings.append(f"Event block #{block.index} could not be parsed: {e}")
                continue

            floating_count += floating
            if event.uid in events:
                warnings.append(f"Duplicate UID {event.uid!r} in feed; later occurrence wins")
                del events[event.uid]
            events[event.uid] = event

        if floating_count:
            warnings.append(
                f"{floating_count} event time(s) had no UTC offset and were interpreted as {tz_label}"
            )

        if len(events) > self.max_events:
            message = f"Feed contains {len(events)} events, limit is {self.max_events}"
            logger.warning(message)
            return ICSParseResult(success=False, error_message=message, warnings=warnings)

        for warning in warnings:
            logger.debug(f"Parse warning: {warning}")

        logger.debug(
            f"Parsed {len(events)} events from {len(document.events)} blocks "
            f"({skipped} skipped, {len(warnings)} warnings)"
        )

        return ICSParseResult(
            success=True,
            events=list(events.values()),
            warnings=warnings,
            calendar_name=properties.get("X-WR-CALNAME"),
            calendar_description=properties.get("X-WR-CALDESC"),
            timezone=properties.get("X-WR-TIMEZONE"),
            prodid=properties.get("PRODID"),
            ics_version=properties.get("VERSION"),
            total_blocks=len(document.events) + len(document.warnings),
            skipped_blocks=skipped,
        )

    def _resolve_default_timezone(
        self, name: Optional[str], warnings: list[str]
    ) -> tuple[tzinfo, str]:
        """Resolve the feed's declared time zone for floating times."""
        if name:
            try:
                return ZoneInfo(name), name
            except (ZoneInfoNotFoundError, ValueError):
                warnings.append(f"Unknown calendar time zone {name!r}; falling back to UTC")
        return timezone.utc, "UTC"

    def _parse_block(
        self,
        block: EventBlock,
        timezones: list[str],
        default_tz: tzinfo,
        warnings: list[str],
    ) -> tuple[ParsedEvent, int]:
        """Parse a single VEVENT block.

        Returns:
            The parsed event and how many of its times were floating

        Raises:
            _SkipBlock: If the block lacks required data or is malformed
        """
        label = f"Event block #{block.index}"
        uid_hint = block.peek_uid()
        if uid_hint:
            label += f" (UID {uid_hint!r})"

        wrapper = "\r\n".join(
            ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//calsync//EN", *timezones, block.text, "END:VCALENDAR", ""]
        )
        calendar = Calendar.from_ical(wrapper)
        component = next(iter(calendar.walk("VEVENT")), None)
        if component is None:
            raise _SkipBlock(f"{label} contains no event")

        errors = list(getattr(component, "errors", []) or [])
        fatal = [(name, msg) for name, msg in errors if name is None or str(name).upper() in REQUIRED_PROPERTIES]
        if fatal:
            name, msg = fatal[0]
            raise _SkipBlock(f"{label} is malformed ({name or 'content line'}: {msg}); skipped")
        for name, msg in errors:
            warnings.append(f"{label}: ignored invalid {name} ({msg})")

        uid = str(component.get("UID", "")).strip()
        if not uid:
            raise _SkipBlock(f"{label} has no UID; skipped")

        dtstart = component.get("DTSTART")
        start_value = getattr(dtstart, "dt", None)
        if not isinstance(start_value, date):
            raise _SkipBlock(f"{label} has no valid DTSTART; skipped")

        floating = 0
        start, all_day, is_floating = self._to_utc(start_value, default_tz)
        floating += is_floating

        end: Optional[datetime] = None
        dtend = component.get("DTEND")
        duration = component.get("DURATION")
        end_value = getattr(dtend, "dt", None) if dtend is not None else None
        if isinstance(end_value, date):
            end, _, is_floating = self._to_utc(end_value, default_tz)
            floating += is_floating
        elif duration is not None and isinstance(getattr(duration, "dt", None), timedelta):
            end = start + duration.dt

        if end is not None and end < start:
            warnings.append(f"{label} ends before it starts; end ignored")
            end = None

        return (
            ParsedEvent(
                uid=uid,
                title=self._text(component.get("SUMMARY")) or "",
                description=self._text(component.get("DESCRIPTION")),
                start=start,
                end=end,
                all_day=all_day,
                location=self._text(component.get("LOCATION")),
                raw_ical=block.text,
            ),
            floating,
        )

    @staticmethod
    def _to_utc(value: date, default_tz: tzinfo) -> tuple[datetime, bool, int]:
        """Normalize a DTSTART/DTEND value to UTC.

        Returns:
            ``(utc_datetime, is_all_day, is_floating)``
        """
        if isinstance(value, datetime):
            if value.tzinfo is None:
                return value.replace(tzinfo=default_tz).astimezone(timezone.utc), False, 1
            return value.astimezone(timezone.utc), False, 0
        return datetime.combine(value, time.min, tzinfo=timezone.utc), True, 0

    @staticmethod
    def _text(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None
