from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple
import hashlib
import logging

from .models import AVAILABILITY, BOOKING, EXTERNAL, STATUSES, Event

logger = logging.getLogger(__name__)

# Fixed English names keep date keys independent of the process locale.
_WEEKDAYS = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
_MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

LOCATION_DISPLAY_NAMES = {
    "google_meet": "Google Meet",
    "web_conferencing": "Web Conference",
    "web_conferencing_link": "Web Conference",
    "in_person": "In Person",
    "in_person_meeting": "In Person",
    "custom": "Custom",
    "custom_location": "Custom",
    "phone": "Phone",
    "zoom": "Zoom",
    "teams": "Microsoft Teams",
}

# Checked in order; first substring found in the description wins.
ABSENCE_REASONS: Tuple[Tuple[str, str], ...] = (
    ("vacation", "Vacation"),
    ("travel", "Travel"),
    ("sick", "Sick Leave"),
    ("holiday", "Public Holiday"),
    ("out of office", "Out of Office"),
)
OUT_OF_OFFICE_LABEL = "Out of Office"
ABSENCE_FALLBACK_LABEL = "Unavailable"

_STATUS_ALIASES = {
    "cancelled": "canceled",
    "cancel": "canceled",
    "approved": "confirmed",
    "accepted": "confirmed",
    "tentative": "pending",
    "deleted": "removed",
}


class MalformedRecordError(ValueError):
    """A single source record could not be turned into an Event."""


def parse_server_time(value: Any) -> datetime:
    """Parse an API timestamp into an aware UTC datetime.

    ``"2025-04-21 05:30:00"`` carries no offset and is always UTC, never the
    local time of this process or of the viewer.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value or "").strip()
        if not text:
            raise ValueError("empty timestamp")
        if text[-1] in "Zz":
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_time(instant: datetime, tz: tzinfo) -> str:
    return instant.astimezone(tz).strftime("%H:%M")


def format_date_key(instant: datetime, tz: tzinfo) -> str:
    local = instant.astimezone(tz)
    return f"{_WEEKDAYS[local.weekday()]}, {_MONTHS[local.month - 1]} {local.day}, {local.year}"


def local_day_key(instant: datetime, tz: tzinfo) -> str:
    return instant.astimezone(tz).date().isoformat()


def normalize_status(value: Any, cancelled: bool = False) -> str:
    if cancelled:
        return "canceled"
    status = str(value or "").strip().lower()
    status = _STATUS_ALIASES.get(status, status)
    return status if status in STATUSES else "confirmed"


def normalize_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(value.strip().lower().split())


def flatten_location(location: Any) -> str:
    if not location:
        return ""
    if isinstance(location, str):
        return location.strip()
    if isinstance(location, Mapping):
        location = [location]
    if not isinstance(location, Iterable):
        return str(location)

    parts: List[str] = []
    for entry in location:
        if isinstance(entry, str):
            text = entry.strip()
        elif isinstance(entry, Mapping):
            kind = str(entry.get("type") or "").strip().lower().replace(" ", "_")
            if kind == "google_meet":
                text = LOCATION_DISPLAY_NAMES[kind]
            else:
                value = entry.get("value") or entry.get("url") or entry.get("address") or entry.get("name")
                text = str(value).strip() if value else LOCATION_DISPLAY_NAMES.get(kind, "")
        else:
            text = ""
        if text and text not in parts:
            parts.append(text)
    return ", ".join(parts)


def flatten_attendees(raw: Mapping[str, Any]) -> str:
    guests = raw.get("guests")
    if isinstance(guests, list):
        names = []
        for guest in guests:
            if isinstance(guest, Mapping):
                name = guest.get("name") or guest.get("email")
            else:
                name = guest
            if name:
                names.append(str(name))
        return ", ".join(names)
    attendees = raw.get("attendees")
    if isinstance(attendees, str):
        return attendees
    return ""


def classify_absence(raw: Mapping[str, Any]) -> str:
    description = str(raw.get("description") or "").lower()
    for needle, label in ABSENCE_REASONS:
        if needle in description:
            return label
    if raw.get("source") == "out_of_office":
        return OUT_OF_OFFICE_LABEL
    title = str(raw.get("title") or "").strip()
    return title or ABSENCE_FALLBACK_LABEL


@dataclass(frozen=True)
class Timing:
    start_utc: datetime
    end_utc: datetime
    display_start: str
    display_end: str
    date_key: str
    raw_day: Optional[str] = None  # set when the timestamps could not be parsed


def _split_raw(value: Any) -> Tuple[str, str]:
    text = str(value or "").strip()
    for sep in (" ", "T"):
        if sep in text:
            date_part, time_part = text.split(sep, 1)
            return date_part, time_part[:5]
    return text, ""


def _fallback_timing(raw_start: Any, raw_end: Any) -> Timing:
    start_date, start_time = _split_raw(raw_start)
    end_date, end_time = _split_raw(raw_end if raw_end else raw_start)
    try:
        start_day = date.fromisoformat(start_date)
    except ValueError as exc:
        raise MalformedRecordError(f"unreadable timestamp {raw_start!r}") from exc
    try:
        end_day = max(date.fromisoformat(end_date), start_day)
    except ValueError:
        end_day = start_day
    start_utc = datetime.combine(start_day, datetime.min.time(), tzinfo=timezone.utc)
    end_utc = datetime.combine(end_day, datetime.min.time(), tzinfo=timezone.utc)
    return Timing(start_utc, end_utc, start_time, end_time, start_date, raw_day=start_date)


def resolve_timing(raw_start: Any, raw_end: Any, tz: tzinfo) -> Timing:
    try:
        start_utc = parse_server_time(raw_start)
        end_utc = parse_server_time(raw_end) if raw_end else start_utc
    except (TypeError, ValueError):
        logger.warning("Malformed timestamp %r / %r; using raw display values", raw_start, raw_end)
        return _fallback_timing(raw_start, raw_end)
    if end_utc < start_utc:
        logger.warning("Record ends before it starts (%r > %r); clamping end", raw_start, raw_end)
        end_utc = start_utc
    return timing_for(start_utc, end_utc, tz)


def timing_for(start_utc: datetime, end_utc: datetime, tz: tzinfo) -> Timing:
    return Timing(
        start_utc=start_utc,
        end_utc=end_utc,
        display_start=format_time(start_utc, tz),
        display_end=format_time(end_utc, tz),
        date_key=format_date_key(start_utc, tz),
    )


def _content_id(raw: Mapping[str, Any]) -> str:
    basis = "|".join(
        str(raw.get(key) or "") for key in ("title", "summary", "start_time", "end_time", "calendar_name")
    )
    return hashlib.sha1(basis.encode("utf-8")).hexdigest()[:12]


Builder = Callable[[Mapping[str, Any], tzinfo], Event]


class EventNormalizer:
    """Turns raw API records of any source kind into Events."""

    def __init__(self) -> None:
        self._builders: Dict[str, Builder] = {
            BOOKING: self._booking,
            EXTERNAL: self._external,
            AVAILABILITY: self._availability,
        }

    def normalize(self, raw: Mapping[str, Any], source_kind: str, tz: tzinfo) -> Event:
        builder = self._builders.get(source_kind)
        if builder is None:
            raise ValueError(f"Unknown source kind: {source_kind}")
        if not isinstance(raw, Mapping):
            raise MalformedRecordError(f"{source_kind} record is not an object: {raw!r}")
        return builder(raw, tz)

    def normalize_many(
        self, records: Iterable[Mapping[str, Any]], source_kind: str, tz: tzinfo
    ) -> Tuple[List[Event], int]:
        """Normalize a batch, skipping records that cannot be read at all."""
        events: List[Event] = []
        skipped = 0
        for raw in records:
            try:
                events.append(self.normalize(raw, source_kind, tz))
            except MalformedRecordError as exc:
                skipped += 1
                logger.warning("Skipping malformed %s record: %s", source_kind, exc)
        return events, skipped

    def absence_segment(
        self,
        raw: Mapping[str, Any],
        tz: tzinfo,
        start_utc: datetime,
        end_utc: datetime,
        day_key: str,
    ) -> Event:
        return self._absence_event(
            raw,
            timing_for(start_utc, end_utc, tz),
            event_id=f"availability_{raw.get('id')}_{day_key}",
        )

    def _booking(self, raw: Mapping[str, Any], tz: tzinfo) -> Event:
        if raw.get("id") is None or not raw.get("start_time"):
            raise MalformedRecordError("booking without id or start_time")
        timing = resolve_timing(raw.get("start_time"), raw.get("end_time"), tz)
        return Event(
            id=str(raw.get("id")),
            title=str(raw.get("title") or raw.get("event_name") or "Untitled Event"),
            start_utc=timing.start_utc,
            end_utc=timing.end_utc,
            display_start=timing.display_start,
            display_end=timing.display_end,
            date_key=timing.date_key,
            source_kind=BOOKING,
            status=normalize_status(raw.get("status"), bool(raw.get("cancelled"))),
            description=str(raw.get("description") or ""),
            location=flatten_location(raw.get("location")),
            attendees=flatten_attendees(raw),
            conference_url=raw.get("meeting_link") or raw.get("conference_url") or None,
            source_name="internal",
            raw=raw,
        )

    def _external(self, raw: Mapping[str, Any], tz: tzinfo) -> Event:
        if not raw.get("start_time"):
            raise MalformedRecordError("external event without start_time")
        timing = resolve_timing(raw.get("start_time"), raw.get("end_time"), tz)
        raw_id = raw.get("id")
        event_id = raw_id if raw_id not in (None, "") else _content_id(raw)
        return Event(
            id=f"external_{event_id}",
            title=str(raw.get("title") or raw.get("summary") or "External Event"),
            start_utc=timing.start_utc,
            end_utc=timing.end_utc,
            display_start=timing.display_start,
            display_end=timing.display_end,
            date_key=timing.date_key,
            source_kind=EXTERNAL,
            status=normalize_status(raw.get("status")),
            description=str(raw.get("description") or ""),
            location=flatten_location(raw.get("location")),
            attendees=flatten_attendees(raw),
            conference_url=(
                raw.get("meeting_link") or raw.get("conference_url") or raw.get("hangout_link") or None
            ),
            calendar_name=raw.get("calendar_name"),
            source_name=str(raw.get("source") or "external_calendar"),
            raw=raw,
        )

    def _availability(self, raw: Mapping[str, Any], tz: tzinfo) -> Event:
        if raw.get("id") is None or not raw.get("start_time"):
            raise MalformedRecordError("absence without id or start_time")
        timing = resolve_timing(raw.get("start_time"), raw.get("end_time"), tz)
        return self._absence_event(
            raw,
            timing,
            event_id=f"availability_{raw.get('id')}_{timing.raw_day or local_day_key(timing.start_utc, tz)}",
        )

    def _absence_event(self, raw: Mapping[str, Any], timing: Timing, event_id: str) -> Event:
        return Event(
            id=event_id,
            title=classify_absence(raw),
            start_utc=timing.start_utc,
            end_utc=timing.end_utc,
            display_start=timing.display_start,
            display_end=timing.display_end,
            date_key=timing.date_key,
            source_kind=AVAILABILITY,
            status=normalize_status(raw.get("status")),
            description=str(raw.get("description") or ""),
            source_name=str(raw.get("source") or "out_of_office"),
            raw=raw,
        )
