from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterator, List, Mapping, Optional

BOOKING = "booking"
EXTERNAL = "external"
AVAILABILITY = "availability"

SOURCE_KINDS = (BOOKING, EXTERNAL, AVAILABILITY)
# Tie-break order when two events start at the same instant.
SOURCE_ORDER = {kind: index for index, kind in enumerate(SOURCE_KINDS)}

STATUSES = ("confirmed", "pending", "canceled", "removed")

END_OF_DAY = time(23, 59, 59, 999000)


@dataclass(frozen=True)
class Event:
    id: str
    title: str
    start_utc: datetime          # timezone-aware, UTC
    end_utc: datetime            # timezone-aware, UTC
    display_start: str           # HH:MM in the resolved timezone
    display_end: str
    date_key: str                # "Monday, April 21, 2025"
    source_kind: str             # booking / external / availability
    status: str = "confirmed"
    description: str = ""
    location: str = ""
    attendees: str = ""
    conference_url: Optional[str] = None
    calendar_name: Optional[str] = None
    source_name: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class TodayEvent(Event):
    is_now: bool = False
    is_upcoming: bool = False
    is_past: bool = False
    starts_in: str = ""
    time_range: str = ""


@dataclass(frozen=True)
class TimeWindow:
    start_utc: datetime
    end_utc: datetime

    @classmethod
    def normalized(cls, start: datetime, end: datetime, tz: tzinfo) -> "TimeWindow":
        """Snap to local midnight / end-of-day so nearby callers share cache keys."""
        local_start = _as_aware(start).astimezone(tz)
        local_end = _as_aware(end).astimezone(tz)
        day_start = datetime.combine(local_start.date(), time.min, tzinfo=tz)
        day_end = datetime.combine(local_end.date(), END_OF_DAY, tzinfo=tz)
        if day_end < day_start:
            day_end = datetime.combine(local_start.date(), END_OF_DAY, tzinfo=tz)
        return cls(
            start_utc=day_start.astimezone(timezone.utc),
            end_utc=day_end.astimezone(timezone.utc),
        )

    def contains(self, instant: datetime) -> bool:
        return self.start_utc <= instant <= self.end_utc

    def cache_fragment(self) -> str:
        return f"{self.start_utc.isoformat()}/{self.end_utc.isoformat()}"

    @property
    def duration(self) -> timedelta:
        return self.end_utc - self.start_utc


@dataclass(frozen=True)
class Identity:
    user_id: str
    organization_id: Optional[str] = None


@dataclass
class AggregationResult:
    events: List[Event]
    window: TimeWindow
    degraded: bool = False
    failures: Dict[str, Exception] = field(default_factory=dict)
    skipped: int = 0

    def __iter__(self) -> Iterator[Event]:
        return iter(self.events)

    def __len__(self) -> int:
        return len(self.events)


def _as_aware(value: datetime) -> datetime:
    # Naive datetimes are UTC everywhere in this package.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
