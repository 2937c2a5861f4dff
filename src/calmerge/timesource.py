from __future__ import annotations
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging
import os

from .models import TimeWindow
from .preferences import TIMEZONE_KEY, PreferenceStore

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

TIMEZONE_OPTIONS: List[Tuple[str, str]] = [
    ("UTC", "UTC"),
    ("London (GMT)", "Europe/London"),
    ("Paris (CET)", "Europe/Paris"),
    ("Berlin (CET)", "Europe/Berlin"),
    ("New York (EST/EDT)", "America/New_York"),
    ("Chicago (CST/CDT)", "America/Chicago"),
    ("Denver (MST/MDT)", "America/Denver"),
    ("Los Angeles (PST/PDT)", "America/Los_Angeles"),
    ("Tokyo (JST)", "Asia/Tokyo"),
    ("Shanghai (CST)", "Asia/Shanghai"),
    ("Sydney (AEST/AEDT)", "Australia/Sydney"),
    ("Auckland (NZST/NZDT)", "Pacific/Auckland"),
]


def _system_clock() -> datetime:
    return datetime.now(tz=timezone.utc)


def _load_zone(name: str) -> Optional[ZoneInfo]:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def local_timezone() -> tzinfo:
    env_name = os.environ.get("TZ", "").strip().lstrip(":")
    if env_name:
        zone = _load_zone(env_name)
        if zone is not None:
            return zone
    return datetime.now().astimezone().tzinfo or timezone.utc


class TimeSource:
    """Wall clock plus the user's display timezone.

    Everything time-dependent in the aggregator goes through an instance of
    this class, so tests pin both the clock and the zone.
    """

    def __init__(
        self,
        preferences: PreferenceStore,
        clock: Optional[Clock] = None,
        default_timezone: Optional[str] = None,
    ) -> None:
        self.preferences = preferences
        self._clock = clock or _system_clock
        self.default_timezone = default_timezone

    def now(self) -> datetime:
        value = self._clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def resolve_timezone(self) -> tzinfo:
        stored = self.preferences.get(TIMEZONE_KEY)
        if stored:
            zone = _load_zone(str(stored))
            if zone is not None:
                return zone
            logger.warning("Ignoring unknown stored timezone %r", stored)
        if self.default_timezone:
            zone = _load_zone(self.default_timezone)
            if zone is not None:
                return zone
            logger.warning("Ignoring unknown configured timezone %r", self.default_timezone)
        return local_timezone()

    def set_timezone(self, name: str) -> str:
        name = name.strip()
        if _load_zone(name) is None:
            raise ValueError(f"Unknown timezone: {name}")
        self.preferences.set(TIMEZONE_KEY, name)
        return name

    def today(self) -> date:
        return self.now().astimezone(self.resolve_timezone()).date()

    def day_window(self, day: Optional[date] = None) -> TimeWindow:
        tz = self.resolve_timezone()
        day = day or self.today()
        start = datetime.combine(day, datetime.min.time(), tzinfo=tz)
        return TimeWindow.normalized(start, start, tz)

    def week_window(self, day: Optional[date] = None) -> TimeWindow:
        # Sunday through Saturday around the given local date.
        tz = self.resolve_timezone()
        day = day or self.today()
        sunday = day - timedelta(days=(day.weekday() + 1) % 7)
        start = datetime.combine(sunday, datetime.min.time(), tzinfo=tz)
        return TimeWindow.normalized(start, start + timedelta(days=6), tz)

    def utc_offset_label(self) -> str:
        offset = self.now().astimezone(self.resolve_timezone()).utcoffset() or timedelta(0)
        total_minutes = int(offset.total_seconds() // 60)
        sign = "+" if total_minutes >= 0 else "-"
        hours, minutes = divmod(abs(total_minutes), 60)
        return f"UTC{sign}{hours:02d}:{minutes:02d}"
