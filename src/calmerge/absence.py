from __future__ import annotations
from datetime import datetime, time, timedelta, timezone, tzinfo
from typing import Any, List, Mapping, Optional

from .models import AVAILABILITY, END_OF_DAY, Event
from .normalize import EventNormalizer, MalformedRecordError, parse_server_time


class AbsenceExpander:
    """Splits out-of-office records into one Event per local day of a window."""

    def __init__(self, normalizer: Optional[EventNormalizer] = None) -> None:
        self.normalizer = normalizer or EventNormalizer()

    def expand(
        self,
        raw: Mapping[str, Any],
        window_start: datetime,
        window_end: datetime,
        tz: tzinfo,
    ) -> List[Event]:
        if raw.get("id") is None:
            raise MalformedRecordError("absence without id")
        try:
            start = parse_server_time(raw.get("start_time"))
            end = parse_server_time(raw.get("end_time") or raw.get("start_time"))
        except (TypeError, ValueError):
            return self._expand_unparsed(raw, window_start, window_end, tz)

        window_start = window_start.astimezone(timezone.utc)
        window_end = window_end.astimezone(timezone.utc)
        if start >= window_end or end <= window_start:
            return []

        clip_start = max(start, window_start)
        clip_end = min(end, window_end)

        segments: List[Event] = []
        day = clip_start.astimezone(tz).date()
        last_day = clip_end.astimezone(tz).date()
        while day <= last_day:
            day_start = datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)
            day_end = datetime.combine(day, END_OF_DAY, tzinfo=tz).astimezone(timezone.utc)
            seg_start = max(clip_start, day_start)
            seg_end = min(clip_end, day_end)
            if seg_start < seg_end or start == end:
                segments.append(
                    self.normalizer.absence_segment(raw, tz, seg_start, seg_end, day.isoformat())
                )
            day += timedelta(days=1)
        return segments

    def _expand_unparsed(
        self,
        raw: Mapping[str, Any],
        window_start: datetime,
        window_end: datetime,
        tz: tzinfo,
    ) -> List[Event]:
        # One event with the raw display values, kept when its raw date falls in the window.
        event = self.normalizer.normalize(raw, AVAILABILITY, tz)
        first_day = window_start.astimezone(tz).date().isoformat()
        last_day = window_end.astimezone(tz).date().isoformat()
        if first_day <= event.date_key <= last_day:
            return [event]
        return []
