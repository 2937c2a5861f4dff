from __future__ import annotations
from dataclasses import fields
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import List, Optional, Sequence
import asyncio
import logging

from .absence import AbsenceExpander
from .dedupe import DuplicateDetector
from .models import (
    AVAILABILITY,
    BOOKING,
    EXTERNAL,
    SOURCE_KINDS,
    SOURCE_ORDER,
    AggregationResult,
    Event,
    TimeWindow,
    TodayEvent,
)
from .normalize import EventNormalizer, MalformedRecordError
from .sources import (
    AvailabilityFetcher,
    BookingsFetcher,
    ExternalEventsFetcher,
    FetchError,
    FetchResult,
    source_failures,
)
from .timesource import TimeSource

logger = logging.getLogger(__name__)


class AggregationState(Enum):
    PENDING = "pending"
    SOURCES_FETCHING = "sources_fetching"
    MERGING = "merging"
    DONE = "done"


def event_sort_key(e: Event):
    return (e.start_utc, SOURCE_ORDER[e.source_kind])


def starts_in_text(start: datetime, now: datetime) -> str:
    minutes = int((start - now).total_seconds() // 60)
    if minutes < 60:
        return f"in {minutes} min"
    hours, rest = divmod(minutes, 60)
    return f"in {hours}h {rest}m"


def annotate_today(event: Event, now: datetime) -> TodayEvent:
    is_upcoming = event.start_utc > now
    return TodayEvent(
        **{f.name: getattr(event, f.name) for f in fields(Event)},
        is_now=event.start_utc <= now <= event.end_utc,
        is_upcoming=is_upcoming,
        is_past=event.end_utc < now,
        starts_in=starts_in_text(event.start_utc, now) if is_upcoming else "",
        time_range=f"{event.display_start} - {event.display_end}",
    )


class CalendarAggregator:
    """Merges bookings, external calendar events and absences into one timeline.

    Each source is fetched concurrently through its own cache. A failing
    source contributes nothing and marks the result ``degraded``; this class
    never raises because of a source failure.
    """

    def __init__(
        self,
        bookings: BookingsFetcher,
        external: ExternalEventsFetcher,
        availability: AvailabilityFetcher,
        time_source: TimeSource,
        normalizer: Optional[EventNormalizer] = None,
        detector: Optional[DuplicateDetector] = None,
        expander: Optional[AbsenceExpander] = None,
    ) -> None:
        self.bookings = bookings
        self.external = external
        self.availability = availability
        self.time_source = time_source
        self.normalizer = normalizer or EventNormalizer()
        self.detector = detector or DuplicateDetector()
        self.expander = expander or AbsenceExpander(self.normalizer)

    async def get_events_for_window(
        self, start: datetime, end: datetime, use_cache: bool = True
    ) -> AggregationResult:
        tz = self.time_source.resolve_timezone()
        window = TimeWindow.normalized(start, end, tz)
        return await self.aggregate(window, tz, use_cache=use_cache)

    async def get_today_events(self, use_cache: bool = True) -> AggregationResult:
        window = self.time_source.day_window()
        result = await self.get_events_for_window(window.start_utc, window.end_utc, use_cache=use_cache)
        now = self.time_source.now()
        result.events = [annotate_today(e, now) for e in result.events]
        return result

    async def get_week_events(self, day: Optional[date] = None, use_cache: bool = True) -> AggregationResult:
        window = self.time_source.week_window(day)
        return await self.get_events_for_window(window.start_utc, window.end_utc, use_cache=use_cache)

    async def aggregate(self, window: TimeWindow, tz: tzinfo, use_cache: bool = True) -> AggregationResult:
        state = AggregationState.PENDING
        logger.debug("Aggregation %s for %s", state.value, window.cache_fragment())

        state = AggregationState.SOURCES_FETCHING
        logger.debug("Aggregation %s", state.value)
        outcomes = await asyncio.gather(
            self.bookings.fetch(window, use_cache=use_cache),
            self.external.fetch(window, use_cache=use_cache),
            self.availability.fetch(window, use_cache=use_cache),
            return_exceptions=True,
        )
        results = [self._settle(kind, outcome) for kind, outcome in zip(SOURCE_KINDS, outcomes)]
        bookings, external, availability = results

        state = AggregationState.MERGING
        logger.debug("Aggregation %s", state.value)
        booking_events, skipped = self.normalizer.normalize_many(bookings.records, BOOKING, tz)
        booking_events = [e for e in booking_events if window.contains(e.start_utc)]

        external_events, skipped_external = self.normalizer.normalize_many(external.records, EXTERNAL, tz)
        skipped += skipped_external
        external_events = [e for e in external_events if window.contains(e.start_utc)]
        external_events = self.detector.filter_duplicates(booking_events, external_events)

        absence_events, skipped_absences = self._expand_absences(availability.records, window, tz)
        skipped += skipped_absences

        merged = sorted(booking_events + external_events + absence_events, key=event_sort_key)
        failures = source_failures(results)
        if failures:
            logger.warning(
                "Calendar for %s is missing %s; returning %d events",
                window.cache_fragment(),
                ", ".join(sorted(failures)),
                len(merged),
            )

        state = AggregationState.DONE
        logger.debug(
            "Aggregation %s: %d bookings, %d external, %d absence segments",
            state.value,
            len(booking_events),
            len(external_events),
            len(absence_events),
        )
        return AggregationResult(
            events=merged,
            window=window,
            degraded=bool(failures),
            failures=failures,
            skipped=skipped,
        )

    def _settle(self, kind: str, outcome: object) -> FetchResult:
        if isinstance(outcome, FetchResult):
            return outcome
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            logger.error("%s fetch raised unexpectedly", kind, exc_info=outcome)
            return FetchResult(kind, error=FetchError(kind, str(outcome), outcome))
        return FetchResult(kind, error=FetchError(kind, f"unexpected fetch outcome {outcome!r}"))

    def _expand_absences(self, records: Sequence, window: TimeWindow, tz: tzinfo) -> tuple[List[Event], int]:
        events: List[Event] = []
        skipped = 0
        for raw in records:
            try:
                events.extend(self.expander.expand(raw, window.start_utc, window.end_utc, tz))
            except MalformedRecordError as exc:
                skipped += 1
                logger.warning("Skipping malformed %s record: %s", AVAILABILITY, exc)
        return events, skipped

    def invalidate_bookings_cache(self) -> None:
        self.bookings.invalidate_all()

    def invalidate_external_cache(self) -> None:
        self.external.invalidate_all()

    def invalidate_availability_cache(self) -> None:
        self.availability.invalidate_all()
