from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
import logging

from .cache import AggregationCache
from .models import AVAILABILITY, BOOKING, EXTERNAL, Identity, TimeWindow
from .transport import Transport, TransportError

logger = logging.getLogger(__name__)

Record = Mapping[str, Any]

BOOKINGS_TTL = timedelta(minutes=5)
EXTERNAL_TTL = timedelta(minutes=5)
# Absences change rarely; a long TTL avoids refetching on every window move.
AVAILABILITY_TTL = timedelta(minutes=30)


class FetchError(Exception):
    """One source could not be fetched. Returned, not raised, by SourceFetcher.fetch."""

    def __init__(self, source_kind: str, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"{source_kind}: {message}")
        self.source_kind = source_kind
        self.message = message
        self.cause = cause


@dataclass
class FetchResult:
    source_kind: str
    records: List[Record] = field(default_factory=list)
    error: Optional[FetchError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def api_timestamp(instant: datetime) -> str:
    return instant.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def record_list(value: Any) -> List[Record]:
    if isinstance(value, list):
        return [r for r in value if isinstance(r, Mapping)]
    return []


class SourceFetcher:
    """Fetches one source through its own cache.

    Subclasses set ``kind`` and implement ``_load``.
    """

    kind = ""
    default_ttl = BOOKINGS_TTL

    def __init__(
        self,
        transport: Transport,
        identity: Identity,
        clock: Callable[[], datetime],
        ttl: Optional[timedelta] = None,
        cache: Optional[AggregationCache] = None,
    ) -> None:
        self.transport = transport
        self.identity = identity
        self.ttl = ttl if ttl is not None else self.default_ttl
        self.cache = cache or AggregationCache(clock, name=f"{self.kind} cache")

    def cache_key(self, window: TimeWindow, **filters: Any) -> str:
        parts = [self.kind, self.identity.user_id, window.cache_fragment()]
        parts.extend(f"{name}={filters[name]}" for name in sorted(filters))
        return "|".join(parts)

    async def fetch(self, window: TimeWindow, use_cache: bool = True, **filters: Any) -> FetchResult:
        key = self.cache_key(window, **filters)
        try:
            records = await self.cache.get_or_load(
                key,
                self.ttl,
                lambda: self._load(window, **filters),
                use_cache=use_cache,
            )
        except TransportError as exc:
            logger.warning("%s fetch failed; continuing without it: %s", self.kind, exc)
            return FetchResult(self.kind, error=FetchError(self.kind, str(exc), exc))
        return FetchResult(self.kind, list(records))

    async def _load(self, window: TimeWindow, **filters: Any) -> List[Record]:
        raise NotImplementedError

    def invalidate_all(self) -> None:
        self.cache.invalidate_all()


class BookingsFetcher(SourceFetcher):
    kind = BOOKING
    default_ttl = BOOKINGS_TTL

    def __init__(self, *args: Any, status: str = "all", page_size: int = 200, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.status = status
        self.page_size = page_size

    async def fetch(self, window: TimeWindow, use_cache: bool = True, **filters: Any) -> FetchResult:
        filters.setdefault("status", self.status)
        return await super().fetch(window, use_cache=use_cache, **filters)

    async def _load(self, window: TimeWindow, status: str = "all", **_: Any) -> List[Record]:
        envelope = await self.transport.get(
            f"user/{self.identity.user_id}/bookings",
            {
                "start_time": api_timestamp(window.start_utc),
                "end_time": api_timestamp(window.end_utc),
                "status": status,
                "page": 1,
                "page_size": self.page_size,
            },
        )
        data = envelope.get("data") or {}
        return record_list(data.get("bookings") if isinstance(data, Mapping) else None)

    def cached_bookings(self) -> List[Record]:
        found: List[Record] = []
        for records in self.cache.fresh_values():
            found.extend(records)
        return found


class ExternalEventsFetcher(SourceFetcher):
    kind = EXTERNAL
    default_ttl = EXTERNAL_TTL

    def __init__(self, *args: Any, sync: str = "auto", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.sync = sync

    async def _load(self, window: TimeWindow, sync: Optional[str] = None, **_: Any) -> List[Record]:
        envelope = await self.transport.get(
            "user/integrations/events",
            {
                "start_date": window.start_utc.date().isoformat(),
                "end_date": window.end_utc.date().isoformat(),
                "sync": sync or self.sync,
            },
        )
        data = envelope.get("data") or {}
        return record_list(data.get("events") if isinstance(data, Mapping) else None)

    async def force_sync(self, window: TimeWindow) -> FetchResult:
        """Ask the API to resync connected calendars, then refresh the cache."""
        self.cache.invalidate_all()
        key = self.cache_key(window)
        try:
            records = await self.cache.get_or_load(
                key, self.ttl, lambda: self._load(window, sync="force"), use_cache=False
            )
        except TransportError as exc:
            logger.warning("external calendar sync failed: %s", exc)
            return FetchResult(self.kind, error=FetchError(self.kind, str(exc), exc))
        return FetchResult(self.kind, list(records))


class AvailabilityFetcher(SourceFetcher):
    kind = AVAILABILITY
    default_ttl = AVAILABILITY_TTL

    def cache_key(self, window: TimeWindow, **filters: Any) -> str:
        # The endpoint returns every absence regardless of window.
        parts = [self.kind, self.identity.user_id]
        parts.extend(f"{name}={filters[name]}" for name in sorted(filters))
        return "|".join(parts)

    async def _load(self, window: TimeWindow, **_: Any) -> List[Record]:
        envelope = await self.transport.get("user/out-of-office")
        return record_list(envelope.get("data"))


def source_failures(results: List[FetchResult]) -> Dict[str, FetchError]:
    return {r.source_kind: r.error for r in results if r.error is not None}
