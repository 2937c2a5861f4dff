from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Generic, Iterator, Optional, Tuple, TypeVar
import asyncio
import logging

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retrieve_exception(task: asyncio.Task) -> None:
    # Every awaiter may have been cancelled; mark a failure as seen so asyncio stays quiet.
    if not task.cancelled():
        task.exception()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    data: T
    fetched_at: datetime
    ttl: timedelta

    def is_fresh(self, now: datetime) -> bool:
        return now - self.fetched_at < self.ttl


class AggregationCache(Generic[T]):
    """Keyed TTL cache that coalesces concurrent loads of the same key.

    All bookkeeping happens between awaits on a single event loop, so the
    check-then-register step in get_or_load is atomic without a lock. Running
    it from several threads would need one around that step.
    """

    def __init__(self, clock: Callable[[], datetime], name: str = "cache") -> None:
        self.name = name
        self._clock = clock
        self._entries: Dict[str, CacheEntry[T]] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._epoch = 0
        self._generations: Dict[str, int] = {}

    async def get_or_load(
        self,
        key: str,
        ttl: timedelta,
        loader: Callable[[], Awaitable[T]],
        use_cache: bool = True,
    ) -> T:
        if use_cache:
            entry = self._entries.get(key)
            if entry is not None and entry.is_fresh(self._clock()):
                logger.debug("%s hit for %s", self.name, key)
                return entry.data

        pending = self._in_flight.get(key)
        if pending is not None:
            logger.debug("%s joining in-flight load for %s", self.name, key)
            return await asyncio.shield(pending)

        task = asyncio.ensure_future(self._load(key, ttl, loader, self._version(key)))
        task.add_done_callback(_retrieve_exception)
        self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _load(
        self,
        key: str,
        ttl: timedelta,
        loader: Callable[[], Awaitable[T]],
        version: Tuple[int, int],
    ) -> T:
        try:
            data = await loader()
            # An invalidation during the load means the result may predate a mutation.
            if version == self._version(key):
                self._entries[key] = CacheEntry(data=data, fetched_at=self._clock(), ttl=ttl)
            return data
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

    def _version(self, key: str) -> Tuple[int, int]:
        return self._epoch, self._generations.get(key, 0)

    def peek(self, key: str) -> Optional[T]:
        entry = self._entries.get(key)
        if entry is None or not entry.is_fresh(self._clock()):
            return None
        return entry.data

    def fresh_values(self) -> Iterator[T]:
        now = self._clock()
        for entry in list(self._entries.values()):
            if entry.is_fresh(now):
                yield entry.data

    def invalidate(self, key: str) -> None:
        self._entries.pop(key, None)
        # Loads already running keep their awaiters but no longer take new ones.
        self._in_flight.pop(key, None)
        self._generations[key] = self._generations.get(key, 0) + 1

    def invalidate_all(self) -> None:
        self._entries.clear()
        self._in_flight.clear()
        self._generations.clear()
        self._epoch += 1

    def is_loading(self, key: str) -> bool:
        return key in self._in_flight

    def __contains__(self, key: str) -> bool:
        return self.peek(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
