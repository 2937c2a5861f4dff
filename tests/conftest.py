from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import pytest

from calmerge.models import Identity
from calmerge.preferences import MemoryPreferenceStore, TIMEZONE_KEY
from calmerge.sources import AvailabilityFetcher, BookingsFetcher, ExternalEventsFetcher
from calmerge.aggregator import CalendarAggregator
from calmerge.timesource import TimeSource

USER_ID = "7"
BOOKINGS_PATH = f"user/{USER_ID}/bookings"
EXTERNAL_PATH = "user/integrations/events"
AVAILABILITY_PATH = "user/out-of-office"


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class StubTransport:
    """Serves canned envelopes per path and records every call."""

    def __init__(self, routes: Optional[Dict[str, Any]] = None, delay: float = 0.01) -> None:
        self.routes: Dict[str, Any] = dict(routes or {})
        self.delay = delay
        self.calls: List[Tuple[str, str, Dict[str, Any], Optional[Dict[str, Any]]]] = []

    def count(self, path: str, method: str = "GET") -> int:
        return sum(1 for m, p, _, _ in self.calls if p == path and m == method)

    async def _respond(self, method: str, path: str, query=None, data=None):
        self.calls.append((method, path, dict(query or {}), data))
        await asyncio.sleep(self.delay)
        response = self.routes.get(path, {"success": True, "data": {}})
        if isinstance(response, BaseException):
            raise response
        if callable(response):
            response = response(query or {})
        return response

    async def get(self, path, query=None):
        return await self._respond("GET", path, query)

    async def post(self, path, data=None, query=None):
        return await self._respond("POST", path, query, data)

    async def put(self, path, data=None, query=None):
        return await self._respond("PUT", path, query, data)

    async def delete(self, path, query=None):
        return await self._respond("DELETE", path, query)


def envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data, "message": ""}


def build(transport: StubTransport, clock: FixedClock, tz_name: str = "America/New_York") -> CalendarAggregator:
    identity = Identity(user_id=USER_ID, organization_id="org-1")
    time_source = TimeSource(MemoryPreferenceStore({TIMEZONE_KEY: tz_name}), clock=clock)
    return CalendarAggregator(
        bookings=BookingsFetcher(transport, identity, time_source.now),
        external=ExternalEventsFetcher(transport, identity, time_source.now),
        availability=AvailabilityFetcher(transport, identity, time_source.now),
        time_source=time_source,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 4, 21, 15, 0, tzinfo=timezone.utc))
