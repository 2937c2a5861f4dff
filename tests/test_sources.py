from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from calmerge.models import BOOKING, EXTERNAL, Identity, TimeWindow
from calmerge.sources import (
    AvailabilityFetcher,
    BookingsFetcher,
    ExternalEventsFetcher,
    FetchError,
    api_timestamp,
)
from calmerge.transport import TransportError

from conftest import AVAILABILITY_PATH, BOOKINGS_PATH, EXTERNAL_PATH, USER_ID, StubTransport, envelope

NY = ZoneInfo("America/New_York")
IDENTITY = Identity(user_id=USER_ID)


def _window(day: int = 21) -> TimeWindow:
    start = datetime(2025, 4, day, 9, 30, tzinfo=NY)
    return TimeWindow.normalized(start, start, NY)


def test_window_is_snapped_to_local_day():
    window = TimeWindow.normalized(datetime(2025, 4, 21, 9, 30, tzinfo=NY), datetime(2025, 4, 21, 17, 0, tzinfo=NY), NY)

    assert window.start_utc == datetime(2025, 4, 21, 4, 0, tzinfo=timezone.utc)
    assert window.end_utc == datetime(2025, 4, 22, 3, 59, 59, 999000, tzinfo=timezone.utc)
    assert window == _window()


@pytest.mark.asyncio
async def test_bookings_query_and_cache_hit(clock):
    transport = StubTransport({BOOKINGS_PATH: envelope({"bookings": [{"id": 1}]})})
    fetcher = BookingsFetcher(transport, IDENTITY, clock)

    first = await fetcher.fetch(_window())
    second = await fetcher.fetch(_window())

    assert first.ok and first.records == [{"id": 1}]
    assert second.records == [{"id": 1}]
    assert transport.count(BOOKINGS_PATH) == 1
    _, _, query, _ = transport.calls[0]
    assert query["start_time"] == "2025-04-21T04:00:00.000Z"
    assert query["end_time"] == "2025-04-22T03:59:59.999Z"
    assert query["status"] == "all"
    assert query["page_size"] == 200


@pytest.mark.asyncio
async def test_status_filter_is_part_of_the_cache_key(clock):
    transport = StubTransport({BOOKINGS_PATH: envelope({"bookings": []})})
    fetcher = BookingsFetcher(transport, IDENTITY, clock)

    await fetcher.fetch(_window(), status="upcoming")
    await fetcher.fetch(_window(), status="pending")

    assert transport.count(BOOKINGS_PATH) == 2
    assert fetcher.cache_key(_window(), status="upcoming") != fetcher.cache_key(_window(), status="pending")


@pytest.mark.asyncio
async def test_failure_is_returned_and_not_cached(clock):
    transport = StubTransport({EXTERNAL_PATH: TransportError("token expired", status_code=401)})
    fetcher = ExternalEventsFetcher(transport, IDENTITY, clock)

    result = await fetcher.fetch(_window())

    assert not result.ok
    assert isinstance(result.error, FetchError)
    assert result.error.source_kind == EXTERNAL
    assert result.records == []

    transport.routes[EXTERNAL_PATH] = envelope({"events": [{"id": "g1"}]})
    retry = await fetcher.fetch(_window())

    assert retry.records == [{"id": "g1"}]
    assert transport.count(EXTERNAL_PATH) == 2


@pytest.mark.asyncio
async def test_external_query_uses_dates_and_auto_sync(clock):
    transport = StubTransport({EXTERNAL_PATH: envelope({"events": []})})

    await ExternalEventsFetcher(transport, IDENTITY, clock).fetch(_window())

    _, _, query, _ = transport.calls[0]
    assert query == {"start_date": "2025-04-21", "end_date": "2025-04-22", "sync": "auto"}


@pytest.mark.asyncio
async def test_force_sync_bypasses_cache(clock):
    transport = StubTransport({EXTERNAL_PATH: envelope({"events": [{"id": "g1"}]})})
    fetcher = ExternalEventsFetcher(transport, IDENTITY, clock)

    await fetcher.fetch(_window())
    synced = await fetcher.force_sync(_window())
    cached = await fetcher.fetch(_window())

    assert synced.ok
    assert [q["sync"] for _, _, q, _ in transport.calls] == ["auto", "force"]
    assert cached.records == [{"id": "g1"}]


@pytest.mark.asyncio
async def test_availability_is_cached_across_windows(clock):
    transport = StubTransport({AVAILABILITY_PATH: envelope([{"id": 42}])})
    fetcher = AvailabilityFetcher(transport, IDENTITY, clock)

    await fetcher.fetch(_window(21))
    await fetcher.fetch(_window(28))
    clock.advance(minutes=29)
    await fetcher.fetch(_window(22))

    assert transport.count(AVAILABILITY_PATH) == 1

    clock.advance(minutes=2)
    await fetcher.fetch(_window(22))

    assert transport.count(AVAILABILITY_PATH) == 2


@pytest.mark.asyncio
async def test_bookings_ttl_is_five_minutes(clock):
    transport = StubTransport({BOOKINGS_PATH: envelope({"bookings": []})})
    fetcher = BookingsFetcher(transport, IDENTITY, clock)

    await fetcher.fetch(_window())
    clock.advance(minutes=4, seconds=59)
    await fetcher.fetch(_window())
    clock.advance(seconds=2)
    await fetcher.fetch(_window())

    assert fetcher.ttl == timedelta(minutes=5)
    assert transport.count(BOOKINGS_PATH) == 2


@pytest.mark.asyncio
async def test_unexpected_payload_shape_yields_no_records(clock):
    transport = StubTransport({BOOKINGS_PATH: envelope(["not", "a", "mapping"])})

    result = await BookingsFetcher(transport, IDENTITY, clock).fetch(_window())

    assert result.ok
    assert result.records == []


def test_api_timestamp_is_utc_with_millis():
    assert api_timestamp(datetime(2025, 4, 21, 0, 0, tzinfo=NY)) == "2025-04-21T04:00:00.000Z"
    assert BookingsFetcher.kind == BOOKING
