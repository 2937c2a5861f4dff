import logging
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from calmerge.models import BOOKING, EXTERNAL
from calmerge.transport import TransportError

from conftest import BOOKINGS_PATH, StubTransport, build, envelope


@pytest.mark.asyncio
async def test_window_continues_when_external_calendar_fetch_fails(monkeypatch, caplog, clock):
    tz = ZoneInfo("America/Phoenix")
    transport = StubTransport(
        {
            BOOKINGS_PATH: envelope(
                {"bookings": [{"id": 5, "title": "Kickoff", "start_time": "2025-04-21 17:00:00"}]}
            )
        }
    )
    aggregator = build(transport, clock, tz_name="America/Phoenix")

    async def expired(*_args, **_kwargs):
        raise TransportError("invalid_grant", status_code=401)

    monkeypatch.setattr(aggregator.external, "_load", expired)

    with caplog.at_level(logging.WARNING):
        result = await aggregator.get_events_for_window(
            datetime(2025, 4, 21, 0, 0, tzinfo=tz),
            datetime(2025, 4, 22, 0, 0, tzinfo=tz),
        )

    assert [(e.id, e.source_kind) for e in result] == [("5", BOOKING)]
    assert result.degraded
    assert set(result.failures) == {EXTERNAL}
    assert "external fetch failed; continuing without it" in caplog.text
