from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from calmerge.absence import AbsenceExpander
from calmerge.models import AVAILABILITY
from calmerge.normalize import MalformedRecordError

UTC = timezone.utc
ABSENCE = {
    "id": 42,
    "description": "Vacation",
    "source": "out_of_office",
    "start_time": "2025-06-01T22:00:00Z",
    "end_time": "2025-06-03T10:00:00Z",
}


def _window(start_day: int, end_day: int):
    return (
        datetime(2025, 6, start_day, 0, 0, tzinfo=UTC),
        datetime(2025, 6, end_day, 23, 59, 59, 999000, tzinfo=UTC),
    )


def test_expansion_is_idempotent():
    expander = AbsenceExpander()
    start, end = _window(1, 5)

    first = [e.id for e in expander.expand(ABSENCE, start, end, UTC)]
    second = [e.id for e in expander.expand(ABSENCE, start, end, UTC)]

    assert first == second
    assert first == [
        "availability_42_2025-06-01",
        "availability_42_2025-06-02",
        "availability_42_2025-06-03",
    ]


def test_first_middle_and_last_day_bounds():
    start, end = _window(1, 5)

    first, middle, last = AbsenceExpander().expand(ABSENCE, start, end, UTC)

    assert first.start_utc == datetime(2025, 6, 1, 22, 0, tzinfo=UTC)
    assert first.display_end == "23:59"
    assert middle.display_start == "00:00"
    assert middle.end_utc == datetime(2025, 6, 2, 23, 59, 59, 999000, tzinfo=UTC)
    assert last.start_utc == datetime(2025, 6, 3, 0, 0, tzinfo=UTC)
    assert last.end_utc == datetime(2025, 6, 3, 10, 0, tzinfo=UTC)
    assert {e.source_kind for e in (first, middle, last)} == {AVAILABILITY}
    assert first.title == "Vacation"


def test_window_shift_keeps_segment_ids_stable():
    expander = AbsenceExpander()

    wide = {e.id: e for e in expander.expand(ABSENCE, *_window(1, 5), UTC)}
    narrow = expander.expand(ABSENCE, *_window(2, 2), UTC)

    assert len(narrow) == 1
    assert narrow[0].id in wide
    assert narrow[0].start_utc == datetime(2025, 6, 2, 0, 0, tzinfo=UTC)


def test_no_overlap_returns_nothing():
    assert AbsenceExpander().expand(ABSENCE, *_window(10, 12), UTC) == []


def test_days_follow_display_timezone():
    ny = ZoneInfo("America/New_York")
    start = datetime(2025, 6, 1, 0, 0, tzinfo=ny)
    end = datetime(2025, 6, 5, 23, 59, tzinfo=ny)

    segments = AbsenceExpander().expand(ABSENCE, start, end, ny)

    # 18:00 EDT on June 1 through 06:00 EDT on June 3
    assert [e.id for e in segments] == [
        "availability_42_2025-06-01",
        "availability_42_2025-06-02",
        "availability_42_2025-06-03",
    ]
    assert segments[0].display_start == "18:00"
    assert segments[-1].display_end == "06:00"
    assert segments[0].date_key == "Sunday, June 1, 2025"


def test_absence_ending_at_local_midnight_has_no_empty_tail():
    absence = dict(ABSENCE, start_time="2025-06-01 09:00:00", end_time="2025-06-02 00:00:00")

    segments = AbsenceExpander().expand(absence, *_window(1, 5), UTC)

    assert [e.id for e in segments] == ["availability_42_2025-06-01"]


def test_expansion_does_not_mutate_record():
    record = dict(ABSENCE)

    AbsenceExpander().expand(record, *_window(1, 5), UTC)

    assert record == ABSENCE


def test_unreadable_absence_raises_malformed():
    with pytest.raises(MalformedRecordError):
        AbsenceExpander().expand(dict(ABSENCE, start_time="whenever"), *_window(1, 5), UTC)


def test_zero_length_absence_inside_window_is_kept():
    absence = dict(ABSENCE, start_time="2025-06-02 12:00:00", end_time="2025-06-02 12:00:00")

    segments = AbsenceExpander().expand(absence, *_window(1, 5), UTC)

    assert [e.id for e in segments] == ["availability_42_2025-06-02"]
    assert segments[0].start_utc == segments[0].end_utc
    assert segments[0].display_start == segments[0].display_end == "12:00"


def test_unparseable_time_with_readable_date_uses_raw_display():
    absence = dict(ABSENCE, start_time="2025-06-02 25:99:00", end_time="2025-06-02 26:00:00")
    ny = ZoneInfo("America/New_York")

    segments = AbsenceExpander().expand(absence, *_window(1, 5), ny)

    assert [e.id for e in segments] == ["availability_42_2025-06-02"]
    assert segments[0].display_start == "25:99"
    assert segments[0].display_end == "26:00"
    assert segments[0].title == "Vacation"


def test_unparseable_absence_outside_window_is_dropped():
    absence = dict(ABSENCE, start_time="2025-06-20 25:99:00", end_time=None)

    assert AbsenceExpander().expand(absence, *_window(1, 5), UTC) == []
