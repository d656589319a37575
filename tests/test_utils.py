from __future__ import annotations

from datetime import date, datetime, time

from congregate.models import Event
from congregate.utils import combine, parse_coordinate, truncate_text


def test_truncate_text_adds_ellipsis_only_when_cut():
    assert truncate_text(None) == ""
    assert truncate_text("Bible study", 40) == "Bible study"
    assert truncate_text("Wednesday night prayer meeting", 10) == "Wednes..."


def test_parse_coordinate_tolerates_blank_and_garbage():
    assert parse_coordinate("32.7767") == 32.7767
    assert parse_coordinate(-96.797) == -96.797
    assert parse_coordinate("  ") is None
    assert parse_coordinate("north") is None
    assert parse_coordinate(None) is None


def test_combine_defaults_to_midnight():
    assert combine(date(2025, 3, 9), None) == datetime(2025, 3, 9)
    assert combine(date(2025, 3, 9), time(18, 30)) == datetime(2025, 3, 9, 18, 30)
    assert combine(None, time(9)) is None


def test_event_end_falls_back_to_start_or_next_midnight():
    timed = Event(event_date=date(2025, 3, 9), start_time=time(18), end_time=None)
    all_day = Event(event_date=date(2025, 3, 9), end_date=date(2025, 3, 10))

    assert timed.ends_at == datetime(2025, 3, 9, 18)
    assert all_day.ends_at == datetime(2025, 3, 11)
    assert all_day.has_ended(datetime(2025, 3, 10, 23, 59)) is False
