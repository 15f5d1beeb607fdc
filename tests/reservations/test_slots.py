import os
import sys
from datetime import date, datetime, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_library.db")
os.environ.setdefault("TESTING", "1")

import pytest

from reservations_service.config import (
    SlotConfig,
    load_slot_config,
    parse_weekly_schedule,
    parse_window,
    time_str_to_hour,
)
from reservations_service.slots import (
    OperatingWindow,
    alignment_error,
    hour_offset,
    is_aligned,
    slots_for_day,
    to_civil,
    window_for,
)

MONDAY = date(2025, 4, 7)
SATURDAY = date(2025, 4, 12)

DEFAULT = SlotConfig()


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute)


# ---------- Operating hours ----------


def test_weekday_window_runs_nine_to_nine():
    assert window_for(MONDAY, DEFAULT) == OperatingWindow(9, 21)
    assert slots_for_day(MONDAY, DEFAULT) == list(range(9, 21))


def test_weekend_closes_at_five():
    assert slots_for_day(SATURDAY, DEFAULT) == list(range(9, 17))


def test_calendar_override_replaces_weekly_window():
    holiday = date(2025, 7, 4)
    short_day = date(2025, 12, 24)
    config = SlotConfig(overrides={holiday: None, short_day: (9, 13)})

    assert window_for(holiday, config) is None
    assert slots_for_day(holiday, config) == []
    assert slots_for_day(short_day, config) == [9, 10, 11, 12]


def test_parse_weekly_schedule_accepts_names_and_indexes():
    weekly = parse_weekly_schedule(
        {
            "mon": {"start": "10:00", "end": "18:00"},
            "6": None,
            "sat": ["12:00", "24:00"],
        }
    )
    assert weekly[0] == (10, 18)
    assert weekly[1] == (9, 21)  # not listed, default kept
    assert weekly[5] == (12, 24)
    assert weekly[6] is None


def test_parse_window_forms():
    assert parse_window(None) is None
    assert parse_window({"start": "09:00", "end": "17:00"}) == (9, 17)
    assert parse_window([8, 12]) == (8, 12)
    with pytest.raises(ValueError):
        parse_window("09:00-17:00")


def test_operating_hours_must_be_whole_hours():
    assert time_str_to_hour("21:00") == 21
    with pytest.raises(ValueError):
        time_str_to_hour("09:30")


def test_invalid_window_is_rejected():
    with pytest.raises(ValueError):
        SlotConfig(weekly=((12, 9),) * 7)
    with pytest.raises(ValueError):
        SlotConfig(max_slots=0)


def test_load_slot_config_reads_environment(monkeypatch):
    monkeypatch.setenv("RESERVATION_TIMEZONE", "Europe/Berlin")
    monkeypatch.setenv("MAX_RESERVATION_SLOTS", "3")
    monkeypatch.setenv("OPERATING_HOURS", '{"sun": null}')
    monkeypatch.setenv("CALENDAR_OVERRIDES", '{"2025-04-07": ["10:00", "12:00"]}')

    config = load_slot_config()

    assert config.timezone == "Europe/Berlin"
    assert config.max_slots == 3
    assert config.weekly[6] is None
    assert slots_for_day(MONDAY, config) == [10, 11]


# ---------- Civil time ----------


def test_aware_instants_are_converted_to_civil_time():
    # 18:00 UTC is 14:00 in New York during daylight saving time
    instant = datetime(2025, 4, 7, 18, 0, tzinfo=timezone.utc)
    assert to_civil(instant, DEFAULT) == at(MONDAY, 14)
    assert hour_offset(instant, MONDAY, DEFAULT) == 14


def test_naive_instants_are_already_civil():
    assert to_civil(at(MONDAY, 14), DEFAULT) == at(MONDAY, 14)


def test_hour_offset_rejects_partial_hours_and_other_days():
    assert hour_offset(at(MONDAY, 14, 30), MONDAY, DEFAULT) is None
    assert hour_offset(at(date(2025, 4, 8), 14), MONDAY, DEFAULT) is None
    assert hour_offset(at(date(2025, 4, 8), 0), MONDAY, DEFAULT) == 24


# ---------- Alignment ----------


def test_one_and_two_hour_spans_are_aligned():
    assert is_aligned(MONDAY, at(MONDAY, 14), at(MONDAY, 15), DEFAULT)
    assert is_aligned(MONDAY, at(MONDAY, 14), at(MONDAY, 16), DEFAULT)


def test_misaligned_start_is_rejected():
    error = alignment_error(MONDAY, at(MONDAY, 14, 30), at(MONDAY, 15, 30), DEFAULT)
    assert "whole hours" in error


def test_span_longer_than_max_slots_is_rejected():
    error = alignment_error(MONDAY, at(MONDAY, 14), at(MONDAY, 17), DEFAULT)
    assert "at most 2" in error


def test_end_must_follow_start():
    assert not is_aligned(MONDAY, at(MONDAY, 15), at(MONDAY, 15), DEFAULT)
    assert not is_aligned(MONDAY, at(MONDAY, 15), at(MONDAY, 14), DEFAULT)


def test_span_past_closing_time_is_rejected():
    # weekday closes at 21:00, so 20:00-22:00 overruns even though 20:00 is open
    error = alignment_error(MONDAY, at(MONDAY, 20), at(MONDAY, 22), DEFAULT)
    assert "opening hours" in error
    assert is_aligned(MONDAY, at(MONDAY, 20), at(MONDAY, 21), DEFAULT)


def test_span_on_wrong_date_is_rejected():
    tuesday = date(2025, 4, 8)
    assert not is_aligned(MONDAY, at(tuesday, 14), at(tuesday, 15), DEFAULT)


def test_closed_day_has_no_aligned_spans():
    config = SlotConfig(overrides={MONDAY: None})
    assert alignment_error(MONDAY, at(MONDAY, 14), at(MONDAY, 15), config) == (
        "The library is closed on this date"
    )


def test_last_slot_may_end_at_midnight():
    config = SlotConfig(weekly=((14, 24),) * 7)
    next_midnight = at(date(2025, 4, 8), 0)
    assert is_aligned(MONDAY, at(MONDAY, 23), next_midnight, config)
    assert not is_aligned(MONDAY, at(MONDAY, 23), at(date(2025, 4, 8), 1), config)
