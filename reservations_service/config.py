# reservations_service/config.py
"""
Configuration for the reservation slot grid.

Everything is read from environment variables once and cached:

- ``RESERVATION_TIMEZONE``: civil timezone used for every slot comparison
  (default ``America/New_York``).
- ``OPERATING_HOURS``: JSON weekly schedule, keyed by ``mon``..``sun`` or
  ``"0"``..``"6"``. Values are ``{"start": "09:00", "end": "21:00"}``,
  ``["09:00", "21:00"]`` or ``null`` for a closed day. Days that are not
  listed keep the default schedule.
- ``CALENDAR_OVERRIDES``: JSON object keyed by ISO date with the same value
  forms. An override replaces the weekly window for that single date.
- ``MAX_RESERVATION_SLOTS``: longest booking, in slots (default 2).
- ``BOOKING_HORIZON_DAYS``: how far ahead bookings are accepted (default 90).
"""

import json
import os
from dataclasses import dataclass, field
from datetime import date
from functools import lru_cache
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]

# (open_hour, close_hour), close exclusive
Window = Tuple[int, int]

# Library hours: 9am-9pm on weekdays (last slot starts at 20:00),
# 9am-5pm on weekends.
DEFAULT_WEEKLY_HOURS: Tuple[Optional[Window], ...] = (
    (9, 21),
    (9, 21),
    (9, 21),
    (9, 21),
    (9, 21),
    (9, 17),
    (9, 17),
)


def time_str_to_hour(value: str) -> int:
    """Convert ``"HH:MM"`` to a whole hour. The grid is hourly, so minutes must be 0."""
    parts = value.strip().split(":")
    if len(parts) != 2:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    if minute != 0:
        raise ValueError(f"Operating hours must fall on whole hours, got {value!r}")
    if not 0 <= hour <= 24:
        raise ValueError(f"Hour out of range in {value!r}")
    return hour


def parse_window(value: Any) -> Optional[Window]:
    """
    Parse one day's operating window.

    Accepts ``None`` (closed), ``{"start": ..., "end": ...}`` or a
    two-element ``[start, end]`` list of ``"HH:MM"`` strings or integers.
    """
    if value is None:
        return None

    if isinstance(value, dict):
        start, end = value.get("start"), value.get("end")
        if start is None or end is None:
            return None
    elif isinstance(value, (list, tuple)) and len(value) == 2:
        start, end = value
    else:
        raise ValueError(f"Unsupported operating window: {value!r}")

    open_hour = start if isinstance(start, int) else time_str_to_hour(start)
    close_hour = end if isinstance(end, int) else time_str_to_hour(end)
    return (open_hour, close_hour)


def parse_weekly_schedule(raw: Dict[str, Any]) -> Tuple[Optional[Window], ...]:
    """Merge a JSON weekly schedule over the default library hours."""
    weekly = list(DEFAULT_WEEKLY_HOURS)
    for weekday, day_name in enumerate(DAY_NAMES):
        for key in (str(weekday), day_name):
            if key in raw:
                weekly[weekday] = parse_window(raw[key])
                break
    return tuple(weekly)


def parse_overrides(raw: Dict[str, Any]) -> Dict[date, Optional[Window]]:
    return {date.fromisoformat(day): parse_window(value) for day, value in raw.items()}


@dataclass(frozen=True)
class SlotConfig:
    """
    Slot grid configuration.

    Attributes:
        timezone: Civil timezone for every slot comparison
        slot_minutes: Slot width; the library grid is hourly
        max_slots: Longest allowed booking, in slots
        horizon_days: How many days ahead a booking may be made
        weekly: Operating window per weekday (0 = Monday), None = closed
        overrides: Per-date windows replacing the weekly one (holidays)
    """
    timezone: str = "America/New_York"
    slot_minutes: int = 60
    max_slots: int = 2
    horizon_days: int = 90
    weekly: Tuple[Optional[Window], ...] = DEFAULT_WEEKLY_HOURS
    overrides: Dict[date, Optional[Window]] = field(default_factory=dict)

    def __post_init__(self):
        if self.slot_minutes != 60:
            raise ValueError(f"slot_minutes must be 60, got {self.slot_minutes}")
        if self.max_slots < 1:
            raise ValueError(f"max_slots must be at least 1, got {self.max_slots}")
        if len(self.weekly) != 7:
            raise ValueError("weekly schedule must have exactly 7 entries")
        for window in list(self.weekly) + list(self.overrides.values()):
            if window is None:
                continue
            open_hour, close_hour = window
            if not 0 <= open_hour < close_hour <= 24:
                raise ValueError(f"Invalid operating window {window}")
        ZoneInfo(self.timezone)

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def window_hours(self, day: date) -> Optional[Window]:
        """Operating window for ``day``; calendar overrides win over the weekly schedule."""
        if day in self.overrides:
            return self.overrides[day]
        return self.weekly[day.weekday()]


def load_slot_config() -> SlotConfig:
    weekly = DEFAULT_WEEKLY_HOURS
    raw_weekly = os.getenv("OPERATING_HOURS")
    if raw_weekly:
        weekly = parse_weekly_schedule(json.loads(raw_weekly))

    overrides: Dict[date, Optional[Window]] = {}
    raw_overrides = os.getenv("CALENDAR_OVERRIDES")
    if raw_overrides:
        overrides = parse_overrides(json.loads(raw_overrides))

    return SlotConfig(
        timezone=os.getenv("RESERVATION_TIMEZONE", "America/New_York"),
        max_slots=int(os.getenv("MAX_RESERVATION_SLOTS", "2")),
        horizon_days=int(os.getenv("BOOKING_HORIZON_DAYS", "90")),
        weekly=weekly,
        overrides=overrides,
    )


@lru_cache
def get_slot_config() -> SlotConfig:
    """Slot configuration for this process, loaded from the environment once."""
    return load_slot_config()
