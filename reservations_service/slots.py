# reservations_service/slots.py
"""
Hourly slot model.

A room's bookable day is cut into one-hour slots across the operating
window of that date. Slots are identified by the civil hour they start at
(``9`` is 09:00-10:00). Instants are always compared as naive civil
datetimes in the configured timezone; hour ``24`` stands for midnight at
the end of the day.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

from .config import SlotConfig, get_slot_config

HOUR = timedelta(hours=1)


@dataclass(frozen=True)
class OperatingWindow:
    """Bookable hours of one day: ``[open_hour, close_hour)``."""
    open_hour: int
    close_hour: int

    def hours(self) -> List[int]:
        return list(range(self.open_hour, self.close_hour))

    def covers(self, start_hour: int, end_hour: int) -> bool:
        return self.open_hour <= start_hour < end_hour <= self.close_hour


def window_for(day: date, config: Optional[SlotConfig] = None) -> Optional[OperatingWindow]:
    """Operating window for ``day``, or None when the library is closed."""
    config = config or get_slot_config()
    hours = config.window_hours(day)
    if hours is None:
        return None
    return OperatingWindow(*hours)


def slots_for_day(day: date, config: Optional[SlotConfig] = None) -> List[int]:
    """Ordered hour markers of every slot on ``day``. Empty when closed."""
    window = window_for(day, config)
    return window.hours() if window else []


def format_hour(hour: int) -> str:
    return f"{hour:02d}:00"


def to_civil(value: datetime, config: Optional[SlotConfig] = None) -> datetime:
    """
    Express an instant as naive civil time in the configured timezone.

    Aware datetimes are converted; naive ones are taken to already be
    civil time.
    """
    if value.tzinfo is None:
        return value
    config = config or get_slot_config()
    return value.astimezone(config.tz).replace(tzinfo=None)


def day_start(day: date) -> datetime:
    return datetime.combine(day, time.min)


def civil_instant(day: date, hour: int) -> datetime:
    """Naive civil datetime of ``hour`` on ``day`` (24 = next midnight)."""
    return day_start(day) + hour * HOUR


def hour_offset(
    value: datetime,
    day: date,
    config: Optional[SlotConfig] = None,
) -> Optional[int]:
    """
    Whole civil hour of ``value`` relative to the start of ``day``.

    Returns 0..24, or None when ``value`` is not on a whole hour of that
    day (including anything past the following midnight).
    """
    delta = to_civil(value, config) - day_start(day)
    if delta < timedelta(0) or delta > 24 * HOUR:
        return None
    if delta % HOUR:
        return None
    return int(delta // HOUR)


def slot_span(
    day: date,
    start: datetime,
    end: datetime,
    config: Optional[SlotConfig] = None,
) -> Optional[Tuple[int, int]]:
    """``(start_hour, end_hour)`` of a proposed booking, or None if misaligned."""
    start_hour = hour_offset(start, day, config)
    end_hour = hour_offset(end, day, config)
    if start_hour is None or end_hour is None:
        return None
    return start_hour, end_hour


def alignment_error(
    day: date,
    start: datetime,
    end: datetime,
    config: Optional[SlotConfig] = None,
) -> Optional[str]:
    """
    Explain why ``[start, end)`` is not a valid booking span on ``day``.

    Returns None when the span is aligned: both ends on whole hours of
    ``day``, a positive number of slots no longer than ``max_slots``, and
    entirely inside the day's operating window.
    """
    config = config or get_slot_config()

    span = slot_span(day, start, end, config)
    if span is None:
        return "Start and end must fall on whole hours of the reservation date"

    start_hour, end_hour = span
    if end_hour <= start_hour:
        return "end_time must be after start_time"

    slots = end_hour - start_hour
    if slots > config.max_slots:
        return f"Reservations may last at most {config.max_slots} hour(s)"

    window = window_for(day, config)
    if window is None:
        return "The library is closed on this date"
    if not window.covers(start_hour, end_hour):
        return (
            f"Reservations must be within opening hours "
            f"{format_hour(window.open_hour)}-{format_hour(window.close_hour)}"
        )
    return None


def is_aligned(
    day: date,
    start: datetime,
    end: datetime,
    config: Optional[SlotConfig] = None,
) -> bool:
    return alignment_error(day, start, end, config) is None
