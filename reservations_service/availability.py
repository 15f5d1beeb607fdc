# reservations_service/availability.py
"""
Availability engine.

Turns a room's reservations for one date into a per-hour availability grid
and answers "is [start, start + duration) free". Both functions are pure:
the result depends only on the arguments, never on the clock or on shared
state.

Reservation records may be ORM rows, pydantic models or plain mappings.
Records that cannot be read (missing or unparsable start/end) are logged
and skipped; they never make a slot look occupied.
"""

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .config import SlotConfig, get_slot_config
from .slots import HOUR, day_start, format_hour, to_civil, window_for

logger = logging.getLogger(__name__)

BLOCKING_STATUSES = frozenset({"confirmed", "pending_payment"})


@dataclass(frozen=True)
class SlotStatus:
    """One cell of the availability grid."""
    hour: int
    label: str
    available: bool
    reservation_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


# ── Record access ────────────────────────────────────────────────────────


def _field(record: Any, name: str) -> Any:
    if isinstance(record, Mapping):
        return record.get(name)
    return getattr(record, name, None)


def _status_value(status: Any) -> Optional[str]:
    if isinstance(status, Enum):
        return status.value
    return status


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def is_blocking(record: Any) -> bool:
    """Confirmed and pending-payment reservations hold their slots; cancelled ones do not."""
    return _status_value(_field(record, "status")) in BLOCKING_STATUSES


def occupied_hours(
    record: Any,
    day: date,
    config: Optional[SlotConfig] = None,
) -> range:
    """
    Hours of ``day`` covered by ``record``: exactly ``[start_hour, end_hour)``.

    Uses the civil hour components of the start and end instants, without
    rounding, so a reservation ending at 16:00 leaves the 16:00 slot free.
    Unreadable records cover nothing.
    """
    start = _as_datetime(_field(record, "start_time"))
    end = _as_datetime(_field(record, "end_time"))
    if start is None or end is None:
        logger.warning(
            f"Skipping reservation {_field(record, 'id')}: missing or unreadable start/end"
        )
        return range(0)

    origin = day_start(day)
    start_hour = int((to_civil(start, config) - origin) // HOUR)
    end_hour = int((to_civil(end, config) - origin) // HOUR)

    if end_hour <= start_hour:
        logger.warning(
            f"Skipping reservation {_field(record, 'id')}: end is not after start"
        )
        return range(0)

    return range(max(start_hour, 0), min(end_hour, 24))


def _belongs_to(record: Any, room_id: int, day: date, config: Optional[SlotConfig]) -> bool:
    if _field(record, "room_id") != room_id:
        return False

    reservation_date = _as_date(_field(record, "reservation_date"))
    if reservation_date is None:
        start = _as_datetime(_field(record, "start_time"))
        if start is None:
            return False
        reservation_date = to_civil(start, config).date()
    return reservation_date == day


def occupancy(
    room_id: int,
    day: date,
    reservations: Iterable[Any],
    config: Optional[SlotConfig] = None,
) -> Dict[int, Optional[int]]:
    """Map of occupied hour -> id of the reservation holding it."""
    taken: Dict[int, Optional[int]] = {}
    for record in reservations:
        if not is_blocking(record) or not _belongs_to(record, room_id, day, config):
            continue
        for hour in occupied_hours(record, day, config):
            taken.setdefault(hour, _field(record, "id"))
    return taken


# ── Public API ───────────────────────────────────────────────────────────


def compute_grid(
    room_id: int,
    day: date,
    reservations: Iterable[Any],
    config: Optional[SlotConfig] = None,
) -> List[SlotStatus]:
    """
    Availability of every slot in the operating window of ``day``.

    Parameters
    ----------
    room_id : int
        Room the grid is computed for; other rooms' records are ignored.
    day : date
        Civil date of the grid.
    reservations : Iterable
        Reservation records; cancelled ones and other dates are ignored.
    config : SlotConfig, optional
        Slot configuration; the process configuration by default.

    Returns
    -------
    List[SlotStatus]
        One entry per slot, ordered by hour. Empty if the library is closed.
    """
    config = config or get_slot_config()
    window = window_for(day, config)
    if window is None:
        return []

    taken = occupancy(room_id, day, reservations, config)
    return [
        SlotStatus(
            hour=hour,
            label=format_hour(hour),
            available=hour not in taken,
            reservation_id=taken.get(hour),
        )
        for hour in window.hours()
    ]


def is_bookable(
    room_id: int,
    day: date,
    reservations: Iterable[Any],
    start_hour: int,
    duration_slots: int,
    config: Optional[SlotConfig] = None,
) -> bool:
    """
    True iff every slot in ``[start_hour, start_hour + duration_slots)`` is
    inside the operating window and free.
    """
    if duration_slots < 1:
        return False

    config = config or get_slot_config()
    window = window_for(day, config)
    end_hour = start_hour + duration_slots
    if window is None or not window.covers(start_hour, end_hour):
        return False

    taken = occupancy(room_id, day, reservations, config)
    return all(hour not in taken for hour in range(start_hour, end_hour))
