# reservations_service/viewer.py
"""
Client-side view of one date's reservations.

A viewer fetches the reservations of the date it displays, then keeps them
current from the event stream instead of re-fetching. Events are applied by
reservation id, so a duplicate delivery changes nothing, and events for
other dates are ignored. An event older than the stored version (by
``updated_at``), or any event for a reservation already seen cancelled,
is ignored as a late duplicate. After a reconnect the viewer must call
``load`` again; the channel does not replay missed events.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from .availability import SlotStatus, compute_grid
from .config import SlotConfig, get_slot_config
from .events import ReservationEvent, try_parse_event
from .models import ReservationStatus
from .schemas import ReservationRead


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _is_stale(incoming: ReservationRead, known: ReservationRead) -> bool:
    """True when ``incoming`` is an older version of ``known``."""
    # cancelled is terminal, nothing can follow it
    if known.status == ReservationStatus.CANCELLED:
        return True
    incoming_at, known_at = _as_utc(incoming.updated_at), _as_utc(known.updated_at)
    return incoming_at is not None and known_at is not None and incoming_at < known_at


class ReservationView:
    def __init__(self, day: date, config: Optional[SlotConfig] = None):
        self.day = day
        self.config = config or get_slot_config()
        self._reservations: Dict[int, ReservationRead] = {}

    @property
    def reservations(self) -> List[ReservationRead]:
        return sorted(self._reservations.values(), key=lambda r: (r.start_time, r.id))

    def load(self, reservations: Iterable[Any]) -> None:
        """Replace the local state with a full fetch for ``day``."""
        self._reservations = {}
        for record in reservations:
            reservation = ReservationRead.model_validate(record)
            if reservation.reservation_date == self.day:
                self._reservations[reservation.id] = reservation

    def apply(self, envelope: Union[str, bytes, dict, ReservationEvent]) -> bool:
        """
        Apply one event envelope.

        Returns True when the local state changed. Malformed envelopes are
        logged and ignored.
        """
        if isinstance(envelope, (str, bytes, dict)):
            event = try_parse_event(envelope)
            if event is None:
                return False
        else:
            event = envelope

        reservation = event.data
        if reservation.reservation_date != self.day:
            return False

        known = self._reservations.get(reservation.id)
        if known is not None and (known == reservation or _is_stale(reservation, known)):
            return False
        self._reservations[reservation.id] = reservation
        return True

    def grid(self, room_id: int) -> List[SlotStatus]:
        return compute_grid(room_id, self.day, self._reservations.values(), self.config)
