# reservations_service/workflow.py
"""
Booking workflow.

A booking request moves through one state machine::

    VALIDATING -> PERSISTING -> PUBLISHING -> CONFIRMED

with the exits

- REJECTED_INVALID_INPUT: bad identity, date, alignment or duration.
- REJECTED_SLOT_UNAVAILABLE: the hours are taken (pre-check or ledger).
- FAILED_PERSISTENCE: the ledger could not be written; safe to retry.
- FAILED_BROADCAST: the event could not be published. Not fatal; the
  booking is still CONFIRMED and viewers catch up on their next fetch.

Rejections are raised as :mod:`reservations_service.exceptions` errors whose
``state`` names the exit. Nothing is retried automatically.

Cancellation, payment confirmation and detail edits follow the same
write-then-publish policy.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from . import models
from .availability import is_bookable
from .broadcast import publish_safely
from .config import SlotConfig
from .events import (
    CANCELLED_RESERVATION,
    NEW_RESERVATION,
    UPDATED_RESERVATION,
    make_event,
)
from .exceptions import (
    InvalidBookingError,
    InvalidTransitionError,
    PermissionDeniedError,
    ReservationError,
    ReservationNotFoundError,
    SlotUnavailableError,
)
from .ledger import ReservationDraft, ReservationLedger
from .models import ReservationStatus
from .slots import alignment_error, slot_span, to_civil

logger = logging.getLogger(__name__)


class BookingState(str, Enum):
    VALIDATING = "validating"
    PERSISTING = "persisting"
    PUBLISHING = "publishing"
    CONFIRMED = "confirmed"
    REJECTED_SLOT_UNAVAILABLE = "rejected_slot_unavailable"
    REJECTED_INVALID_INPUT = "rejected_invalid_input"
    FAILED_PERSISTENCE = "failed_persistence"
    FAILED_BROADCAST = "failed_broadcast"


@dataclass(frozen=True)
class Actor:
    """Who is acting: an authenticated user, or an anonymous guest."""
    user_id: Optional[int] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def from_claims(cls, claims: Optional[Dict[str, Any]]) -> "Actor":
        if not claims:
            return cls()
        return cls(user_id=claims.get("user_id"), role=claims.get("role"))


@dataclass
class BookingRequest:
    room_id: int
    reservation_date: date
    start_time: datetime
    end_time: datetime
    purpose: Optional[str] = None
    notes: Optional[str] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    requires_payment: bool = False


@dataclass
class BookingOutcome:
    reservation: models.Reservation
    state: BookingState
    transitions: List[BookingState] = field(default_factory=list)
    broadcast_delivered: bool = True


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingWorkflow:
    """
    Validates, persists and announces reservations.

    Parameters
    ----------
    ledger : ReservationLedger
        Authoritative reservation store.
    channel
        Anything with ``publish(event)``: the in-memory or the Redis channel.
    config : SlotConfig
        Slot grid configuration.
    room_lookup : Callable[[int], bool], optional
        Returns whether a room exists and is bookable. Skipped when None.
    clock : Callable[[], datetime], optional
        Current instant (timezone-aware). Injected by tests.
    """

    def __init__(
        self,
        ledger: ReservationLedger,
        channel,
        config: SlotConfig,
        room_lookup: Optional[Callable[[int], bool]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.channel = channel
        self.config = config
        self.room_lookup = room_lookup
        self.clock = clock or _utcnow

    # ---------- Booking ----------

    def book(self, request: BookingRequest, actor: Actor) -> BookingOutcome:
        """
        Run a booking request through the workflow.

        Raises
        ------
        InvalidBookingError
            Request rejected during validation.
        SlotUnavailableError
            The hours are held by another reservation.
        PersistenceError
            The ledger could not be written.
        """
        transitions = [BookingState.VALIDATING]
        try:
            draft = self._validate(request, actor)

            transitions.append(BookingState.PERSISTING)
            reservation = self.ledger.create(draft)
        except ReservationError as exc:
            logger.info(
                f"Booking of room {request.room_id} on {request.reservation_date} "
                f"ended in {exc.state}: {exc.message}"
            )
            raise

        transitions.append(BookingState.PUBLISHING)
        delivered = self._publish(NEW_RESERVATION, reservation)
        if not delivered:
            transitions.append(BookingState.FAILED_BROADCAST)
        transitions.append(BookingState.CONFIRMED)

        logger.info(
            f"Reservation {reservation.id} ({reservation.confirmation_code}) confirmed "
            f"for room {reservation.room_id}"
        )
        return BookingOutcome(
            reservation=reservation,
            state=BookingState.CONFIRMED,
            transitions=transitions,
            broadcast_delivered=delivered,
        )

    def _validate(self, request: BookingRequest, actor: Actor) -> ReservationDraft:
        config = self.config

        if actor.is_authenticated:
            user_id, guest_name, guest_email = actor.user_id, None, None
        elif request.guest_name and request.guest_email:
            user_id, guest_name, guest_email = None, request.guest_name, str(request.guest_email)
        else:
            raise InvalidBookingError("Guest reservations require guest_name and guest_email")

        if self.room_lookup is not None and not self.room_lookup(request.room_id):
            raise InvalidBookingError(f"Room {request.room_id} does not exist or is not active")

        now = to_civil(self.clock(), config)
        day = request.reservation_date
        if day < now.date():
            raise InvalidBookingError("Cannot reserve a date in the past")
        if day > now.date() + timedelta(days=config.horizon_days):
            raise InvalidBookingError(
                f"Reservations can be made at most {config.horizon_days} days in advance"
            )

        error = alignment_error(day, request.start_time, request.end_time, config)
        if error:
            raise InvalidBookingError(error)

        start = to_civil(request.start_time, config)
        end = to_civil(request.end_time, config)
        if start < now:
            raise InvalidBookingError("The requested start time has already passed")

        # Fresh ledger read; the display cache is never consulted here
        start_hour, end_hour = slot_span(day, start, end, config)
        existing = self.ledger.list_for_room_and_date(request.room_id, day)
        if not is_bookable(
            request.room_id, day, existing, start_hour, end_hour - start_hour, config
        ):
            raise SlotUnavailableError(
                f"Room {request.room_id} is not available for the requested time"
            )

        return ReservationDraft(
            room_id=request.room_id,
            reservation_date=day,
            start_time=start,
            end_time=end,
            status=(
                ReservationStatus.PENDING_PAYMENT
                if request.requires_payment
                else ReservationStatus.CONFIRMED
            ),
            user_id=user_id,
            guest_name=guest_name,
            guest_email=guest_email,
            purpose=request.purpose,
            notes=request.notes,
        )

    # ---------- Lookups ----------

    def _load(self, reservation_id: int) -> models.Reservation:
        reservation = self.ledger.get(reservation_id)
        if reservation is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    @staticmethod
    def _authorize(reservation: models.Reservation, actor: Actor) -> None:
        """Admins may act on any reservation; users on their own. Guests hold no session."""
        if actor.is_admin:
            return
        if actor.is_authenticated and reservation.user_id == actor.user_id:
            return
        raise PermissionDeniedError("Not allowed to access this reservation")

    def get(self, reservation_id: int, actor: Actor) -> models.Reservation:
        reservation = self._load(reservation_id)
        self._authorize(reservation, actor)
        return reservation

    # ---------- Lifecycle ----------

    def cancel(self, reservation_id: int, actor: Actor) -> models.Reservation:
        """
        Cancel a reservation, freeing its hours.

        Raises
        ------
        ReservationNotFoundError, PermissionDeniedError, InvalidTransitionError
        """
        self._authorize(self._load(reservation_id), actor)
        reservation = self.ledger.cancel(reservation_id)
        logger.info(f"Reservation {reservation.id} cancelled by user {actor.user_id}")
        self._publish(CANCELLED_RESERVATION, reservation)
        return reservation

    def confirm_payment(self, reservation_id: int) -> models.Reservation:
        """Move a pending_payment reservation to confirmed once payment is verified."""
        current = self._load(reservation_id)
        if current.status != ReservationStatus.PENDING_PAYMENT:
            raise InvalidTransitionError(
                f"Reservation {reservation_id} is not awaiting payment"
            )
        reservation = self.ledger.confirm_payment(reservation_id)
        logger.info(f"Payment confirmed for reservation {reservation.id}")
        self._publish(UPDATED_RESERVATION, reservation)
        return reservation

    def update_details(
        self,
        reservation_id: int,
        actor: Actor,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Reservation:
        current = self._load(reservation_id)
        self._authorize(current, actor)
        if current.status == ReservationStatus.CANCELLED:
            raise InvalidTransitionError("Cancelled reservations cannot be edited")
        reservation = self.ledger.update_details(reservation_id, purpose=purpose, notes=notes)
        self._publish(UPDATED_RESERVATION, reservation)
        return reservation

    def _publish(self, event_type: str, reservation: models.Reservation) -> bool:
        return publish_safely(self.channel, make_event(event_type, reservation)) is not None
