# reservations_service/ledger.py
"""
Reservation ledger: the authoritative store of reservation records.

The ledger is the final authority against double booking. ``create``
re-checks for an overlapping non-cancelled reservation of the same room and
inserts in one step, so two concurrent requests for the same hours cannot
both succeed even if both passed the workflow's pre-check.

Two implementations share one interface and are injected where needed:

- :class:`InMemoryLedger` for tests and single-process tooling.
- :class:`SqlAlchemyLedger` for the service. Check and insert run under a
  per-(room, date) lock in one transaction; on PostgreSQL the
  ``no_room_overlap`` exclusion constraint rejects overlaps across
  processes as well.
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import models
from .exceptions import (
    InvalidTransitionError,
    PersistenceError,
    ReservationNotFoundError,
    SlotUnavailableError,
)
from .models import ReservationStatus, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    ReservationStatus.PENDING_PAYMENT: {ReservationStatus.CONFIRMED, ReservationStatus.CANCELLED},
    ReservationStatus.CONFIRMED: {ReservationStatus.CANCELLED},
    ReservationStatus.CANCELLED: set(),
}

CONFIRMATION_CODE_PREFIX = "LIB"


@dataclass
class ReservationDraft:
    """Validated reservation data, ready to be written."""
    room_id: int
    reservation_date: date
    start_time: datetime
    end_time: datetime
    status: ReservationStatus = ReservationStatus.CONFIRMED
    user_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    purpose: Optional[str] = None
    notes: Optional[str] = None


def generate_confirmation_code() -> str:
    return f"{CONFIRMATION_CODE_PREFIX}-{100000 + secrets.randbelow(900000)}"


def check_transition(current: ReservationStatus, target: ReservationStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(
            f"Cannot change reservation status from {current.value} to {target.value}"
        )


def intervals_overlap(
    start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime
) -> bool:
    """Half-open [start, end) intervals overlap; touching ends do not."""
    return start_a < end_b and start_b < end_a


class ReservationLedger(ABC):
    """Repository interface the booking workflow and the HTTP layer depend on."""

    @abstractmethod
    def create(self, draft: ReservationDraft) -> models.Reservation:
        """
        Insert a reservation, assigning id, confirmation code and timestamps.

        Raises
        ------
        SlotUnavailableError
            If a non-cancelled reservation of the same room overlaps.
        PersistenceError
            If the storage cannot be written.
        """

    @abstractmethod
    def get(self, reservation_id: int) -> Optional[models.Reservation]:
        ...

    @abstractmethod
    def get_by_code(self, confirmation_code: str) -> Optional[models.Reservation]:
        ...

    @abstractmethod
    def list_for_room_and_date(self, room_id: int, day: date) -> List[models.Reservation]:
        """All reservations of one room on one date, cancelled ones included."""

    @abstractmethod
    def list_for_room(self, room_id: int) -> List[models.Reservation]:
        ...

    @abstractmethod
    def list_for_date(self, day: date) -> List[models.Reservation]:
        ...

    @abstractmethod
    def list_for_user(self, user_id: int) -> List[models.Reservation]:
        ...

    @abstractmethod
    def list_all(self) -> List[models.Reservation]:
        ...

    @abstractmethod
    def set_status(self, reservation_id: int, status: ReservationStatus) -> models.Reservation:
        """
        Move a reservation to ``status``.

        Raises
        ------
        ReservationNotFoundError
            If the reservation does not exist.
        InvalidTransitionError
            If the lifecycle does not allow the change.
        """

    @abstractmethod
    def update_details(
        self,
        reservation_id: int,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Reservation:
        ...

    def cancel(self, reservation_id: int) -> models.Reservation:
        return self.set_status(reservation_id, ReservationStatus.CANCELLED)

    def confirm_payment(self, reservation_id: int) -> models.Reservation:
        return self.set_status(reservation_id, ReservationStatus.CONFIRMED)


# ── In-memory ────────────────────────────────────────────────────────────


_COPIED_FIELDS = (
    "id",
    "room_id",
    "user_id",
    "guest_name",
    "guest_email",
    "reservation_date",
    "start_time",
    "end_time",
    "status",
    "purpose",
    "notes",
    "confirmation_code",
    "created_at",
    "updated_at",
)


def _snapshot(record: models.Reservation) -> models.Reservation:
    return models.Reservation(**{name: getattr(record, name) for name in _COPIED_FIELDS})


class InMemoryLedger(ReservationLedger):
    """
    Thread-safe ledger held in process memory.

    Each instance is independent; create one per test or per tool run and
    pass it to the workflow. Returned records are copies.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[int, models.Reservation] = {}
        self._next_id = 1

    def create(self, draft: ReservationDraft) -> models.Reservation:
        with self._lock:
            for existing in self._records.values():
                if (
                    existing.room_id == draft.room_id
                    and existing.status != ReservationStatus.CANCELLED
                    and intervals_overlap(
                        existing.start_time, existing.end_time, draft.start_time, draft.end_time
                    )
                ):
                    raise SlotUnavailableError(
                        f"Room {draft.room_id} is already reserved for this time range"
                    )

            codes = {r.confirmation_code for r in self._records.values()}
            code = generate_confirmation_code()
            while code in codes:
                code = generate_confirmation_code()

            now = utcnow()
            record = models.Reservation(
                id=self._next_id,
                room_id=draft.room_id,
                user_id=draft.user_id,
                guest_name=draft.guest_name,
                guest_email=draft.guest_email,
                reservation_date=draft.reservation_date,
                start_time=draft.start_time,
                end_time=draft.end_time,
                status=draft.status,
                purpose=draft.purpose,
                notes=draft.notes,
                confirmation_code=code,
                created_at=now,
                updated_at=now,
            )
            self._records[record.id] = record
            self._next_id += 1
            return _snapshot(record)

    def _select(self, predicate) -> List[models.Reservation]:
        with self._lock:
            return [
                _snapshot(r)
                for r in sorted(self._records.values(), key=lambda r: (r.start_time, r.id))
                if predicate(r)
            ]

    def get(self, reservation_id: int) -> Optional[models.Reservation]:
        with self._lock:
            record = self._records.get(reservation_id)
            return _snapshot(record) if record else None

    def get_by_code(self, confirmation_code: str) -> Optional[models.Reservation]:
        matches = self._select(lambda r: r.confirmation_code == confirmation_code)
        return matches[0] if matches else None

    def list_for_room_and_date(self, room_id: int, day: date) -> List[models.Reservation]:
        return self._select(lambda r: r.room_id == room_id and r.reservation_date == day)

    def list_for_room(self, room_id: int) -> List[models.Reservation]:
        return self._select(lambda r: r.room_id == room_id)

    def list_for_date(self, day: date) -> List[models.Reservation]:
        return self._select(lambda r: r.reservation_date == day)

    def list_for_user(self, user_id: int) -> List[models.Reservation]:
        return self._select(lambda r: r.user_id == user_id)

    def list_all(self) -> List[models.Reservation]:
        return self._select(lambda r: True)

    def set_status(self, reservation_id: int, status: ReservationStatus) -> models.Reservation:
        with self._lock:
            record = self._records.get(reservation_id)
            if record is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            check_transition(record.status, status)
            record.status = status
            record.updated_at = utcnow()
            return _snapshot(record)

    def update_details(
        self,
        reservation_id: int,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Reservation:
        with self._lock:
            record = self._records.get(reservation_id)
            if record is None:
                raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
            if purpose is not None:
                record.purpose = purpose
            if notes is not None:
                record.notes = notes
            record.updated_at = utcnow()
            return _snapshot(record)


# ── SQLAlchemy ───────────────────────────────────────────────────────────


class RoomDayLocks:
    """
    Registry of per-(room, date) locks.

    Bookings for different rooms or dates never wait on each other. One
    registry is shared by every request of a process (kept on app.state).
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[Tuple[int, date], threading.Lock] = {}

    @contextmanager
    def hold(self, room_id: int, day: date) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault((room_id, day), threading.Lock())
        with lock:
            yield


class SqlAlchemyLedger(ReservationLedger):
    """Ledger backed by the ``reservations`` table."""

    OVERLAP_CONSTRAINT = "no_room_overlap"

    def __init__(self, db: Session, locks: Optional[RoomDayLocks] = None):
        self.db = db
        self.locks = locks or RoomDayLocks()

    def _query(self):
        return self.db.query(models.Reservation)

    def _read(self, query) -> List[models.Reservation]:
        try:
            return query.order_by(models.Reservation.start_time, models.Reservation.id).all()
        except SQLAlchemyError as exc:
            raise PersistenceError("Reservation storage unavailable") from exc

    def _has_conflict(self, draft: ReservationDraft, exclude_id: Optional[int] = None) -> bool:
        q = (
            self._query()
            .filter(models.Reservation.room_id == draft.room_id)
            .filter(models.Reservation.status != ReservationStatus.CANCELLED)
            .filter(models.Reservation.end_time > draft.start_time)
            .filter(models.Reservation.start_time < draft.end_time)
        )
        if exclude_id is not None:
            q = q.filter(models.Reservation.id != exclude_id)
        return self.db.query(q.exists()).scalar()

    def _unique_code(self) -> str:
        while True:
            code = generate_confirmation_code()
            taken = self.db.query(
                self._query().filter(models.Reservation.confirmation_code == code).exists()
            ).scalar()
            if not taken:
                return code

    def create(self, draft: ReservationDraft) -> models.Reservation:
        with self.locks.hold(draft.room_id, draft.reservation_date):
            try:
                if self._has_conflict(draft):
                    raise SlotUnavailableError(
                        f"Room {draft.room_id} is already reserved for this time range"
                    )

                record = models.Reservation(
                    room_id=draft.room_id,
                    user_id=draft.user_id,
                    guest_name=draft.guest_name,
                    guest_email=draft.guest_email,
                    reservation_date=draft.reservation_date,
                    start_time=draft.start_time,
                    end_time=draft.end_time,
                    status=draft.status,
                    purpose=draft.purpose,
                    notes=draft.notes,
                    confirmation_code=self._unique_code(),
                )
                self.db.add(record)
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                if self.OVERLAP_CONSTRAINT in str(exc.orig):
                    raise SlotUnavailableError(
                        f"Room {draft.room_id} is already reserved for this time range"
                    ) from exc
                raise PersistenceError("Reservation could not be stored") from exc
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PersistenceError("Reservation storage unavailable") from exc

        self.db.refresh(record)
        logger.info(
            f"Reservation {record.id} stored for room {record.room_id} "
            f"{record.start_time:%Y-%m-%d %H:%M}-{record.end_time:%H:%M}"
        )
        return record

    def get(self, reservation_id: int) -> Optional[models.Reservation]:
        try:
            return (
                self._query()
                .filter(models.Reservation.id == reservation_id)
                .execution_options(populate_existing=True)
                .first()
            )
        except SQLAlchemyError as exc:
            raise PersistenceError("Reservation storage unavailable") from exc

    def get_by_code(self, confirmation_code: str) -> Optional[models.Reservation]:
        try:
            return (
                self._query()
                .filter(models.Reservation.confirmation_code == confirmation_code)
                .first()
            )
        except SQLAlchemyError as exc:
            raise PersistenceError("Reservation storage unavailable") from exc

    def list_for_room_and_date(self, room_id: int, day: date) -> List[models.Reservation]:
        # Fresh rows, not whatever this session already has in its identity map
        return self._read(
            self._query()
            .filter(models.Reservation.room_id == room_id)
            .filter(models.Reservation.reservation_date == day)
            .execution_options(populate_existing=True)
        )

    def list_for_room(self, room_id: int) -> List[models.Reservation]:
        return self._read(self._query().filter(models.Reservation.room_id == room_id))

    def list_for_date(self, day: date) -> List[models.Reservation]:
        return self._read(self._query().filter(models.Reservation.reservation_date == day))

    def list_for_user(self, user_id: int) -> List[models.Reservation]:
        return self._read(self._query().filter(models.Reservation.user_id == user_id))

    def list_all(self) -> List[models.Reservation]:
        return self._read(self._query())

    def _get_or_raise(self, reservation_id: int, for_update: bool = False) -> models.Reservation:
        query = (
            self._query()
            .filter(models.Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        try:
            record = query.first()
        except SQLAlchemyError as exc:
            raise PersistenceError("Reservation storage unavailable") from exc
        if record is None:
            raise ReservationNotFoundError(f"Reservation {reservation_id} not found")
        return record

    def _commit(self, record: models.Reservation) -> models.Reservation:
        try:
            self.db.add(record)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if self.OVERLAP_CONSTRAINT in str(exc.orig):
                raise SlotUnavailableError(
                    f"Room {record.room_id} is already reserved for this time range"
                ) from exc
            raise PersistenceError("Reservation could not be updated") from exc
        except SQLAlchemyError as exc:
            self.db.rollback()
            raise PersistenceError("Reservation could not be updated") from exc
        self.db.refresh(record)
        return record

    def set_status(self, reservation_id: int, status: ReservationStatus) -> models.Reservation:
        """
        Move a reservation to ``status``.

        The row is re-read under the room/date lock and the UPDATE only
        applies while the status is still the one that was checked, so a
        concurrent cancel cannot be overwritten by a late confirmation.
        """
        located = self._get_or_raise(reservation_id)
        room_id, day = located.room_id, located.reservation_date

        with self.locks.hold(room_id, day):
            record = self._get_or_raise(reservation_id, for_update=True)
            current = record.status
            check_transition(current, status)

            if status != ReservationStatus.CANCELLED and self._has_conflict(
                ReservationDraft(
                    room_id=record.room_id,
                    reservation_date=record.reservation_date,
                    start_time=record.start_time,
                    end_time=record.end_time,
                ),
                exclude_id=record.id,
            ):
                self.db.rollback()
                raise SlotUnavailableError(
                    f"Room {record.room_id} is already reserved for this time range"
                )

            try:
                updated = (
                    self._query()
                    .filter(models.Reservation.id == reservation_id)
                    .filter(models.Reservation.status == current)
                    .update(
                        {"status": status, "updated_at": utcnow()},
                        synchronize_session=False,
                    )
                )
            except SQLAlchemyError as exc:
                self.db.rollback()
                raise PersistenceError("Reservation could not be updated") from exc
            if updated != 1:
                self.db.rollback()
                raise InvalidTransitionError(
                    f"Reservation {reservation_id} changed status concurrently"
                )
            record = self._commit(record)

        logger.info(f"Reservation {record.id} moved from {current.value} to {status.value}")
        return record

    def update_details(
        self,
        reservation_id: int,
        purpose: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> models.Reservation:
        record = self._get_or_raise(reservation_id, for_update=True)
        if purpose is not None:
            record.purpose = purpose
        if notes is not None:
            record.notes = notes
        return self._commit(record)
