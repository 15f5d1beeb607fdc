from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    DDL,
    Column,
    Date,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    event,
    literal_column,
    text,
)
from sqlalchemy.dialects.postgresql import ExcludeConstraint

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReservationStatus(str, PyEnum):
    """
    Enumeration of possible reservation statuses.

    Values
    ------
    confirmed
        Reservation holds the room for its time range.
    pending_payment
        Reservation holds the room while payment is being completed.
    cancelled
        Terminal state; the reservation no longer blocks the room.
    """
    CONFIRMED = "confirmed"
    PENDING_PAYMENT = "pending_payment"
    CANCELLED = "cancelled"


class Reservation(Base):
    """
    SQLAlchemy model representing a study-room reservation.

    Attributes
    ----------
    id : int
        Primary key, issued in increasing order.
    room_id : int
        Identifier of the reserved room (owned by the Rooms service).
    user_id : int, optional
        Owner of the reservation; None for guest bookings.
    guest_name, guest_email : str, optional
        Contact details of a guest booking; None when user_id is set.
    reservation_date : date
        Civil date of the reservation.
    start_time, end_time : datetime
        Naive civil datetimes in the deployment timezone, on whole hours.
    status : ReservationStatus
        confirmed / pending_payment / cancelled.
    purpose, notes : str, optional
        Free text; never affects availability.
    confirmation_code : str
        Unique human-readable token, e.g. 'LIB-482913'.
    created_at, updated_at : datetime
        Audit timestamps (UTC).
    """
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    room_id = Column(Integer, index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=True)
    guest_name = Column(String(255), nullable=True)
    guest_email = Column(String(255), nullable=True)
    reservation_date = Column(Date, index=True, nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    status = Column(
        Enum(
            ReservationStatus,
            native_enum=False,
            length=20,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        nullable=False,
        default=ReservationStatus.CONFIRMED,
    )
    purpose = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    confirmation_code = Column(String(16), unique=True, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Storage-level guard against double booking on PostgreSQL: no two
    # non-cancelled reservations of one room may have overlapping [start, end).
    __table_args__ = (
        ExcludeConstraint(
            (literal_column("room_id"), "="),
            (literal_column("tsrange(start_time, end_time, '[)')"), "&&"),
            name="no_room_overlap",
            using="gist",
            where=text("status <> 'cancelled'"),
        ).ddl_if(dialect="postgresql"),
    )

    @property
    def is_guest(self) -> bool:
        return self.user_id is None


event.listen(
    Reservation.__table__,
    "before_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
