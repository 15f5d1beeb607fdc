from datetime import date, datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field, field_validator

from .models import ReservationStatus


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ReservationCreate(BaseModel):
    """
    Schema for requesting a new reservation.

    Accepts snake_case or the camelCase names used by the browser client
    (``roomId``, ``reservationDate``, ``startTime``, ``endTime``,
    ``guestName``, ``guestEmail``). Start and end are civil times in the
    library's timezone; timezone-aware values are converted.
    Exactly one identity must be present: an authenticated user, or both
    guest_name and guest_email.
    """
    room_id: int = Field(..., ge=1, validation_alias=AliasChoices("room_id", "roomId"))
    reservation_date: date = Field(
        ..., validation_alias=AliasChoices("reservation_date", "reservationDate")
    )
    start_time: datetime = Field(..., validation_alias=AliasChoices("start_time", "startTime"))
    end_time: datetime = Field(..., validation_alias=AliasChoices("end_time", "endTime"))
    purpose: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    guest_name: Optional[str] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("guest_name", "guestName"),
    )
    guest_email: Optional[EmailStr] = Field(
        default=None,
        validation_alias=AliasChoices("guest_email", "guestEmail"),
    )
    requires_payment: bool = Field(
        default=False,
        validation_alias=AliasChoices("requires_payment", "requiresPayment"),
    )

    @field_validator("purpose", "notes", "guest_name")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class ReservationUpdate(BaseModel):
    """
    Schema for editing the free-text fields of a reservation.

    Time, room and status cannot be changed here; status changes go
    through the cancel and confirm-payment endpoints.
    """
    purpose: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("purpose", "notes")
    @classmethod
    def strip_text(cls, value: Optional[str]) -> Optional[str]:
        return _blank_to_none(value)


class ReservationRead(BaseModel):
    """
    Schema returned when reading a reservation, and the payload of every
    real-time event.
    """
    id: int
    room_id: int
    user_id: Optional[int] = None
    guest_name: Optional[str] = None
    guest_email: Optional[str] = None
    reservation_date: date
    start_time: datetime
    end_time: datetime
    status: ReservationStatus
    purpose: Optional[str] = None
    notes: Optional[str] = None
    confirmation_code: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SlotRead(BaseModel):
    """A single hour of the availability grid."""
    hour: int
    label: str
    available: bool
    reservation_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class AvailabilityRead(BaseModel):
    """
    Availability grid of one room for one date.

    ``slots`` is empty when the library is closed on that date.
    """
    room_id: int
    date: date
    timezone: str
    max_slots: int
    slots: List[SlotRead]
