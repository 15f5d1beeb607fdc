# reservations_service/events.py
"""
Reservation lifecycle events.

Every event travels as a JSON envelope ``{"type": ..., "data": {...}}``
where ``data`` is the full reservation record. The envelope is a tagged
union discriminated by ``type`` and is validated whenever it crosses a
process boundary (Redis relay, browser clients).
"""

import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from .schemas import ReservationRead

logger = logging.getLogger(__name__)

NEW_RESERVATION = "new_reservation"
UPDATED_RESERVATION = "updated_reservation"
CANCELLED_RESERVATION = "cancelled_reservation"


class NewReservationEvent(BaseModel):
    type: Literal["new_reservation"] = NEW_RESERVATION
    data: ReservationRead


class UpdatedReservationEvent(BaseModel):
    type: Literal["updated_reservation"] = UPDATED_RESERVATION
    data: ReservationRead


class CancelledReservationEvent(BaseModel):
    type: Literal["cancelled_reservation"] = CANCELLED_RESERVATION
    data: ReservationRead


ReservationEvent = Annotated[
    Union[NewReservationEvent, UpdatedReservationEvent, CancelledReservationEvent],
    Field(discriminator="type"),
]

_event_adapter: TypeAdapter = TypeAdapter(ReservationEvent)

_EVENT_TYPES = {
    NEW_RESERVATION: NewReservationEvent,
    UPDATED_RESERVATION: UpdatedReservationEvent,
    CANCELLED_RESERVATION: CancelledReservationEvent,
}


def make_event(event_type: str, reservation: Any) -> ReservationEvent:
    """Build an event from an ORM row or schema instance."""
    try:
        event_cls = _EVENT_TYPES[event_type]
    except KeyError:
        raise ValueError(f"Unknown reservation event type: {event_type}") from None
    return event_cls(data=ReservationRead.model_validate(reservation))


def parse_event(payload: Union[str, bytes, dict]) -> ReservationEvent:
    """
    Validate an incoming envelope.

    Raises
    ------
    pydantic.ValidationError
        If the payload is not a well-formed reservation event.
    """
    if isinstance(payload, (str, bytes)):
        return _event_adapter.validate_json(payload)
    return _event_adapter.validate_python(payload)


def try_parse_event(payload: Union[str, bytes, dict]) -> Optional[ReservationEvent]:
    """Like :func:`parse_event`, but logs and returns None for invalid payloads."""
    try:
        return parse_event(payload)
    except ValidationError as exc:
        logger.warning(f"Dropping malformed reservation event: {exc.error_count()} error(s)")
        return None


def event_to_json(event: ReservationEvent) -> str:
    return event.model_dump_json()


def event_to_dict(event: ReservationEvent) -> dict:
    return event.model_dump(mode="json")
