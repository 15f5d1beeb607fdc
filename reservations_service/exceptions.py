# reservations_service/exceptions.py
"""
Domain errors raised by the ledger and the booking workflow.

HTTP handlers translate them into responses; nothing in this package
imports FastAPI for error signalling.
"""

from typing import Optional


class ReservationError(Exception):
    """Base class for reservation errors. ``state`` is the workflow exit state, if any."""

    state: Optional[str] = None

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidBookingError(ReservationError):
    """Client-correctable input problem: misaligned hours, missing identity, bad date."""

    state = "rejected_invalid_input"


class SlotUnavailableError(ReservationError):
    """At least one requested hour is already held by another reservation."""

    state = "rejected_slot_unavailable"


class PersistenceError(ReservationError):
    """The ledger could not be written or read. Safe for the caller to retry."""

    state = "failed_persistence"


class ReservationNotFoundError(ReservationError):
    pass


class PermissionDeniedError(ReservationError):
    pass


class InvalidTransitionError(ReservationError):
    """Requested status change is not allowed from the current status."""
