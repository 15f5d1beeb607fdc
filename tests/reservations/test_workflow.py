import os
import sys
import threading
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_library.db")
os.environ.setdefault("TESTING", "1")

import pytest

from reservations_service.availability import compute_grid
from reservations_service.config import SlotConfig
from reservations_service.exceptions import (
    InvalidBookingError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
    SlotUnavailableError,
)
from reservations_service.ledger import InMemoryLedger
from reservations_service.models import ReservationStatus
from reservations_service.workflow import (
    Actor,
    BookingRequest,
    BookingState,
    BookingWorkflow,
)

NEW_YORK = ZoneInfo("America/New_York")
DAY = date(2025, 4, 7)
# Room #1 is open from 14:00 until midnight in these tests
CONFIG = SlotConfig(weekly=((14, 24),) * 7)

ALICE = Actor(user_id=1, role="regular")
BOB = Actor(user_id=2, role="regular")
ADMIN = Actor(user_id=99, role="admin")
GUEST = Actor()


class RecordingChannel:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return 1


class BrokenChannel:
    def publish(self, event):
        raise ConnectionError("broadcast backend unavailable")


def fixed_clock(hour=8, minute=0):
    return lambda: datetime(2025, 4, 7, hour, minute, tzinfo=NEW_YORK)


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def workflow(ledger, channel):
    return BookingWorkflow(ledger, channel, CONFIG, clock=fixed_clock())


def request_for(start_hour, end_hour, room_id=1, day=DAY, **extra):
    return BookingRequest(
        room_id=room_id,
        reservation_date=day,
        start_time=datetime(day.year, day.month, day.day) + timedelta(hours=start_hour),
        end_time=datetime(day.year, day.month, day.day) + timedelta(hours=end_hour),
        **extra,
    )


# ---------- Scenario: Room #1 on 2025-04-07 ----------


def test_room_one_booking_scenario(workflow, ledger, channel):
    grid = compute_grid(1, DAY, ledger.list_for_room_and_date(1, DAY), CONFIG)
    assert [slot.hour for slot in grid] == list(range(14, 24))
    assert all(slot.available for slot in grid)

    outcome = workflow.book(request_for(14, 15), ALICE)

    assert outcome.state == BookingState.CONFIRMED
    assert outcome.transitions == [
        BookingState.VALIDATING,
        BookingState.PERSISTING,
        BookingState.PUBLISHING,
        BookingState.CONFIRMED,
    ]
    assert outcome.broadcast_delivered is True
    assert channel.events[0].type == "new_reservation"
    assert channel.events[0].data.id == outcome.reservation.id

    grid = compute_grid(1, DAY, ledger.list_for_room_and_date(1, DAY), CONFIG)
    by_hour = {slot.hour: slot for slot in grid}
    assert not by_hour[14].available
    assert by_hour[14].reservation_id == outcome.reservation.id
    assert by_hour[15].available

    with pytest.raises(SlotUnavailableError) as exc_info:
        workflow.book(request_for(14, 15), BOB)
    assert exc_info.value.state == "rejected_slot_unavailable"


def test_concurrent_bookings_admit_exactly_one(ledger, channel):
    workflow = BookingWorkflow(ledger, channel, CONFIG, clock=fixed_clock())
    attempts = 8
    barrier = threading.Barrier(attempts)
    results = []
    lock = threading.Lock()

    def attempt(user_id):
        barrier.wait()
        try:
            workflow.book(request_for(14, 15), Actor(user_id=user_id, role="regular"))
            outcome = "confirmed"
        except SlotUnavailableError:
            outcome = "rejected"
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=attempt, args=(i + 1,)) for i in range(attempts)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count("confirmed") == 1
    assert results.count("rejected") == attempts - 1
    assert len(ledger.list_for_room_and_date(1, DAY)) == 1
    assert len(channel.events) == 1


def test_cancellation_frees_the_slot_for_others(workflow, channel):
    held = workflow.book(request_for(14, 15), ALICE).reservation

    cancelled = workflow.cancel(held.id, ALICE)
    assert cancelled.status == ReservationStatus.CANCELLED
    assert channel.events[-1].type == "cancelled_reservation"

    rebooked = workflow.book(request_for(14, 15), BOB)
    assert rebooked.state == BookingState.CONFIRMED


# ---------- Validation ----------


def test_guest_booking_requires_name_and_email(workflow):
    with pytest.raises(InvalidBookingError) as exc_info:
        workflow.book(request_for(15, 16, guest_name="Ada"), GUEST)
    assert exc_info.value.state == "rejected_invalid_input"

    outcome = workflow.book(
        request_for(15, 16, guest_name="Ada", guest_email="ada@example.com"), GUEST
    )
    assert outcome.reservation.user_id is None
    assert outcome.reservation.guest_email == "ada@example.com"


def test_authenticated_booking_ignores_guest_fields(workflow):
    outcome = workflow.book(
        request_for(15, 16, guest_name="Someone", guest_email="someone@example.com"), ALICE
    )
    assert outcome.reservation.user_id == ALICE.user_id
    assert outcome.reservation.guest_name is None
    assert outcome.reservation.guest_email is None


@pytest.mark.parametrize(
    "start_hour,end_hour",
    [(14, 17), (15, 15), (13, 14), (23, 25)],
)
def test_misaligned_or_oversized_requests_are_rejected(workflow, start_hour, end_hour):
    with pytest.raises(InvalidBookingError):
        workflow.book(request_for(start_hour, end_hour), ALICE)


def test_partial_hours_are_rejected(workflow):
    request = BookingRequest(
        room_id=1,
        reservation_date=DAY,
        start_time=datetime(2025, 4, 7, 14, 30),
        end_time=datetime(2025, 4, 7, 15, 30),
    )
    with pytest.raises(InvalidBookingError):
        workflow.book(request, ALICE)


def test_past_dates_and_elapsed_slots_are_rejected(ledger, channel):
    workflow = BookingWorkflow(ledger, channel, CONFIG, clock=fixed_clock(hour=15, minute=30))

    with pytest.raises(InvalidBookingError):
        workflow.book(request_for(14, 15, day=date(2025, 4, 6)), ALICE)
    with pytest.raises(InvalidBookingError):
        workflow.book(request_for(15, 16), ALICE)

    assert workflow.book(request_for(16, 17), ALICE).state == BookingState.CONFIRMED


def test_dates_beyond_the_horizon_are_rejected(workflow):
    with pytest.raises(InvalidBookingError) as exc_info:
        workflow.book(request_for(14, 15, day=date(2025, 8, 1)), ALICE)
    assert "90 days" in exc_info.value.message


def test_timezone_aware_requests_are_stored_as_civil_time(workflow):
    request = BookingRequest(
        room_id=1,
        reservation_date=DAY,
        start_time=datetime(2025, 4, 7, 18, tzinfo=timezone.utc),
        end_time=datetime(2025, 4, 7, 19, tzinfo=timezone.utc),
    )
    reservation = workflow.book(request, ALICE).reservation
    assert reservation.start_time == datetime(2025, 4, 7, 14)
    assert reservation.end_time == datetime(2025, 4, 7, 15)


def test_unknown_room_is_rejected(ledger, channel):
    workflow = BookingWorkflow(
        ledger, channel, CONFIG, room_lookup=lambda room_id: room_id == 1, clock=fixed_clock()
    )
    with pytest.raises(InvalidBookingError):
        workflow.book(request_for(14, 15, room_id=2), ALICE)
    assert workflow.book(request_for(14, 15, room_id=1), ALICE).state == BookingState.CONFIRMED


# ---------- Failures ----------


def test_broadcast_failure_does_not_fail_the_booking(ledger):
    workflow = BookingWorkflow(ledger, BrokenChannel(), CONFIG, clock=fixed_clock())

    outcome = workflow.book(request_for(14, 15), ALICE)

    assert outcome.state == BookingState.CONFIRMED
    assert outcome.broadcast_delivered is False
    assert BookingState.FAILED_BROADCAST in outcome.transitions
    assert ledger.get(outcome.reservation.id) is not None


def test_persistence_failure_is_reported(channel):
    class FailingLedger(InMemoryLedger):
        def create(self, draft):
            raise PersistenceError("disk full")

    workflow = BookingWorkflow(FailingLedger(), channel, CONFIG, clock=fixed_clock())

    with pytest.raises(PersistenceError) as exc_info:
        workflow.book(request_for(14, 15), ALICE)
    assert exc_info.value.state == "failed_persistence"
    assert channel.events == []


# ---------- Lifecycle ----------


def test_only_owner_or_admin_can_cancel(workflow):
    held = workflow.book(request_for(14, 15), ALICE).reservation

    with pytest.raises(PermissionDeniedError):
        workflow.cancel(held.id, BOB)

    assert workflow.cancel(held.id, ADMIN).status == ReservationStatus.CANCELLED

    with pytest.raises(InvalidTransitionError):
        workflow.cancel(held.id, ALICE)


def test_guest_reservations_are_cancelled_by_admins_only(workflow):
    held = workflow.book(
        request_for(14, 15, guest_name="Ada", guest_email="ada@example.com"), GUEST
    ).reservation

    with pytest.raises(PermissionDeniedError):
        workflow.cancel(held.id, GUEST)
    with pytest.raises(PermissionDeniedError):
        workflow.cancel(held.id, ALICE)

    assert workflow.cancel(held.id, ADMIN).status == ReservationStatus.CANCELLED


def test_payment_confirmation_moves_pending_to_confirmed(workflow, channel):
    outcome = workflow.book(request_for(14, 16, requires_payment=True), ALICE)
    assert outcome.reservation.status == ReservationStatus.PENDING_PAYMENT

    # pending payment still holds the slot
    with pytest.raises(SlotUnavailableError):
        workflow.book(request_for(15, 16), BOB)

    confirmed = workflow.confirm_payment(outcome.reservation.id)
    assert confirmed.status == ReservationStatus.CONFIRMED
    assert channel.events[-1].type == "updated_reservation"

    with pytest.raises(InvalidTransitionError):
        workflow.confirm_payment(outcome.reservation.id)


def test_update_details(workflow, channel):
    held = workflow.book(request_for(14, 15), ALICE).reservation

    updated = workflow.update_details(held.id, ALICE, purpose="Thesis review")
    assert updated.purpose == "Thesis review"
    assert channel.events[-1].type == "updated_reservation"

    with pytest.raises(PermissionDeniedError):
        workflow.update_details(held.id, BOB, notes="hijack")

    workflow.cancel(held.id, ALICE)
    with pytest.raises(InvalidTransitionError):
        workflow.update_details(held.id, ALICE, notes="too late")
