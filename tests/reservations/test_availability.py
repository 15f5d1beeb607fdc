import logging
import os
import sys
from datetime import date, datetime

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_library.db")
os.environ.setdefault("TESTING", "1")

from reservations_service.availability import compute_grid, is_bookable, occupied_hours
from reservations_service.config import SlotConfig

MONDAY = date(2025, 4, 7)
CONFIG = SlotConfig()


def reservation(rid, start_hour, end_hour, room_id=1, status="confirmed", day=MONDAY):
    return {
        "id": rid,
        "room_id": room_id,
        "reservation_date": day.isoformat(),
        "start_time": datetime(day.year, day.month, day.day, start_hour).isoformat(),
        "end_time": datetime(day.year, day.month, day.day, end_hour).isoformat(),
        "status": status,
    }


def occupied(grid):
    return [slot.hour for slot in grid if not slot.available]


def test_empty_ledger_gives_fully_available_grid():
    grid = compute_grid(1, MONDAY, [], CONFIG)
    assert [slot.hour for slot in grid] == list(range(9, 21))
    assert all(slot.available for slot in grid)
    assert grid[0].label == "09:00"


def test_reservation_blocks_exactly_its_half_open_interval():
    grid = compute_grid(1, MONDAY, [reservation(7, 14, 16)], CONFIG)

    assert occupied(grid) == [14, 15]
    by_hour = {slot.hour: slot for slot in grid}
    assert by_hour[14].reservation_id == 7
    assert by_hour[16].available


def test_cancelled_reservations_do_not_block():
    grid = compute_grid(1, MONDAY, [reservation(1, 14, 15, status="cancelled")], CONFIG)
    assert occupied(grid) == []


def test_pending_payment_reservations_block():
    grid = compute_grid(1, MONDAY, [reservation(1, 10, 11, status="pending_payment")], CONFIG)
    assert occupied(grid) == [10]


def test_other_rooms_and_dates_are_ignored():
    records = [
        reservation(1, 10, 11, room_id=2),
        reservation(2, 12, 13, day=date(2025, 4, 8)),
    ]
    assert occupied(compute_grid(1, MONDAY, records, CONFIG)) == []


def test_grid_is_deterministic_and_order_independent():
    records = [reservation(1, 10, 12), reservation(2, 14, 15), reservation(3, 18, 20)]

    first = compute_grid(1, MONDAY, records, CONFIG)
    again = compute_grid(1, MONDAY, records, CONFIG)
    reversed_order = compute_grid(1, MONDAY, list(reversed(records)), CONFIG)

    assert first == again == reversed_order


def test_malformed_records_are_skipped_and_logged(caplog):
    records = [
        {"id": 1, "room_id": 1, "reservation_date": "2025-04-07", "status": "confirmed"},
        {
            "id": 2,
            "room_id": 1,
            "reservation_date": "2025-04-07",
            "start_time": "not a time",
            "end_time": "2025-04-07T11:00:00",
            "status": "confirmed",
        },
        reservation(3, 15, 14),
        reservation(4, 18, 19),
    ]

    with caplog.at_level(logging.WARNING, logger="reservations_service.availability"):
        grid = compute_grid(1, MONDAY, records, CONFIG)

    assert occupied(grid) == [18]
    assert "Skipping reservation 1" in caplog.text
    assert "Skipping reservation 3" in caplog.text


def test_orm_like_objects_are_accepted():
    class Row:
        id = 5
        room_id = 1
        reservation_date = MONDAY
        start_time = datetime(2025, 4, 7, 9)
        end_time = datetime(2025, 4, 7, 10)
        status = "confirmed"

    assert list(occupied_hours(Row(), MONDAY, CONFIG)) == [9]
    assert occupied(compute_grid(1, MONDAY, [Row()], CONFIG)) == [9]


def test_closed_day_has_empty_grid_and_nothing_bookable():
    config = SlotConfig(overrides={MONDAY: None})
    assert compute_grid(1, MONDAY, [], config) == []
    assert not is_bookable(1, MONDAY, [], 10, 1, config)


def test_is_bookable_checks_window_and_occupancy():
    records = [reservation(1, 14, 16)]

    assert is_bookable(1, MONDAY, records, 12, 2, CONFIG)
    assert is_bookable(1, MONDAY, records, 16, 1, CONFIG)
    assert not is_bookable(1, MONDAY, records, 13, 2, CONFIG)
    assert not is_bookable(1, MONDAY, records, 15, 1, CONFIG)
    assert not is_bookable(1, MONDAY, records, 8, 1, CONFIG)
    assert not is_bookable(1, MONDAY, records, 20, 2, CONFIG)
    assert not is_bookable(1, MONDAY, records, 10, 0, CONFIG)
