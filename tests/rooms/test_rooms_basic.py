import os
import sys
from datetime import date, datetime, timedelta, timezone

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_library.db")
os.environ.setdefault("TESTING", "1")

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt

from common.circuit_breaker import reservations_circuit_breaker
from rooms_service.database import Base, engine
from rooms_service.main import app

SECRET_KEY = "super-secret-library-reservations-key"
ALGORITHM = "HS256"

client = TestClient(app)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    reservations_circuit_breaker.reset()
    yield
    Base.metadata.drop_all(bind=engine)


def make_token(username: str, role: str, user_id: int = 1) -> str:
    payload = {
        "sub": username,
        "role": role,
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=15),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def admin_headers():
    return {"Authorization": f"Bearer {make_token('admin1', 'admin')}"}


def create_location(name="Central Library"):
    res = client.post(
        "/api/v1/locations",
        json={"name": name, "address": "1 Main St", "city": "Springfield"},
        headers=admin_headers(),
    )
    assert res.status_code == 201
    return res.json()["id"]


def create_room(location_id, name="Study Room 1", capacity=4, features=None):
    res = client.post(
        "/api/v1/rooms",
        json={
            "location_id": location_id,
            "name": name,
            "capacity": capacity,
            "features": features if features is not None else ["whiteboard"],
        },
        headers=admin_headers(),
    )
    assert res.status_code == 201
    return res.json()


class FakeResponse:
    def __init__(self, status_code, json_body):
        self.status_code = status_code
        self._json = json_body

    def json(self):
        return self._json


def grid(room_id, taken_hours=(), hours=range(9, 21)):
    return {
        "room_id": room_id,
        "date": "2025-04-07",
        "timezone": "America/New_York",
        "max_slots": 2,
        "slots": [
            {
                "hour": hour,
                "label": f"{hour:02d}:00",
                "available": hour not in taken_hours,
                "reservation_id": 1 if hour in taken_hours else None,
            }
            for hour in hours
        ],
    }


def test_create_room_requires_auth():
    res = client.post(
        "/api/v1/rooms",
        json={"location_id": 1, "name": "Room A", "capacity": 4},
    )
    assert res.status_code in (401, 403)
    assert res.json()["service"] == "rooms"


def test_regular_user_cannot_create_location_or_room():
    headers = {"Authorization": f"Bearer {make_token('user1', 'regular')}"}

    res = client.post("/api/v1/locations", json={"name": "Branch"}, headers=headers)
    assert res.status_code == 403

    location_id = create_location()
    res = client.post(
        "/api/v1/rooms",
        json={"location_id": location_id, "name": "Room A", "capacity": 4},
        headers=headers,
    )
    assert res.status_code == 403


def test_admin_can_create_room_with_features():
    location_id = create_location()

    body = create_room(location_id, features="whiteboard, monitor")

    assert body["name"] == "Study Room 1"
    assert body["location_id"] == location_id
    assert body["features"] == ["whiteboard", "monitor"]
    assert body["is_active"] is True


def test_room_requires_existing_location():
    res = client.post(
        "/api/v1/rooms",
        json={"location_id": 999, "name": "Orphan", "capacity": 2},
        headers=admin_headers(),
    )
    assert res.status_code == 404


def test_locations_list_and_location_rooms():
    central = create_location("Central Library")
    branch = create_location("Westside Branch")
    create_room(central, "Study Room 1")
    create_room(branch, "Study Room 2")

    names = [loc["name"] for loc in client.get("/api/v1/locations").json()]
    assert names == ["Central Library", "Westside Branch"]

    rooms = client.get(f"/api/v1/locations/{branch}/rooms").json()
    assert [r["name"] for r in rooms] == ["Study Room 2"]

    res = client.put(
        f"/api/v1/locations/{branch}",
        json={"is_active": False},
        headers=admin_headers(),
    )
    assert res.status_code == 200
    assert client.get(f"/api/v1/locations/{branch}").status_code == 404
    assert [r["name"] for r in client.get("/api/v1/rooms").json()] == ["Study Room 1"]


def test_room_filters_by_capacity_location_and_feature():
    central = create_location("Central Library")
    branch = create_location("Westside Branch")
    create_room(central, "Small Room", capacity=2, features=["whiteboard"])
    create_room(central, "Group Room", capacity=8, features=["monitor", "Whiteboard"])
    create_room(branch, "Quiet Room", capacity=8, features=["monitor"])

    res = client.get("/api/v1/rooms", params={"min_capacity": 6, "feature": "whiteboard"})
    assert res.status_code == 200
    assert [r["name"] for r in res.json()] == ["Group Room"]

    res = client.get("/api/v1/rooms", params={"location_id": branch})
    assert [r["name"] for r in res.json()] == ["Quiet Room"]


def test_update_room_name_to_existing_one_fails():
    location_id = create_location()
    create_room(location_id, "Room1")
    room2 = create_room(location_id, "Room2")

    res = client.put(
        f"/api/v1/rooms/{room2['id']}",
        json={"name": "Room1"},
        headers=admin_headers(),
    )
    assert res.status_code == 400
    assert "exists" in res.json()["detail"].lower()


def test_update_room_capacity_and_features():
    room = create_room(create_location())

    res = client.put(
        f"/api/v1/rooms/{room['id']}",
        json={"capacity": 6, "features": ["whiteboard", "projector"]},
        headers=admin_headers(),
    )

    assert res.status_code == 200
    assert res.json()["capacity"] == 6
    assert res.json()["features"] == ["whiteboard", "projector"]


def test_admin_can_delete_room_soft():
    room = create_room(create_location())

    res = client.delete(f"/api/v1/rooms/{room['id']}", headers=admin_headers())
    assert res.status_code == 204

    assert client.get(f"/api/v1/rooms/{room['id']}").status_code == 404
    assert room["id"] not in {r["id"] for r in client.get("/api/v1/rooms").json()}


def test_get_nonexistent_room_returns_404():
    res = client.get("/api/v1/rooms/9999")
    assert res.status_code == 404
    assert res.json()["detail"] == "Room not found"


def test_room_status_without_date_is_available():
    room = create_room(create_location())

    res = client.get(f"/api/v1/rooms/{room['id']}/status")

    assert res.status_code == 200
    assert res.json() == {"room_id": room["id"], "status": "available"}


def test_room_status_uses_reservations_availability(monkeypatch):
    room = create_room(create_location())
    room_id = room["id"]
    calls = []

    def fake_httpx_get(url, params=None, headers=None, timeout=None):
        calls.append(url)
        assert url.endswith(f"/api/v1/rooms/{room_id}/availability")
        assert params == {"date": "2025-04-07"}
        assert headers["Authorization"].startswith("Bearer ")
        return FakeResponse(200, grid(room_id, taken_hours={14, 15}))

    monkeypatch.setattr(httpx, "get", fake_httpx_get)

    def status_for(**params):
        res = client.get(
            f"/api/v1/rooms/{room_id}/status",
            params={"date": date(2025, 4, 7).isoformat(), **params},
        )
        assert res.status_code == 200
        return res.json()["status"]

    assert status_for(start_hour=14) == "booked"
    assert status_for(start_hour=13, duration=2) == "booked"
    assert status_for(start_hour=16, duration=2) == "available"
    assert status_for(start_hour=22) == "closed"
    assert status_for() == "available"
    assert len(calls) == 5


def test_room_status_rejects_span_longer_than_booking_limit(monkeypatch):
    room = create_room(create_location())

    monkeypatch.setattr(
        httpx,
        "get",
        lambda url, params=None, headers=None, timeout=None: FakeResponse(
            200, grid(room["id"])
        ),
    )

    path = f"/api/v1/rooms/{room['id']}/status"
    res = client.get(path, params={"date": "2025-04-07", "start_hour": 9, "duration": 5})
    assert res.status_code == 400
    assert "2 consecutive hours" in res.json()["detail"]

    ok = client.get(path, params={"date": "2025-04-07", "start_hour": 9, "duration": 2})
    assert ok.json()["status"] == "available"


def test_room_status_closed_day(monkeypatch):
    room = create_room(create_location())

    monkeypatch.setattr(
        httpx,
        "get",
        lambda url, params=None, headers=None, timeout=None: FakeResponse(
            200, grid(room["id"], hours=[])
        ),
    )

    res = client.get(f"/api/v1/rooms/{room['id']}/status", params={"date": "2025-04-07"})
    assert res.json()["status"] == "closed"


def test_room_status_opens_circuit_after_repeated_failures(monkeypatch):
    room = create_room(create_location())

    def failing_get(url, params=None, headers=None, timeout=None):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr(httpx, "get", failing_get)

    path = f"/api/v1/rooms/{room['id']}/status"
    for _ in range(reservations_circuit_breaker.max_failures):
        assert client.get(path, params={"date": "2025-04-07"}).status_code == 502

    res = client.get(path, params={"date": "2025-04-07"})
    assert res.status_code == 503
    assert "circuit open" in res.json()["detail"]
