import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from jose import jwt
from sqlalchemy.orm import Session

from common.cache import delete_prefix, get_cached_json, set_cached_json
from common.circuit_breaker import reservations_circuit_breaker

from . import models, schemas
from common.auth import ALGORITHM, SECRET_KEY, require_roles
from .database import Base, engine, get_db

logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

app = FastAPI(title="Rooms Service", version="1.0.0")

router_v1 = APIRouter(prefix="/api/v1")

SERVICE_NAME = "rooms"

SERVICE_ACCOUNT_USERNAME = "rooms_service"
SERVICE_ACCOUNT_USER_ID = 0
SERVICE_ACCOUNT_ROLE = "service_account"

RESERVATIONS_SERVICE_URL = os.getenv(
    "RESERVATIONS_SERVICE_URL",
    "http://reservations_service:8002",  # Docker internal URL
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": exc.status_code,
            "detail": exc.detail,
        },
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content={
            "service": SERVICE_NAME,
            "path": request.url.path,
            "method": request.method,
            "status_code": 500,
            "detail": "Internal server error",
        },
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Rooms service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "rooms", "status": "running"}


admin_only = require_roles("admin")


def make_service_account_token() -> str:
    payload = {
        "sub": SERVICE_ACCOUNT_USERNAME,
        "role": SERVICE_ACCOUNT_ROLE,
        "user_id": SERVICE_ACCOUNT_USER_ID,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


def invalidate_room_cache() -> None:
    delete_prefix("rooms:")
    delete_prefix("room:")


def get_active_location(db: Session, location_id: int) -> models.Location:
    location = db.query(models.Location).filter(models.Location.id == location_id).first()
    if not location or not location.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
    return location


def get_active_room(db: Session, room_id: int) -> models.Room:
    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if not room or not room.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return room


# ---------- Locations ----------


@router_v1.get("/locations", response_model=List[schemas.LocationRead])
def list_locations(db: Session = Depends(get_db)):
    """
    List active library branches, ordered by name.
    """
    return (
        db.query(models.Location)
        .filter(models.Location.is_active.is_(True))
        .order_by(models.Location.name)
        .all()
    )


@router_v1.get("/locations/{location_id}", response_model=schemas.LocationRead)
def get_location(location_id: int, db: Session = Depends(get_db)):
    return get_active_location(db, location_id)


@router_v1.post(
    "/locations",
    response_model=schemas.LocationRead,
    status_code=status.HTTP_201_CREATED,
)
def create_location(
    location_in: schemas.LocationCreate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Create a library branch.

    Access
    ------
    - Allowed roles: admin.
    """
    location = models.Location(**location_in.model_dump())
    db.add(location)
    db.commit()
    db.refresh(location)
    logger.info(f"Location {location.id} '{location.name}' created")
    return location


@router_v1.put("/locations/{location_id}", response_model=schemas.LocationRead)
def update_location(
    location_id: int,
    update_data: schemas.LocationUpdate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Update a library branch. Setting ``is_active`` to false hides the
    branch and its rooms from listings.

    Access
    ------
    - Allowed roles: admin.
    """
    location = db.query(models.Location).filter(models.Location.id == location_id).first()
    if not location:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")

    for field_name, value in update_data.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(location, field_name, value)

    db.add(location)
    db.commit()
    db.refresh(location)
    invalidate_room_cache()
    return location


@router_v1.get("/locations/{location_id}/rooms", response_model=List[schemas.RoomRead])
def list_location_rooms(location_id: int, db: Session = Depends(get_db)):
    """
    List the active rooms of one branch.

    Raises
    ------
    HTTPException
        If the location does not exist or is inactive.
    """
    get_active_location(db, location_id)
    return (
        db.query(models.Room)
        .filter(models.Room.location_id == location_id)
        .filter(models.Room.is_active.is_(True))
        .order_by(models.Room.name)
        .all()
    )


# ---------- Create room ----------


@router_v1.post("/rooms", response_model=schemas.RoomRead, status_code=status.HTTP_201_CREATED)
def create_room(
    room_in: schemas.RoomCreate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Create a new study room.

    Access
    ------
    - Allowed roles: admin.

    Behavior
    --------
    - Ensures that the room name is unique.
    - Requires the location to exist and be active.

    Parameters
    ----------
    room_in : RoomCreate
        New room details.
    db : Session
        Database session.

    Returns
    -------
    RoomRead
        The created room.

    Raises
    ------
    HTTPException
        If the location is unknown or a room with the same name exists.
    """
    get_active_location(db, room_in.location_id)

    existing = db.query(models.Room).filter(models.Room.name == room_in.name).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Room with this name already exists",
        )

    room = models.Room(
        location_id=room_in.location_id,
        name=room_in.name,
        capacity=room_in.capacity,
        description=room_in.description,
        features=models.join_features(room_in.features),
    )
    db.add(room)
    db.commit()
    db.refresh(room)
    invalidate_room_cache()
    logger.info(f"Room {room.id} '{room.name}' created at location {room.location_id}")
    return room


# ---------- List / search rooms ----------


@router_v1.get("/rooms", response_model=List[schemas.RoomRead])
def list_rooms(
    min_capacity: Optional[int] = Query(default=None, ge=1),
    location_id: Optional[int] = Query(default=None, ge=1),
    feature: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Retrieve active rooms with optional filters.

    Behavior
    --------
    - Only returns active rooms of active locations.
    - Supports filtering by:
      * minimum capacity
      * location
      * feature tag (e.g. 'whiteboard', case-insensitive).
    - The unfiltered list is cached in Redis when available.

    Parameters
    ----------
    min_capacity : Optional[int]
        Minimum room capacity.
    location_id : Optional[int]
        Only rooms of this branch.
    feature : Optional[str]
        Tag the room must have.
    db : Session
        Database session.

    Returns
    -------
    List[RoomRead]
        List of rooms matching the filters, ordered by name.
    """
    cacheable = min_capacity is None and location_id is None and not feature
    cache_key = "rooms:all"

    if cacheable:
        cached = get_cached_json(cache_key)
        if cached is not None:
            return cached

    query = (
        db.query(models.Room)
        .join(models.Location)
        .filter(models.Room.is_active.is_(True))
        .filter(models.Location.is_active.is_(True))
    )

    if min_capacity is not None:
        query = query.filter(models.Room.capacity >= min_capacity)

    if location_id is not None:
        query = query.filter(models.Room.location_id == location_id)

    rooms = query.order_by(models.Room.name).all()

    if feature:
        wanted = feature.strip().lower()
        rooms = [r for r in rooms if wanted in (tag.lower() for tag in r.feature_list)]

    if cacheable:
        data = [schemas.RoomRead.model_validate(r).model_dump() for r in rooms]
        set_cached_json(cache_key, data, ttl_seconds=60)
        return data

    return rooms


@router_v1.get("/rooms/{room_id}", response_model=schemas.RoomRead)
def get_room(room_id: int, db: Session = Depends(get_db)):
    """
    Retrieve a single room by its ID.

    Raises
    ------
    HTTPException
        If the room does not exist or is inactive.
    """
    cache_key = f"room:{room_id}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached
    room = get_active_room(db, room_id)
    data = schemas.RoomRead.model_validate(room).model_dump()
    set_cached_json(cache_key, data, ttl_seconds=300)
    return room


# ---------- Update / delete rooms (admin) ----------


@router_v1.put("/rooms/{room_id}", response_model=schemas.RoomRead)
def update_room(
    room_id: int,
    update_data: schemas.RoomUpdate,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Update an existing room.

    Access
    ------
    - Allowed roles: admin.

    Behavior
    --------
    - Allows updating location, name, capacity, description, features and
      the active flag.
    - Ensures that the new name (if changed) remains unique.

    Raises
    ------
    HTTPException
        If the room or new location is not found or the new name conflicts
        with another room.
    """
    room = db.query(models.Room).filter(models.Room.id == room_id).first()
    if not room:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")

    if update_data.name is not None and update_data.name != room.name:
        existing = (
            db.query(models.Room)
            .filter(models.Room.name == update_data.name)
            .first()
        )
        if existing and existing.id != room.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Room with this name already exists",
            )
        room.name = update_data.name

    if update_data.location_id is not None:
        get_active_location(db, update_data.location_id)
        room.location_id = update_data.location_id
    if update_data.capacity is not None:
        room.capacity = update_data.capacity
    if update_data.description is not None:
        room.description = update_data.description
    if update_data.features is not None:
        room.features = models.join_features(update_data.features)
    if update_data.is_active is not None:
        room.is_active = update_data.is_active

    db.add(room)
    db.commit()
    db.refresh(room)
    invalidate_room_cache()
    return room


@router_v1.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_room(
    room_id: int,
    db: Session = Depends(get_db),
    _: dict = Depends(admin_only),
):
    """
    Soft-delete a room by marking it inactive.

    Existing reservations are kept; the room just stops being bookable.

    Raises
    ------
    HTTPException
        If the room is not found or already inactive.
    """
    room = get_active_room(db, room_id)

    room.is_active = False
    db.add(room)
    db.commit()
    invalidate_room_cache()
    logger.info(f"Room {room_id} deactivated")
    return


# ---------- Room status ----------


@router_v1.get("/rooms/{room_id}/status", response_model=schemas.RoomStatus)
def room_status(
    room_id: int,
    day: Optional[date] = Query(default=None, alias="date"),
    start_hour: Optional[int] = Query(default=None, ge=0, le=23),
    duration: int = Query(default=1, ge=1),
    db: Session = Depends(get_db),
):
    """
    Report the status of a room, optionally for a span of hours on a date.

    Behavior
    --------
    - If the room is missing or inactive -> HTTP 404.
    - Without a date: status = "available" (the room exists and is active).
    - With a date but no start_hour: "available" if any slot of the date is
      free, "booked" if every slot is taken, "closed" if the library is
      closed that day.
    - With date and start_hour: asks the Reservations service for the
      date's grid and reports whether every hour of
      [start_hour, start_hour + duration) is free. A duration longer than
      the grid's ``max_slots`` could never be booked -> HTTP 400.

    Raises
    ------
    HTTPException
        400 if duration exceeds the booking limit,
        503 while the circuit to the Reservations service is open,
        502 if the Reservations service cannot be reached or fails.
    """
    room = get_active_room(db, room_id)

    if day is None:
        return {"room_id": room.id, "status": "available"}

    token = make_service_account_token()
    headers = {"Authorization": f"Bearer {token}"}

    # ---- CIRCUIT BREAKER CHECK ----
    if not reservations_circuit_breaker.allow_request():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reservations service temporarily unavailable (circuit open)",
        )

    try:
        resp = httpx.get(
            f"{RESERVATIONS_SERVICE_URL}/api/v1/rooms/{room.id}/availability",
            params={"date": day.isoformat()},
            headers=headers,
            timeout=5.0,
        )
    except httpx.RequestError:
        reservations_circuit_breaker.record_failure()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to contact reservations service for availability",
        )

    if resp.status_code != 200:
        reservations_circuit_breaker.record_failure()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Reservations service returned an error when checking availability",
        )

    reservations_circuit_breaker.record_success()

    payload = resp.json()
    max_slots = payload.get("max_slots")
    if start_hour is not None and max_slots is not None and duration > max_slots:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Reservations are limited to {max_slots} consecutive hours",
        )

    slots = {slot["hour"]: slot["available"] for slot in payload.get("slots", [])}
    if not slots:
        return {"room_id": room.id, "status": "closed"}

    if start_hour is None:
        status_str = "available" if any(slots.values()) else "booked"
        return {"room_id": room.id, "status": status_str}

    hours = range(start_hour, start_hour + duration)
    if any(hour not in slots for hour in hours):
        return {"room_id": room.id, "status": "closed"}
    status_str = "available" if all(slots[hour] for hour in hours) else "booked"
    return {"room_id": room.id, "status": status_str}


app.include_router(router_v1)
