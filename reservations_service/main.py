import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import (
    APIRouter,
    Depends,
    FastAPI,
    HTTPException,
    Query,
    Request,
    WebSocket,
    status,
)
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from common.cache import (
    bump_version,
    delete_prefix,
    get_cached_json,
    get_redis_client,
    get_version,
    set_cached_json,
)

from . import models, schemas
from common.auth import get_current_user_claims, get_optional_user_claims, require_roles
from .availability import compute_grid
from .broadcast import InMemoryBroadcastChannel, RedisBroadcastChannel
from .config import get_slot_config
from .database import Base, engine, get_db
from .events import event_to_dict
from .exceptions import (
    InvalidBookingError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceError,
    ReservationError,
    ReservationNotFoundError,
    SlotUnavailableError,
)
from .ledger import RoomDayLocks, SqlAlchemyLedger
from .rate_limiter import reservation_rate_limiter
from .rooms_client import ROOMS_SERVICE_URL, room_is_bookable
from .workflow import Actor, BookingRequest, BookingWorkflow

logger = logging.getLogger(__name__)

# Create tables
Base.metadata.create_all(bind=engine)

SERVICE_NAME = "reservations"

WELCOME_MESSAGE = "Connected to Library Reservation System"
AVAILABILITY_CACHE_PREFIX = "reservations:availability:"
AVAILABILITY_VERSION_PREFIX = "reservations:availability-version:"
AVAILABILITY_CACHE_TTL_SECONDS = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Start the Redis event relay when Redis is configured.

    Without Redis, events are published straight to this process's
    in-memory channel.
    """
    relay_task = None
    client = get_redis_client()
    if client is not None:
        publisher = RedisBroadcastChannel(client)
        app.state.publisher = publisher
        relay_task = asyncio.create_task(
            publisher.relay(app.state.broadcast, os.getenv("REDIS_URL"))
        )
    try:
        yield
    finally:
        if relay_task is not None:
            relay_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await relay_task
        app.state.publisher = app.state.broadcast


app = FastAPI(title="Reservations Service", version="1.0.0", lifespan=lifespan)
router_v1 = APIRouter(prefix="/api/v1")

app.state.broadcast = InMemoryBroadcastChannel()
app.state.publisher = app.state.broadcast
app.state.room_day_locks = RoomDayLocks()


def _error_body(request: Request, status_code: int, detail: Any) -> Dict[str, Any]:
    return {
        "service": SERVICE_NAME,
        "path": request.url.path,
        "method": request.method,
        "status_code": status_code,
        "detail": detail,
    }


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.status_code, exc.detail),
        headers=getattr(exc, "headers", None),
    )


_DOMAIN_ERRORS = (
    (SlotUnavailableError, status.HTTP_409_CONFLICT, "slot_unavailable"),
    (InvalidTransitionError, status.HTTP_409_CONFLICT, "invalid_transition"),
    (InvalidBookingError, status.HTTP_400_BAD_REQUEST, "invalid_booking"),
    (ReservationNotFoundError, status.HTTP_404_NOT_FOUND, "not_found"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "forbidden"),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE, "persistence_failed"),
)


@app.exception_handler(ReservationError)
async def reservation_exception_handler(request: Request, exc: ReservationError):
    """
    Translate domain errors into the service's JSON error envelope.

    The extra ``code`` field lets clients tell a taken slot (pick another
    time and re-fetch the grid) from other failures.
    """
    status_code, code = status.HTTP_400_BAD_REQUEST, "reservation_error"
    for error_cls, mapped_status, mapped_code in _DOMAIN_ERRORS:
        if isinstance(exc, error_cls):
            status_code, code = mapped_status, mapped_code
            break

    if status_code == status.HTTP_503_SERVICE_UNAVAILABLE:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")

    content = _error_body(request, status_code, exc.message)
    content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=500,
        content=_error_body(request, 500, "Internal server error"),
    )


@app.get("/")
def root():
    """
    Health-check endpoint for the Reservations service.

    Returns
    -------
    dict
        A small JSON payload indicating that the service is running.
    """
    return {"service": "reservations", "status": "running"}


admin_only = require_roles("admin")
admin_or_service = require_roles("admin", "service_account")


# ---------- Dependencies ----------


def get_room_day_locks(request: Request) -> RoomDayLocks:
    return request.app.state.room_day_locks


def get_ledger(
    db: Session = Depends(get_db),
    locks: RoomDayLocks = Depends(get_room_day_locks),
) -> SqlAlchemyLedger:
    return SqlAlchemyLedger(db, locks)


def get_publisher(request: Request):
    return request.app.state.publisher


def get_workflow(
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    publisher=Depends(get_publisher),
) -> BookingWorkflow:
    """
    Build the booking workflow for one request.

    Tests override this dependency to inject a fixed clock or config.
    """
    return BookingWorkflow(
        ledger,
        publisher,
        get_slot_config(),
        room_lookup=room_is_bookable if ROOMS_SERVICE_URL else None,
    )


def availability_version_key(room_id: int, day: date) -> str:
    return f"{AVAILABILITY_VERSION_PREFIX}{room_id}:{day.isoformat()}"


def invalidate_availability(reservation: models.Reservation) -> None:
    bump_version(availability_version_key(reservation.room_id, reservation.reservation_date))
    delete_prefix(
        f"{AVAILABILITY_CACHE_PREFIX}{reservation.room_id}:{reservation.reservation_date.isoformat()}:"
    )


def build_availability(room_id: int, day: date, reservations) -> schemas.AvailabilityRead:
    config = get_slot_config()
    return schemas.AvailabilityRead(
        room_id=room_id,
        date=day,
        timezone=config.timezone,
        max_slots=config.max_slots,
        slots=[
            schemas.SlotRead.model_validate(slot)
            for slot in compute_grid(room_id, day, reservations, config)
        ],
    )


# ---------- Availability ----------


@router_v1.get("/rooms/{room_id}/availability", response_model=schemas.AvailabilityRead)
def room_availability(
    room_id: int,
    day: date = Query(..., alias="date"),
    ledger: SqlAlchemyLedger = Depends(get_ledger),
):
    """
    Hourly availability grid of one room for one date.

    Access
    ------
    - Public.

    Behavior
    --------
    - Covers every slot of the date's operating window; empty when the
      library is closed.
    - Cached in Redis for display only. Entries are keyed by a per room
      and date version that every reservation change bumps, so a grid read
      before a change is never served after it. Bookings never read this
      cache.

    Parameters
    ----------
    room_id : int
        Room to report on.
    day : date
        Civil date, passed as ``?date=YYYY-MM-DD``.

    Returns
    -------
    AvailabilityRead
        Grid of slots with availability and holding reservation ids.
    """
    # version is read before the ledger so a concurrent change bumps it past us
    version = get_version(availability_version_key(room_id, day))
    if version is None:
        return build_availability(room_id, day, ledger.list_for_room_and_date(room_id, day))

    cache_key = f"{AVAILABILITY_CACHE_PREFIX}{room_id}:{day.isoformat()}:v{version}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    grid = build_availability(room_id, day, ledger.list_for_room_and_date(room_id, day))
    set_cached_json(cache_key, grid.model_dump(mode="json"), ttl_seconds=AVAILABILITY_CACHE_TTL_SECONDS)
    return grid


@router_v1.get("/availability", response_model=List[schemas.AvailabilityRead])
def availability_for_date(
    day: date = Query(..., alias="date"),
    room_ids: Optional[List[int]] = Query(default=None),
    ledger: SqlAlchemyLedger = Depends(get_ledger),
):
    """
    Availability grids of several rooms for one date.

    Returns a grid for every room listed in ``room_ids`` plus every room
    that has a reservation on that date, ordered by room id.
    """
    reservations = ledger.list_for_date(day)
    wanted = set(room_ids or []) | {r.room_id for r in reservations}
    return [build_availability(room_id, day, reservations) for room_id in sorted(wanted)]


# ---------- Listing ----------


@router_v1.get("/reservations", response_model=List[schemas.ReservationRead])
def list_reservations(
    day: Optional[date] = Query(default=None, alias="date"),
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    claims: Optional[Dict] = Depends(get_optional_user_claims),
):
    """
    Reservations of one date across all rooms, or every reservation.

    Access
    ------
    - With ``?date=``: public, so calendars can render occupancy.
    - Without a date: admin only.
    """
    if day is not None:
        return ledger.list_for_date(day)

    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if claims["role"] != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only administrators can list all reservations",
        )
    return ledger.list_all()


@router_v1.get("/reservations/by-date/{day}", response_model=List[schemas.ReservationRead])
def list_reservations_by_date(
    day: date,
    ledger: SqlAlchemyLedger = Depends(get_ledger),
):
    return ledger.list_for_date(day)


@router_v1.get("/reservations/me", response_model=List[schemas.ReservationRead])
def list_my_reservations(
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    List reservations that belong to the authenticated user.

    Returns
    -------
    List[ReservationRead]
        The caller's reservations, most recent first.
    """
    reservations = ledger.list_for_user(claims["user_id"])
    return sorted(reservations, key=lambda r: r.start_time, reverse=True)


@router_v1.get("/reservations/code/{confirmation_code}", response_model=schemas.ReservationRead)
def get_reservation_by_code(
    confirmation_code: str,
    ledger: SqlAlchemyLedger = Depends(get_ledger),
):
    """
    Look up a reservation by its confirmation code.

    The code is what a guest receives instead of an account, so knowing it
    is enough to read the reservation.
    """
    reservation = ledger.get_by_code(confirmation_code.strip().upper())
    if reservation is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Reservation not found",
        )
    return reservation


@router_v1.get("/reservations/{reservation_id}", response_model=schemas.ReservationRead)
def get_reservation(
    reservation_id: int,
    workflow: BookingWorkflow = Depends(get_workflow),
    claims: Dict = Depends(get_current_user_claims),
):
    """One reservation; owner or admin."""
    return workflow.get(reservation_id, Actor.from_claims(claims))


@router_v1.get("/rooms/{room_id}/reservations", response_model=List[schemas.ReservationRead])
def list_room_reservations(
    room_id: int,
    day: Optional[date] = Query(default=None, alias="date"),
    ledger: SqlAlchemyLedger = Depends(get_ledger),
):
    """Reservations of one room, optionally restricted to one date."""
    if day is not None:
        return ledger.list_for_room_and_date(room_id, day)
    return ledger.list_for_room(room_id)


@router_v1.get("/users/{user_id}/reservations", response_model=List[schemas.ReservationRead])
def list_user_reservations(
    user_id: int,
    ledger: SqlAlchemyLedger = Depends(get_ledger),
    _: Dict = Depends(admin_or_service),
):
    """
    Reservation history of a user, most recent first.

    Access
    ------
    - admin, service_account (used by the Users service).
    """
    reservations = ledger.list_for_user(user_id)
    return sorted(reservations, key=lambda r: r.start_time, reverse=True)


# ---------- Create reservation (guests or users) ----------


@router_v1.post(
    "/reservations",
    response_model=schemas.ReservationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(reservation_rate_limiter)],
)
def create_reservation(
    reservation_in: schemas.ReservationCreate,
    workflow: BookingWorkflow = Depends(get_workflow),
    claims: Optional[Dict] = Depends(get_optional_user_claims),
):
    """
    Book one to ``MAX_RESERVATION_SLOTS`` consecutive hours of a room.

    Access
    ------
    - Authenticated users book for themselves; guest fields are ignored.
    - Anonymous callers must supply guest_name and guest_email.
    - Service accounts cannot create reservations.

    Behavior
    --------
    - Validates date, alignment to whole hours, duration and opening hours.
    - Re-reads the room's reservations and rejects taken hours (409).
    - Stores the reservation; the ledger re-checks overlaps atomically.
    - Announces ``new_reservation`` to every connected viewer. A broadcast
      failure does not fail the request.

    Returns
    -------
    ReservationRead
        The stored reservation, including its confirmation code.

    Raises
    ------
    HTTPException
        400 invalid input, 409 slot unavailable, 503 storage failure.
    """
    if claims is not None and claims["role"] == "service_account":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This role cannot create reservations",
        )

    outcome = workflow.book(
        BookingRequest(**reservation_in.model_dump()),
        Actor.from_claims(claims),
    )
    invalidate_availability(outcome.reservation)
    return outcome.reservation


# ---------- Update / cancel / confirm payment ----------


@router_v1.put(
    "/reservations/{reservation_id}",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(reservation_rate_limiter)],
)
def update_reservation(
    reservation_id: int,
    update_data: schemas.ReservationUpdate,
    workflow: BookingWorkflow = Depends(get_workflow),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Edit the purpose or notes of a reservation.

    Access
    ------
    - Owner of the reservation, or admin.

    Raises
    ------
    HTTPException
        404 missing, 403 not allowed, 409 reservation already cancelled.
    """
    reservation = workflow.update_details(
        reservation_id,
        Actor.from_claims(claims),
        purpose=update_data.purpose,
        notes=update_data.notes,
    )
    invalidate_availability(reservation)
    return reservation


@router_v1.post(
    "/reservations/{reservation_id}/cancel",
    response_model=schemas.ReservationRead,
    dependencies=[Depends(reservation_rate_limiter)],
)
def cancel_reservation(
    reservation_id: int,
    workflow: BookingWorkflow = Depends(get_workflow),
    claims: Dict = Depends(get_current_user_claims),
):
    """
    Cancel a reservation and free its hours.

    Access
    ------
    - Owner of the reservation, or admin. Guest reservations can only be
      cancelled by an admin.

    Behavior
    --------
    - Sets the status to cancelled (the record is kept).
    - Announces ``cancelled_reservation`` to every connected viewer.
    """
    reservation = workflow.cancel(reservation_id, Actor.from_claims(claims))
    invalidate_availability(reservation)
    return reservation


@router_v1.post(
    "/reservations/{reservation_id}/confirm-payment",
    response_model=schemas.ReservationRead,
)
def confirm_reservation_payment(
    reservation_id: int,
    workflow: BookingWorkflow = Depends(get_workflow),
    _: Dict = Depends(admin_or_service),
):
    """
    Mark a pending_payment reservation as confirmed.

    Called once payment has been verified. Only admins and service accounts
    (the payment integration) may do this.
    """
    reservation = workflow.confirm_payment(reservation_id)
    invalidate_availability(reservation)
    return reservation


app.include_router(router_v1)


# ---------- Real-time updates ----------


@app.websocket("/ws")
async def reservation_updates(websocket: WebSocket):
    """
    Push reservation events to a connected viewer.

    Sends an ``info`` message once connected, then every
    ``new_reservation`` / ``updated_reservation`` / ``cancelled_reservation``
    envelope in publish order. Messages from the client are ignored.
    """
    channel: InMemoryBroadcastChannel = websocket.app.state.broadcast
    await websocket.accept()
    subscription = channel.subscribe()
    logger.info(f"WebSocket viewer connected ({channel.subscriber_count} active)")

    async def pump():
        try:
            async for event in subscription.events():
                await websocket.send_json(event_to_dict(event))
        except Exception as exc:
            logger.info(f"Stopped sending to WebSocket viewer: {exc}")

    pump_task = None
    try:
        await websocket.send_json({"type": "info", "message": WELCOME_MESSAGE})
        pump_task = asyncio.create_task(pump())
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            logger.debug("Ignoring message sent by WebSocket client")
    finally:
        if pump_task is not None:
            pump_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump_task
        subscription.close()
        logger.info("WebSocket viewer disconnected")
