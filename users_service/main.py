import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import List

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from jose import jwt
from sqlalchemy.orm import Session

from common.cache import delete_prefix, get_cached_json, set_cached_json
from common.circuit_breaker import reservations_circuit_breaker

from . import models, schemas
from .auth import (
    ALGORITHM,
    SECRET_KEY,
    authenticate_user,
    create_access_token,
    get_current_user,
    get_password_hash,
    require_roles,
)
from .database import Base, engine, get_db
from .models import UserRole
from .rate_limiter import ip_rate_limiter

logger = logging.getLogger(__name__)

# Create tables on startup
Base.metadata.create_all(bind=engine)

app = FastAPI(title="Users Service", version="1.0.0")
SERVICE_NAME = "users"
router_v1 = APIRouter(prefix="/api/v1")

RESERVATIONS_SERVICE_URL = os.getenv(
    "RESERVATIONS_SERVICE_URL",
    "http://reservations_service:8002",  # Docker internal hostname:port
)

SERVICE_ACCOUNT_USERNAME = "users_service"
SERVICE_ACCOUNT_USER_ID = 0
SERVICE_ACCOUNT_ROLE = "service_account"


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


def make_service_account_token() -> str:
    payload = {
        "sub": SERVICE_ACCOUNT_USERNAME,
        "role": SERVICE_ACCOUNT_ROLE,
        "user_id": SERVICE_ACCOUNT_USER_ID,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    return jwt.encode(payload, SECRET_KEY, algorithm=ALGORITHM)


@app.get("/")
def root():
    return {"service": "users", "status": "running"}


admin_only = require_roles([UserRole.ADMIN])


# ---------- Password Strength ----------

def validate_password_strength(password: str):
    """
    Validate password complexity rules.

    A valid password is at least 8 characters long and contains at least
    one letter and one digit.

    Raises
    ------
    HTTPException
        400 if the password does not meet the requirements.
    """
    if len(password) < 8:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must be at least 8 characters long",
        )
    if not re.search(r"[A-Za-z]", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one letter",
        )
    if not re.search(r"\d", password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Password must contain at least one digit",
        )


def ensure_email_free(db: Session, email: str, user_id: int) -> None:
    owner = db.query(models.User).filter(models.User.email == email).first()
    if owner and owner.id != user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already in use",
        )


def get_user_or_404(db: Session, user_id: int) -> models.User:
    user = db.query(models.User).filter(models.User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


# ---------- Registration & login ----------

@router_v1.post(
    "/users/register",
    response_model=schemas.UserRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(ip_rate_limiter)],
)
def register_user(user_in: schemas.UserCreate, db: Session = Depends(get_db)):
    """
    Register a new library account.

    Behavior
    --------
    - The first account ever created becomes the library administrator.
    - Every later registration is a regular patron.
    - Username and email must be unique.
    - Password strength is validated before hashing.

    Raises
    ------
    HTTPException
        If username/email already exist or the password is weak.
    """
    existing = (
        db.query(models.User)
        .filter(
            (models.User.username == user_in.username)
            | (models.User.email == user_in.email)
        )
        .first()
    )
    if existing:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Username or email already exists",
        )

    validate_password_strength(user_in.password)

    assigned_role = UserRole.ADMIN if db.query(models.User).count() == 0 else UserRole.REGULAR
    user = models.User(
        name=user_in.name,
        username=user_in.username,
        email=user_in.email,
        hashed_password=get_password_hash(user_in.password),
        role=assigned_role,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Registered user {user.id} '{user.username}' as {assigned_role.value}")
    return user


@router_v1.post("/users/login", response_model=schemas.Token, dependencies=[Depends(ip_rate_limiter)])
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    """
    Authenticate a user and return a JWT access token.

    Returns
    -------
    Token
        Access token with username, role and user_id embedded.

    Raises
    ------
    HTTPException
        401 if the credentials are wrong or the account is inactive.
    """
    user = authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
        )

    return {"access_token": create_access_token(user), "token_type": "bearer"}


# ---------- Current user profile ----------

@router_v1.get("/users/me", response_model=schemas.UserRead)
def get_my_profile(current_user: models.User = Depends(get_current_user)):
    return current_user


@router_v1.put("/users/me", response_model=schemas.UserRead)
def update_my_profile(
    update_data: schemas.UserUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_user),
):
    """
    Update the authenticated user's name and/or email.

    Raises
    ------
    HTTPException
        400 if the new email is already used by another account.
    """
    if update_data.name is not None:
        current_user.name = update_data.name

    if update_data.email is not None and update_data.email != current_user.email:
        ensure_email_free(db, update_data.email, current_user.id)
        current_user.email = update_data.email

    db.add(current_user)
    db.commit()
    db.refresh(current_user)
    delete_prefix(f"user:{current_user.id}")
    return current_user


# ---------- Admin: list, get, change role, delete ----------

@router_v1.get("/users", response_model=List[schemas.UserRead])
def list_users(
    db: Session = Depends(get_db),
    _: models.User = Depends(admin_only),
):
    """
    Admin: Retrieve all users, ordered by id.
    """
    return db.query(models.User).order_by(models.User.id).all()


@router_v1.get("/users/{user_id}", response_model=schemas.UserRead)
def get_user_admin(
    user_id: int,
    db: Session = Depends(get_db),
    _: models.User = Depends(admin_only),
):
    """
    Admin: Retrieve one user by ID.

    Raises
    ------
    HTTPException
        If the user does not exist.
    """
    cache_key = f"user:{user_id}"
    cached = get_cached_json(cache_key)
    if cached is not None:
        return cached

    user = get_user_or_404(db, user_id)
    data = schemas.UserRead.model_validate(user).model_dump()
    set_cached_json(cache_key, data, ttl_seconds=300)
    return user


@router_v1.put("/users/{user_id}/role", response_model=schemas.UserRead)
def change_user_role(
    user_id: int,
    role_update: schemas.UserRoleUpdate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(admin_only),
):
    """
    Admin: Change a user's role.

    An administrator cannot demote themselves, so the library always keeps
    at least one admin.
    """
    user = get_user_or_404(db, user_id)

    if user.id == current_user.id and role_update.role != UserRole.ADMIN:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Administrators cannot remove their own admin role",
        )

    user.role = role_update.role
    db.add(user)
    db.commit()
    db.refresh(user)
    delete_prefix(f"user:{user_id}")
    logger.info(f"User {user.id} role changed to {user.role.value}")
    return user


@router_v1.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user_admin(
    user_id: int,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(admin_only),
):
    """
    Admin: Delete a user by ID.

    The user's reservations are kept by the Reservations service.

    Raises
    ------
    HTTPException
        404 if the user is not found, 400 when deleting oneself.
    """
    user = get_user_or_404(db, user_id)
    if user.id == current_user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Administrators cannot delete their own account",
        )

    db.delete(user)
    db.commit()
    delete_prefix(f"user:{user_id}")
    return


# ---------- Reservation history ----------

@router_v1.get("/users/{user_id}/reservations", response_model=schemas.ReservationHistory)
def get_user_reservation_history(
    user_id: int,
    current_user: models.User = Depends(get_current_user),
):
    """
    Reservation history of a user, fetched from the Reservations service.

    Access
    ------
    - The user themselves, or an admin.

    Raises
    ------
    HTTPException
        403 for other users, 503 while the circuit to the Reservations
        service is open, 502 if the Reservations service fails.
    """
    if not (current_user.is_admin or current_user.id == user_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to view reservation history for this user",
        )

    # ---- CIRCUIT BREAKER CHECK ----
    if not reservations_circuit_breaker.allow_request():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Reservations service temporarily unavailable (circuit open)",
        )

    headers = {"Authorization": f"Bearer {make_service_account_token()}"}

    try:
        response = httpx.get(
            f"{RESERVATIONS_SERVICE_URL}/api/v1/users/{user_id}/reservations",
            headers=headers,
            timeout=5.0,
        )
    except httpx.RequestError:
        reservations_circuit_breaker.record_failure()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to contact reservations service",
        )

    if response.status_code != 200:
        reservations_circuit_breaker.record_failure()
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Reservations service returned an error",
        )

    reservations_circuit_breaker.record_success()
    return {"user_id": user_id, "reservations": response.json()}


app.include_router(router_v1)
