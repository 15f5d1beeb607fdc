from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from .models import UserRole


# ---------- Input schemas ----------
class UserCreate(BaseModel):
    """
    Schema for user registration input.
    Public registration does NOT accept role; it is assigned internally.
    """
    name: Optional[str] = None
    username: str = Field(..., min_length=3, max_length=100)
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    """
    Schema for updating the authenticated user's profile.

    Only name and email are editable; both are optional.
    """
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class UserRoleUpdate(BaseModel):
    """
    Schema used by admins to change a user's role.
    """
    role: UserRole


# ---------- Output schemas ----------

class UserRead(BaseModel):
    """
    Schema returned when reading user information.

    Exposes safe, non-sensitive fields and hides the password hash.
    """
    id: int
    name: Optional[str] = None
    username: str
    email: EmailStr
    role: UserRole
    is_active: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ReservationHistory(BaseModel):
    """
    A user's reservations as reported by the Reservations service.

    ``reservations`` is passed through unchanged, most recent first.
    """
    user_id: int
    reservations: List[Any]


# ---------- Token schemas ----------

class Token(BaseModel):
    """
    Schema for JWT access token responses.

    Attributes
    ----------
    access_token : str
        Encoded JWT carrying 'sub', 'role' and 'user_id'.
    token_type : str
        Token type, usually 'bearer'.
    """
    access_token: str
    token_type: str = "bearer"
