from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserRole(str, PyEnum):
    """
    Enumeration of the supported user roles.

    Roles
    -----
    admin
        Library staff: manages locations and rooms, sees and cancels any
        reservation.
    regular
        Patron with an account; books and manages their own reservations.
    service_account
        Non-human account used for inter-service communication.
    """
    ADMIN = "admin"
    REGULAR = "regular"
    SERVICE_ACCOUNT = "service_account"


class User(Base):
    """
    SQLAlchemy model for library accounts.

    Attributes
    ----------
    id : int
        Primary key; reservations refer to it as user_id.
    name : str, optional
        Display name.
    username : str
        Unique username used for login.
    email : str
        Unique email address of the user.
    hashed_password : str
        Bcrypt-hashed password.
    role : UserRole
        Role controlling access privileges.
    is_active : bool
        Flag indicating whether the user is active.
    created_at : datetime
        Timestamp of user creation.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=True)
    username = Column(String(100), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.REGULAR)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN
