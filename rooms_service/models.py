from datetime import datetime, timezone
from typing import List

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Location(Base):
    """
    SQLAlchemy model representing a library branch.

    Attributes
    ----------
    id : int
        Primary key.
    name : str
        Branch name (e.g. 'Central Library').
    address, city, state, zip_code, phone_number : str, optional
        Contact details shown to patrons.
    is_active : bool
        Inactive branches and their rooms are hidden from listings.
    """
    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    address = Column(String(255), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(50), nullable=True)
    zip_code = Column(String(20), nullable=True)
    phone_number = Column(String(50), nullable=True)
    is_active = Column(Boolean, default=True)

    rooms = relationship("Room", back_populates="location")


class Room(Base):
    """
    SQLAlchemy model representing a bookable study room.

    Attributes
    ----------
    id : int
        Primary key; reservations refer to it as room_id.
    location_id : int
        Branch the room belongs to.
    name : str
        Unique room name (e.g. 'Study Room 1').
    capacity : int
        Number of seats. Informational only; bookings never check it.
    description : str, optional
        Free text shown on the room card.
    features : str, optional
        Comma-separated tags (e.g. 'whiteboard,monitor').
    is_active : bool
        Soft-delete flag; inactive rooms cannot be booked.
    created_at : datetime
        Timestamp recording when the room was created.
    """
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False, index=True)
    name = Column(String(100), unique=True, nullable=False, index=True)
    capacity = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    features = Column(String(255), nullable=True)  # comma-separated list
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=utcnow)

    location = relationship("Location", back_populates="rooms")

    @property
    def feature_list(self) -> List[str]:
        return split_features(self.features)


def split_features(value) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        value = value.split(",")
    return [tag.strip() for tag in value if tag and tag.strip()]


def join_features(tags) -> str:
    return ",".join(split_features(tags))
