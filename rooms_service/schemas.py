from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .models import split_features


class LocationBase(BaseModel):
    """
    Base schema for library branch information.
    """
    name: str = Field(..., min_length=1, max_length=255)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone_number: Optional[str] = None


class LocationCreate(LocationBase):
    pass


class LocationUpdate(BaseModel):
    """
    Schema for partial updates to a location.

    All fields are optional and only provided values will be updated.
    """
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone_number: Optional[str] = None
    is_active: Optional[bool] = None


class LocationRead(LocationBase):
    id: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class RoomBase(BaseModel):
    """
    Base schema for room information.

    ``features`` is a list of tags; it is stored comma separated.
    """
    location_id: int = Field(..., ge=1)
    name: str = Field(..., min_length=1, max_length=100)
    capacity: int = Field(..., ge=1)
    description: Optional[str] = None
    features: List[str] = Field(default_factory=list)

    @field_validator("features", mode="before")
    @classmethod
    def parse_features(cls, value):
        return split_features(value)


class RoomCreate(RoomBase):
    pass


class RoomUpdate(BaseModel):
    """
    Schema for partial updates to a room.

    All fields are optional and only provided values will be updated.
    """
    location_id: Optional[int] = Field(default=None, ge=1)
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    capacity: Optional[int] = Field(default=None, ge=1)
    description: Optional[str] = None
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("features", mode="before")
    @classmethod
    def parse_features(cls, value):
        if value is None:
            return None
        return split_features(value)


class RoomRead(RoomBase):
    """
    Schema returned when reading room data.
    """
    id: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class RoomStatus(BaseModel):
    """
    Status of a room for an optional date and span of hours.

    ``status`` is one of: available, booked, closed.
    """
    room_id: int
    status: str
