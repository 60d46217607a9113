from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from enum import Enum
import datetime

from schemas.common import utc_now, ensure_utc


class PlaceCategory(str, Enum):
    SIGHTSEEING = "sightseeing"
    RESTAURANT = "restaurant"
    CAFE = "cafe"
    HOTEL = "hotel"
    SHOPPING = "shopping"
    NATURE = "nature"
    ACTIVITY = "activity"
    TRANSPORT = "transport"
    OTHER = "other"

    @classmethod
    def parse(cls, value) -> "PlaceCategory":
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class VisitedPlace(BaseModel):
    """A pinned memory on the map."""
    id: Optional[str] = None
    title: str = Field(..., example="Kinkaku-ji")
    notes: Optional[str] = None
    latitude: float = 0.0
    longitude: float = 0.0
    created_at: datetime.datetime = Field(default_factory=utc_now)
    visited_at: Optional[datetime.datetime] = None
    photo_url: Optional[str] = None
    local_photo_file_name: Optional[str] = None
    address: Optional[str] = None
    tags: Optional[List[str]] = None
    category: PlaceCategory = PlaceCategory.OTHER
    travel_plan_id: Optional[str] = None
    user_id: Optional[str] = None

    @field_validator("created_at")
    @classmethod
    def created_as_utc(cls, value):
        return ensure_utc(value)

    @field_validator("visited_at")
    @classmethod
    def visited_as_utc(cls, value):
        return ensure_utc(value) if value is not None else None


class VisitedPlaceCreate(BaseModel):
    """Request body for saving a visited place."""
    title: str = Field(..., min_length=1)
    notes: Optional[str] = None
    latitude: float
    longitude: float
    visited_at: Optional[datetime.datetime] = None
    photo_url: Optional[str] = None
    local_photo_file_name: Optional[str] = None
    address: Optional[str] = None
    tags: Optional[List[str]] = None
    category: PlaceCategory = PlaceCategory.OTHER
    travel_plan_id: Optional[str] = None
