from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
from enum import Enum
import datetime

from core.colors import normalize_hex_color
from schemas.common import utc_now, new_id, ensure_utc


class PlanType(str, Enum):
    OUTING = "outing"
    DAILY = "daily"

    @classmethod
    def parse(cls, value) -> "PlanType":
        try:
            return cls(value)
        except ValueError:
            return cls.OUTING


class PlannedPlace(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., example="Ueno Park")
    latitude: float
    longitude: float
    address: Optional[str] = None


class PlanScheduleItem(BaseModel):
    """Schedule entry of an outing; place_id may point at one of the plan's own places."""
    id: str = Field(default_factory=new_id)
    time: datetime.datetime
    title: str
    place_id: Optional[str] = None
    note: Optional[str] = None

    @field_validator("time")
    @classmethod
    def time_as_utc(cls, value):
        return ensure_utc(value)


class Plan(BaseModel):
    """A single lightweight event, either an outing or a daily plan."""
    id: str = Field(default_factory=new_id)
    title: str = Field(..., example="Picnic")
    start_date: datetime.datetime
    end_date: datetime.datetime
    places: List[PlannedPlace] = Field(default_factory=list)
    card_color_hex: Optional[str] = None
    local_image_file_name: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime.datetime = Field(default_factory=utc_now)
    plan_type: PlanType = PlanType.OUTING
    time: Optional[datetime.datetime] = None
    description: Optional[str] = None
    link_url: Optional[str] = None
    schedule_items: List[PlanScheduleItem] = Field(default_factory=list)

    @field_validator("start_date", "end_date", "created_at")
    @classmethod
    def dates_as_utc(cls, value):
        return ensure_utc(value)

    @field_validator("time")
    @classmethod
    def optional_time_as_utc(cls, value):
        return ensure_utc(value) if value is not None else None

    @field_validator("card_color_hex")
    @classmethod
    def normalize_color(cls, value):
        if value is None:
            return None
        return normalize_hex_color(value)


class PlanCreate(BaseModel):
    """Request body for creating or replacing a plan."""
    title: str = Field(..., min_length=1)
    start_date: datetime.datetime
    end_date: datetime.datetime
    places: List[PlannedPlace] = Field(default_factory=list)
    card_color_hex: Optional[str] = None
    local_image_file_name: Optional[str] = None
    plan_type: PlanType = PlanType.OUTING
    time: Optional[datetime.datetime] = None
    description: Optional[str] = None
    link_url: Optional[str] = None
    schedule_items: List[PlanScheduleItem] = Field(default_factory=list)
