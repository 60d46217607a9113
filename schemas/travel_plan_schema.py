from pydantic import BaseModel, Field, field_validator
from typing import List, Optional
import datetime
import re
import secrets
import string

from core.colors import normalize_hex_color
from schemas.common import utc_now, new_id, ensure_utc

SHARE_CODE_PREFIX = "TRAVEL"
SHARE_CODE_ALPHABET = string.ascii_uppercase + string.digits
SHARE_CODE_PATTERN = re.compile(r"^TRAVEL-[A-Z0-9]{8}$")


class ScheduleItem(BaseModel):
    """A single entry within one day of a travel plan."""
    id: str = Field(default_factory=new_id)
    time: datetime.datetime
    title: str = Field(..., example="Fushimi Inari")
    location: Optional[str] = None
    notes: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    cost: Optional[float] = None
    map_url: Optional[str] = None
    link_url: Optional[str] = None

    @field_validator("time")
    @classmethod
    def time_as_utc(cls, value):
        return ensure_utc(value)


class DaySchedule(BaseModel):
    """The ordered schedule for one day (day_number starts at 1)."""
    id: str = Field(default_factory=new_id)
    day_number: int = Field(..., ge=1, example=1)
    date: datetime.datetime
    schedule_items: List[ScheduleItem] = Field(default_factory=list)

    @field_validator("date")
    @classmethod
    def date_as_utc(cls, value):
        return ensure_utc(value)


class PackingItem(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = Field(..., example="Passport")
    is_checked: bool = False


class TravelPlan(BaseModel):
    """A multi-day trip, optionally shared with other users through a share code."""
    id: Optional[str] = None
    title: str = Field(..., example="Kyoto autumn trip")
    start_date: datetime.datetime
    end_date: datetime.datetime
    destination: str = Field(..., example="Kyoto")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    local_image_file_name: Optional[str] = None
    card_color_hex: Optional[str] = Field(None, example="#FF8800")
    created_at: datetime.datetime = Field(default_factory=utc_now)
    updated_at: datetime.datetime = Field(default_factory=utc_now)
    user_id: Optional[str] = None
    day_schedules: List[DaySchedule] = Field(default_factory=list)
    packing_items: List[PackingItem] = Field(default_factory=list)

    # Sharing
    is_shared: bool = False
    share_code: Optional[str] = None
    shared_with: List[str] = Field(default_factory=list)
    owner_id: Optional[str] = None
    last_edited_by: Optional[str] = None

    @field_validator("start_date", "end_date", "created_at", "updated_at")
    @classmethod
    def dates_as_utc(cls, value):
        return ensure_utc(value)

    @field_validator("card_color_hex")
    @classmethod
    def normalize_color(cls, value):
        if value is None:
            return None
        return normalize_hex_color(value)

    def is_owner(self, user_id: str) -> bool:
        return self.owner_id == user_id or (self.owner_id is None and self.user_id == user_id)

    def is_shared_with_user(self, user_id: str) -> bool:
        return user_id in self.shared_with or self.is_owner(user_id)

    @staticmethod
    def generate_share_code() -> str:
        suffix = "".join(secrets.choice(SHARE_CODE_ALPHABET) for _ in range(8))
        return f"{SHARE_CODE_PREFIX}-{suffix}"


def normalize_share_code(code: str) -> str:
    return code.strip().upper()


class TravelPlanCreate(BaseModel):
    """Request body for creating or replacing a travel plan."""
    title: str = Field(..., min_length=1, example="Kyoto autumn trip")
    start_date: datetime.datetime
    end_date: datetime.datetime
    destination: str = Field(..., example="Kyoto")
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    local_image_file_name: Optional[str] = None
    card_color_hex: Optional[str] = None
    day_schedules: List[DaySchedule] = Field(default_factory=list)
    packing_items: List[PackingItem] = Field(default_factory=list)

    @field_validator("end_date")
    @classmethod
    def end_after_start(cls, value, info):
        start = info.data.get("start_date")
        if start is not None and ensure_utc(value) < ensure_utc(start):
            raise ValueError("end_date must not be before start_date")
        return value


class JoinTravelPlanRequest(BaseModel):
    share_code: str = Field(..., example="TRAVEL-AB12CD34")
