"""
Mapping between domain entities and CloudKit Web Services records.

Nested lists are stored as JSON strings (ISO-8601 dates) in single STRING
fields, the way the iOS client always wrote them.
"""
import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.colors import parse_hex_color
from schemas.common import ensure_utc
from schemas.travel_plan_schema import TravelPlan
from schemas.plan_schema import Plan, PlanType
from schemas.place_schema import VisitedPlace, PlaceCategory
from services import codec
from services.codec import FieldError, FieldReader, ParseResult

TRAVEL_PLAN_RECORD_TYPE = "TravelPlan"
PLAN_RECORD_TYPE = "Plan"
VISITED_PLACE_RECORD_TYPE = "VisitedPlace"

IMAGE_FIELD = "image"


def timestamp_to_millis(value: datetime.datetime) -> int:
    return int(round(ensure_utc(value).timestamp() * 1000))


def millis_to_timestamp(value: int) -> datetime.datetime:
    return datetime.datetime.fromtimestamp(value / 1000.0, tz=datetime.timezone.utc)


class CloudKitField(BaseModel):
    value: Any
    type: Optional[str] = None


class CloudKitRecord(BaseModel):
    """A CloudKit record as exchanged with the web services API."""
    model_config = ConfigDict(populate_by_name=True)

    record_name: str = Field(..., alias="recordName")
    record_type: str = Field(..., alias="recordType")
    record_change_tag: Optional[str] = Field(None, alias="recordChangeTag")
    fields: Dict[str, CloudKitField] = Field(default_factory=dict)

    @classmethod
    def from_wire(cls, data: Dict[str, Any]) -> "CloudKitRecord":
        return cls.model_validate(data)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)

    # --- writers ---

    def set_string(self, name: str, value: Optional[str]):
        if value is not None:
            self.fields[name] = CloudKitField(value=value, type="STRING")

    def set_double(self, name: str, value: Optional[float]):
        if value is not None:
            self.fields[name] = CloudKitField(value=float(value), type="DOUBLE")

    def set_int64(self, name: str, value: Optional[int]):
        if value is not None:
            self.fields[name] = CloudKitField(value=int(value), type="INT64")

    def set_timestamp(self, name: str, value: Optional[datetime.datetime]):
        if value is not None:
            self.fields[name] = CloudKitField(value=timestamp_to_millis(value), type="TIMESTAMP")

    def set_string_list(self, name: str, value: Optional[List[str]]):
        if value:
            self.fields[name] = CloudKitField(value=list(value), type="STRING_LIST")

    def set_asset(self, name: str, receipt: Dict[str, Any]):
        self.fields[name] = CloudKitField(value=receipt, type="ASSETID")

    # --- readers ---

    def asset(self, name: str = IMAGE_FIELD) -> Optional[Dict[str, Any]]:
        field = self.fields.get(name)
        if field is None or not isinstance(field.value, dict):
            return None
        return field.value

    def values(self) -> Dict[str, Any]:
        """Plain python values, timestamps converted to datetimes."""
        result = {}
        for name, field in self.fields.items():
            if field.type == "TIMESTAMP" and isinstance(field.value, (int, float)) and not isinstance(field.value, bool):
                try:
                    result[name] = millis_to_timestamp(field.value)
                except (OverflowError, OSError, ValueError):
                    # left raw, so reading it as a timestamp fails for this record only
                    result[name] = field.value
            else:
                result[name] = field.value
        return result

    def reader(self) -> FieldReader:
        return FieldReader(self.values(), self.record_type)


# --- TravelPlan ---

def travel_plan_to_record(plan: TravelPlan, user_id: str, record_name: str) -> CloudKitRecord:
    record = CloudKitRecord(record_name=record_name, record_type=TRAVEL_PLAN_RECORD_TYPE)

    record.set_string("userId", user_id)
    record.set_string("title", plan.title)
    record.set_timestamp("startDate", plan.start_date)
    record.set_timestamp("endDate", plan.end_date)
    record.set_string("destination", plan.destination)
    record.set_timestamp("createdAt", plan.created_at)
    record.set_timestamp("updatedAt", plan.updated_at)

    record.set_double("latitude", plan.latitude)
    record.set_double("longitude", plan.longitude)
    record.set_string("cardColorHex", plan.card_color_hex)
    record.set_string("localImageFileName", plan.local_image_file_name)

    record.set_int64("isShared", 1 if plan.is_shared else 0)
    record.set_string("shareCode", plan.share_code)
    record.set_string_list("sharedWith", plan.shared_with)
    record.set_string("ownerId", plan.owner_id)
    record.set_string("lastEditedBy", plan.last_edited_by)

    if plan.day_schedules:
        days = [codec.day_schedule_to_map(day, codec.to_iso8601) for day in plan.day_schedules]
        record.set_string("daySchedulesJSON", codec.dump_json_list(days, "daySchedules"))
    if plan.packing_items:
        items = [codec.packing_item_to_map(item) for item in plan.packing_items]
        record.set_string("packingItemsJSON", codec.dump_json_list(items, "packingItems"))

    return record


def travel_plan_from_record(record: CloudKitRecord) -> ParseResult[TravelPlan]:
    d = record.reader()
    try:
        user_id = d.require_string("userId")
        title = d.require_string("title")
        start_date = d.require_timestamp("startDate")
        end_date = d.require_timestamp("endDate")
        destination = d.require_string("destination")
        created_at = d.require_timestamp("createdAt")
    except FieldError as e:
        return ParseResult.failure(f"{record.record_name}: {e}")

    days = codec.load_json_list(d.string("daySchedulesJSON"))
    packing = codec.load_json_list(d.string("packingItemsJSON"))

    plan = TravelPlan(
        id=record.record_name,
        title=title,
        start_date=start_date,
        end_date=end_date,
        destination=destination,
        latitude=d.number("latitude"),
        longitude=d.number("longitude"),
        local_image_file_name=d.string("localImageFileName"),
        card_color_hex=parse_hex_color(d.string("cardColorHex")),
        created_at=created_at,
        updated_at=d.timestamp("updatedAt") or datetime.datetime.now(datetime.timezone.utc),
        user_id=user_id,
        day_schedules=codec.compact(codec.day_schedule_from_map(day) for day in days),
        packing_items=codec.compact(codec.packing_item_from_map(item) for item in packing),
        is_shared=d.boolean("isShared") or False,
        share_code=d.string("shareCode"),
        shared_with=d.string_list("sharedWith") or [],
        owner_id=d.string("ownerId"),
        last_edited_by=d.string("lastEditedBy"),
    )
    return ParseResult.success(plan)


# --- Plan ---

def plan_to_record(plan: Plan, user_id: str) -> CloudKitRecord:
    record = CloudKitRecord(record_name=plan.id, record_type=PLAN_RECORD_TYPE)

    record.set_string("userId", user_id)
    record.set_string("title", plan.title)
    record.set_timestamp("startDate", plan.start_date)
    record.set_timestamp("endDate", plan.end_date)
    record.set_timestamp("createdAt", plan.created_at)
    record.set_string("planType", plan.plan_type.value)

    record.set_string("cardColorHex", plan.card_color_hex)
    record.set_string("localImageFileName", plan.local_image_file_name)
    record.set_timestamp("time", plan.time)
    record.set_string("description", plan.description)
    record.set_string("linkURL", plan.link_url)

    places = [codec.planned_place_to_map(place) for place in plan.places]
    record.set_string("placesJSON", codec.dump_json_list(places, "places"))
    items = [codec.plan_schedule_item_to_map(item, codec.to_iso8601) for item in plan.schedule_items]
    record.set_string("scheduleItemsJSON", codec.dump_json_list(items, "scheduleItems"))

    return record


def plan_from_record(record: CloudKitRecord) -> ParseResult[Plan]:
    d = record.reader()
    try:
        user_id = d.require_string("userId")
        title = d.require_string("title")
        start_date = d.require_timestamp("startDate")
        end_date = d.require_timestamp("endDate")
        created_at = d.require_timestamp("createdAt")
    except FieldError as e:
        return ParseResult.failure(f"{record.record_name}: {e}")

    places = codec.load_json_list(d.string("placesJSON"))
    items = codec.load_json_list(d.string("scheduleItemsJSON"))

    plan = Plan(
        id=record.record_name,
        title=title,
        start_date=start_date,
        end_date=end_date,
        places=codec.compact(codec.planned_place_from_map(place) for place in places),
        card_color_hex=parse_hex_color(d.string("cardColorHex")),
        local_image_file_name=d.string("localImageFileName"),
        user_id=user_id,
        created_at=created_at,
        plan_type=PlanType.parse(d.string("planType")),
        time=d.timestamp("time"),
        description=d.string("description"),
        link_url=d.string("linkURL"),
        schedule_items=codec.compact(codec.plan_schedule_item_from_map(item) for item in items),
    )
    return ParseResult.success(plan)


# --- VisitedPlace ---

def visited_place_to_record(place: VisitedPlace, user_id: str, record_name: str) -> CloudKitRecord:
    record = CloudKitRecord(record_name=record_name, record_type=VISITED_PLACE_RECORD_TYPE)

    record.set_string("userId", user_id)
    record.set_string("title", place.title)
    record.set_double("latitude", place.latitude)
    record.set_double("longitude", place.longitude)
    record.set_timestamp("createdAt", place.created_at)

    record.set_string("notes", place.notes)
    record.set_timestamp("visitedDate", place.visited_at)
    record.set_string_list("tags", place.tags)
    record.set_string("address", place.address)
    record.set_string("travelPlanId", place.travel_plan_id)
    record.set_string("category", place.category.value)

    if place.local_photo_file_name:
        record.set_string_list("imageFileNames", [place.local_photo_file_name])

    return record


def visited_place_from_record(record: CloudKitRecord) -> ParseResult[VisitedPlace]:
    d = record.reader()
    try:
        user_id = d.require_string("userId")
        title = d.require_string("title")
        latitude = d.require_number("latitude")
        longitude = d.require_number("longitude")
        created_at = d.require_timestamp("createdAt")
    except FieldError as e:
        return ParseResult.failure(f"{record.record_name}: {e}")

    file_names = d.string_list("imageFileNames") or []

    place = VisitedPlace(
        id=record.record_name,
        title=title,
        notes=d.string("notes"),
        latitude=latitude,
        longitude=longitude,
        created_at=created_at,
        visited_at=d.timestamp("visitedDate"),
        photo_url=None,
        local_photo_file_name=file_names[0] if file_names else None,
        address=d.string("address"),
        tags=d.string_list("tags"),
        category=PlaceCategory.parse(d.string("category")),
        travel_plan_id=d.string("travelPlanId"),
        user_id=user_id,
    )
    return ParseResult.success(place)
