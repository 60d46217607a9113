"""
Mapping between domain entities and Firestore documents.

Nested lists are arrays of maps with native timestamps. Optional fields
are left out of the document rather than written as nulls.
"""
from typing import Any, Mapping, Optional

from core.colors import parse_hex_color
from schemas.common import utc_now
from schemas.travel_plan_schema import TravelPlan
from schemas.plan_schema import Plan, PlanType
from schemas.place_schema import VisitedPlace, PlaceCategory
from services import codec
from services.codec import FieldError, FieldReader, ParseResult


def _put(data: dict, key: str, value):
    if value is not None:
        data[key] = value


def _optional_number(d: FieldReader, key: str, default: Optional[float] = None) -> Optional[float]:
    """Absent reads as the default; present with the wrong type is a decode failure."""
    if not d.has(key):
        return default
    return d.require_number(key)


# --- TravelPlan ---

def travel_plan_to_document(plan: TravelPlan, user_id: str, include_sharing: bool = False) -> dict:
    ts = codec.native_timestamp
    data = {
        "title": plan.title,
        "startDate": ts(plan.start_date),
        "endDate": ts(plan.end_date),
        "destination": plan.destination,
        "createdAt": ts(plan.created_at),
        "updatedAt": ts(plan.updated_at),
        "userId": user_id,
        "daySchedules": [codec.day_schedule_to_map(day, ts) for day in plan.day_schedules],
        "packingItems": [codec.packing_item_to_map(item) for item in plan.packing_items],
    }
    _put(data, "latitude", plan.latitude)
    _put(data, "longitude", plan.longitude)
    _put(data, "localImageFileName", plan.local_image_file_name)
    _put(data, "cardColorHex", plan.card_color_hex)

    if include_sharing:
        data["isShared"] = plan.is_shared
        data["sharedWith"] = list(plan.shared_with)
        _put(data, "shareCode", plan.share_code)
        _put(data, "ownerId", plan.owner_id)
        _put(data, "lastEditedBy", plan.last_edited_by)

    return data


def travel_plan_from_document(doc_id: str, data: Mapping[str, Any]) -> ParseResult[TravelPlan]:
    d = FieldReader(data, "travelPlan")
    try:
        title = d.require_string("title")
        start_date = d.require_timestamp("startDate")
        end_date = d.require_timestamp("endDate")
        latitude = _optional_number(d, "latitude")
        longitude = _optional_number(d, "longitude")
    except FieldError as e:
        return ParseResult.failure(f"{doc_id}: {e}")

    plan = TravelPlan(
        id=doc_id,
        title=title,
        start_date=start_date,
        end_date=end_date,
        destination=d.string("destination") or "",
        latitude=latitude,
        longitude=longitude,
        local_image_file_name=d.string("localImageFileName"),
        card_color_hex=parse_hex_color(d.string("cardColorHex")),
        created_at=d.timestamp("createdAt") or utc_now(),
        updated_at=d.timestamp("updatedAt") or utc_now(),
        user_id=d.string("userId"),
        day_schedules=codec.compact(codec.day_schedule_from_map(day) for day in d.map_list("daySchedules")),
        packing_items=codec.compact(codec.packing_item_from_map(item) for item in d.map_list("packingItems")),
        is_shared=d.boolean("isShared") or False,
        share_code=d.string("shareCode"),
        shared_with=d.string_list("sharedWith") or [],
        owner_id=d.string("ownerId"),
        last_edited_by=d.string("lastEditedBy"),
    )
    return ParseResult.success(plan)


# --- Plan ---

def plan_to_document(plan: Plan, user_id: str) -> dict:
    ts = codec.native_timestamp
    data = {
        "title": plan.title,
        "startDate": ts(plan.start_date),
        "endDate": ts(plan.end_date),
        "createdAt": ts(plan.created_at),
        "userId": user_id,
        "planType": plan.plan_type.value,
        "places": [codec.planned_place_to_map(place) for place in plan.places],
        "scheduleItems": [codec.plan_schedule_item_to_map(item, ts) for item in plan.schedule_items],
    }
    _put(data, "localImageFileName", plan.local_image_file_name)
    _put(data, "cardColorHex", plan.card_color_hex)
    if plan.time is not None:
        data["time"] = ts(plan.time)
    _put(data, "description", plan.description)
    _put(data, "linkURL", plan.link_url)
    return data


def plan_from_document(doc_id: str, data: Mapping[str, Any]) -> ParseResult[Plan]:
    d = FieldReader(data, "plan")
    try:
        title = d.require_string("title")
        start_date = d.require_timestamp("startDate")
        end_date = d.require_timestamp("endDate")
    except FieldError as e:
        return ParseResult.failure(f"{doc_id}: {e}")

    plan = Plan(
        id=doc_id,
        title=title,
        start_date=start_date,
        end_date=end_date,
        places=codec.compact(codec.planned_place_from_map(place) for place in d.map_list("places")),
        card_color_hex=parse_hex_color(d.string("cardColorHex")),
        local_image_file_name=d.string("localImageFileName"),
        user_id=d.string("userId"),
        created_at=d.timestamp("createdAt") or utc_now(),
        plan_type=PlanType.parse(d.string("planType")),
        time=d.timestamp("time"),
        description=d.string("description"),
        link_url=d.string("linkURL"),
        schedule_items=codec.compact(
            codec.plan_schedule_item_from_map(item) for item in d.map_list("scheduleItems")
        ),
    )
    return ParseResult.success(plan)


# --- VisitedPlace ---

def visited_place_to_document(place: VisitedPlace, user_id: str) -> dict:
    data = {
        "title": place.title,
        "latitude": place.latitude,
        "longitude": place.longitude,
        "category": place.category.value,
        "userId": user_id,
        "createdAt": codec.native_timestamp(place.created_at),
    }
    _put(data, "notes", place.notes)
    if place.visited_at is not None:
        data["visitedAt"] = codec.native_timestamp(place.visited_at)
    _put(data, "photoURL", place.photo_url)
    _put(data, "localPhotoFileName", place.local_photo_file_name)
    _put(data, "address", place.address)
    _put(data, "tags", place.tags)
    _put(data, "travelPlanId", place.travel_plan_id)
    return data


def visited_place_from_document(doc_id: str, data: Mapping[str, Any]) -> ParseResult[VisitedPlace]:
    d = FieldReader(data, "visitedPlace")
    try:
        title = d.require_string("title")
        latitude = _optional_number(d, "latitude", 0.0)
        longitude = _optional_number(d, "longitude", 0.0)
    except FieldError as e:
        return ParseResult.failure(f"{doc_id}: {e}")

    place = VisitedPlace(
        id=doc_id,
        title=title,
        notes=d.string("notes"),
        latitude=latitude,
        longitude=longitude,
        created_at=d.timestamp("createdAt") or utc_now(),
        visited_at=d.timestamp("visitedAt"),
        photo_url=d.string("photoURL"),
        local_photo_file_name=d.string("localPhotoFileName"),
        address=d.string("address"),
        tags=d.string_list("tags"),
        category=PlaceCategory.parse(d.string("category")),
        travel_plan_id=d.string("travelPlanId"),
        user_id=d.string("userId"),
    )
    return ParseResult.success(place)
