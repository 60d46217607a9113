"""
Pieces of the entity codec shared by the CloudKit and Firestore encodings.

Both backends store the same nested lists (day schedules, packing items,
planned places, plan schedule items) with the same camelCase keys. They only
differ in how a timestamp is written: CloudKit keeps the lists as JSON
strings with ISO-8601 dates, Firestore stores arrays of maps holding native
timestamps. The map builders below therefore take the timestamp encoder as a
parameter.
"""
import datetime
import json
import logging
from typing import Any, Callable, Generic, Iterable, List, Mapping, Optional, TypeVar

from core.errors import InvalidPayloadError
from schemas.common import ensure_utc
from schemas.travel_plan_schema import DaySchedule, ScheduleItem, PackingItem
from schemas.plan_schema import PlannedPlace, PlanScheduleItem

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ParseResult(Generic[T]):
    """Outcome of decoding one wire record: either an entity or a failure reason."""

    __slots__ = ("entity", "reason")

    def __init__(self, entity: Optional[T] = None, reason: Optional[str] = None):
        self.entity = entity
        self.reason = reason

    @classmethod
    def success(cls, entity: T) -> "ParseResult[T]":
        return cls(entity=entity)

    @classmethod
    def failure(cls, reason: str) -> "ParseResult[T]":
        return cls(reason=reason)

    @property
    def ok(self) -> bool:
        return self.entity is not None

    def __repr__(self):
        if self.ok:
            return f"ParseResult.success({self.entity!r})"
        return f"ParseResult.failure({self.reason!r})"


def successful(results: Iterable[ParseResult[T]], label: str) -> List[T]:
    """Keep decoded entities; corrupt records are dropped from the list silently."""
    entities = []
    for result in results:
        if result.ok:
            entities.append(result.entity)
        else:
            logger.debug(f"[Codec] Dropping unreadable {label}: {result.reason}")
    return entities


class FieldError(Exception):
    """A required field is missing or has the wrong type."""


# --- Timestamps ---

def to_iso8601(value: datetime.datetime) -> str:
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def from_iso8601(value: str) -> datetime.datetime:
    return ensure_utc(datetime.datetime.fromisoformat(value.replace("Z", "+00:00")))


def native_timestamp(value: datetime.datetime) -> datetime.datetime:
    return ensure_utc(value)


class FieldReader:
    """Typed access to a loosely typed field mapping."""

    def __init__(self, values: Mapping[str, Any], label: str = "record"):
        self.values = values or {}
        self.label = label

    def has(self, key: str) -> bool:
        return self.values.get(key) is not None

    def string(self, key: str) -> Optional[str]:
        value = self.values.get(key)
        return value if isinstance(value, str) else None

    def number(self, key: str) -> Optional[float]:
        value = self.values.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def integer(self, key: str) -> Optional[int]:
        value = self.values.get(key)
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return None

    def boolean(self, key: str) -> Optional[bool]:
        value = self.values.get(key)
        if isinstance(value, bool):
            return value
        # CloudKit has no boolean type, flags are stored as INT64
        if isinstance(value, int) and value in (0, 1):
            return bool(value)
        return None

    def timestamp(self, key: str) -> Optional[datetime.datetime]:
        value = self.values.get(key)
        if isinstance(value, datetime.datetime):
            return ensure_utc(value)
        if isinstance(value, str):
            try:
                return from_iso8601(value)
            except ValueError:
                return None
        return None

    def string_list(self, key: str) -> Optional[List[str]]:
        value = self.values.get(key)
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            return None
        return list(value)

    def map_list(self, key: str) -> List[Mapping[str, Any]]:
        value = self.values.get(key)
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, Mapping)]

    def _required(self, key: str, value):
        if value is None:
            if key in self.values:
                raise FieldError(f"{self.label}.{key} has the wrong type")
            raise FieldError(f"{self.label}.{key} is missing")
        return value

    def require_string(self, key: str) -> str:
        return self._required(key, self.string(key))

    def require_number(self, key: str) -> float:
        return self._required(key, self.number(key))

    def require_integer(self, key: str) -> int:
        return self._required(key, self.integer(key))

    def require_boolean(self, key: str) -> bool:
        return self._required(key, self.boolean(key))

    def require_timestamp(self, key: str) -> datetime.datetime:
        return self._required(key, self.timestamp(key))


# --- Nested lists: entity -> map ---

TimeEncoder = Callable[[datetime.datetime], Any]


def schedule_item_to_map(item: ScheduleItem, encode_time: TimeEncoder) -> dict:
    data = {
        "id": item.id,
        "time": encode_time(item.time),
        "title": item.title,
    }
    optional = {
        "location": item.location,
        "notes": item.notes,
        "latitude": item.latitude,
        "longitude": item.longitude,
        "cost": item.cost,
        "mapURL": item.map_url,
        "linkURL": item.link_url,
    }
    data.update({key: value for key, value in optional.items() if value is not None})
    return data


def day_schedule_to_map(day: DaySchedule, encode_time: TimeEncoder) -> dict:
    return {
        "id": day.id,
        "dayNumber": day.day_number,
        "date": encode_time(day.date),
        "scheduleItems": [schedule_item_to_map(item, encode_time) for item in day.schedule_items],
    }


def packing_item_to_map(item: PackingItem) -> dict:
    return {"id": item.id, "name": item.name, "isChecked": item.is_checked}


def planned_place_to_map(place: PlannedPlace) -> dict:
    data = {
        "id": place.id,
        "name": place.name,
        "latitude": place.latitude,
        "longitude": place.longitude,
    }
    if place.address is not None:
        data["address"] = place.address
    return data


def plan_schedule_item_to_map(item: PlanScheduleItem, encode_time: TimeEncoder) -> dict:
    data = {"id": item.id, "time": encode_time(item.time), "title": item.title}
    if item.place_id is not None:
        data["placeId"] = item.place_id
    if item.note is not None:
        data["note"] = item.note
    return data


# --- Nested lists: map -> entity (None when the item is unreadable) ---

def schedule_item_from_map(data: Mapping[str, Any]) -> Optional[ScheduleItem]:
    d = FieldReader(data, "scheduleItem")
    try:
        return ScheduleItem(
            id=d.require_string("id"),
            time=d.require_timestamp("time"),
            title=d.require_string("title"),
            location=d.string("location"),
            notes=d.string("notes"),
            latitude=d.number("latitude"),
            longitude=d.number("longitude"),
            cost=d.number("cost"),
            map_url=d.string("mapURL"),
            link_url=d.string("linkURL"),
        )
    except FieldError as e:
        logger.debug(f"[Codec] Skipping schedule item: {e}")
        return None


def day_schedule_from_map(data: Mapping[str, Any]) -> Optional[DaySchedule]:
    d = FieldReader(data, "daySchedule")
    try:
        day_id = d.require_string("id")
        day_number = d.require_integer("dayNumber")
        date = d.require_timestamp("date")
    except FieldError as e:
        logger.debug(f"[Codec] Skipping day schedule: {e}")
        return None
    if day_number < 1:
        return None
    items = [schedule_item_from_map(item) for item in d.map_list("scheduleItems")]
    return DaySchedule(
        id=day_id,
        day_number=day_number,
        date=date,
        schedule_items=[item for item in items if item is not None],
    )


def packing_item_from_map(data: Mapping[str, Any]) -> Optional[PackingItem]:
    d = FieldReader(data, "packingItem")
    try:
        return PackingItem(
            id=d.require_string("id"),
            name=d.require_string("name"),
            is_checked=d.require_boolean("isChecked"),
        )
    except FieldError as e:
        logger.debug(f"[Codec] Skipping packing item: {e}")
        return None


def planned_place_from_map(data: Mapping[str, Any]) -> Optional[PlannedPlace]:
    d = FieldReader(data, "plannedPlace")
    try:
        name = d.require_string("name")
        latitude = d.require_number("latitude")
        longitude = d.require_number("longitude")
    except FieldError as e:
        logger.debug(f"[Codec] Skipping planned place: {e}")
        return None
    place = PlannedPlace(name=name, latitude=latitude, longitude=longitude, address=d.string("address"))
    place_id = d.string("id")
    if place_id:
        place.id = place_id
    return place


def plan_schedule_item_from_map(data: Mapping[str, Any]) -> Optional[PlanScheduleItem]:
    d = FieldReader(data, "planScheduleItem")
    try:
        return PlanScheduleItem(
            id=d.require_string("id"),
            time=d.require_timestamp("time"),
            title=d.require_string("title"),
            place_id=d.string("placeId"),
            note=d.string("note"),
        )
    except FieldError as e:
        logger.debug(f"[Codec] Skipping plan schedule item: {e}")
        return None


def compact(items: Iterable[Optional[T]]) -> List[T]:
    return [item for item in items if item is not None]


# --- JSON-in-string-field helpers (CloudKit) ---

def dump_json_list(items: List[dict], field_name: str) -> str:
    try:
        return json.dumps(items, ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as e:
        raise InvalidPayloadError(f"Could not encode {field_name} as JSON: {e}")


def load_json_list(text: Optional[str]) -> List[Mapping[str, Any]]:
    if not text:
        return []
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return []
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]
