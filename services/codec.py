"""
Document serialization for trips, modules, users and section locks.

Converts between the typed models in ``schemas`` and the untyped,
camelCase-keyed maps stored in the document store.

Decoding is total: every payload field falls back to its own default
(``""``, ``False``, now, ``None``, ``0.0``) when missing or of the wrong
wire type, so a partially written document still loads. Only an
unrecognized module tag or a broken module envelope is rejected.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel
from pydantic.alias_generators import to_camel

from schemas.common import ModuleType, ensure_utc, utc_now
from schemas.modules import (
    MODULE_DATA_TYPES,
    CostItem,
    ModuleData,
    PackingItem,
)
from schemas.trip import SectionLock, Trip, TripModule
from schemas.user import User

logger = logging.getLogger(__name__)


class CodecError(ValueError):
    """A stored record could not be decoded."""


class UnknownVariant(CodecError):
    """The module type tag is not one of the known variants."""

    def __init__(self, tag: Any):
        super().__init__(f"Unknown module type: {tag!r}")
        self.tag = tag


class MalformedEnvelope(CodecError):
    """A module record is missing a required envelope field."""


# ============================================================================
# Wire value helpers
# ============================================================================


class FieldKind(Enum):
    """How a payload field is written and read back."""

    STRING = "string"
    BOOL = "bool"
    TIMESTAMP = "timestamp"
    OPTIONAL_NUMBER = "optional_number"
    NUMBER = "number"


def wire_key(attr: str) -> str:
    """``booking_reference`` -> ``bookingReference``."""
    return to_camel(attr)


def _is_number(value: Any) -> bool:
    # bool is an int subclass but never a number on the wire
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def read_string(value: Any, default: str = "") -> str:
    return value if isinstance(value, str) else default


def read_bool(value: Any) -> bool:
    return value if isinstance(value, bool) else False


def read_timestamp(value: Any) -> datetime:
    return ensure_utc(value) if isinstance(value, datetime) else utc_now()


def read_optional_number(value: Any) -> float | None:
    return float(value) if _is_number(value) else None


def read_number(value: Any) -> float:
    return float(value) if _is_number(value) else 0.0


_READERS: dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.STRING: read_string,
    FieldKind.BOOL: read_bool,
    FieldKind.TIMESTAMP: read_timestamp,
    FieldKind.OPTIONAL_NUMBER: read_optional_number,
    FieldKind.NUMBER: read_number,
}

_WRITERS: dict[FieldKind, Callable[[Any], Any]] = {
    FieldKind.STRING: lambda value: value,
    FieldKind.BOOL: lambda value: value,
    FieldKind.TIMESTAMP: lambda value: value,
    FieldKind.OPTIONAL_NUMBER: lambda value: 0.0 if value is None else value,
    FieldKind.NUMBER: lambda value: value,
}


S, B, T, N = FieldKind.STRING, FieldKind.BOOL, FieldKind.TIMESTAMP, FieldKind.OPTIONAL_NUMBER

# Scalar fields of each payload, in wire order
_PAYLOAD_FIELDS: dict[ModuleType, tuple[tuple[str, FieldKind], ...]] = {
    ModuleType.FLIGHT: (
        ("flight_number", S),
        ("departure_date", T),
        ("departure_time", T),
        ("departure_airport", S),
        ("arrival_airport", S),
        ("cost", N),
        ("notes", S),
        ("is_booked", B),
        ("booking_reference", S),
    ),
    ModuleType.HOTEL: (
        ("hotel_name", S),
        ("check_in_date", T),
        ("check_out_date", T),
        ("room_type", S),
        ("address", S),
        ("cost", N),
        ("notes", S),
        ("is_booked", B),
        ("booking_reference", S),
    ),
    ModuleType.TRANSPORTATION: (
        ("transport_type", S),
        ("destination", S),
        ("departure_location", S),
        ("duration", S),
        ("start_date", T),
        ("departure_time", T),
        ("arrival_time", T),
        ("cost", N),
        ("notes", S),
        ("is_booked", B),
        ("booking_reference", S),
    ),
    ModuleType.RESTAURANT: (
        ("name", S),
        ("time", T),
        ("start_date", T),
        ("has_reservation", B),
        ("reservation_name", S),
        ("cuisine", S),
        ("rating", N),
        ("cost", N),
        ("notes", S),
    ),
    ModuleType.ACTIVITY: (
        ("name", S),
        ("activity_type", S),
        ("location", S),
        ("address", S),
        ("start_date", T),
        ("start_time", T),
        ("end_time", T),
        ("duration", S),
        ("cost", N),
        ("notes", S),
        ("is_booked", B),
        ("booking_reference", S),
    ),
    ModuleType.COST: (
        ("total_cost", FieldKind.NUMBER),
        ("is_booked", B),
        ("booking_reference", S),
    ),
    ModuleType.PACKING_LIST: (
        ("title", S),
        ("notes", S),
    ),
}

del S, B, T, N


# ============================================================================
# List items
# ============================================================================


def serialize_cost_item(item: CostItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "moduleId": item.module_id,
        "description": item.description,
        "amount": item.amount,
    }


def deserialize_cost_item(data: Any) -> CostItem | None:
    """A breakdown line missing any field is skipped."""
    if not isinstance(data, Mapping):
        return None
    item_id = data.get("id")
    module_id = data.get("moduleId")
    description = data.get("description")
    amount = data.get("amount")
    if not (
        isinstance(item_id, str)
        and isinstance(module_id, str)
        and isinstance(description, str)
        and _is_number(amount)
    ):
        return None
    return CostItem(id=item_id, module_id=module_id, description=description, amount=float(amount))


def serialize_packing_item(item: PackingItem) -> dict[str, Any]:
    return {
        "id": item.id,
        "name": item.name,
        "isChecked": item.is_checked,
        "category": item.category,
        "notes": item.notes,
    }


def deserialize_packing_item(data: Any) -> PackingItem | None:
    """An item without ``id`` or ``name`` is skipped."""
    if not isinstance(data, Mapping):
        return None
    item_id = data.get("id")
    name = data.get("name")
    if not (isinstance(item_id, str) and isinstance(name, str)):
        return None
    return PackingItem(
        id=item_id,
        name=name,
        is_checked=read_bool(data.get("isChecked")),
        category=read_string(data.get("category"), default="general"),
        notes=read_string(data.get("notes")),
    )


# List-valued payload fields: attribute -> (item writer, item reader)
_LIST_FIELDS: dict[ModuleType, tuple[str, Callable[[Any], dict], Callable[[Any], Any]]] = {
    ModuleType.COST: ("breakdown", serialize_cost_item, deserialize_cost_item),
    ModuleType.PACKING_LIST: ("items", serialize_packing_item, deserialize_packing_item),
}


# ============================================================================
# Module payloads
# ============================================================================


def _module_type_of(tag: Any) -> ModuleType:
    if isinstance(tag, ModuleType):
        return tag
    try:
        return ModuleType(tag)
    except ValueError:
        raise UnknownVariant(tag) from None


def serialize_module_data(value: ModuleData) -> dict[str, Any]:
    """
    Convert a payload to its stored map.

    Every map carries ``type``; absent optional numbers are written as ``0.0``.
    """
    module_type = value.module_type
    result: dict[str, Any] = {"type": module_type.value}
    for attr, kind in _PAYLOAD_FIELDS[module_type]:
        result[wire_key(attr)] = _WRITERS[kind](getattr(value, attr))

    if module_type in _LIST_FIELDS:
        attr, write_item, _ = _LIST_FIELDS[module_type]
        result[wire_key(attr)] = [write_item(item) for item in getattr(value, attr)]
    return result


def deserialize_module_data(data: Any, type_tag: ModuleType | str) -> ModuleData:
    """
    Build a payload of ``type_tag`` from a stored map.

    Raises:
        UnknownVariant: ``type_tag`` is not a known module type
    """
    module_type = _module_type_of(type_tag)
    if not isinstance(data, Mapping):
        data = {}

    fields: dict[str, Any] = {
        attr: _READERS[kind](data.get(wire_key(attr)))
        for attr, kind in _PAYLOAD_FIELDS[module_type]
    }

    if module_type in _LIST_FIELDS:
        attr, _, read_item = _LIST_FIELDS[module_type]
        raw_items = data.get(wire_key(attr))
        if not isinstance(raw_items, list):
            raw_items = []
        fields[attr] = [item for item in map(read_item, raw_items) if item is not None]

    payload_class: type[BaseModel] = MODULE_DATA_TYPES[module_type]
    return payload_class(**fields)


# ============================================================================
# Module envelope
# ============================================================================


def serialize_module(module: TripModule) -> dict[str, Any]:
    """Convert a module to its stored envelope map."""
    return {
        "id": module.id,
        "type": module.type.value,
        "data": serialize_module_data(module.data),
        "isLocked": module.is_locked,
        "lockedBy": module.locked_by or "",
        "position": module.position,
        "isCompleted": module.is_completed,
        "createdAt": module.created_at,
        "updatedAt": module.updated_at,
    }


def deserialize_module(record: Any) -> TripModule:
    """
    Build a module from a stored envelope map.

    Raises:
        MalformedEnvelope: ``id``, ``type`` or an integer ``position`` is
            missing, or the payload tag disagrees with the envelope tag
        UnknownVariant: the envelope tag is not a known module type
    """
    if not isinstance(record, Mapping):
        raise MalformedEnvelope("Module record is not a map")

    module_id = record.get("id")
    tag = record.get("type")
    position = record.get("position")
    if not isinstance(module_id, str):
        raise MalformedEnvelope("Module record is missing 'id'")
    if not isinstance(tag, str):
        raise MalformedEnvelope(f"Module {module_id} is missing 'type'")
    if not isinstance(position, int) or isinstance(position, bool):
        raise MalformedEnvelope(f"Module {module_id} is missing an integer 'position'")

    module_type = _module_type_of(tag)
    data = record.get("data")
    if not isinstance(data, Mapping):
        data = {}
    payload_tag = data.get("type")
    if payload_tag is not None and payload_tag != module_type.value:
        raise MalformedEnvelope(
            f"Module {module_id} has type {tag!r} but its data is tagged {payload_tag!r}"
        )

    locked_by = record.get("lockedBy")
    return TripModule(
        id=module_id,
        type=module_type,
        data=deserialize_module_data(data, module_type),
        position=position,
        is_completed=read_bool(record.get("isCompleted")),
        locked_by=locked_by if isinstance(locked_by, str) and locked_by else None,
        created_at=read_timestamp(record.get("createdAt")),
        updated_at=read_timestamp(record.get("updatedAt")),
    )


def deserialize_modules(records: Any, trip_id: str = "") -> list[TripModule]:
    """Decode a stored module array, dropping (and logging) records that fail."""
    if not isinstance(records, list):
        return []

    modules: list[TripModule] = []
    for record in records:
        try:
            modules.append(deserialize_module(record))
        except CodecError as e:
            logger.warning(
                f"Dropping undecodable module: {e}",
                extra={"trip_id": trip_id},
            )
    return modules


# ============================================================================
# Trips
# ============================================================================


def serialize_trip(trip: Trip) -> dict[str, Any]:
    """Convert a trip to its full stored document. ``version`` is not stored."""
    return {
        "id": trip.id,
        "title": trip.title,
        "description": trip.description,
        "startDate": trip.start_date,
        "endDate": trip.end_date,
        "createdBy": trip.created_by,
        "participants": list(trip.participants),
        "modules": [serialize_module(module) for module in trip.modules],
        "createdAt": trip.created_at,
        "updatedAt": trip.updated_at,
    }


def deserialize_trip(data: Mapping[str, Any], version: int = 0) -> Trip:
    """Build a trip from a stored document; never raises on bad fields."""
    trip_id = read_string(data.get("id"))
    participants = data.get("participants")
    if not isinstance(participants, list):
        participants = []

    return Trip(
        id=trip_id,
        title=read_string(data.get("title")),
        description=read_string(data.get("description")),
        start_date=read_timestamp(data.get("startDate")),
        end_date=read_timestamp(data.get("endDate")),
        created_by=read_string(data.get("createdBy")),
        participants=[p for p in participants if isinstance(p, str)],
        modules=deserialize_modules(data.get("modules"), trip_id),
        created_at=read_timestamp(data.get("createdAt")),
        updated_at=read_timestamp(data.get("updatedAt")),
        version=version,
    )


# ============================================================================
# Users
# ============================================================================


def serialize_user(user: User) -> dict[str, Any]:
    """Convert a user to its stored document. ``email`` is omitted when absent."""
    result: dict[str, Any] = {
        "id": user.id,
        "username": user.username,
        "isTemporary": user.is_temporary,
        "createdAt": user.created_at,
    }
    if user.email:
        result["email"] = user.email
    return result


def deserialize_user(data: Mapping[str, Any], user_id: str) -> User:
    """Build a user from its stored document; ``user_id`` is the document key."""
    email = data.get("email")
    return User(
        id=read_string(data.get("id")) or user_id,
        username=read_string(data.get("username")),
        email=email if isinstance(email, str) and email else None,
        is_temporary=read_bool(data.get("isTemporary")),
        created_at=read_timestamp(data.get("createdAt")),
    )


# ============================================================================
# Section locks
# ============================================================================


def serialize_lock(lock: SectionLock) -> dict[str, Any]:
    """Convert a lock to the map stored under its module ID."""
    return {"userId": lock.user_id, "expiresAt": lock.expires_at}


def deserialize_locks(data: Mapping[str, Any] | None) -> dict[str, SectionLock]:
    """
    Decode a ``tripLocks`` document into ``module_id -> SectionLock``.

    Legacy entries stored as a bare user ID carry no expiry and therefore
    decode as already expired locks.
    """
    locks: dict[str, SectionLock] = {}
    for module_id, entry in (data or {}).items():
        if isinstance(entry, str):
            locks[module_id] = SectionLock(user_id=entry, expires_at=None)
        elif isinstance(entry, Mapping) and isinstance(entry.get("userId"), str):
            expires_at = entry.get("expiresAt")
            locks[module_id] = SectionLock(
                user_id=entry["userId"],
                expires_at=ensure_utc(expires_at) if isinstance(expires_at, datetime) else None,
            )
    return locks
