"""
Trip aggregate schemas.

Defines data models for:
- Trip modules (typed planning items)
- The trip aggregate and its display ordering
- Section locks
- Trip and module API requests and responses
"""

import uuid
from datetime import timedelta
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from schemas.common import ModuleType, Timestamp, utc_now
from schemas.modules import (
    MODULE_DATA_TYPES,
    PRICED_MODULE_TYPES,
    ModuleData,
    default_module_data,
)


def new_document_id() -> str:
    """Identifier for trips and modules."""
    return str(uuid.uuid4()).upper()


class TripModule(BaseModel):
    """
    A single typed planning item attached to a trip.

    ``type`` and ``data`` must always agree; a mismatched pair is rejected at
    construction time.
    """

    id: str = Field(default_factory=new_document_id, description="Module identifier")
    type: ModuleType = Field(description="Discriminant tag of the payload")
    data: ModuleData = Field(description="Payload matching ``type``")
    position: int = Field(description="Sort key within the trip")
    is_completed: bool = False
    locked_by: str | None = Field(
        default=None, description="User currently editing this module, if any"
    )
    created_at: Timestamp = Field(default_factory=utc_now)
    updated_at: Timestamp = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def type_matches_data(self) -> "TripModule":
        """Ensure the payload variant belongs to the module's tag."""
        expected = MODULE_DATA_TYPES[self.type]
        if not isinstance(self.data, expected):
            raise ValueError(
                f"Module type {self.type.value!r} requires {expected.__name__}, "
                f"got {type(self.data).__name__}"
            )
        return self

    @property
    def is_locked(self) -> bool:
        """Whether someone has claimed this module for editing."""
        return self.locked_by is not None

    @classmethod
    def new(cls, module_type: ModuleType, position: int) -> "TripModule":
        """Create a blank module of ``module_type`` at ``position``."""
        return cls(type=module_type, data=default_module_data(module_type), position=position)


def display_sort_key(module: TripModule) -> tuple[bool, int]:
    """Cost modules sink to the bottom; everything else orders by position."""
    return (module.type is ModuleType.COST, module.position)


def sort_modules(modules: list[TripModule]) -> list[TripModule]:
    """Return ``modules`` in display order."""
    return sorted(modules, key=display_sort_key)


def reorder_modules(modules: list[TripModule], module_ids: list[str]) -> list[TripModule]:
    """
    Renumber positions so modules follow ``module_ids``.

    Unknown IDs are ignored; modules not listed keep their display order
    after the listed ones.
    """
    by_id = {module.id: module for module in modules}
    ordered = [by_id[module_id] for module_id in dict.fromkeys(module_ids) if module_id in by_id]
    listed = {module.id for module in ordered}
    ordered += [module for module in sort_modules(modules) if module.id not in listed]
    return [
        module.model_copy(update={"position": position}) for position, module in enumerate(ordered)
    ]


class CostSummary(NamedTuple):
    """Aggregate spend over the priced modules of a trip."""

    total_cost: float
    items_with_price: int
    total_items: int


def summarize_costs(modules: list[TripModule]) -> CostSummary:
    """
    Sum every positive ``cost`` on flight, hotel, transportation, restaurant
    and activity modules. Cost and packing-list modules count toward
    ``total_items`` only.
    """
    total_cost = 0.0
    items_with_price = 0
    for module in modules:
        if module.type not in PRICED_MODULE_TYPES:
            continue
        cost = module.data.cost
        if cost is not None and cost > 0:
            total_cost += cost
            items_with_price += 1
    return CostSummary(total_cost, items_with_price, len(modules))


class Trip(BaseModel):
    """
    Aggregate root: trip metadata, participants and the ordered module list.

    ``version`` is assigned by the document store on every write and is not
    part of the stored document body.
    """

    id: str = Field(default_factory=new_document_id, description="Unique trip identifier")
    title: str = Field(description="Trip name", examples=["Paris Trip"])
    description: str = ""
    start_date: Timestamp = Field(description="Trip start date")
    end_date: Timestamp = Field(description="Trip end date")
    created_by: str = Field(description="Owner user ID")
    participants: list[str] = Field(
        default_factory=list, description="Participant user IDs (owner included)"
    )
    modules: list[TripModule] = Field(default_factory=list)
    created_at: Timestamp = Field(default_factory=utc_now)
    updated_at: Timestamp = Field(default_factory=utc_now)
    version: int = Field(default=0, ge=0, description="Store-assigned document version")

    @classmethod
    def create(
        cls,
        title: str,
        start_date,
        end_date,
        created_by: str,
        description: str = "",
    ) -> "Trip":
        """Start a new trip owned by ``created_by``, who is its first participant."""
        return cls(
            title=title,
            description=description,
            start_date=start_date,
            end_date=end_date,
            created_by=created_by,
            participants=[created_by],
        )

    def is_visible_to(self, user_id: str) -> bool:
        """Owners and participants can see a trip."""
        return self.created_by == user_id or user_id in self.participants

    def sorted_modules(self) -> list[TripModule]:
        """Modules in display order."""
        return sort_modules(self.modules)

    def cost_summary(self) -> CostSummary:
        """Spend summary across this trip's modules."""
        return summarize_costs(self.modules)

    def find_module(self, module_id: str) -> int | None:
        """Index of the module with ``module_id``, or None."""
        for index, module in enumerate(self.modules):
            if module.id == module_id:
                return index
        return None


class SectionLock(BaseModel):
    """Advisory claim on a module while a user edits it."""

    user_id: str
    expires_at: Timestamp | None = Field(
        default=None, description="Lock is void after this instant; None means already void"
    )

    def is_expired(self, now=None) -> bool:
        """A lock without an expiry, or past it, no longer holds."""
        if self.expires_at is None:
            return True
        return (now or utc_now()) >= self.expires_at

    @classmethod
    def for_user(cls, user_id: str, ttl_seconds: int, now=None) -> "SectionLock":
        """Lock held by ``user_id`` for ``ttl_seconds`` from ``now``."""
        return cls(user_id=user_id, expires_at=(now or utc_now()) + timedelta(seconds=ttl_seconds))


# ============================================================================
# API request / response schemas
# ============================================================================


class TripCreateRequest(BaseModel):
    """Request body for creating a trip."""

    title: str = Field(description="Trip name", examples=["Paris Trip"])
    description: str = ""
    start_date: Timestamp
    end_date: Timestamp

    @field_validator("title")
    @classmethod
    def title_not_empty(cls, v: str) -> str:
        """Ensure trip title is not empty."""
        if not v or not v.strip():
            raise ValueError("Trip title cannot be empty")
        return v.strip()

    @field_validator("end_date")
    @classmethod
    def end_after_start(cls, v, info):
        """Ensure end_date is not before start_date."""
        start_date = info.data.get("start_date")
        if start_date is not None and v < start_date:
            raise ValueError("Trip end_date must be after start_date")
        return v

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "title": "Paris Trip",
                    "description": "Summer in Paris",
                    "start_date": "2024-06-01T00:00:00Z",
                    "end_date": "2024-06-10T00:00:00Z",
                }
            ]
        }
    )


class TripUpdateRequest(TripCreateRequest):
    """Request body for updating trip metadata."""

    participants: list[str] | None = Field(
        default=None, description="Replacement participant list; unchanged when omitted"
    )


class ModuleWriteRequest(BaseModel):
    """
    Request body for adding or replacing a module.

    ``data`` is validated against the payload class registered for ``type``.
    """

    type: ModuleType
    data: dict[str, Any] = Field(default_factory=dict)
    position: int | None = Field(
        default=None, description="Sort key; appended after existing modules when omitted"
    )
    is_completed: bool = False

    def to_module(self, module_id: str | None = None, position: int = 0) -> TripModule:
        """Build the ``TripModule`` this request describes."""
        payload = MODULE_DATA_TYPES[self.type].model_validate(self.data)
        fields: dict[str, Any] = {
            "type": self.type,
            "data": payload,
            "position": self.position if self.position is not None else position,
            "is_completed": self.is_completed,
        }
        if module_id is not None:
            fields["id"] = module_id
        return TripModule(**fields)


class ModuleOrderRequest(BaseModel):
    """Request body for reordering modules: module IDs in their new order."""

    module_ids: list[str] = Field(min_length=1)


class LockResponse(BaseModel):
    """A section lock as returned by the API."""

    module_id: str
    user_id: str
    expires_at: Timestamp | None


class OperationResponse(BaseModel):
    """Response schema for write operations without a richer payload."""

    success: bool = Field(examples=[True])
