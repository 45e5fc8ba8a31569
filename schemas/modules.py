"""
Module payload schemas.

Defines the closed set of payloads a trip module can carry:
- Flight, hotel, transportation, restaurant and activity bookings
- The trip cost breakdown
- Packing lists

Every payload class is registered in ``MODULE_DATA_TYPES`` under the
``ModuleType`` it belongs to, which is what ties a module's tag to its data.
"""

import uuid
from typing import ClassVar

from pydantic import BaseModel, Field

from schemas.common import ModuleType, Timestamp, utc_now


def new_item_id() -> str:
    """Identifier for list items inside a payload (cost lines, packing items)."""
    return str(uuid.uuid4()).upper()


class FlightData(BaseModel):
    """A single flight segment."""

    module_type: ClassVar[ModuleType] = ModuleType.FLIGHT

    flight_number: str = Field(default="", examples=["AA100"])
    departure_date: Timestamp = Field(default_factory=utc_now)
    departure_time: Timestamp = Field(default_factory=utc_now)
    departure_airport: str = Field(default="", examples=["JFK"])
    arrival_airport: str = Field(default="", examples=["CDG"])
    cost: float | None = Field(default=None, description="Price, if known")
    notes: str = ""
    is_booked: bool = False
    booking_reference: str = ""


class HotelData(BaseModel):
    """A hotel stay."""

    module_type: ClassVar[ModuleType] = ModuleType.HOTEL

    hotel_name: str = Field(default="", examples=["Hotel Lutetia"])
    check_in_date: Timestamp = Field(default_factory=utc_now)
    check_out_date: Timestamp = Field(default_factory=utc_now)
    room_type: str = ""
    address: str = ""
    cost: float | None = None
    notes: str = ""
    is_booked: bool = False
    booking_reference: str = ""


class TransportationData(BaseModel):
    """Ground transportation between two places."""

    module_type: ClassVar[ModuleType] = ModuleType.TRANSPORTATION

    transport_type: str = Field(
        default="",
        description="Free text: car, bus, bike, metro, or anything custom",
        examples=["metro"],
    )
    destination: str = ""
    departure_location: str = ""
    duration: str = ""
    departure_time: Timestamp = Field(default_factory=utc_now)
    arrival_time: Timestamp = Field(default_factory=utc_now)
    start_date: Timestamp = Field(default_factory=utc_now)
    cost: float | None = None
    notes: str = ""
    is_booked: bool = False
    booking_reference: str = ""


class RestaurantData(BaseModel):
    """A restaurant visit."""

    module_type: ClassVar[ModuleType] = ModuleType.RESTAURANT

    name: str = ""
    time: Timestamp = Field(default_factory=utc_now)
    start_date: Timestamp = Field(default_factory=utc_now)
    has_reservation: bool = False
    reservation_name: str = ""
    cuisine: str = ""
    rating: float | None = None
    cost: float | None = None
    notes: str = ""


class ActivityData(BaseModel):
    """A planned activity."""

    module_type: ClassVar[ModuleType] = ModuleType.ACTIVITY

    name: str = ""
    activity_type: str = Field(
        default="",
        description="Free text: sightseeing, adventure, cultural, shopping, etc.",
    )
    location: str = ""
    address: str = ""
    start_date: Timestamp = Field(default_factory=utc_now)
    start_time: Timestamp = Field(default_factory=utc_now)
    end_time: Timestamp = Field(default_factory=utc_now)
    duration: str = ""
    cost: float | None = None
    notes: str = ""
    is_booked: bool = False
    booking_reference: str = ""


class CostItem(BaseModel):
    """One line of a cost breakdown. Amounts share a single implicit currency."""

    id: str = Field(default_factory=new_item_id)
    module_id: str = Field(description="Module the expense belongs to")
    description: str
    amount: float


class CostData(BaseModel):
    """Trip-wide cost breakdown."""

    module_type: ClassVar[ModuleType] = ModuleType.COST

    total_cost: float = 0.0
    breakdown: list[CostItem] = Field(default_factory=list)
    is_booked: bool = False
    booking_reference: str = ""


class PackingItem(BaseModel):
    """Something to bring."""

    id: str = Field(default_factory=new_item_id)
    name: str
    is_checked: bool = False
    category: str = Field(
        default="general",
        description="Open set: clothing, electronics, toiletries, documents, ...",
    )
    notes: str = ""


class PackingListData(BaseModel):
    """A packing list."""

    module_type: ClassVar[ModuleType] = ModuleType.PACKING_LIST

    title: str = ""
    items: list[PackingItem] = Field(default_factory=list)
    notes: str = ""


ModuleData = (
    FlightData
    | HotelData
    | TransportationData
    | RestaurantData
    | ActivityData
    | CostData
    | PackingListData
)

MODULE_DATA_TYPES: dict[ModuleType, type[BaseModel]] = {
    ModuleType.FLIGHT: FlightData,
    ModuleType.HOTEL: HotelData,
    ModuleType.TRANSPORTATION: TransportationData,
    ModuleType.RESTAURANT: RestaurantData,
    ModuleType.ACTIVITY: ActivityData,
    ModuleType.COST: CostData,
    ModuleType.PACKING_LIST: PackingListData,
}

# Payloads whose ``cost`` feeds the trip cost summary
PRICED_MODULE_TYPES = frozenset(
    {
        ModuleType.FLIGHT,
        ModuleType.HOTEL,
        ModuleType.TRANSPORTATION,
        ModuleType.RESTAURANT,
        ModuleType.ACTIVITY,
    }
)


def default_module_data(module_type: ModuleType) -> ModuleData:
    """Build an empty payload for a freshly added module of ``module_type``."""
    return MODULE_DATA_TYPES[module_type]()
