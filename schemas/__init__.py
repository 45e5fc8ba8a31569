"""
Pydantic schemas for the Trip Sync API.

Provides data models for:
- Module payloads (flights, hotels, packing lists, ...)
- Trips, modules and section locks
- Users and invite codes
- Common types and utilities
"""

# Common types
from schemas.common import ModuleType, Timestamp, utc_now

# Invite schemas
from schemas.invite import InviteCodeResponse, JoinTripResponse

# Module payload schemas
from schemas.modules import (
    MODULE_DATA_TYPES,
    ActivityData,
    CostData,
    CostItem,
    FlightData,
    HotelData,
    ModuleData,
    PackingItem,
    PackingListData,
    RestaurantData,
    TransportationData,
)

# Trip schemas
from schemas.trip import (
    CostSummary,
    LockResponse,
    ModuleOrderRequest,
    ModuleWriteRequest,
    OperationResponse,
    SectionLock,
    Trip,
    TripCreateRequest,
    TripModule,
    TripUpdateRequest,
)

# User schemas
from schemas.user import EmailCredentials, User

__all__ = [
    # Common
    "ModuleType",
    "Timestamp",
    "utc_now",
    # Modules
    "MODULE_DATA_TYPES",
    "ActivityData",
    "CostData",
    "CostItem",
    "FlightData",
    "HotelData",
    "ModuleData",
    "PackingItem",
    "PackingListData",
    "RestaurantData",
    "TransportationData",
    # Trip
    "CostSummary",
    "LockResponse",
    "ModuleOrderRequest",
    "ModuleWriteRequest",
    "OperationResponse",
    "SectionLock",
    "Trip",
    "TripCreateRequest",
    "TripModule",
    "TripUpdateRequest",
    # Users and invites
    "EmailCredentials",
    "User",
    "InviteCodeResponse",
    "JoinTripResponse",
]
