"""
Common types and base classes for schema definitions.

Provides shared types and enums used across multiple schema modules.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Annotated

from pydantic import AfterValidator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; leave aware ones untouched."""
    if value.tzinfo is None:
        # Assume UTC if no timezone provided
        return value.replace(tzinfo=UTC)
    return value


# Type alias for UTC timestamps
Timestamp = Annotated[datetime, AfterValidator(ensure_utc)]


class ModuleType(str, Enum):
    """
    Discriminant tag of a trip module.

    Values are the tags stored on the wire; the packing-list variant keeps
    its historical ``toBring`` tag.
    """

    FLIGHT = "flight"
    HOTEL = "hotel"
    TRANSPORTATION = "transportation"
    RESTAURANT = "restaurant"
    ACTIVITY = "activity"
    COST = "cost"
    PACKING_LIST = "toBring"

    @property
    def display_name(self) -> str:
        """Human-readable label for the module type."""
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ModuleType.FLIGHT: "Flight",
    ModuleType.HOTEL: "Hotel",
    ModuleType.TRANSPORTATION: "Transportation",
    ModuleType.RESTAURANT: "Restaurant",
    ModuleType.ACTIVITY: "Activity",
    ModuleType.COST: "Cost",
    ModuleType.PACKING_LIST: "To Bring",
}
