"""
Dispatch-related enumerations.
"""

import enum


class TruckStatus(str, enum.Enum):
    """Truck status enumeration."""
    AVAILABLE = "available"  # Idle and matchable
    DISPATCHED = "dispatched"  # Reserved for a request
    EN_ROUTE = "en_route"  # Driving to the pickup
    AT_LOCATION = "at_location"  # Arrived at the pickup
    COMPLETED = "completed"  # Job finished, about to be released
    MAINTENANCE = "maintenance"  # Operator-forced, out of service
    OFFLINE = "offline"  # Operator-forced, not reporting


class RequestStatus(str, enum.Enum):
    """Pickup request / booking status enumeration."""
    PENDING = "pending"  # Submitted, no truck yet
    ASSIGNED = "assigned"  # Truck chosen
    DISPATCHED = "dispatched"  # Truck reserved and sent
    EN_ROUTE = "en_route"
    AT_LOCATION = "at_location"
    COMPLETED = "completed"  # Terminal
    CANCELLED = "cancelled"  # Terminal

    @classmethod
    def parse(cls, value: str) -> "RequestStatus":
        """
        Parse a status, accepting the booking vocabulary and hyphenated spellings.

        Raises:
            ValueError: if the value names no known status
        """
        normalized = value.strip().lower().replace("-", "_")
        normalized = REQUEST_STATUS_ALIASES.get(normalized, normalized)
        return cls(normalized)


REQUEST_STATUS_ALIASES = {
    "confirmed": RequestStatus.ASSIGNED.value,
    "in_progress": RequestStatus.EN_ROUTE.value,
    "arrived": RequestStatus.AT_LOCATION.value,
}


class RequestKind(str, enum.Enum):
    """Immediate pickup or scheduled booking."""
    PICKUP = "pickup"
    BOOKING = "booking"


class RequestPriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
