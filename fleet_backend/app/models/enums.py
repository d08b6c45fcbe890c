"""
User roles enumeration.

Defines the caller roles the dispatch core distinguishes.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        OPERATOR: Fleet operator, subscribed to the shared operator channel
        CUSTOMER: Submits pickup requests and bookings
        DRIVER: Reports truck positions and progresses assigned jobs
    """
    OPERATOR = "OPERATOR"
    CUSTOMER = "CUSTOMER"
    DRIVER = "DRIVER"
