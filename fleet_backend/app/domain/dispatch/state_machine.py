"""
Truck and request lifecycles.

Both records move through the same forward shape. A request that holds a
reserved truck drags the truck along: the truck status that mirrors each
request status is listed in TRUCK_STATUS_FOR_REQUEST.
"""

from typing import Dict, FrozenSet, Optional

from fleet_backend.app.models.fleet_enums import TruckStatus, RequestStatus


# State machine: maps current status -> set of valid next statuses
TRUCK_TRANSITIONS: Dict[TruckStatus, FrozenSet[TruckStatus]] = {
    # Entering DISPATCHED is reserve()'s job, never a plain status change
    TruckStatus.AVAILABLE: frozenset({TruckStatus.MAINTENANCE, TruckStatus.OFFLINE}),
    TruckStatus.DISPATCHED: frozenset({TruckStatus.EN_ROUTE}),
    TruckStatus.EN_ROUTE: frozenset({TruckStatus.AT_LOCATION}),
    TruckStatus.AT_LOCATION: frozenset({TruckStatus.COMPLETED}),
    TruckStatus.COMPLETED: frozenset({TruckStatus.AVAILABLE}),
    TruckStatus.MAINTENANCE: frozenset({TruckStatus.AVAILABLE, TruckStatus.OFFLINE}),
    TruckStatus.OFFLINE: frozenset({TruckStatus.AVAILABLE, TruckStatus.MAINTENANCE}),
}

# Operator-forced exits, reachable from any other status
OUT_OF_SERVICE = frozenset({TruckStatus.MAINTENANCE, TruckStatus.OFFLINE})

# Statuses in which release() may hand the truck back
RELEASABLE = frozenset({
    TruckStatus.DISPATCHED,
    TruckStatus.EN_ROUTE,
    TruckStatus.AT_LOCATION,
    TruckStatus.COMPLETED,
})

REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.ASSIGNED, RequestStatus.CANCELLED}),
    RequestStatus.ASSIGNED: frozenset({RequestStatus.DISPATCHED, RequestStatus.CANCELLED}),
    RequestStatus.DISPATCHED: frozenset({RequestStatus.EN_ROUTE, RequestStatus.CANCELLED}),
    RequestStatus.EN_ROUTE: frozenset({RequestStatus.AT_LOCATION, RequestStatus.CANCELLED}),
    RequestStatus.AT_LOCATION: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

# Operator-forced return to the queue when the serving truck drops out
REVERTIBLE = frozenset({
    RequestStatus.ASSIGNED,
    RequestStatus.DISPATCHED,
    RequestStatus.EN_ROUTE,
    RequestStatus.AT_LOCATION,
})

# Cancellation policy: once the truck is on its way the request must run to completion
CANCELLABLE = frozenset({RequestStatus.PENDING, RequestStatus.ASSIGNED, RequestStatus.DISPATCHED})

TRUCK_STATUS_FOR_REQUEST: Dict[RequestStatus, TruckStatus] = {
    RequestStatus.DISPATCHED: TruckStatus.DISPATCHED,
    RequestStatus.EN_ROUTE: TruckStatus.EN_ROUTE,
    RequestStatus.AT_LOCATION: TruckStatus.AT_LOCATION,
    RequestStatus.COMPLETED: TruckStatus.COMPLETED,
}


def can_transition_truck(current: TruckStatus, new: TruckStatus) -> bool:
    if current == new:
        return False
    if new in OUT_OF_SERVICE:
        return True
    return new in TRUCK_TRANSITIONS[current]


def can_transition_request(current: RequestStatus, new: RequestStatus, revert: bool = False) -> bool:
    if revert and new == RequestStatus.PENDING:
        return current in REVERTIBLE
    return new in REQUEST_TRANSITIONS[current]


def is_cancellable(status: RequestStatus) -> bool:
    return status in CANCELLABLE


def truck_status_for(request_status: RequestStatus) -> Optional[TruckStatus]:
    """The truck status mirroring a request status, if the truck follows it."""
    return TRUCK_STATUS_FOR_REQUEST.get(request_status)
