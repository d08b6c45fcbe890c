"""
Event payload schemas.

Payloads are serialized with camelCase keys for real-time clients.
"""

from pydantic import BaseModel
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Any, Dict, Optional

from fleet_backend.app.core.clock import utcnow


class EventPayload(BaseModel):

    class Config:
        alias_generator = to_camel
        populate_by_name = True

    def dump(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class LocationPayload(EventPayload):
    latitude: float
    longitude: float
    address: Optional[str] = None
    timestamp: Optional[datetime] = None


class RequesterPayload(EventPayload):
    id: int
    name: Optional[str] = None


class RequestCreatedPayload(EventPayload):
    request_id: int
    reference_code: str
    kind: str
    requester: RequesterPayload
    pickup_location: LocationPayload
    timestamp: datetime

    @classmethod
    def from_request(cls, request) -> "RequestCreatedPayload":
        return cls(
            request_id=request.id,
            reference_code=request.reference_code,
            kind=request.kind.value,
            requester=RequesterPayload(id=request.requester_id, name=request.requester_name),
            pickup_location=LocationPayload(
                latitude=request.pickup_latitude,
                longitude=request.pickup_longitude,
                address=request.pickup_address,
            ),
            timestamp=utcnow(),
        )


class RequestAssignedPayload(EventPayload):
    request_id: int
    reference_code: str
    truck_id: int
    truck_code: str
    driver_name: str
    distance_km: Optional[float] = None
    timestamp: datetime

    @classmethod
    def from_assignment(cls, request, truck, distance_km: Optional[float]) -> "RequestAssignedPayload":
        return cls(
            request_id=request.id,
            reference_code=request.reference_code,
            truck_id=truck.id,
            truck_code=truck.truck_code,
            driver_name=truck.driver_name,
            distance_km=distance_km,
            timestamp=utcnow(),
        )


class RequestStatusChangedPayload(EventPayload):
    request_id: int
    reference_code: str
    previous_status: str
    new_status: str
    notes: Optional[str] = None
    timestamp: datetime


class TruckLocationUpdatedPayload(EventPayload):
    truck_id: int
    truck_code: str
    current_location: LocationPayload
    status: str
    last_seen: Optional[datetime] = None

    @classmethod
    def from_truck(cls, truck) -> "TruckLocationUpdatedPayload":
        return cls(
            truck_id=truck.id,
            truck_code=truck.truck_code,
            current_location=LocationPayload(
                latitude=truck.current_latitude,
                longitude=truck.current_longitude,
                address=truck.current_address,
                timestamp=truck.location_recorded_at,
            ),
            status=truck.status.value,
            last_seen=truck.last_seen,
        )


class TruckStatusUpdatedPayload(EventPayload):
    truck_id: int
    truck_code: str
    status: str
    assigned_request: Optional[int] = None
    timestamp: datetime

    @classmethod
    def from_truck(cls, truck) -> "TruckStatusUpdatedPayload":
        return cls(
            truck_id=truck.id,
            truck_code=truck.truck_code,
            status=truck.status.value,
            assigned_request=truck.assigned_request_id,
            timestamp=utcnow(),
        )
