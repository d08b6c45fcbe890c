"""
Service request Pydantic schemas.

Covers submission of pickups and bookings, status updates and the
request response shape.
"""

from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional

from fleet_backend.app.models.fleet_enums import RequestStatus, RequestKind, RequestPriority


class LocationIn(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=255)


class ServiceRequestCreate(BaseModel):
    """
    Schema for submitting a pickup request or a booking.

    Pickups are immediate and ignore the schedule. Bookings need a
    start_time; end_time defaults to a fixed slot length.
    """
    kind: RequestKind = RequestKind.PICKUP
    priority: RequestPriority = RequestPriority.NORMAL
    pickup_location: LocationIn
    destination: Optional[LocationIn] = None

    # Schedule (bookings only)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # Operators may submit on behalf of a customer
    requester_id: Optional[int] = Field(None, gt=0)
    requester_name: Optional[str] = Field(None, max_length=255)

    notes: Optional[str] = Field(None, max_length=2000)


class RequestStatusUpdate(BaseModel):
    """Schema for a status change; accepts booking names such as 'confirmed'."""
    status: RequestStatus
    notes: Optional[str] = Field(None, max_length=2000)

    @field_validator("status", mode="before")
    @classmethod
    def parse_status(cls, value):
        if isinstance(value, str):
            return RequestStatus.parse(value)
        return value


class CancelRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)


class LocationOut(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None


class ScheduleOut(BaseModel):
    requested_time: datetime
    start_time: datetime
    end_time: Optional[datetime] = None


class ServiceRequestResponse(BaseModel):
    """Schema for request response."""
    id: int
    reference_code: str
    kind: RequestKind
    priority: RequestPriority
    status: RequestStatus
    requester_id: int
    requester_name: Optional[str]
    pickup_location: LocationOut
    destination: Optional[LocationOut]
    schedule: ScheduleOut

    # Assignment
    assigned_truck_id: Optional[int]
    assigned_driver_id: Optional[int]
    assigned_driver_name: Optional[str]
    assigned_distance_km: Optional[float]

    dispatch_time: Optional[datetime]
    arrival_time: Optional[datetime]
    completion_time: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_request(cls, request) -> "ServiceRequestResponse":
        destination = None
        if request.destination_latitude is not None and request.destination_longitude is not None:
            destination = LocationOut(
                latitude=request.destination_latitude,
                longitude=request.destination_longitude,
                address=request.destination_address,
            )
        return cls(
            id=request.id,
            reference_code=request.reference_code,
            kind=request.kind,
            priority=request.priority,
            status=request.status,
            requester_id=request.requester_id,
            requester_name=request.requester_name,
            pickup_location=LocationOut(
                latitude=request.pickup_latitude,
                longitude=request.pickup_longitude,
                address=request.pickup_address,
            ),
            destination=destination,
            schedule=ScheduleOut(
                requested_time=request.requested_time,
                start_time=request.start_time,
                end_time=request.end_time,
            ),
            assigned_truck_id=request.assigned_truck_id,
            assigned_driver_id=request.assigned_driver_id,
            assigned_driver_name=request.assigned_driver_name,
            assigned_distance_km=request.assigned_distance_km,
            dispatch_time=request.dispatch_time,
            arrival_time=request.arrival_time,
            completion_time=request.completion_time,
            cancelled_at=request.cancelled_at,
            cancellation_reason=request.cancellation_reason,
            notes=request.notes,
            created_at=request.created_at,
            updated_at=request.updated_at,
        )


class RequestHistoryResponse(BaseModel):
    """One entry of a request's status history."""
    id: int
    status: RequestStatus
    timestamp: datetime
    actor_id: Optional[int]
    actor_role: Optional[str]
    notes: Optional[str]

    class Config:
        from_attributes = True
