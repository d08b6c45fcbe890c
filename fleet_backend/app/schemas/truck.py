"""
Truck Pydantic schemas.

Defines request and response models for truck onboarding, status and
location reporting.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional

from fleet_backend.app.models.fleet_enums import TruckStatus


class TruckCreate(BaseModel):
    """Schema for onboarding a new truck."""
    truck_code: str = Field(..., min_length=1, max_length=50, description="Unique fleet code (e.g., TRK-001)")

    # Driver
    driver_name: str = Field(..., min_length=1, max_length=255)
    driver_phone: str = Field(..., min_length=3, max_length=50)
    driver_user_id: Optional[int] = Field(None, gt=0, description="Account id of the driver, if any")

    # Vehicle
    license_plate: str = Field(..., min_length=1, max_length=50)
    make: Optional[str] = Field(None, max_length=100)
    model: Optional[str] = Field(None, max_length=100)

    # Optional initial position
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=255)


class TruckActiveUpdate(BaseModel):
    is_active: bool


class TruckStatusUpdate(BaseModel):
    """Schema for an operator status change."""
    status: TruckStatus


class LocationReport(BaseModel):
    """Schema for reporting a truck's GPS position."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=255)


class LocationSnapshot(BaseModel):
    latitude: float
    longitude: float
    address: Optional[str] = None
    timestamp: Optional[datetime] = None


class TruckResponse(BaseModel):
    """Schema for truck response."""
    id: int
    truck_code: str
    driver_name: str
    driver_phone: str
    driver_user_id: Optional[int]
    license_plate: str
    make: Optional[str]
    model: Optional[str]
    status: TruckStatus
    current_location: Optional[LocationSnapshot]
    last_seen: Optional[datetime]
    assigned_request_id: Optional[int]
    is_active: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_truck(cls, truck) -> "TruckResponse":
        return cls(
            id=truck.id,
            truck_code=truck.truck_code,
            driver_name=truck.driver_name,
            driver_phone=truck.driver_phone,
            driver_user_id=truck.driver_user_id,
            license_plate=truck.license_plate,
            make=truck.make,
            model=truck.model,
            status=truck.status,
            current_location=current_location_of(truck),
            last_seen=truck.last_seen,
            assigned_request_id=truck.assigned_request_id,
            is_active=truck.is_active,
            created_at=truck.created_at,
            updated_at=truck.updated_at,
        )


class LocationUpdateResponse(BaseModel):
    """Response after a location report."""
    truck_id: int
    current_location: LocationSnapshot
    last_seen: datetime


class TruckLocationResponse(BaseModel):
    """Prior location from a truck's history."""
    id: int
    latitude: float
    longitude: float
    address: Optional[str]
    recorded_at: datetime

    class Config:
        from_attributes = True


class NearbyTruckResponse(BaseModel):
    """A truck ranked by distance from a point."""
    distance_km: float
    truck: TruckResponse


def current_location_of(truck) -> Optional[LocationSnapshot]:
    if not truck.has_location:
        return None
    return LocationSnapshot(
        latitude=truck.current_latitude,
        longitude=truck.current_longitude,
        address=truck.current_address,
        timestamp=truck.location_recorded_at,
    )
