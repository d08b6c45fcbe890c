"""
Truck API Endpoints.

Operators onboard and manage trucks; drivers report positions for the
truck they drive. Any authenticated caller may search for nearby trucks.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query, Body
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.actor import Actor
from fleet_backend.app.core.config import settings
from fleet_backend.app.core.dependencies import (
    get_current_user,
    get_event_bus,
    get_truck_registry,
    get_location_tracker,
    get_coordinator,
)
from fleet_backend.app.core.guards import require_role, get_actor
from fleet_backend.app.db.session import get_db
from fleet_backend.app.domain.dispatch.coordinator import AssignmentCoordinator
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.models.fleet_enums import TruckStatus
from fleet_backend.app.schemas.events import TruckStatusUpdatedPayload
from fleet_backend.app.schemas.truck import (
    TruckCreate,
    TruckActiveUpdate,
    TruckStatusUpdate,
    LocationReport,
    TruckResponse,
    LocationUpdateResponse,
    TruckLocationResponse,
    NearbyTruckResponse,
    current_location_of,
)
from fleet_backend.app.services.audit import log_event, AuditAction
from fleet_backend.app.services.event_bus import EventBus, OPERATOR_CHANNEL, TRUCK_STATUS_UPDATED
from fleet_backend.app.services.geo_index import GeoPoint
from fleet_backend.app.services.location_tracker import LocationTracker
from fleet_backend.app.services.truck_registry import TruckRegistry

router = APIRouter(prefix="/trucks", tags=["Trucks"])


@router.post("", response_model=TruckResponse, status_code=status.HTTP_201_CREATED)
async def onboard_truck(
    truck_data: TruckCreate,
    current_user: dict = Depends(require_role([UserRole.OPERATOR])),
    actor: Actor = Depends(get_actor),
    registry: TruckRegistry = Depends(get_truck_registry),
    db: AsyncSession = Depends(get_db)
):
    """
    Onboard a new truck (Operator only).

    The truck starts AVAILABLE; it becomes matchable once it has a position.
    """
    truck = await registry.onboard(truck_data)

    await log_event(
        db=db,
        action=AuditAction.TRUCK_ONBOARDED,
        actor=actor,
        entity_type="truck",
        entity_id=truck.id,
        metadata={"truck_code": truck.truck_code, "license_plate": truck.license_plate}
    )
    await db.commit()

    return TruckResponse.from_truck(truck)


@router.get("", response_model=List[TruckResponse])
async def list_trucks(
    status_filter: Optional[TruckStatus] = Query(None, alias="status"),
    is_active: Optional[bool] = Query(None),
    current_user: dict = Depends(require_role([UserRole.OPERATOR, UserRole.DRIVER])),
    registry: TruckRegistry = Depends(get_truck_registry)
):
    """List trucks, optionally filtered by status and active flag."""
    trucks = await registry.list_trucks(status=status_filter, is_active=is_active)
    return [TruckResponse.from_truck(truck) for truck in trucks]


@router.get("/nearest", response_model=List[NearbyTruckResponse])
async def nearest_trucks(
    latitude: float = Query(..., ge=-90, le=90),
    longitude: float = Query(..., ge=-180, le=180),
    max_distance_km: float = Query(settings.default_search_radius_km, gt=0, le=20000),
    current_user: dict = Depends(get_current_user),
    registry: TruckRegistry = Depends(get_truck_registry)
):
    """Available trucks within range of a point, nearest first."""
    ranked = await registry.list_by_area(GeoPoint(latitude, longitude), max_distance_km)
    return [
        NearbyTruckResponse(distance_km=round(item.distance_km, 3), truck=TruckResponse.from_truck(item.candidate))
        for item in ranked
    ]


@router.get("/available", response_model=List[TruckResponse])
async def trucks_available_for_window(
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    current_user: dict = Depends(get_current_user),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """Trucks free for the whole window [start_time, end_time)."""
    trucks = await coordinator.available_for_window(start_time, end_time)
    return [TruckResponse.from_truck(truck) for truck in trucks]


@router.get("/{truck_id}", response_model=TruckResponse)
async def get_truck(
    truck_id: int = Path(..., description="Truck ID"),
    current_user: dict = Depends(require_role([UserRole.OPERATOR, UserRole.DRIVER])),
    registry: TruckRegistry = Depends(get_truck_registry)
):
    truck = await registry.get(truck_id)
    return TruckResponse.from_truck(truck)


@router.patch("/{truck_id}/active", response_model=TruckResponse)
async def set_truck_active(
    truck_id: int = Path(..., description="Truck ID"),
    update: TruckActiveUpdate = Body(...),
    current_user: dict = Depends(require_role([UserRole.OPERATOR])),
    actor: Actor = Depends(get_actor),
    registry: TruckRegistry = Depends(get_truck_registry),
    events: EventBus = Depends(get_event_bus),
    db: AsyncSession = Depends(get_db)
):
    """
    Activate or deactivate a truck (Operator only).

    A truck serving a request or booked for one cannot be deactivated.
    """
    truck = await registry.set_active(truck_id, update.is_active)

    await log_event(
        db=db,
        action=AuditAction.TRUCK_ACTIVATED if update.is_active else AuditAction.TRUCK_DEACTIVATED,
        actor=actor,
        entity_type="truck",
        entity_id=truck.id
    )
    await db.commit()

    events.publish(OPERATOR_CHANNEL, TRUCK_STATUS_UPDATED, TruckStatusUpdatedPayload.from_truck(truck).dump())
    return TruckResponse.from_truck(truck)


@router.put("/{truck_id}/status", response_model=TruckResponse)
async def update_truck_status(
    truck_id: int = Path(..., description="Truck ID"),
    update: TruckStatusUpdate = Body(...),
    current_user: dict = Depends(require_role([UserRole.OPERATOR])),
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """
    Change a truck's status (Operator only).

    Progress statuses for a truck serving a request move the request too.
    Maintenance or offline for such a truck returns its request to pending.
    """
    truck = await coordinator.update_truck_status(truck_id, update.status, actor)
    return TruckResponse.from_truck(truck)


@router.put("/{truck_id}/location", response_model=LocationUpdateResponse)
async def report_truck_location(
    truck_id: int = Path(..., description="Truck ID"),
    location: LocationReport = Body(...),
    current_user: dict = Depends(require_role([UserRole.OPERATOR, UserRole.DRIVER])),
    registry: TruckRegistry = Depends(get_truck_registry),
    tracker: LocationTracker = Depends(get_location_tracker)
):
    """
    Report a truck's current position (Operator or the truck's driver).
    """
    if current_user.get("role") == UserRole.DRIVER.value:
        truck = await registry.get(truck_id)
        if truck.driver_user_id != current_user.get("user_id"):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This truck is not assigned to you"
            )

    truck = await tracker.report(truck_id, location.latitude, location.longitude, location.address)

    return LocationUpdateResponse(
        truck_id=truck.id,
        current_location=current_location_of(truck),
        last_seen=truck.last_seen
    )


@router.get("/{truck_id}/locations", response_model=List[TruckLocationResponse])
async def get_location_history(
    truck_id: int = Path(..., description="Truck ID"),
    limit: Optional[int] = Query(None, gt=0, le=1000),
    current_user: dict = Depends(require_role([UserRole.OPERATOR])),
    tracker: LocationTracker = Depends(get_location_tracker)
):
    """Prior positions of a truck, oldest first (Operator only)."""
    locations = await tracker.history(truck_id, limit=limit)
    return [TruckLocationResponse.model_validate(location) for location in locations]
