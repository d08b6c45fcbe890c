"""
Dispatch API Endpoints.

Operators match pending requests to trucks and dispatch booked trucks.
"""

from fastapi import APIRouter, Depends, Path

from fleet_backend.app.core.actor import Actor
from fleet_backend.app.core.dependencies import get_coordinator
from fleet_backend.app.core.guards import require_operator, get_actor
from fleet_backend.app.domain.dispatch.coordinator import AssignmentCoordinator
from fleet_backend.app.schemas.dispatch import AssignRequest, AssignmentResponse
from fleet_backend.app.schemas.service_request import ServiceRequestResponse
from fleet_backend.app.schemas.truck import TruckResponse

router = APIRouter(prefix="/dispatch", tags=["Dispatch"])


@router.post("/assign", response_model=AssignmentResponse)
async def assign_truck(
    assign_data: AssignRequest,
    current_user: dict = Depends(require_operator),
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """
    Assign a truck to a pending request (Operator only).

    Without truck_id the nearest available truck within max_distance_km is
    claimed; with it, that specific truck is.
    """
    if assign_data.truck_id is not None:
        assignment = await coordinator.assign_specific(assign_data.request_id, assign_data.truck_id, actor)
    else:
        assignment = await coordinator.assign_nearest(
            assign_data.request_id, assign_data.max_distance_km, actor
        )

    return AssignmentResponse(
        request=ServiceRequestResponse.from_request(assignment.request),
        truck=TruckResponse.from_truck(assignment.truck),
        distance_km=assignment.distance_km,
    )


@router.post("/requests/{request_id}/dispatch", response_model=ServiceRequestResponse)
async def dispatch_booking(
    request_id: int = Path(..., description="Request ID"),
    current_user: dict = Depends(require_operator),
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """Reserve the booked truck and send it out (Operator only)."""
    request = await coordinator.dispatch(request_id, actor)
    return ServiceRequestResponse.from_request(request)
