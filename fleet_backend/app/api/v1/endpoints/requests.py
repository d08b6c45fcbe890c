"""
Service Request API Endpoints.

Customers submit and follow their own pickups and bookings; operators see
and manage all of them; drivers update the requests their truck serves.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status, Path, Query, Body

from fleet_backend.app.core.actor import Actor
from fleet_backend.app.core.dependencies import get_current_user, get_request_lifecycle, get_coordinator
from fleet_backend.app.core.guards import require_role, get_actor, OwnershipGuard
from fleet_backend.app.domain.dispatch.coordinator import AssignmentCoordinator
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.models.fleet_enums import RequestStatus, RequestKind
from fleet_backend.app.schemas.service_request import (
    ServiceRequestCreate,
    RequestStatusUpdate,
    CancelRequest,
    ServiceRequestResponse,
    RequestHistoryResponse,
)
from fleet_backend.app.services.request_lifecycle import RequestLifecycle

router = APIRouter(prefix="/requests", tags=["Requests"])
ownership_guard = OwnershipGuard()


@router.post("", response_model=ServiceRequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    request_data: ServiceRequestCreate,
    current_user: dict = Depends(require_role([UserRole.CUSTOMER, UserRole.OPERATOR])),
    actor: Actor = Depends(get_actor),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle)
):
    """
    Submit a pickup request or a booking.

    Customers always submit for themselves. Operators may submit on behalf
    of a customer by passing requester_id.
    """
    requester_id = current_user["user_id"]
    if current_user.get("role") == UserRole.OPERATOR.value and request_data.requester_id:
        requester_id = request_data.requester_id

    request = await lifecycle.submit(requester_id, request_data, actor)
    return ServiceRequestResponse.from_request(request)


@router.get("", response_model=List[ServiceRequestResponse])
async def list_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    kind: Optional[RequestKind] = Query(None),
    truck_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, gt=0, le=500),
    offset: int = Query(0, ge=0),
    current_user: dict = Depends(get_current_user),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle)
):
    """List requests; non-operators only see their own."""
    requester_id = ownership_guard.filter_by_ownership(current_user)
    requests = await lifecycle.list_requests(
        requester_id=requester_id,
        status=status_filter,
        kind=kind,
        truck_id=truck_id,
        limit=limit,
        offset=offset,
    )
    return [ServiceRequestResponse.from_request(request) for request in requests]


@router.get("/{request_id}", response_model=ServiceRequestResponse)
async def get_request(
    request_id: int = Path(..., description="Request ID"),
    current_user: dict = Depends(get_current_user),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle)
):
    request = await lifecycle.get(request_id)
    ownership_guard.enforce(request.requester_id, current_user, "request", driver_user_id=request.assigned_driver_id)
    return ServiceRequestResponse.from_request(request)


@router.get("/{request_id}/history", response_model=List[RequestHistoryResponse])
async def get_request_history(
    request_id: int = Path(..., description="Request ID"),
    current_user: dict = Depends(get_current_user),
    lifecycle: RequestLifecycle = Depends(get_request_lifecycle)
):
    """Status history of a request, oldest first."""
    request = await lifecycle.get(request_id)
    ownership_guard.enforce(request.requester_id, current_user, "request", driver_user_id=request.assigned_driver_id)
    entries = await lifecycle.history(request_id)
    return [RequestHistoryResponse.model_validate(entry) for entry in entries]


@router.put("/{request_id}/status", response_model=ServiceRequestResponse)
async def update_request_status(
    request_id: int = Path(..., description="Request ID"),
    update: RequestStatusUpdate = Body(...),
    current_user: dict = Depends(require_role([UserRole.OPERATOR, UserRole.DRIVER])),
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """
    Advance a request (Operator, or the driver of the assigned truck).

    Accepts booking names too: confirmed, in_progress, arrived.
    """
    if current_user.get("role") == UserRole.DRIVER.value:
        request = await coordinator.requests.get(request_id)
        if request.assigned_driver_id != current_user.get("user_id"):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This request is not assigned to you"
            )

    request = await coordinator.update_request_status(request_id, update.status, actor, notes=update.notes)
    return ServiceRequestResponse.from_request(request)


@router.post("/{request_id}/cancel", response_model=ServiceRequestResponse)
async def cancel_request(
    request_id: int = Path(..., description="Request ID"),
    cancel: CancelRequest = Body(...),
    current_user: dict = Depends(require_role([UserRole.CUSTOMER, UserRole.OPERATOR])),
    actor: Actor = Depends(get_actor),
    coordinator: AssignmentCoordinator = Depends(get_coordinator)
):
    """
    Cancel a request (owner or Operator).

    Only pending, assigned or dispatched requests can be cancelled.
    """
    request = await coordinator.requests.get(request_id)
    ownership_guard.enforce(request.requester_id, current_user, "request")

    request = await coordinator.cancel(request_id, actor, reason=cancel.reason)
    return ServiceRequestResponse.from_request(request)
