"""
Assignment consistency check.

Cross-checks the two halves of every truck/request binding. A truck that
holds a request must be referenced back by that request, and a request whose
truck has been reserved must be held by that truck. Pending and cancelled
requests never reference a truck; assigned and later ones always do. An
assigned booking must point at an active truck that is in service.

Any mismatch is a defect, not a business condition: it is logged at error
level and reported, never repaired automatically.
"""

import logging
from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.exceptions import InvariantViolationError
from fleet_backend.app.domain.dispatch.state_machine import OUT_OF_SERVICE
from fleet_backend.app.models.fleet_enums import RequestStatus
from fleet_backend.app.models.service_request import ServiceRequest
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.dispatch import ConsistencyReport, ConsistencyViolation

logger = logging.getLogger(__name__)

# Statuses in which the request's truck has been reserved for it
RESERVED_STATUSES = (
    RequestStatus.DISPATCHED,
    RequestStatus.EN_ROUTE,
    RequestStatus.AT_LOCATION,
)
TRUCK_REQUIRED = (RequestStatus.ASSIGNED,) + RESERVED_STATUSES + (RequestStatus.COMPLETED,)
TRUCK_FORBIDDEN = (RequestStatus.PENDING, RequestStatus.CANCELLED)


async def check_assignment_consistency(db: AsyncSession) -> ConsistencyReport:
    trucks = (await db.execute(
        select(Truck).order_by(Truck.id).execution_options(populate_existing=True)
    )).scalars().all()
    requests = (await db.execute(
        select(ServiceRequest).order_by(ServiceRequest.id).execution_options(populate_existing=True)
    )).scalars().all()

    trucks_by_id = {truck.id: truck for truck in trucks}
    requests_by_id = {request.id: request for request in requests}
    violations: List[ConsistencyViolation] = []

    for truck in trucks:
        if truck.assigned_request_id is None:
            continue
        request = requests_by_id.get(truck.assigned_request_id)
        if request is None:
            violations.append(ConsistencyViolation(
                kind="dangling_truck_reference",
                truck_id=truck.id,
                request_id=truck.assigned_request_id,
                detail="Truck holds a request that does not exist",
            ))
        elif request.assigned_truck_id != truck.id:
            violations.append(ConsistencyViolation(
                kind="truck_request_mismatch",
                truck_id=truck.id,
                request_id=request.id,
                detail=f"Request references truck {request.assigned_truck_id}",
            ))
        elif request.status not in RESERVED_STATUSES:
            violations.append(ConsistencyViolation(
                kind="truck_holds_inactive_request",
                truck_id=truck.id,
                request_id=request.id,
                detail=f"Request is '{request.status.value}'",
            ))

    for request in requests:
        if request.status in TRUCK_FORBIDDEN and request.assigned_truck_id is not None:
            violations.append(ConsistencyViolation(
                kind="unexpected_request_reference",
                truck_id=request.assigned_truck_id,
                request_id=request.id,
                detail=f"'{request.status.value}' request references a truck",
            ))
        elif request.status in TRUCK_REQUIRED and request.assigned_truck_id is None:
            violations.append(ConsistencyViolation(
                kind="missing_request_reference",
                request_id=request.id,
                detail=f"'{request.status.value}' request has no truck",
            ))
        elif request.status in RESERVED_STATUSES:
            truck = trucks_by_id.get(request.assigned_truck_id)
            if truck is None or truck.assigned_request_id != request.id:
                violations.append(ConsistencyViolation(
                    kind="request_truck_mismatch",
                    truck_id=request.assigned_truck_id,
                    request_id=request.id,
                    detail="Truck does not hold the request back",
                ))
        elif request.status == RequestStatus.ASSIGNED:
            truck = trucks_by_id.get(request.assigned_truck_id)
            if truck is None or not truck.is_active or truck.status in OUT_OF_SERVICE:
                violations.append(ConsistencyViolation(
                    kind="booking_on_unavailable_truck",
                    truck_id=request.assigned_truck_id,
                    request_id=request.id,
                    detail="Assigned booking references a truck that cannot serve it",
                ))

    for violation in violations:
        logger.error(
            "Assignment invariant violated: %s", violation.detail,
            extra={"kind": violation.kind, "truck_id": violation.truck_id, "request_id": violation.request_id},
        )

    return ConsistencyReport(
        consistent=not violations,
        checked_trucks=len(trucks),
        checked_requests=len(requests),
        violations=violations,
    )


async def assert_assignment_consistency(db: AsyncSession) -> ConsistencyReport:
    """
    Run the check and raise when anything disagrees.

    Raises:
        InvariantViolationError: at least one mismatch was found
    """
    report = await check_assignment_consistency(db)
    if not report.consistent:
        raise InvariantViolationError(
            f"{len(report.violations)} assignment mismatch(es) found",
            details={"violations": [violation.model_dump() for violation in report.violations]},
        )
    return report
