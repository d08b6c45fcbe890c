"""
Request lifecycle service.

Owns pickup request and booking records: creation with a reference code,
validated status transitions with their side-effect timestamps, the
insert-only status history, and the booking overlap query.

Status changes are conditional UPDATEs on the status the caller observed;
when two callers race from the same status only one of them moves the
request. Events describing a transition are staged on the outbox and
published by whoever commits the transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.actor import Actor, SYSTEM_ACTOR
from fleet_backend.app.core.clock import utcnow, as_utc
from fleet_backend.app.core.config import settings
from fleet_backend.app.core.exceptions import (
    ResourceNotFoundError,
    InvalidTransitionError,
    ValidationFailedError,
    ActiveRequestExistsError,
)
from fleet_backend.app.domain.dispatch.state_machine import can_transition_request
from fleet_backend.app.models.fleet_enums import RequestStatus, RequestKind
from fleet_backend.app.models.request_history import RequestHistoryEntry
from fleet_backend.app.models.service_request import ServiceRequest, ACTIVE_STATUSES, OPEN_STATUSES
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.events import (
    RequestCreatedPayload,
    RequestAssignedPayload,
    RequestStatusChangedPayload,
)
from fleet_backend.app.schemas.service_request import ServiceRequestCreate
from fleet_backend.app.services.event_bus import (
    EventBus,
    EventOutbox,
    OPERATOR_CHANNEL,
    REQUEST_CREATED,
    REQUEST_ASSIGNED,
    REQUEST_STATUS_CHANGED,
    user_channel,
)
from fleet_backend.app.services.geo_index import validate_coordinates
from fleet_backend.app.services.sequence import next_reference_code

logger = logging.getLogger(__name__)

_ASSIGNMENT_CLEARED = {
    "assigned_truck_id": None,
    "assigned_driver_id": None,
    "assigned_driver_name": None,
    "assigned_distance_km": None,
}


class RequestLifecycle:

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventBus] = None,
        outbox: Optional[EventOutbox] = None,
    ):
        self.db = db
        self.outbox = outbox if outbox is not None else EventOutbox(events)

    # Creation

    async def create(
        self,
        requester_id: int,
        data: ServiceRequestCreate,
        actor: Actor = SYSTEM_ACTOR,
    ) -> ServiceRequest:
        """
        Create a PENDING request with its reference code and first history entry.

        Raises:
            ValidationFailedError: bad coordinates or schedule
            ActiveRequestExistsError: the requester already has an open pickup
        """
        self._validate_locations(data)
        now = utcnow()

        if data.kind == RequestKind.PICKUP:
            if data.start_time is not None or data.end_time is not None:
                raise ValidationFailedError.for_fields({"start_time": "Pickups are immediate; only bookings take a schedule"})
            start_time, end_time = now, None

            existing = await self.db.execute(
                select(ServiceRequest.id).where(
                    ServiceRequest.requester_id == requester_id,
                    ServiceRequest.kind == RequestKind.PICKUP,
                    ServiceRequest.status.in_(OPEN_STATUSES),
                ).limit(1)
            )
            active_id = existing.scalar_one_or_none()
            if active_id is not None:
                raise ActiveRequestExistsError(requester_id, active_id)
        else:
            start_time, end_time = self._booking_window(data.start_time, data.end_time)

        reference_code = await next_reference_code(self.db, data.kind, now)

        request = ServiceRequest(
            reference_code=reference_code,
            kind=data.kind,
            priority=data.priority,
            requester_id=requester_id,
            requester_name=data.requester_name,
            pickup_latitude=data.pickup_location.latitude,
            pickup_longitude=data.pickup_location.longitude,
            pickup_address=data.pickup_location.address,
            destination_latitude=data.destination.latitude if data.destination else None,
            destination_longitude=data.destination.longitude if data.destination else None,
            destination_address=data.destination.address if data.destination else None,
            status=RequestStatus.PENDING,
            requested_time=now,
            start_time=start_time,
            end_time=end_time,
            notes=data.notes,
        )
        self.db.add(request)
        await self.db.flush()

        self._record(request.id, RequestStatus.PENDING, actor, "Request created", now)
        await self.db.flush()

        logger.info(
            "Request %s created", reference_code,
            extra={"request_id": request.id, "kind": data.kind.value, "requester_id": requester_id},
        )
        return await self.get(request.id)

    async def submit(
        self,
        requester_id: int,
        data: ServiceRequestCreate,
        actor: Actor = SYSTEM_ACTOR,
    ) -> ServiceRequest:
        """Create, commit and announce a new request to operators."""
        try:
            request = await self.create(requester_id, data, actor)
            self.outbox.stage([OPERATOR_CHANNEL], REQUEST_CREATED, RequestCreatedPayload.from_request(request).dump())
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self.outbox.discard()
            raise
        self.outbox.flush()
        return request

    # Reads

    async def get(self, request_id: int, for_update: bool = False) -> ServiceRequest:
        """
        Load a request, always re-reading the row.

        Raises:
            ResourceNotFoundError: unknown request id
        """
        stmt = (
            select(ServiceRequest)
            .where(ServiceRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        request = (await self.db.execute(stmt)).scalar_one_or_none()
        if request is None:
            raise ResourceNotFoundError("Request", request_id)
        return request

    async def list_requests(
        self,
        requester_id: Optional[int] = None,
        status: Optional[RequestStatus] = None,
        kind: Optional[RequestKind] = None,
        truck_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[ServiceRequest]:
        stmt = select(ServiceRequest).order_by(ServiceRequest.id.desc())
        if requester_id is not None:
            stmt = stmt.where(ServiceRequest.requester_id == requester_id)
        if status is not None:
            stmt = stmt.where(ServiceRequest.status == status)
        if kind is not None:
            stmt = stmt.where(ServiceRequest.kind == kind)
        if truck_id is not None:
            stmt = stmt.where(ServiceRequest.assigned_truck_id == truck_id)
        result = await self.db.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def history(self, request_id: int) -> List[RequestHistoryEntry]:
        await self.get(request_id)
        result = await self.db.execute(
            select(RequestHistoryEntry)
            .where(RequestHistoryEntry.request_id == request_id)
            .order_by(RequestHistoryEntry.id)
        )
        return list(result.scalars().all())

    # Transitions

    async def transition(
        self,
        request_id: int,
        new_status: RequestStatus,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
        truck: Optional[Truck] = None,
        distance_km: Optional[float] = None,
        revert: bool = False,
    ) -> ServiceRequest:
        """
        Move a request to `new_status` and append one history entry.

        Entering ASSIGNED requires `truck`; the truck and driver fields are
        written together. `revert=True` allows an active request to return to
        PENDING, which clears the assignment.

        Raises:
            InvalidTransitionError: the lifecycle forbids the move, or another
                caller changed the request first
        """
        request = await self.get(request_id)
        current = request.status

        if not can_transition_request(current, new_status, revert=revert):
            raise InvalidTransitionError("Request", request_id, current.value, new_status.value)
        if new_status == RequestStatus.ASSIGNED and truck is None:
            raise InvalidTransitionError(
                "Request", request_id, current.value, new_status.value,
                reason="a truck is required",
            )

        now = utcnow()
        values = {"status": new_status}
        if new_status == RequestStatus.ASSIGNED:
            values.update(
                assigned_truck_id=truck.id,
                assigned_driver_id=truck.driver_user_id,
                assigned_driver_name=truck.driver_name,
                assigned_distance_km=distance_km,
            )
        elif new_status == RequestStatus.DISPATCHED:
            values["dispatch_time"] = now
        elif new_status == RequestStatus.AT_LOCATION:
            values["arrival_time"] = now
        elif new_status == RequestStatus.COMPLETED:
            values["completion_time"] = now
        elif new_status == RequestStatus.CANCELLED:
            values.update(_ASSIGNMENT_CLEARED, cancelled_at=now, cancellation_reason=notes)
        elif new_status == RequestStatus.PENDING:
            values.update(_ASSIGNMENT_CLEARED, dispatch_time=None, arrival_time=None)

        result = await self.db.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id, ServiceRequest.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            latest = await self.get(request_id)
            raise InvalidTransitionError(
                "Request", request_id, latest.status.value, new_status.value,
                reason="request changed concurrently",
            )

        self._record(request_id, new_status, actor, notes, now)
        await self.db.flush()
        request = await self.get(request_id)

        if new_status == RequestStatus.ASSIGNED:
            self.outbox.stage(
                [user_channel(request.requester_id), OPERATOR_CHANNEL],
                REQUEST_ASSIGNED,
                RequestAssignedPayload.from_assignment(request, truck, distance_km).dump(),
            )
        self.outbox.stage(
            [user_channel(request.requester_id)],
            REQUEST_STATUS_CHANGED,
            RequestStatusChangedPayload(
                request_id=request.id,
                reference_code=request.reference_code,
                previous_status=current.value,
                new_status=new_status.value,
                notes=notes,
                timestamp=now,
            ).dump(),
        )

        logger.info("Request %s status %s -> %s", request_id, current.value, new_status.value)
        return request

    # Scheduling

    async def find_overlapping(
        self,
        truck_id: int,
        start_time: datetime,
        end_time: Optional[datetime],
        exclude_request_id: Optional[int] = None,
    ) -> List[ServiceRequest]:
        """
        Active requests on `truck_id` whose window intersects [start_time, end_time).

        Windows that merely touch do not overlap. Requests without an end
        time (immediate pickups) are open-ended.
        """
        stmt = (
            select(ServiceRequest)
            .where(
                ServiceRequest.assigned_truck_id == truck_id,
                ServiceRequest.status.in_(ACTIVE_STATUSES),
                self._overlap_clause(start_time, end_time),
            )
            .order_by(ServiceRequest.start_time, ServiceRequest.id)
        )
        if exclude_request_id is not None:
            stmt = stmt.where(ServiceRequest.id != exclude_request_id)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def trucks_busy_during(self, start_time: datetime, end_time: datetime) -> Set[int]:
        result = await self.db.execute(
            select(ServiceRequest.assigned_truck_id)
            .where(
                ServiceRequest.assigned_truck_id.is_not(None),
                ServiceRequest.status.in_(ACTIVE_STATUSES),
                self._overlap_clause(start_time, end_time),
            )
            .distinct()
        )
        return set(result.scalars().all())

    # Helpers

    @staticmethod
    def _overlap_clause(start_time: datetime, end_time: Optional[datetime]):
        start_time = as_utc(start_time)
        end_time = as_utc(end_time)
        ends_after_start = or_(ServiceRequest.end_time.is_(None), ServiceRequest.end_time > start_time)
        if end_time is None:
            return ends_after_start
        return and_(ServiceRequest.start_time < end_time, ends_after_start)

    @staticmethod
    def _booking_window(start_time: Optional[datetime], end_time: Optional[datetime]):
        if start_time is None:
            raise ValidationFailedError.for_fields({"start_time": "Bookings require a start time"})
        start_time = as_utc(start_time)
        if end_time is None:
            end_time = start_time + timedelta(hours=settings.default_booking_hours)
        end_time = as_utc(end_time)
        if end_time <= start_time:
            raise ValidationFailedError.for_fields({"end_time": "End time must be after start time"})
        return start_time, end_time

    @staticmethod
    def _validate_locations(data: ServiceRequestCreate) -> None:
        errors = {}
        for name in validate_coordinates(data.pickup_location.latitude, data.pickup_location.longitude):
            errors[f"pickup_location.{name}"] = "Coordinate out of range"
        if data.destination is not None:
            for name in validate_coordinates(data.destination.latitude, data.destination.longitude):
                errors[f"destination.{name}"] = "Coordinate out of range"
        if errors:
            raise ValidationFailedError.for_fields(errors)

    def _record(self, request_id: int, status: RequestStatus, actor: Actor, notes: Optional[str], when: datetime) -> None:
        self.db.add(RequestHistoryEntry(
            request_id=request_id,
            status=status,
            timestamp=when,
            actor_id=actor.user_id,
            actor_role=actor.role_name,
            notes=notes,
        ))
