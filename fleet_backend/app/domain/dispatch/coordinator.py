"""
Assignment Coordinator (Domain Logic).

Matches requests to trucks and owns every change that touches both records.

Flow of a claim:
1. Hold the record locks of the request and the truck (sorted key order)
2. Re-read both rows inside the transaction
3. Reserve the truck with a conditional UPDATE
4. Move the request (ASSIGNED, then DISPATCHED for immediate pickups)
5. Commit, then publish the staged events while still holding the locks

Scheduled bookings are only ASSIGNED when claimed: the truck's calendar
holds the window and the truck itself is reserved when the booking is
dispatched. A booking claim writes to the truck row before checking the
calendar, so claims on one truck are serialized by the database.
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.actor import Actor, SYSTEM_ACTOR
from fleet_backend.app.core.clock import as_utc
from fleet_backend.app.core.config import settings
from fleet_backend.app.core.exceptions import (
    AlreadyAssignedError,
    NotAvailableError,
    SchedulingConflictError,
    NotCancellableError,
    NoTruckAvailableError,
    InvalidTransitionError,
    InvariantViolationError,
    ValidationFailedError,
)
from fleet_backend.app.core.locks import KeyedLock, request_key, truck_key
from fleet_backend.app.domain.dispatch.state_machine import (
    OUT_OF_SERVICE,
    REVERTIBLE,
    can_transition_request,
    is_cancellable,
    truck_status_for,
)
from fleet_backend.app.models.fleet_enums import RequestStatus, TruckStatus
from fleet_backend.app.models.service_request import ServiceRequest
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.events import TruckStatusUpdatedPayload
from fleet_backend.app.services.audit import log_event, AuditAction
from fleet_backend.app.services.event_bus import EventBus, EventOutbox, OPERATOR_CHANNEL, TRUCK_STATUS_UPDATED
from fleet_backend.app.services.geo_index import GeoPoint, distance
from fleet_backend.app.services.request_lifecycle import RequestLifecycle
from fleet_backend.app.services.truck_registry import TruckRegistry

logger = logging.getLogger(__name__)

# Truck statuses a driver reports that move the held request along with them
_REQUEST_STATUS_FOR_TRUCK = {
    TruckStatus.EN_ROUTE: RequestStatus.EN_ROUTE,
    TruckStatus.AT_LOCATION: RequestStatus.AT_LOCATION,
    TruckStatus.COMPLETED: RequestStatus.COMPLETED,
}

_CLAIM_RACES = (AlreadyAssignedError, NotAvailableError, SchedulingConflictError)

_FORCE_RETRIES = 3


@dataclass
class Assignment:
    request: ServiceRequest
    truck: Truck
    distance_km: Optional[float]


class AssignmentCoordinator:

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventBus],
        locks: KeyedLock,
        max_attempts: Optional[int] = None,
    ):
        self.db = db
        self.locks = locks
        self.outbox = EventOutbox(events)
        self.trucks = TruckRegistry(db)
        self.requests = RequestLifecycle(db, outbox=self.outbox)
        self.max_attempts = max_attempts or settings.assignment_max_attempts

    # Assignment

    async def assign_nearest(
        self,
        request_id: int,
        max_distance_km: Optional[float] = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Assignment:
        """
        Claim the nearest available truck for a pending request.

        Candidates are tried nearest first. A candidate lost to a concurrent
        claim is skipped, up to `max_attempts` candidates in total.

        Raises:
            NoTruckAvailableError: no candidate within range could be claimed;
                the request stays PENDING
            InvalidTransitionError: the request is not PENDING
        """
        radius = settings.default_search_radius_km if max_distance_km is None else max_distance_km
        if radius <= 0:
            raise ValidationFailedError.for_fields({"max_distance_km": "Must be greater than zero"})

        async with self.locks.hold(request_key(request_id)):
            request = await self.requests.get(request_id)
            self._require_pending(request)
            pickup = GeoPoint(request.pickup_latitude, request.pickup_longitude)
            ranked = await self.trucks.list_by_area(pickup, radius)
            candidates = [(item.candidate.id, item.distance_km) for item in ranked]

            attempts = 0
            for truck_id, distance_km in candidates[:self.max_attempts]:
                attempts += 1
                async with self.locks.hold(truck_key(truck_id)):
                    try:
                        async with self._unit_of_work():
                            assignment = await self._claim(request_id, truck_id, distance_km, actor)
                    except _CLAIM_RACES as exc:
                        logger.info(
                            "Truck %s unavailable for request %s (%s), trying next candidate",
                            truck_id, request_id, exc.error_code,
                        )
                        continue
                    logger.info(
                        "Request %s assigned to truck %s at %.2f km after %d attempt(s)",
                        request_id, truck_id, distance_km, attempts,
                    )
                    return assignment

        logger.warning(
            "No truck available for request %s",
            request_id,
            extra={"max_distance_km": radius, "candidates": len(candidates), "attempts": attempts},
        )
        raise NoTruckAvailableError(request_id, radius, attempts)

    async def assign_specific(
        self,
        request_id: int,
        truck_id: int,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Assignment:
        """
        Operator override: claim a chosen truck for a pending request.

        Bookings are checked against the truck's calendar before the truck
        is touched.

        Raises:
            SchedulingConflictError: the booking window overlaps another booking
            AlreadyAssignedError / NotAvailableError: the truck cannot be reserved
        """
        async with self.locks.hold(request_key(request_id), truck_key(truck_id)):
            async with self._unit_of_work():
                request = await self.requests.get(request_id)
                self._require_pending(request)
                truck = await self.trucks.get(truck_id)

                distance_km = None
                if truck.has_location:
                    distance_km = distance(
                        GeoPoint(request.pickup_latitude, request.pickup_longitude),
                        GeoPoint(truck.current_latitude, truck.current_longitude),
                    )
                if request.is_scheduled:
                    await self._check_calendar(request, truck_id)

                assignment = await self._claim(request_id, truck_id, distance_km, actor, manual=True)

        logger.info("Request %s manually assigned to truck %s", request_id, truck_id)
        return assignment

    async def dispatch(
        self,
        request_id: int,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        """Reserve the truck of an ASSIGNED booking and move it to DISPATCHED."""
        async with self.locks.hold(request_key(request_id)):
            request = await self.requests.get(request_id)
            if request.status != RequestStatus.ASSIGNED:
                raise InvalidTransitionError(
                    "Request", request_id, request.status.value, RequestStatus.DISPATCHED.value,
                )
            truck_id = request.assigned_truck_id

            async with self.locks.hold(truck_key(truck_id)):
                async with self._unit_of_work():
                    truck = await self.trucks.reserve(truck_id, request_id)
                    request = await self.requests.transition(
                        request_id, RequestStatus.DISPATCHED, actor, notes=notes,
                    )
                    self._stage_truck(truck)
        return request

    # Progress

    async def advance(
        self,
        request_id: int,
        new_status: RequestStatus,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        """Move a dispatched request and its truck to EN_ROUTE or AT_LOCATION together."""
        if new_status not in (RequestStatus.EN_ROUTE, RequestStatus.AT_LOCATION):
            raise ValidationFailedError.for_fields({"status": "Must be en_route or at_location"})

        async with self.locks.hold(request_key(request_id)):
            request = await self.requests.get(request_id)
            if not can_transition_request(request.status, new_status):
                raise InvalidTransitionError("Request", request_id, request.status.value, new_status.value)

            async with self.locks.hold(truck_key(request.assigned_truck_id)):
                async with self._unit_of_work():
                    truck = await self._held_truck(request)
                    request = await self.requests.transition(request_id, new_status, actor, notes=notes)
                    await self._follow(truck, new_status)
        return request

    async def complete(
        self,
        request_id: int,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        """Complete a request and release its truck in the same transaction."""
        async with self.locks.hold(request_key(request_id)):
            request = await self.requests.get(request_id)
            if not can_transition_request(request.status, RequestStatus.COMPLETED):
                raise InvalidTransitionError(
                    "Request", request_id, request.status.value, RequestStatus.COMPLETED.value,
                )

            async with self.locks.hold(truck_key(request.assigned_truck_id)):
                async with self._unit_of_work():
                    truck = await self._held_truck(request)
                    request = await self.requests.transition(
                        request_id, RequestStatus.COMPLETED, actor, notes=notes,
                    )
                    if truck.status != TruckStatus.COMPLETED:
                        await self.trucks.set_status(truck.id, TruckStatus.COMPLETED)
                    truck = await self.trucks.release(truck.id)
                    self._stage_truck(truck)

        logger.info("Request %s completed, truck %s released", request_id, truck.id)
        return request

    async def cancel(
        self,
        request_id: int,
        actor: Actor = SYSTEM_ACTOR,
        reason: Optional[str] = None,
    ) -> ServiceRequest:
        """
        Cancel a request, releasing its truck if one was reserved for it.

        Raises:
            NotCancellableError: the truck is already on its way, or the
                request has ended
        """
        async with self.locks.hold(request_key(request_id)):
            request = await self.requests.get(request_id)
            if not is_cancellable(request.status):
                raise NotCancellableError(request_id, request.status.value)

            truck_id = request.assigned_truck_id
            truck_keys = [truck_key(truck_id)] if truck_id is not None else []

            async with self.locks.hold(*truck_keys):
                async with self._unit_of_work():
                    truck = await self.trucks.get(truck_id, for_update=True) if truck_id is not None else None
                    request = await self.requests.transition(
                        request_id, RequestStatus.CANCELLED, actor, notes=reason,
                    )
                    released = False
                    if truck is not None and truck.assigned_request_id == request_id:
                        truck = await self.trucks.release(truck_id)
                        self._stage_truck(truck)
                        released = True
                    if actor.is_operator:
                        await log_event(
                            self.db, AuditAction.REQUEST_CANCELLED, actor,
                            entity_type="request", entity_id=request_id,
                            metadata={"reason": reason, "released_truck_id": truck_id if released else None},
                        )

        logger.info("Request %s cancelled", request_id, extra={"released_truck_id": truck_id})
        return request

    # Inbound status contracts

    async def update_request_status(
        self,
        request_id: int,
        new_status: RequestStatus,
        actor: Actor = SYSTEM_ACTOR,
        notes: Optional[str] = None,
    ) -> ServiceRequest:
        if new_status == RequestStatus.DISPATCHED:
            return await self.dispatch(request_id, actor, notes=notes)
        if new_status in (RequestStatus.EN_ROUTE, RequestStatus.AT_LOCATION):
            return await self.advance(request_id, new_status, actor, notes=notes)
        if new_status == RequestStatus.COMPLETED:
            return await self.complete(request_id, actor, notes=notes)
        if new_status == RequestStatus.CANCELLED:
            return await self.cancel(request_id, actor, reason=notes)

        request = await self.requests.get(request_id)
        if new_status == RequestStatus.ASSIGNED:
            reason = "trucks are assigned through the dispatch assign operation"
        else:
            reason = "requests return to pending only when their truck is taken out of service"
        raise InvalidTransitionError("Request", request_id, request.status.value, new_status.value, reason=reason)

    async def update_truck_status(
        self,
        truck_id: int,
        new_status: TruckStatus,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Truck:
        """
        Apply a reported truck status.

        Progress reports for a truck that holds a request move the request
        too. Maintenance or offline for such a truck, or for one with bookings
        assigned to it, goes through the forced path. Everything else is a
        plain lifecycle change.
        """
        truck = await self.trucks.get(truck_id)
        held = truck.assigned_request_id

        if new_status in OUT_OF_SERVICE and (held is not None or await self._booked_on(truck_id)):
            return await self.force_out_of_service(truck_id, new_status, actor)

        if held is not None and new_status in _REQUEST_STATUS_FOR_TRUCK:
            request_status = _REQUEST_STATUS_FOR_TRUCK[new_status]
            if request_status == RequestStatus.COMPLETED:
                await self.complete(held, actor)
            else:
                await self.advance(held, request_status, actor)
            return await self.trucks.get(truck_id)

        async with self.locks.hold(truck_key(truck_id)):
            async with self._unit_of_work():
                truck = await self.trucks.set_status(truck_id, new_status)
                self._stage_truck(truck)
        return truck

    async def force_out_of_service(
        self,
        truck_id: int,
        new_status: TruckStatus,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Truck:
        """
        Take a truck out of service whatever it is doing.

        A request the truck was serving, and any booking assigned to it, goes
        back to PENDING with the reason noted in its history, and its requester
        is notified.
        """
        if new_status not in OUT_OF_SERVICE:
            raise ValidationFailedError.for_fields({"status": "Must be maintenance or offline"})

        for _ in range(_FORCE_RETRIES):
            truck = await self.trucks.get(truck_id)
            held = truck.assigned_request_id
            keys = [truck_key(truck_id)] + ([request_key(held)] if held is not None else [])

            async with self.locks.hold(*keys):
                truck = await self.trucks.get(truck_id, for_update=True)
                if truck.assigned_request_id != held:
                    continue

                async with self._unit_of_work():
                    truck, dropped = await self.trucks.force_exit(truck_id, new_status)
                    self._stage_truck(truck)
                    if dropped is not None:
                        await self._return_to_queue(dropped, truck, new_status, actor)
                    # Read after force_exit holds the row, so no booking can slip in
                    bookings = await self._booked_on(truck_id)
                    for booking in bookings:
                        await self._return_to_queue(booking.id, truck, new_status, actor)
                    await log_event(
                        self.db, AuditAction.TRUCK_FORCED_OUT_OF_SERVICE, actor,
                        entity_type="truck", entity_id=truck_id,
                        metadata={
                            "status": new_status.value,
                            "dropped_request_id": dropped,
                            "returned_booking_ids": [booking.id for booking in bookings],
                        },
                    )
            return truck

        raise InvalidTransitionError(
            "Truck", truck_id, truck.status.value, new_status.value,
            reason="assignment kept changing; retry",
        )

    # Scheduling

    async def available_for_window(self, start_time: datetime, end_time: datetime) -> List[Truck]:
        """Active, in-service trucks with no active request overlapping the window."""
        start_time = as_utc(start_time)
        end_time = as_utc(end_time)
        if end_time <= start_time:
            raise ValidationFailedError.for_fields({"end_time": "End time must be after start time"})

        busy = await self.requests.trucks_busy_during(start_time, end_time)
        trucks = await self.trucks.list_trucks(is_active=True)
        return [
            truck for truck in trucks
            if truck.status not in OUT_OF_SERVICE and truck.id not in busy
        ]

    # Helpers

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        """Commit on success and publish staged events; roll back and drop them on failure."""
        try:
            yield
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            self.outbox.discard()
            raise
        self.outbox.flush()

    async def _claim(
        self,
        request_id: int,
        truck_id: int,
        distance_km: Optional[float],
        actor: Actor,
        manual: bool = False,
    ) -> Assignment:
        request = await self.requests.get(request_id, for_update=True)
        self._require_pending(request)

        how = "manually" if manual else "automatically"
        if request.is_scheduled:
            # The calendar is only authoritative once the truck row is locked
            truck = await self.trucks.lock_for_write(truck_id)
            if not truck.is_active or truck.status in OUT_OF_SERVICE:
                raise NotAvailableError(truck.id, truck.status.value, truck.is_active)
            await self._check_calendar(request, truck_id)
            request = await self.requests.transition(
                request_id, RequestStatus.ASSIGNED, actor,
                notes=f"Booked {how} on truck {truck.truck_code}",
                truck=truck, distance_km=distance_km,
            )
        else:
            truck = await self.trucks.reserve(truck_id, request_id)
            await self.requests.transition(
                request_id, RequestStatus.ASSIGNED, actor,
                notes=f"Assigned {how} to truck {truck.truck_code}",
                truck=truck, distance_km=distance_km,
            )
            request = await self.requests.transition(request_id, RequestStatus.DISPATCHED, actor)
            self._stage_truck(truck)

        if manual:
            await log_event(
                self.db, AuditAction.REQUEST_ASSIGNED_MANUALLY, actor,
                entity_type="request", entity_id=request_id,
                metadata={"truck_id": truck_id, "distance_km": distance_km},
            )
        return Assignment(request=request, truck=truck, distance_km=distance_km)

    async def _check_calendar(self, request: ServiceRequest, truck_id: int) -> None:
        overlapping = await self.requests.find_overlapping(
            truck_id, request.start_time, request.end_time, exclude_request_id=request.id,
        )
        if overlapping:
            raise SchedulingConflictError(truck_id, [other.id for other in overlapping])

    async def _booked_on(self, truck_id: int) -> List[ServiceRequest]:
        """Bookings assigned to the truck that it has not been reserved for yet."""
        bookings = await self.requests.list_requests(truck_id=truck_id, status=RequestStatus.ASSIGNED)
        return sorted(bookings, key=lambda booking: booking.id)

    async def _held_truck(self, request: ServiceRequest) -> Truck:
        truck = await self.trucks.get(request.assigned_truck_id, for_update=True)
        if truck.assigned_request_id != request.id:
            raise InvariantViolationError(
                f"Request {request.id} is '{request.status.value}' but truck {truck.id} does not hold it",
                details={
                    "request_id": request.id,
                    "truck_id": truck.id,
                    "truck_assigned_request_id": truck.assigned_request_id,
                },
            )
        return truck

    async def _follow(self, truck: Truck, request_status: RequestStatus) -> Truck:
        target = truck_status_for(request_status)
        if target is not None and truck.status != target:
            truck = await self.trucks.set_status(truck.id, target)
            self._stage_truck(truck)
        return truck

    async def _return_to_queue(
        self,
        request_id: int,
        truck: Truck,
        new_status: TruckStatus,
        actor: Actor,
    ) -> None:
        request = await self.requests.get(request_id, for_update=True)
        if request.assigned_truck_id != truck.id or request.status not in REVERTIBLE:
            logger.error(
                "Truck %s dropped request %s which did not reference it back",
                truck.id, request_id,
                extra={"request_status": request.status.value, "request_truck_id": request.assigned_truck_id},
            )
            return
        await self.requests.transition(
            request_id, RequestStatus.PENDING, actor,
            notes=f"Truck {truck.truck_code} taken out of service ({new_status.value}); request returned to the queue",
            revert=True,
        )
        logger.warning("Request %s returned to pending after truck %s went %s", request_id, truck.id, new_status.value)

    @staticmethod
    def _require_pending(request: ServiceRequest) -> None:
        if request.status != RequestStatus.PENDING:
            raise InvalidTransitionError(
                "Request", request.id, request.status.value, RequestStatus.ASSIGNED.value,
                reason="only pending requests can be assigned",
            )

    def _stage_truck(self, truck: Truck) -> None:
        self.outbox.stage([OPERATOR_CHANNEL], TRUCK_STATUS_UPDATED, TruckStatusUpdatedPayload.from_truck(truck).dump())
