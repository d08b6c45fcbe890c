"""
Truck registry.

Authoritative access to truck records: lookups, onboarding, lifecycle status
and the reserve/release pair that binds a truck to one request.

Status changes are written as conditional UPDATEs on the status the caller
observed, so a concurrent writer in another process can never be
overwritten silently. Methods flush only; the caller owns the transaction.
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.clock import utcnow
from fleet_backend.app.core.exceptions import (
    ResourceNotFoundError,
    InvalidTransitionError,
    AlreadyAssignedError,
    NotAvailableError,
    DuplicateResourceError,
    ValidationFailedError,
)
from fleet_backend.app.domain.dispatch.state_machine import (
    can_transition_truck,
    OUT_OF_SERVICE,
    RELEASABLE,
)
from fleet_backend.app.models.fleet_enums import RequestStatus, TruckStatus
from fleet_backend.app.models.service_request import ServiceRequest
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.truck import TruckCreate
from fleet_backend.app.services.geo_index import GeoPoint, NearestCandidates, nearest, validate_coordinates

logger = logging.getLogger(__name__)


class TruckRegistry:

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, truck_id: int, for_update: bool = False) -> Truck:
        """
        Load a truck, always re-reading the row.

        Raises:
            ResourceNotFoundError: unknown truck id
        """
        stmt = (
            select(Truck)
            .where(Truck.id == truck_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        truck = (await self.db.execute(stmt)).scalar_one_or_none()
        if truck is None:
            raise ResourceNotFoundError("Truck", truck_id)
        return truck

    async def lock_for_write(self, truck_id: int) -> Truck:
        """
        Take the truck row's write lock for the rest of the transaction.

        A no-op UPDATE, so SQLite takes its write lock as PostgreSQL takes the
        row lock. Reads that follow see every claim committed before it.
        """
        if not await self._conditional_update(truck_id, [], updated_at=utcnow()):
            raise ResourceNotFoundError("Truck", truck_id)
        return await self.get(truck_id, for_update=True)

    async def list_trucks(
        self,
        status: Optional[TruckStatus] = None,
        is_active: Optional[bool] = None,
    ) -> List[Truck]:
        stmt = select(Truck).order_by(Truck.id)
        if status is not None:
            stmt = stmt.where(Truck.status == status)
        if is_active is not None:
            stmt = stmt.where(Truck.is_active.is_(is_active))
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def list_available(self) -> List[Truck]:
        """Active, available trucks that have reported a position."""
        result = await self.db.execute(
            select(Truck)
            .where(
                Truck.status == TruckStatus.AVAILABLE,
                Truck.is_active.is_(True),
                Truck.current_latitude.is_not(None),
                Truck.current_longitude.is_not(None),
            )
            .order_by(Truck.id)
        )
        return list(result.scalars().all())

    async def list_by_area(self, point: GeoPoint, radius_km: float) -> NearestCandidates:
        return nearest(point, await self.list_available(), radius_km)

    async def onboard(self, data: TruckCreate) -> Truck:
        """
        Register a new truck in AVAILABLE status.

        Raises:
            DuplicateResourceError: truck_code or license_plate already registered
            ValidationFailedError: initial position out of range
        """
        plate = data.license_plate.strip().upper()
        code = data.truck_code.strip()

        existing = await self.db.execute(
            select(Truck.truck_code, Truck.license_plate).where(
                or_(Truck.truck_code == code, Truck.license_plate == plate)
            )
        )
        taken = {}
        for row in existing.all():
            if row.truck_code == code:
                taken["truck_code"] = code
            if row.license_plate == plate:
                taken["license_plate"] = plate
        if taken:
            raise DuplicateResourceError("Truck", taken)

        truck = Truck(
            truck_code=code,
            driver_name=data.driver_name,
            driver_phone=data.driver_phone,
            driver_user_id=data.driver_user_id,
            license_plate=plate,
            make=data.make,
            model=data.model,
            status=TruckStatus.AVAILABLE,
            is_active=True,
        )

        if data.latitude is not None or data.longitude is not None:
            invalid = validate_coordinates(data.latitude, data.longitude)
            if invalid:
                raise ValidationFailedError.for_fields({name: "Coordinate out of range" for name in invalid})
            now = utcnow()
            truck.current_latitude = data.latitude
            truck.current_longitude = data.longitude
            truck.current_address = data.address
            truck.location_recorded_at = now
            truck.last_seen = now

        self.db.add(truck)
        await self.db.flush()
        logger.info("Truck onboarded", extra={"truck_id": truck.id, "truck_code": truck.truck_code})
        return await self.get(truck.id)

    async def set_active(self, truck_id: int, is_active: bool) -> Truck:
        truck = await self.get(truck_id)
        if not is_active and truck.assigned_request_id is not None:
            raise AlreadyAssignedError(truck.id, truck.assigned_request_id)

        updated = await self._conditional_update(
            truck_id,
            [Truck.assigned_request_id.is_(None)] if not is_active else [],
            is_active=is_active,
        )
        if not updated:
            truck = await self.get(truck_id)
            raise AlreadyAssignedError(truck.id, truck.assigned_request_id)

        if not is_active:
            # Checked after the update so a booking claimed concurrently is seen
            booked = await self.db.execute(
                select(ServiceRequest.id)
                .where(
                    ServiceRequest.assigned_truck_id == truck_id,
                    ServiceRequest.status == RequestStatus.ASSIGNED,
                )
                .order_by(ServiceRequest.start_time, ServiceRequest.id)
                .limit(1)
            )
            booking_id = booked.scalar_one_or_none()
            if booking_id is not None:
                raise AlreadyAssignedError(truck_id, booking_id)
        return await self.get(truck_id)

    async def set_status(self, truck_id: int, new_status: TruckStatus) -> Truck:
        """
        Move a truck to `new_status` following the truck lifecycle.

        Raises:
            InvalidTransitionError: the lifecycle forbids the move, or the truck
                holds a request that the move would orphan
        """
        truck = await self.get(truck_id)
        current = truck.status
        held = truck.assigned_request_id

        if new_status == TruckStatus.DISPATCHED:
            raise InvalidTransitionError(
                "Truck", truck_id, current.value, new_status.value,
                reason="trucks are dispatched by reserving them for a request",
            )
        if not can_transition_truck(current, new_status):
            raise InvalidTransitionError("Truck", truck_id, current.value, new_status.value)
        if held is not None and new_status in OUT_OF_SERVICE:
            raise InvalidTransitionError(
                "Truck", truck_id, current.value, new_status.value,
                reason=f"truck is serving request {held}; force it out of service instead",
            )
        if held is not None and new_status == TruckStatus.AVAILABLE:
            raise InvalidTransitionError(
                "Truck", truck_id, current.value, new_status.value,
                reason=f"truck still holds request {held}",
            )

        held_clause = Truck.assigned_request_id.is_(None) if held is None else Truck.assigned_request_id == held
        updated = await self._conditional_update(
            truck_id,
            [Truck.status == current, held_clause],
            status=new_status,
        )
        if not updated:
            latest = await self.get(truck_id)
            raise InvalidTransitionError(
                "Truck", truck_id, latest.status.value, new_status.value,
                reason="truck changed concurrently",
            )

        logger.info("Truck %s status %s -> %s", truck_id, current.value, new_status.value)
        return await self.get(truck_id)

    async def reserve(self, truck_id: int, request_id: int) -> Truck:
        """
        Bind an available truck to a request in a single statement.

        Raises:
            AlreadyAssignedError: the truck already holds a request
            NotAvailableError: the truck is inactive or not AVAILABLE
            ResourceNotFoundError: unknown truck id
        """
        updated = await self._conditional_update(
            truck_id,
            [
                Truck.status == TruckStatus.AVAILABLE,
                Truck.assigned_request_id.is_(None),
                Truck.is_active.is_(True),
            ],
            status=TruckStatus.DISPATCHED,
            assigned_request_id=request_id,
        )
        if not updated:
            truck = await self.get(truck_id)
            if truck.assigned_request_id is not None:
                raise AlreadyAssignedError(truck.id, truck.assigned_request_id)
            raise NotAvailableError(truck.id, truck.status.value, truck.is_active)

        logger.info("Truck %s reserved for request %s", truck_id, request_id)
        return await self.get(truck_id)

    async def release(self, truck_id: int) -> Truck:
        """Clear the truck's assignment and make it AVAILABLE again."""
        updated = await self._conditional_update(
            truck_id,
            [Truck.status.in_(RELEASABLE)],
            status=TruckStatus.AVAILABLE,
            assigned_request_id=None,
        )
        if not updated:
            truck = await self.get(truck_id)
            raise InvalidTransitionError("Truck", truck_id, truck.status.value, TruckStatus.AVAILABLE.value)

        logger.info("Truck %s released", truck_id)
        return await self.get(truck_id)

    async def force_exit(self, truck_id: int, new_status: TruckStatus) -> Tuple[Truck, Optional[int]]:
        """
        Take a truck out of service from any status, dropping its assignment.

        Returns:
            The updated truck and the id of the request it was holding, if any
        """
        if new_status not in OUT_OF_SERVICE:
            raise ValidationFailedError.for_fields({"status": "Must be maintenance or offline"})

        truck = await self.get(truck_id)
        current = truck.status
        held = truck.assigned_request_id
        if current == new_status:
            raise InvalidTransitionError("Truck", truck_id, current.value, new_status.value)

        held_clause = Truck.assigned_request_id.is_(None) if held is None else Truck.assigned_request_id == held
        updated = await self._conditional_update(
            truck_id,
            [Truck.status == current, held_clause],
            status=new_status,
            assigned_request_id=None,
        )
        if not updated:
            latest = await self.get(truck_id)
            raise InvalidTransitionError(
                "Truck", truck_id, latest.status.value, new_status.value,
                reason="truck changed concurrently",
            )

        logger.warning(
            "Truck %s forced %s -> %s", truck_id, current.value, new_status.value,
            extra={"dropped_request_id": held},
        )
        return await self.get(truck_id), held

    async def _conditional_update(self, truck_id: int, conditions: list, **values) -> bool:
        result = await self.db.execute(
            update(Truck)
            .where(Truck.id == truck_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
