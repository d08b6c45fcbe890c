"""
Location tracking service.

Applies GPS reports to trucks. The previous position moves into the truck's
bounded history and operators are told about the new one once it is
committed. Reports for one truck are applied strictly one after another.
"""

import logging
from typing import List, Optional

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.clock import utcnow
from fleet_backend.app.core.config import settings
from fleet_backend.app.core.exceptions import ValidationFailedError
from fleet_backend.app.core.locks import KeyedLock, truck_key
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.models.truck_location import TruckLocation
from fleet_backend.app.schemas.events import TruckLocationUpdatedPayload
from fleet_backend.app.services.event_bus import EventBus, OPERATOR_CHANNEL, TRUCK_LOCATION_UPDATED
from fleet_backend.app.services.geo_index import validate_coordinates
from fleet_backend.app.services.truck_registry import TruckRegistry

logger = logging.getLogger(__name__)


class LocationTracker:

    def __init__(
        self,
        db: AsyncSession,
        events: Optional[EventBus],
        locks: KeyedLock,
        history_limit: Optional[int] = None,
    ):
        self.db = db
        self.events = events
        self.locks = locks
        self.registry = TruckRegistry(db)
        self.history_limit = history_limit or settings.location_history_limit

    async def report(
        self,
        truck_id: int,
        latitude: float,
        longitude: float,
        address: Optional[str] = None,
    ) -> Truck:
        """
        Record a new current position for a truck.

        Raises:
            ValidationFailedError: coordinates out of range
            ResourceNotFoundError: unknown truck id
        """
        invalid = validate_coordinates(latitude, longitude)
        if invalid:
            raise ValidationFailedError.for_fields({name: "Coordinate out of range" for name in invalid})

        async with self.locks.hold(truck_key(truck_id)):
            try:
                truck = await self.registry.get(truck_id, for_update=True)
                now = utcnow()

                if truck.has_location:
                    self.db.add(TruckLocation(
                        truck_id=truck_id,
                        latitude=truck.current_latitude,
                        longitude=truck.current_longitude,
                        address=truck.current_address,
                        recorded_at=truck.location_recorded_at or truck.last_seen or now,
                    ))
                    await self.db.flush()
                    await self._trim(truck_id)

                await self.db.execute(
                    update(Truck)
                    .where(Truck.id == truck_id)
                    .values(
                        current_latitude=latitude,
                        current_longitude=longitude,
                        current_address=address,
                        location_recorded_at=now,
                        last_seen=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

            truck = await self.registry.get(truck_id)
            if self.events is not None:
                self.events.publish(
                    OPERATOR_CHANNEL,
                    TRUCK_LOCATION_UPDATED,
                    TruckLocationUpdatedPayload.from_truck(truck).dump(),
                )

        logger.debug("Truck %s reported (%s, %s)", truck_id, latitude, longitude)
        return truck

    async def history(self, truck_id: int, limit: Optional[int] = None) -> List[TruckLocation]:
        """Prior positions of a truck, oldest first."""
        await self.registry.get(truck_id)
        stmt = (
            select(TruckLocation)
            .where(TruckLocation.truck_id == truck_id)
            .order_by(TruckLocation.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(reversed(result.scalars().all()))

    async def _trim(self, truck_id: int) -> None:
        newest = (
            select(TruckLocation.id)
            .where(TruckLocation.truck_id == truck_id)
            .order_by(TruckLocation.id.desc())
            .limit(self.history_limit)
        )
        await self.db.execute(
            delete(TruckLocation)
            .where(TruckLocation.truck_id == truck_id, TruckLocation.id.not_in(newest))
            .execution_options(synchronize_session=False)
        )
