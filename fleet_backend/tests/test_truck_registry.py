"""
Truck Registry Tests.

Onboarding, lifecycle transitions and the reserve/release pair.
"""

import pytest

from fleet_backend.app.core.exceptions import (
    AlreadyAssignedError,
    DuplicateResourceError,
    InvalidTransitionError,
    NotAvailableError,
    ResourceNotFoundError,
)
from fleet_backend.app.domain.dispatch.state_machine import can_transition_truck
from fleet_backend.app.models.fleet_enums import TruckStatus
from fleet_backend.app.schemas.truck import TruckCreate
from fleet_backend.app.services.geo_index import GeoPoint
from fleet_backend.app.services.truck_registry import TruckRegistry


@pytest.mark.asyncio
async def test_onboard_normalizes_plate_and_starts_available(db_session, make_truck):
    truck = await make_truck(license_plate="  kcz 123a ", latitude=-1.29, longitude=36.82)

    assert truck.status == TruckStatus.AVAILABLE
    assert truck.is_active is True
    assert truck.license_plate == "KCZ 123A"
    assert truck.assigned_request_id is None
    assert truck.has_location
    assert truck.last_seen is not None


@pytest.mark.asyncio
async def test_onboard_rejects_duplicate_code_and_plate(db_session, make_truck):
    await make_truck(truck_code="TRK-900", license_plate="KDA 900X")
    registry = TruckRegistry(db_session)

    with pytest.raises(DuplicateResourceError) as exc_info:
        await registry.onboard(TruckCreate(
            truck_code="TRK-900",
            driver_name="Someone Else",
            driver_phone="+254711111111",
            license_plate="kda 900x",
        ))

    assert exc_info.value.details["fields"] == {"truck_code": "TRK-900", "license_plate": "KDA 900X"}


@pytest.mark.asyncio
async def test_get_unknown_truck(db_session):
    with pytest.raises(ResourceNotFoundError):
        await TruckRegistry(db_session).get(4242)


@pytest.mark.asyncio
async def test_full_lifecycle_through_reserve_and_release(db_session, make_truck):
    truck = await make_truck(latitude=-1.29, longitude=36.82)
    registry = TruckRegistry(db_session)

    truck = await registry.reserve(truck.id, request_id=77)
    assert truck.status == TruckStatus.DISPATCHED
    assert truck.assigned_request_id == 77

    for status in (TruckStatus.EN_ROUTE, TruckStatus.AT_LOCATION, TruckStatus.COMPLETED):
        truck = await registry.set_status(truck.id, status)
        assert truck.status == status
        assert truck.assigned_request_id == 77

    truck = await registry.release(truck.id)
    await db_session.commit()

    assert truck.status == TruckStatus.AVAILABLE
    assert truck.assigned_request_id is None


@pytest.mark.asyncio
async def test_available_cannot_jump_to_completed(db_session, make_truck):
    truck = await make_truck()

    with pytest.raises(InvalidTransitionError):
        await TruckRegistry(db_session).set_status(truck.id, TruckStatus.COMPLETED)

    assert not can_transition_truck(TruckStatus.AVAILABLE, TruckStatus.COMPLETED)
    assert not can_transition_truck(TruckStatus.AVAILABLE, TruckStatus.AVAILABLE)
    assert can_transition_truck(TruckStatus.EN_ROUTE, TruckStatus.MAINTENANCE)


@pytest.mark.asyncio
async def test_dispatched_is_only_reachable_by_reserving(db_session, make_truck):
    truck = await make_truck()

    with pytest.raises(InvalidTransitionError):
        await TruckRegistry(db_session).set_status(truck.id, TruckStatus.DISPATCHED)


@pytest.mark.asyncio
async def test_reserve_conflicts(db_session, make_truck):
    busy = await make_truck()
    parked = await make_truck()
    retired = await make_truck()
    registry = TruckRegistry(db_session)

    await registry.reserve(busy.id, request_id=1)
    await registry.set_status(parked.id, TruckStatus.MAINTENANCE)
    await registry.set_active(retired.id, False)
    await db_session.commit()

    with pytest.raises(AlreadyAssignedError) as exc_info:
        await registry.reserve(busy.id, request_id=2)
    assert exc_info.value.details["assigned_request_id"] == 1

    with pytest.raises(NotAvailableError):
        await registry.reserve(parked.id, request_id=2)

    with pytest.raises(NotAvailableError) as exc_info:
        await registry.reserve(retired.id, request_id=2)
    assert exc_info.value.details["is_active"] is False


@pytest.mark.asyncio
async def test_status_change_refused_while_holding_a_request(db_session, make_truck):
    truck = await make_truck()
    registry = TruckRegistry(db_session)
    await registry.reserve(truck.id, request_id=5)

    with pytest.raises(InvalidTransitionError):
        await registry.set_status(truck.id, TruckStatus.MAINTENANCE)

    with pytest.raises(AlreadyAssignedError):
        await registry.set_active(truck.id, False)


@pytest.mark.asyncio
async def test_force_exit_drops_the_assignment(db_session, make_truck):
    truck = await make_truck()
    registry = TruckRegistry(db_session)
    await registry.reserve(truck.id, request_id=9)
    await registry.set_status(truck.id, TruckStatus.EN_ROUTE)

    truck, dropped = await registry.force_exit(truck.id, TruckStatus.MAINTENANCE)

    assert dropped == 9
    assert truck.status == TruckStatus.MAINTENANCE
    assert truck.assigned_request_id is None

    truck = await registry.set_status(truck.id, TruckStatus.AVAILABLE)
    assert truck.status == TruckStatus.AVAILABLE


@pytest.mark.asyncio
async def test_list_by_area_only_ranks_matchable_trucks(db_session, make_truck):
    near = await make_truck(latitude=-1.29, longitude=36.82)
    far = await make_truck(latitude=-1.35, longitude=36.90)
    await make_truck()  # Never reported a position
    inactive = await make_truck(latitude=-1.30, longitude=36.80)
    busy = await make_truck(latitude=-1.30, longitude=36.801)

    registry = TruckRegistry(db_session)
    await registry.set_active(inactive.id, False)
    await registry.reserve(busy.id, request_id=3)
    await db_session.commit()

    ranked = await registry.list_by_area(GeoPoint(-1.30, 36.80), 50)

    assert [item.candidate.id for item in ranked] == [near.id, far.id]
