"""
Dispatch Coordinator Tests.

Nearest-truck matching, manual assignment, booking calendars and the
request/truck lifecycle moving together.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from fleet_backend.app.core.actor import Actor
from fleet_backend.app.core.exceptions import (
    AlreadyAssignedError,
    InvalidTransitionError,
    NoTruckAvailableError,
    NotCancellableError,
    SchedulingConflictError,
    ValidationFailedError,
)
from fleet_backend.app.domain.dispatch.coordinator import AssignmentCoordinator
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.models.fleet_enums import RequestKind, RequestStatus, TruckStatus
from fleet_backend.app.models.truck import Truck
from fleet_backend.app.schemas.service_request import ServiceRequestCreate
from fleet_backend.app.services.audit import AuditAction, get_entity_audit_trail
from fleet_backend.app.services.consistency import check_assignment_consistency
from fleet_backend.app.services.event_bus import (
    OPERATOR_CHANNEL,
    REQUEST_ASSIGNED,
    REQUEST_STATUS_CHANGED,
    TRUCK_STATUS_UPDATED,
    user_channel,
)
from fleet_backend.app.services.request_lifecycle import RequestLifecycle

OPERATOR = Actor(user_id=1, role=UserRole.OPERATOR, username="dispatcher")
BOOKING_DAY = datetime(2030, 3, 14, tzinfo=timezone.utc)


@pytest.fixture
def coordinator(db_session, event_bus, record_locks):
    return AssignmentCoordinator(db_session, event_bus, record_locks)


@pytest.fixture
async def nairobi_fleet(make_truck):
    """Two trucks east of a pickup at (-1.30, 36.80): ~2.5 km and ~12 km away."""
    near = await make_truck(latitude=-1.29, longitude=36.82)
    far = await make_truck(latitude=-1.35, longitude=36.90)
    return near, far


@pytest.fixture
def create_request(db_session):
    async def _create(requester_id=101, kind=RequestKind.PICKUP, start_hour=None, end_hour=None):
        data = {"kind": kind, "pickup_location": {"latitude": -1.30, "longitude": 36.80}}
        if start_hour is not None:
            data["start_time"] = BOOKING_DAY + timedelta(hours=start_hour)
        if end_hour is not None:
            data["end_time"] = BOOKING_DAY + timedelta(hours=end_hour)
        request = await RequestLifecycle(db_session).create(requester_id, ServiceRequestCreate(**data))
        await db_session.commit()
        return request

    return _create


async def drain(subscription):
    events = []
    while subscription.pending():
        events.append(await subscription.get())
    return events


# Nearest assignment

@pytest.mark.asyncio
async def test_nearest_truck_is_claimed_and_dispatched(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    request = await create_request()

    assignment = await coordinator.assign_nearest(request.id, 50)

    assert assignment.truck.id == near.id
    assert 2.3 < assignment.distance_km < 2.6
    assert assignment.request.status == RequestStatus.DISPATCHED
    assert assignment.request.assigned_truck_id == near.id
    assert assignment.request.assigned_driver_id == near.driver_user_id
    assert assignment.request.dispatch_time is not None
    assert assignment.truck.status == TruckStatus.DISPATCHED
    assert assignment.truck.assigned_request_id == request.id

    history = await coordinator.requests.history(request.id)
    assert [entry.status for entry in history] == [
        RequestStatus.PENDING, RequestStatus.ASSIGNED, RequestStatus.DISPATCHED,
    ]


@pytest.mark.asyncio
async def test_each_request_gets_the_nearest_remaining_truck(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    first = await create_request(requester_id=101)
    second = await create_request(requester_id=102)
    third = await create_request(requester_id=103)

    assert (await coordinator.assign_nearest(first.id, 50)).truck.id == near.id
    assert (await coordinator.assign_nearest(second.id, 50)).truck.id == far.id

    with pytest.raises(NoTruckAvailableError):
        await coordinator.assign_nearest(third.id, 50)

    third = await coordinator.requests.get(third.id)
    assert third.status == RequestStatus.PENDING
    assert third.assigned_truck_id is None


@pytest.mark.asyncio
async def test_radius_limits_candidates(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    first = await create_request(requester_id=101)
    second = await create_request(requester_id=102)

    assert (await coordinator.assign_nearest(first.id, 5)).truck.id == near.id

    with pytest.raises(NoTruckAvailableError) as exc_info:
        await coordinator.assign_nearest(second.id, 5)
    assert exc_info.value.details["attempts"] == 0


@pytest.mark.asyncio
async def test_radius_must_be_positive(coordinator, nairobi_fleet, create_request):
    request = await create_request()

    with pytest.raises(ValidationFailedError):
        await coordinator.assign_nearest(request.id, 0)


@pytest.mark.asyncio
async def test_only_pending_requests_are_assigned(coordinator, nairobi_fleet, create_request):
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)

    with pytest.raises(InvalidTransitionError):
        await coordinator.assign_nearest(request.id, 50)


# Manual assignment

@pytest.mark.asyncio
async def test_assign_specific_is_audited(coordinator, nairobi_fleet, create_request, db_session):
    near, far = nairobi_fleet
    request = await create_request()

    assignment = await coordinator.assign_specific(request.id, far.id, OPERATOR)

    assert assignment.truck.id == far.id
    assert assignment.request.status == RequestStatus.DISPATCHED
    assert 10 < assignment.distance_km < 13

    trail = await get_entity_audit_trail(db_session, "request", request.id)
    assert [entry.action for entry in trail] == [AuditAction.REQUEST_ASSIGNED_MANUALLY]
    assert trail[0].actor_id == OPERATOR.user_id
    assert trail[0].meta_data["truck_id"] == far.id


@pytest.mark.asyncio
async def test_assign_specific_busy_truck_leaves_request_pending(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    first = await create_request(requester_id=101)
    second = await create_request(requester_id=102)
    await coordinator.assign_specific(first.id, near.id, OPERATOR)

    with pytest.raises(AlreadyAssignedError):
        await coordinator.assign_specific(second.id, near.id, OPERATOR)

    second = await coordinator.requests.get(second.id)
    assert second.status == RequestStatus.PENDING
    assert len(await coordinator.requests.history(second.id)) == 1


@pytest.mark.asyncio
async def test_assign_specific_truck_without_location(coordinator, make_truck, create_request):
    truck = await make_truck()
    request = await create_request()

    assignment = await coordinator.assign_specific(request.id, truck.id, OPERATOR)

    assert assignment.distance_km is None
    assert assignment.request.assigned_distance_km is None


# Bookings

@pytest.mark.asyncio
async def test_overlapping_bookings_are_refused(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    morning = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    overlapping = await create_request(requester_id=202, kind=RequestKind.BOOKING, start_hour=11, end_hour=13)
    touching = await create_request(requester_id=203, kind=RequestKind.BOOKING, start_hour=12, end_hour=13)

    booked = await coordinator.assign_specific(morning.id, near.id, OPERATOR)
    assert booked.request.status == RequestStatus.ASSIGNED
    # The truck itself is only reserved when the booking is dispatched
    assert booked.truck.status == TruckStatus.AVAILABLE
    assert booked.truck.assigned_request_id is None

    with pytest.raises(SchedulingConflictError) as exc_info:
        await coordinator.assign_specific(overlapping.id, near.id, OPERATOR)
    assert exc_info.value.details["conflicting_request_ids"] == [morning.id]

    adjacent = await coordinator.assign_specific(touching.id, near.id, OPERATOR)
    assert adjacent.request.status == RequestStatus.ASSIGNED
    assert adjacent.request.assigned_truck_id == near.id


@pytest.mark.asyncio
async def test_nearest_booking_skips_trucks_with_a_clash(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    morning = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    overlapping = await create_request(requester_id=202, kind=RequestKind.BOOKING, start_hour=11, end_hour=13)

    assert (await coordinator.assign_nearest(morning.id, 50)).truck.id == near.id
    assert (await coordinator.assign_nearest(overlapping.id, 50)).truck.id == far.id


@pytest.mark.asyncio
async def test_dispatching_a_booking_reserves_its_truck(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, near.id, OPERATOR)

    request = await coordinator.dispatch(booking.id, OPERATOR)

    assert request.status == RequestStatus.DISPATCHED
    truck = await coordinator.trucks.get(near.id)
    assert truck.status == TruckStatus.DISPATCHED
    assert truck.assigned_request_id == booking.id

    with pytest.raises(InvalidTransitionError):
        await coordinator.dispatch(booking.id, OPERATOR)


@pytest.mark.asyncio
async def test_available_for_window(coordinator, make_truck, create_request):
    booked = await make_truck(latitude=-1.29, longitude=36.82)
    free = await make_truck()
    parked = await make_truck()
    await coordinator.update_truck_status(parked.id, TruckStatus.MAINTENANCE, OPERATOR)

    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, booked.id, OPERATOR)

    during = await coordinator.available_for_window(
        BOOKING_DAY + timedelta(hours=11), BOOKING_DAY + timedelta(hours=13)
    )
    after = await coordinator.available_for_window(
        BOOKING_DAY + timedelta(hours=12), BOOKING_DAY + timedelta(hours=13)
    )

    assert [truck.id for truck in during] == [free.id]
    assert [truck.id for truck in after] == [booked.id, free.id]

    with pytest.raises(ValidationFailedError):
        await coordinator.available_for_window(BOOKING_DAY, BOOKING_DAY)


# Progress, completion and cancellation

@pytest.mark.asyncio
async def test_truck_follows_the_request_to_completion(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)

    await coordinator.advance(request.id, RequestStatus.EN_ROUTE)
    assert (await coordinator.trucks.get(near.id)).status == TruckStatus.EN_ROUTE

    with pytest.raises(InvalidTransitionError):
        await coordinator.complete(request.id)

    await coordinator.advance(request.id, RequestStatus.AT_LOCATION)
    assert (await coordinator.trucks.get(near.id)).status == TruckStatus.AT_LOCATION

    request = await coordinator.complete(request.id, notes="Signed for")
    truck = await coordinator.trucks.get(near.id)

    assert request.status == RequestStatus.COMPLETED
    assert request.completion_time is not None
    assert truck.status == TruckStatus.AVAILABLE
    assert truck.assigned_request_id is None


@pytest.mark.asyncio
async def test_cancelling_releases_the_truck(coordinator, nairobi_fleet, create_request, db_session):
    near, far = nairobi_fleet
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)

    request = await coordinator.cancel(request.id, OPERATOR, reason="Customer called off")

    truck = await coordinator.trucks.get(near.id)
    assert request.status == RequestStatus.CANCELLED
    assert request.assigned_truck_id is None
    assert request.cancellation_reason == "Customer called off"
    assert truck.status == TruckStatus.AVAILABLE
    assert truck.assigned_request_id is None

    trail = await get_entity_audit_trail(db_session, "request", request.id)
    assert trail[0].action == AuditAction.REQUEST_CANCELLED
    assert trail[0].meta_data["released_truck_id"] == near.id


@pytest.mark.asyncio
async def test_cancelling_a_booked_request_keeps_the_truck_free(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, near.id, OPERATOR)

    request = await coordinator.cancel(booking.id, Actor(201, UserRole.CUSTOMER), reason="Plans changed")

    assert request.status == RequestStatus.CANCELLED
    assert (await coordinator.trucks.get(near.id)).status == TruckStatus.AVAILABLE
    assert await coordinator.requests.find_overlapping(
        near.id, BOOKING_DAY + timedelta(hours=10), BOOKING_DAY + timedelta(hours=12)
    ) == []


@pytest.mark.asyncio
async def test_cannot_cancel_once_en_route(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)
    await coordinator.advance(request.id, RequestStatus.EN_ROUTE)

    with pytest.raises(NotCancellableError):
        await coordinator.cancel(request.id, OPERATOR, reason="Too late")

    truck = await coordinator.trucks.get(near.id)
    assert truck.assigned_request_id == request.id
    assert truck.status == TruckStatus.EN_ROUTE


@pytest.mark.asyncio
async def test_cancelled_request_cannot_be_cancelled_again(coordinator, create_request):
    request = await create_request()
    await coordinator.cancel(request.id, OPERATOR, reason="Duplicate")

    with pytest.raises(NotCancellableError):
        await coordinator.cancel(request.id, OPERATOR, reason="Duplicate")


# Truck status reports

@pytest.mark.asyncio
async def test_truck_reports_drive_the_request(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)

    truck = await coordinator.update_truck_status(near.id, TruckStatus.EN_ROUTE)
    assert truck.status == TruckStatus.EN_ROUTE
    assert (await coordinator.requests.get(request.id)).status == RequestStatus.EN_ROUTE

    await coordinator.update_truck_status(near.id, TruckStatus.AT_LOCATION)
    assert (await coordinator.requests.get(request.id)).status == RequestStatus.AT_LOCATION

    truck = await coordinator.update_truck_status(near.id, TruckStatus.COMPLETED)
    assert truck.status == TruckStatus.AVAILABLE
    assert truck.assigned_request_id is None
    assert (await coordinator.requests.get(request.id)).status == RequestStatus.COMPLETED


@pytest.mark.asyncio
async def test_forced_maintenance_returns_request_to_queue(
    coordinator, nairobi_fleet, create_request, event_bus, db_session
):
    near, far = nairobi_fleet
    request = await create_request()
    await coordinator.assign_nearest(request.id, 50)
    await coordinator.advance(request.id, RequestStatus.EN_ROUTE)
    requester = event_bus.subscribe(user_channel(101))

    truck = await coordinator.update_truck_status(near.id, TruckStatus.MAINTENANCE, OPERATOR)

    assert truck.status == TruckStatus.MAINTENANCE
    assert truck.assigned_request_id is None
    request = await coordinator.requests.get(request.id)
    assert request.status == RequestStatus.PENDING
    assert request.assigned_truck_id is None
    history = await coordinator.requests.history(request.id)
    assert history[-1].status == RequestStatus.PENDING
    assert "maintenance" in history[-1].notes

    events = await drain(requester)
    assert [(event.event, event.data["newStatus"]) for event in events] == [
        (REQUEST_STATUS_CHANGED, "pending"),
    ]

    trail = await get_entity_audit_trail(db_session, "truck", near.id)
    assert trail[0].action == AuditAction.TRUCK_FORCED_OUT_OF_SERVICE
    assert trail[0].meta_data["dropped_request_id"] == request.id

    # The request can be matched again, now to the remaining truck
    assert (await coordinator.assign_nearest(request.id, 50)).truck.id == far.id


@pytest.mark.asyncio
async def test_idle_truck_status_changes(coordinator, make_truck):
    truck = await make_truck()

    truck = await coordinator.update_truck_status(truck.id, TruckStatus.OFFLINE, OPERATOR)
    assert truck.status == TruckStatus.OFFLINE
    truck = await coordinator.update_truck_status(truck.id, TruckStatus.AVAILABLE, OPERATOR)
    assert truck.status == TruckStatus.AVAILABLE

    with pytest.raises(InvalidTransitionError):
        await coordinator.update_truck_status(truck.id, TruckStatus.EN_ROUTE, OPERATOR)


@pytest.mark.asyncio
async def test_request_status_contract(coordinator, nairobi_fleet, create_request):
    request = await create_request()

    with pytest.raises(InvalidTransitionError):
        await coordinator.update_request_status(request.id, RequestStatus.ASSIGNED, OPERATOR)

    await coordinator.assign_nearest(request.id, 50)

    with pytest.raises(InvalidTransitionError):
        await coordinator.update_request_status(request.id, RequestStatus.PENDING, OPERATOR)

    request = await coordinator.update_request_status(request.id, RequestStatus.EN_ROUTE, OPERATOR)
    assert request.status == RequestStatus.EN_ROUTE
    request = await coordinator.update_request_status(request.id, RequestStatus.AT_LOCATION, OPERATOR)
    request = await coordinator.update_request_status(request.id, RequestStatus.COMPLETED, OPERATOR)
    assert request.status == RequestStatus.COMPLETED


# Events and consistency

@pytest.mark.asyncio
async def test_assignment_events(coordinator, nairobi_fleet, create_request, event_bus):
    near, far = nairobi_fleet
    request = await create_request()
    operators = event_bus.subscribe(OPERATOR_CHANNEL)
    requester = event_bus.subscribe(user_channel(101))
    bystander = event_bus.subscribe(user_channel(999))

    await coordinator.assign_nearest(request.id, 50)

    to_requester = await drain(requester)
    assert [event.event for event in to_requester] == [
        REQUEST_ASSIGNED, REQUEST_STATUS_CHANGED, REQUEST_STATUS_CHANGED,
    ]
    assigned = to_requester[0].data
    assert assigned["requestId"] == request.id
    assert assigned["truckId"] == near.id
    assert assigned["truckCode"] == near.truck_code
    assert 2.3 < assigned["distanceKm"] < 2.6
    assert [event.data["newStatus"] for event in to_requester[1:]] == ["assigned", "dispatched"]

    to_operators = await drain(operators)
    assert [event.event for event in to_operators] == [REQUEST_ASSIGNED, TRUCK_STATUS_UPDATED]
    assert to_operators[1].data["status"] == "dispatched"
    assert to_operators[1].data["assignedRequest"] == request.id

    assert bystander.pending() == 0


@pytest.mark.asyncio
async def test_failed_assignment_publishes_nothing(coordinator, create_request, event_bus):
    request = await create_request()
    operators = event_bus.subscribe(OPERATOR_CHANNEL)

    with pytest.raises(NoTruckAvailableError):
        await coordinator.assign_nearest(request.id, 50)

    assert operators.pending() == 0


@pytest.mark.asyncio
async def test_consistency_holds_across_the_lifecycle(coordinator, nairobi_fleet, create_request, db_session):
    near, far = nairobi_fleet
    first = await create_request(requester_id=101)
    second = await create_request(requester_id=102)
    booking = await create_request(requester_id=103, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)

    await coordinator.assign_nearest(first.id, 50)
    await coordinator.assign_nearest(second.id, 50)
    await coordinator.advance(first.id, RequestStatus.EN_ROUTE)
    await coordinator.cancel(second.id, OPERATOR, reason="No longer needed")
    await coordinator.assign_nearest(booking.id, 50)
    await coordinator.update_truck_status(near.id, TruckStatus.OFFLINE, OPERATOR)

    report = await check_assignment_consistency(db_session)

    assert report.consistent, report.violations
    assert report.checked_trucks == 2
    assert report.checked_requests == 3


@pytest.mark.asyncio
async def test_consistency_check_reports_mismatches(make_truck, create_request, db_session):
    truck = await make_truck()
    request = await create_request()
    truck.assigned_request_id = request.id
    await db_session.commit()

    report = await check_assignment_consistency(db_session)

    assert not report.consistent
    assert [violation.kind for violation in report.violations] == ["truck_request_mismatch"]


@pytest.mark.asyncio
async def test_consistency_check_reports_booking_on_parked_truck(coordinator, nairobi_fleet, create_request, db_session):
    near, far = nairobi_fleet
    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, near.id, OPERATOR)
    await db_session.execute(update(Truck).where(Truck.id == near.id).values(status=TruckStatus.MAINTENANCE))
    await db_session.commit()

    report = await check_assignment_consistency(db_session)

    assert [(violation.kind, violation.request_id) for violation in report.violations] == [
        ("booking_on_unavailable_truck", booking.id),
    ]


# Bookings on trucks leaving service

@pytest.mark.asyncio
async def test_forced_maintenance_returns_assigned_bookings_to_queue(
    coordinator, nairobi_fleet, create_request, event_bus, db_session
):
    near, far = nairobi_fleet
    morning = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    evening = await create_request(requester_id=202, kind=RequestKind.BOOKING, start_hour=18, end_hour=20)
    await coordinator.assign_specific(morning.id, near.id, OPERATOR)
    await coordinator.assign_specific(evening.id, near.id, OPERATOR)
    requester = event_bus.subscribe(user_channel(201))

    truck = await coordinator.update_truck_status(near.id, TruckStatus.MAINTENANCE, OPERATOR)

    assert truck.status == TruckStatus.MAINTENANCE
    for booking in (morning, evening):
        booking = await coordinator.requests.get(booking.id)
        assert booking.status == RequestStatus.PENDING
        assert booking.assigned_truck_id is None
        assert booking.assigned_driver_id is None
    history = await coordinator.requests.history(morning.id)
    assert history[-1].status == RequestStatus.PENDING
    assert "maintenance" in history[-1].notes

    events = await drain(requester)
    assert [(event.event, event.data["newStatus"]) for event in events] == [
        (REQUEST_STATUS_CHANGED, "pending"),
    ]

    trail = await get_entity_audit_trail(db_session, "truck", near.id)
    assert trail[0].action == AuditAction.TRUCK_FORCED_OUT_OF_SERVICE
    assert trail[0].meta_data["dropped_request_id"] is None
    assert trail[0].meta_data["returned_booking_ids"] == [morning.id, evening.id]
    assert (await check_assignment_consistency(db_session)).consistent

    # The booking can be placed on the remaining truck
    assert (await coordinator.assign_nearest(morning.id, 50)).truck.id == far.id


@pytest.mark.asyncio
async def test_offline_truck_returns_its_job_and_its_bookings(coordinator, nairobi_fleet, create_request):
    near, far = nairobi_fleet
    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, near.id, OPERATOR)
    pickup = await create_request(requester_id=101)
    await coordinator.assign_specific(pickup.id, near.id, OPERATOR)

    truck = await coordinator.update_truck_status(near.id, TruckStatus.OFFLINE, OPERATOR)

    assert truck.status == TruckStatus.OFFLINE
    assert truck.assigned_request_id is None
    assert (await coordinator.requests.get(pickup.id)).status == RequestStatus.PENDING
    assert (await coordinator.requests.get(booking.id)).status == RequestStatus.PENDING


@pytest.mark.asyncio
async def test_booked_truck_cannot_be_deactivated(coordinator, nairobi_fleet, create_request, db_session):
    near, far = nairobi_fleet
    booking = await create_request(requester_id=201, kind=RequestKind.BOOKING, start_hour=10, end_hour=12)
    await coordinator.assign_specific(booking.id, near.id, OPERATOR)

    with pytest.raises(AlreadyAssignedError) as exc_info:
        await coordinator.trucks.set_active(near.id, False)
    await db_session.rollback()

    assert exc_info.value.details["assigned_request_id"] == booking.id
    assert (await coordinator.trucks.get(near.id)).is_active is True
    assert (await coordinator.requests.get(booking.id)).status == RequestStatus.ASSIGNED

    await coordinator.cancel(booking.id, OPERATOR, reason="Truck retiring")
    truck = await coordinator.trucks.set_active(near.id, False)
    await db_session.commit()
    assert truck.is_active is False
