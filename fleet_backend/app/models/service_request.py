"""
Service request database model.

Covers both immediate pickup requests and scheduled bookings; both share
one lifecycle and differ only in their schedule.
"""

from sqlalchemy import Column, Integer, String, Float, Text, DateTime, ForeignKey, Enum
from sqlalchemy.sql import func
from fleet_backend.app.db.session import Base
from fleet_backend.app.models.fleet_enums import RequestStatus, RequestKind, RequestPriority


ACTIVE_STATUSES = (
    RequestStatus.ASSIGNED,
    RequestStatus.DISPATCHED,
    RequestStatus.EN_ROUTE,
    RequestStatus.AT_LOCATION,
)
OPEN_STATUSES = (RequestStatus.PENDING,) + ACTIVE_STATUSES
TERMINAL_STATUSES = (RequestStatus.COMPLETED, RequestStatus.CANCELLED)


class ServiceRequest(Base):
    """
    Service Request model.

    Created by a customer in PENDING status. The dispatch coordinator sets
    the assigned truck and driver together; the request ends COMPLETED or
    CANCELLED. Every status change is recorded in request_history.
    """
    __tablename__ = "service_requests"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    reference_code = Column(String(20), unique=True, nullable=False, index=True)
    kind = Column(Enum(RequestKind), default=RequestKind.PICKUP, nullable=False)
    priority = Column(Enum(RequestPriority), default=RequestPriority.NORMAL, nullable=False)

    # Requester (identity issued by the auth service)
    requester_id = Column(Integer, nullable=False, index=True)
    requester_name = Column(String(255), nullable=True)

    # Pickup location
    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    pickup_address = Column(String(255), nullable=True)

    # Optional destination
    destination_latitude = Column(Float, nullable=True)
    destination_longitude = Column(Float, nullable=True)
    destination_address = Column(String(255), nullable=True)

    # Status
    status = Column(Enum(RequestStatus), default=RequestStatus.PENDING, nullable=False, index=True)

    # Schedule
    requested_time = Column(DateTime(timezone=True), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True)

    # Assignment
    assigned_truck_id = Column(Integer, ForeignKey('trucks.id'), nullable=True, index=True)
    assigned_driver_id = Column(Integer, nullable=True)
    assigned_driver_name = Column(String(255), nullable=True)
    assigned_distance_km = Column(Float, nullable=True)

    # Side-effect timestamps
    dispatch_time = Column(DateTime(timezone=True), nullable=True)
    arrival_time = Column(DateTime(timezone=True), nullable=True)
    completion_time = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    notes = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_scheduled(self) -> bool:
        return self.kind == RequestKind.BOOKING

    def __repr__(self):
        return f"<ServiceRequest(id={self.id}, ref='{self.reference_code}', status='{self.status.value}')>"
