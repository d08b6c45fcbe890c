"""
Truck database model.

A truck is onboarded by an operator and then matched to pickup requests.
"""

from sqlalchemy import Column, Integer, String, Float, Boolean, DateTime, Enum
from sqlalchemy.sql import func
from fleet_backend.app.db.session import Base
from fleet_backend.app.models.fleet_enums import TruckStatus


class Truck(Base):
    """
    Truck model.

    Holds the driver and vehicle identification, the lifecycle status, the
    current position and the single request the truck is serving.
    Trucks are never deleted, only deactivated.
    """
    __tablename__ = "trucks"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    truck_code = Column(String(50), unique=True, nullable=False, index=True)

    # Driver
    driver_name = Column(String(255), nullable=False)
    driver_phone = Column(String(50), nullable=False)
    driver_user_id = Column(Integer, nullable=True, index=True)

    # Vehicle
    license_plate = Column(String(50), unique=True, nullable=False, index=True)
    make = Column(String(100), nullable=True)
    model = Column(String(100), nullable=True)

    # Lifecycle
    status = Column(Enum(TruckStatus), default=TruckStatus.AVAILABLE, nullable=False, index=True)

    # Current location (None until the first report)
    current_latitude = Column(Float, nullable=True)
    current_longitude = Column(Float, nullable=True)
    current_address = Column(String(255), nullable=True)
    location_recorded_at = Column(DateTime(timezone=True), nullable=True)
    last_seen = Column(DateTime(timezone=True), nullable=True, index=True)

    # Assignment (no FK: service_requests already references trucks)
    assigned_request_id = Column(Integer, nullable=True, index=True)

    is_active = Column(Boolean, default=True, nullable=False, index=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def has_location(self) -> bool:
        return self.current_latitude is not None and self.current_longitude is not None

    @property
    def is_available(self) -> bool:
        return self.status == TruckStatus.AVAILABLE and self.is_active

    def __repr__(self):
        return f"<Truck(id={self.id}, code='{self.truck_code}', status='{self.status.value}')>"
