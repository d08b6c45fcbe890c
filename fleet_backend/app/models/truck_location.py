"""
Truck location history model.

Stores the breadcrumb trail of prior truck positions.
"""

from sqlalchemy import Column, Integer, Float, String, ForeignKey, DateTime
from fleet_backend.app.db.session import Base


class TruckLocation(Base):
    """
    Truck Location model.

    One row per superseded current location. Rows are kept in insertion
    order and trimmed to the most recent N per truck.
    """
    __tablename__ = "truck_location_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    truck_id = Column(Integer, ForeignKey('trucks.id'), nullable=False, index=True)

    # GPS coordinates
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    address = Column(String(255), nullable=True)

    # When the truck was at this position
    recorded_at = Column(DateTime(timezone=True), nullable=False)

    def __repr__(self):
        return f"<TruckLocation(truck_id={self.truck_id}, lat={self.latitude}, lng={self.longitude})>"
