"""
Request history model.

Insert-only log of request status transitions.
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, ForeignKey, Enum
from fleet_backend.app.db.session import Base
from fleet_backend.app.models.fleet_enums import RequestStatus


class RequestHistoryEntry(Base):
    """One row per transition; never updated after insert."""
    __tablename__ = "request_history"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey('service_requests.id'), nullable=False, index=True)

    status = Column(Enum(RequestStatus), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)

    # Who caused the transition (None for system actions)
    actor_id = Column(Integer, nullable=True)
    actor_role = Column(String(50), nullable=True)

    notes = Column(Text, nullable=True)

    def __repr__(self):
        return f"<RequestHistoryEntry(request_id={self.request_id}, status='{self.status.value}')>"
