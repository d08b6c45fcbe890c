"""
Sequence counter model.

Backs human-readable reference codes with one atomic counter per period.
"""

from sqlalchemy import Column, Integer, String
from fleet_backend.app.db.session import Base


class SequenceCounter(Base):
    __tablename__ = "sequence_counters"

    key = Column(String(50), primary_key=True)
    value = Column(Integer, nullable=False, default=0)

    def __repr__(self):
        return f"<SequenceCounter(key='{self.key}', value={self.value})>"
