"""
Dispatch Pydantic schemas.
"""

from pydantic import BaseModel, Field
from typing import Optional, List

from fleet_backend.app.schemas.truck import TruckResponse
from fleet_backend.app.schemas.service_request import ServiceRequestResponse


class AssignRequest(BaseModel):
    """
    Schema for assigning a truck to a request.

    Without truck_id the nearest available truck is chosen.
    """
    request_id: int = Field(..., gt=0)
    truck_id: Optional[int] = Field(None, gt=0)
    max_distance_km: Optional[float] = Field(None, gt=0, le=20000)


class AssignmentResponse(BaseModel):
    request: ServiceRequestResponse
    truck: TruckResponse
    distance_km: Optional[float]


class ConsistencyViolation(BaseModel):
    kind: str
    truck_id: Optional[int] = None
    request_id: Optional[int] = None
    detail: str


class ConsistencyReport(BaseModel):
    """Result of cross-checking truck and request assignment references."""
    consistent: bool
    checked_trucks: int
    checked_requests: int
    violations: List[ConsistencyViolation]
