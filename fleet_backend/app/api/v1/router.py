"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from fleet_backend.app.api.v1.endpoints import trucks, requests, dispatch, ops, events

router = APIRouter()

# Fleet
router.include_router(trucks.router)

# Pickups and bookings
router.include_router(requests.router)
router.include_router(dispatch.router)

# Diagnostics
router.include_router(ops.router)

# Real-time updates
router.include_router(events.router)
