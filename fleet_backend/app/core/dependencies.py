"""
Request-scoped dependencies for FastAPI.

Provides JWT identity, the shared event bus and record locks, and the
dispatch service objects built on top of a database session.
"""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from fleet_backend.app.core.jwt import decode_access_token
from fleet_backend.app.core.locks import KeyedLock
from fleet_backend.app.db.session import get_db
from fleet_backend.app.services.event_bus import EventBus
from fleet_backend.app.services.truck_registry import TruckRegistry
from fleet_backend.app.services.location_tracker import LocationTracker
from fleet_backend.app.services.request_lifecycle import RequestLifecycle
from fleet_backend.app.domain.dispatch.coordinator import AssignmentCoordinator

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    FastAPI dependency for JWT authentication.

    Identity is issued by the authentication service; the token's claims
    (user_id, sub, role) are trusted once the signature and expiry check out.

    Raises:
        HTTPException: 401 if the token is invalid or carries no user_id
    """
    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not payload.get("user_id"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return payload


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.event_bus


def get_record_locks(request: Request) -> KeyedLock:
    return request.app.state.record_locks


def get_truck_registry(db: AsyncSession = Depends(get_db)) -> TruckRegistry:
    return TruckRegistry(db)


def get_request_lifecycle(
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_event_bus),
) -> RequestLifecycle:
    return RequestLifecycle(db, events)


def get_location_tracker(
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_event_bus),
    locks: KeyedLock = Depends(get_record_locks),
) -> LocationTracker:
    return LocationTracker(db, events, locks)


def get_coordinator(
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_event_bus),
    locks: KeyedLock = Depends(get_record_locks),
) -> AssignmentCoordinator:
    return AssignmentCoordinator(db, events, locks)
