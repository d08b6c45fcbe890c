"""
Custom exceptions and error handlers for consistent error responses.

Provides standardized error codes and global exception handlers.
Business-rule refusals from the dispatch core (conflicts, illegal
transitions, exhaustion) are raised as AppException subclasses and
rendered with the same envelope as every other error.
"""

import logging
from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, error_code: str, status_code: int = 500, details: Dict[str, Any] = None):
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class InsufficientPermissionsError(AppException):
    """Raised when user doesn't have permission to perform an action."""

    def __init__(self, message: str = "Insufficient permissions", details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_PERM_001",
            status_code=status.HTTP_403_FORBIDDEN,
            details=details
        )


class ResourceNotFoundError(AppException):
    """Raised when requested resource is not found."""

    def __init__(self, resource: str, resource_id: Any = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID {resource_id} not found"
        super().__init__(
            message=message,
            error_code="ERR_NOT_FOUND_001",
            status_code=status.HTTP_404_NOT_FOUND,
            details={"resource": resource, "id": resource_id}
        )


class AuthenticationError(AppException):
    """Raised for authentication failures."""

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(
            message=message,
            error_code="ERR_AUTH_001",
            status_code=status.HTTP_401_UNAUTHORIZED
        )


class ValidationFailedError(AppException):
    """
    Raised for invalid input detected by the services themselves.

    `errors` uses the same shape as pydantic errors so clients can treat
    both sources alike: [{"loc": [...], "msg": "..."}].
    """

    def __init__(self, errors: List[Dict[str, Any]], message: str = "Validation error"):
        self.errors = errors
        super().__init__(
            message=message,
            error_code="ERR_VALIDATION",
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"errors": errors}
        )

    @classmethod
    def for_fields(cls, fields: Dict[str, str]) -> "ValidationFailedError":
        return cls([{"loc": [name], "msg": msg} for name, msg in fields.items()])


class InvalidTransitionError(AppException):
    """Raised when a status change is not allowed by the lifecycle."""

    def __init__(self, entity: str, entity_id: Any, current: str, requested: str, reason: Optional[str] = None):
        message = f"{entity} {entity_id} cannot move from '{current}' to '{requested}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message=message,
            error_code="ERR_STATE_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"entity": entity, "id": entity_id, "current": current, "requested": requested}
        )


class AlreadyAssignedError(AppException):
    """Raised when a truck already holds a request."""

    def __init__(self, truck_id: int, assigned_request_id: Optional[int]):
        super().__init__(
            message=f"Truck {truck_id} is already assigned to request {assigned_request_id}",
            error_code="ERR_CONFLICT_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"truck_id": truck_id, "assigned_request_id": assigned_request_id}
        )


class NotAvailableError(AppException):
    """Raised when a truck is not in a state that allows assignment."""

    def __init__(self, truck_id: int, truck_status: str, is_active: bool = True):
        reason = f"status is '{truck_status}'" if is_active else "truck is deactivated"
        super().__init__(
            message=f"Truck {truck_id} is not available for assignment ({reason})",
            error_code="ERR_CONFLICT_002",
            status_code=status.HTTP_409_CONFLICT,
            details={"truck_id": truck_id, "status": truck_status, "is_active": is_active}
        )


class SchedulingConflictError(AppException):
    """Raised when a booking window overlaps an existing booking of the truck."""

    def __init__(self, truck_id: int, conflicting_request_ids: List[int]):
        super().__init__(
            message=f"Truck {truck_id} is not available for the selected time slot",
            error_code="ERR_CONFLICT_003",
            status_code=status.HTTP_409_CONFLICT,
            details={"truck_id": truck_id, "conflicting_request_ids": conflicting_request_ids}
        )


class NotCancellableError(AppException):
    """Raised when a request has progressed too far to be cancelled."""

    def __init__(self, request_id: int, request_status: str):
        super().__init__(
            message=f"Request {request_id} cannot be cancelled once '{request_status}'",
            error_code="ERR_CONFLICT_004",
            status_code=status.HTTP_409_CONFLICT,
            details={"request_id": request_id, "status": request_status}
        )


class DuplicateResourceError(AppException):
    """Raised when a unique business key is already taken."""

    def __init__(self, resource: str, fields: Dict[str, Any]):
        super().__init__(
            message=f"{resource} already exists",
            error_code="ERR_CONFLICT_005",
            status_code=status.HTTP_409_CONFLICT,
            details={"resource": resource, "fields": fields}
        )


class ActiveRequestExistsError(AppException):
    """Raised when a requester already has an open immediate pickup."""

    def __init__(self, requester_id: int, request_id: int):
        super().__init__(
            message="You already have an active pickup request",
            error_code="ERR_CONFLICT_006",
            status_code=status.HTTP_409_CONFLICT,
            details={"requester_id": requester_id, "request_id": request_id}
        )


class NoTruckAvailableError(AppException):
    """Raised when no candidate truck could be reserved for a request."""

    def __init__(self, request_id: int, max_distance_km: float, attempts: int):
        super().__init__(
            message=(
                f"No truck available within {max_distance_km} km for request {request_id}. "
                "Retry later or assign a truck manually."
            ),
            error_code="ERR_DISPATCH_001",
            status_code=status.HTTP_409_CONFLICT,
            details={"request_id": request_id, "max_distance_km": max_distance_km, "attempts": attempts}
        )


class InvariantViolationError(AppException):
    """Raised when truck and request assignment references disagree."""

    def __init__(self, message: str, details: Dict[str, Any] = None):
        super().__init__(
            message=message,
            error_code="ERR_INTERNAL_002",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details=details
        )


# Global Exception Handlers

async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Handler for custom application exceptions."""
    if isinstance(exc, InvariantViolationError):
        logger.error("Assignment invariant violated: %s", exc.message, extra={"details": exc.details})
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details
        }
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for FastAPI HTTPException with standardized format."""
    # Map status code to error code
    error_code_map = {
        400: "ERR_BAD_REQUEST",
        401: "ERR_UNAUTHORIZED",
        403: "ERR_FORBIDDEN",
        404: "ERR_NOT_FOUND",
        409: "ERR_CONFLICT",
        500: "ERR_INTERNAL_SERVER"
    }

    error_code = error_code_map.get(exc.status_code, "ERR_UNKNOWN")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": error_code,
            "message": exc.detail,
            "details": {}
        },
        headers=getattr(exc, "headers", None)
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for Pydantic validation errors."""
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error_code": "ERR_VALIDATION",
            "message": "Validation error",
            "details": {
                "errors": [
                    {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                    for err in exc.errors()
                ]
            }
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handler for unhandled exceptions."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error_code": "ERR_INTERNAL_SERVER",
            "message": "An internal server error occurred",
            "details": {}
        }
    )
