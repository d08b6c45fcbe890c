"""
Security guards for role-based and ownership-based access control.

Provides dependencies for protecting endpoints.
"""

from typing import List, Optional
from fastapi import Depends, HTTPException, status
from fleet_backend.app.models.enums import UserRole
from fleet_backend.app.core.actor import Actor
from fleet_backend.app.core.dependencies import get_current_user


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.post("/dispatch/assign")
        async def assign(current_user: dict = Depends(require_role([UserRole.OPERATOR]))):
            ...

    Args:
        allowed_roles: List of UserRole enums that are allowed to access the endpoint

    Returns:
        FastAPI dependency function that validates user role

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role_str = current_user.get("role")

        if not user_role_str:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role information missing from token"
            )

        # Convert string role to UserRole enum
        try:
            user_role = UserRole(user_role_str)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


def require_operator(current_user: dict = Depends(get_current_user)) -> dict:
    """Dependency for operator-only endpoints."""
    if current_user.get("role") != UserRole.OPERATOR.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operator access required"
        )

    return current_user


def get_actor(current_user: dict = Depends(get_current_user)) -> Actor:
    """Dependency returning the caller as an Actor for the dispatch services."""
    return Actor.from_token(current_user)


class OwnershipGuard:
    """
    Ownership guard for requester-owned resources.

    Operators may access every request; customers only their own.
    Drivers may access requests assigned to the truck they drive, which the
    caller passes in as `driver_user_id`.
    """

    def can_access(
        self,
        requester_id: int,
        current_user: dict,
        driver_user_id: Optional[int] = None
    ) -> bool:
        user_role = current_user.get("role")
        user_id = current_user.get("user_id")

        if user_role == UserRole.OPERATOR.value:
            return True

        if user_role == UserRole.DRIVER.value:
            return driver_user_id is not None and driver_user_id == user_id

        return user_id == requester_id

    def enforce(
        self,
        requester_id: int,
        current_user: dict,
        resource_name: str = "resource",
        driver_user_id: Optional[int] = None
    ):
        """
        Enforce ownership validation, raise 403 if access denied.

        Raises:
            HTTPException 403 if ownership check fails
        """
        if not self.can_access(requester_id, current_user, driver_user_id):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. You do not have permission to access this {resource_name}."
            )

    def filter_by_ownership(self, current_user: dict) -> Optional[int]:
        """
        Get the requester_id to filter request listings by.

        For operators: Returns None (no filtering needed)
        For everyone else: Returns their user_id
        """
        if current_user.get("role") == UserRole.OPERATOR.value:
            return None
        return current_user.get("user_id")
