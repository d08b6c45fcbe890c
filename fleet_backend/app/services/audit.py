"""
Audit logging service for tracking operator actions.

Entries are added to the caller's session and committed together with the
change they describe.
"""

from typing import Optional, Dict, Any, List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from fleet_backend.app.core.actor import Actor
from fleet_backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    TRUCK_ONBOARDED = "TRUCK_ONBOARDED"
    TRUCK_ACTIVATED = "TRUCK_ACTIVATED"
    TRUCK_DEACTIVATED = "TRUCK_DEACTIVATED"
    TRUCK_FORCED_OUT_OF_SERVICE = "TRUCK_FORCED_OUT_OF_SERVICE"

    REQUEST_ASSIGNED_MANUALLY = "REQUEST_ASSIGNED_MANUALLY"
    REQUEST_CANCELLED = "REQUEST_CANCELLED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor: Actor,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Record an operator action in the audit log.

    Args:
        db: Database session (the caller commits)
        action: Action being performed (use AuditAction constants)
        actor: Who performed the action
        entity_type: "truck" or "request"
        entity_id: ID of the record acted upon
        metadata: Additional context as JSON

    Returns:
        Pending AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor.user_id,
        actor_username=actor.username,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_entity_audit_trail(
    db: AsyncSession,
    entity_type: str,
    entity_id: int,
    limit: int = 100
) -> List[AuditLog]:
    """Audit entries for one record, newest first."""
    result = await db.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(desc(AuditLog.timestamp), desc(AuditLog.id))
        .limit(limit)
    )
    return list(result.scalars().all())
