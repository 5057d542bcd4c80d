"""
Audit logging service for billing and lifecycle events.

Audit rows are added to the caller's transaction and flushed, never
committed here, so an audit entry exists exactly when the money movement
it describes does.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from consult_engine.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    # Lifecycle
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_ACTIVATED = "SESSION_ACTIVATED"
    SESSION_CONNECTED = "SESSION_CONNECTED"
    SESSION_ENDED = "SESSION_ENDED"

    # Billing
    AUTO_DEDUCTION = "AUTO_DEDUCTION"
    SESSION_SETTLED = "SESSION_SETTLED"
    SETTLEMENT_SHORTFALL = "SETTLEMENT_SHORTFALL"
    APPOINTMENT_SETTLED = "APPOINTMENT_SETTLED"

    # Subscriptions
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    SUBSCRIPTION_ROLLED_OVER = "SUBSCRIPTION_ROLLED_OVER"


async def log_event(
    db: AsyncSession,
    action: str,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Record an event in the audit log.

    Args:
        db: Database session (caller commits)
        action: Action being performed (use AuditAction constants)
        target_type: Kind of record touched, e.g. "text_session"
        target_id: ID of that record
        actor_id: User who triggered the action, None for system jobs
        actor_role: Role or label of the actor
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        target_type=target_type,
        target_id=target_id,
        meta_data=metadata,
    )

    db.add(audit_log)
    await db.flush()

    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    target_type: Optional[str] = None,
    target_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if target_type:
        query = query.where(AuditLog.target_type == target_type)

    if target_id is not None:
        query = query.where(AuditLog.target_id == target_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
