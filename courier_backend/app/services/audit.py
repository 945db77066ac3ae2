"""
Audit logging service.

Entries are added to the caller's session and flushed, never committed here,
so an audit row lives and dies with the operation it describes.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from courier_backend.app.models.audit_log import AuditLog


class AuditAction:
    """Standardized audit action constants."""
    # Parcel lifecycle
    PARCEL_CREATED = "PARCEL_CREATED"
    PARCEL_STATUS_CHANGED = "PARCEL_STATUS_CHANGED"
    PARCEL_ASSIGNED = "PARCEL_ASSIGNED"
    PARCEL_OUTCOME_APPLIED = "PARCEL_OUTCOME_APPLIED"
    PARCEL_CANCELLED = "PARCEL_CANCELLED"

    # Hub transfers
    PARCEL_TRANSFERRED = "PARCEL_TRANSFERRED"
    PARCEL_TRANSFER_ACCEPTED = "PARCEL_TRANSFER_ACCEPTED"
    RETURN_PARCEL_CREATED = "RETURN_PARCEL_CREATED"

    # Remittance
    REMITTANCE_CREATED = "REMITTANCE_CREATED"
    REMITTANCE_UPDATED = "REMITTANCE_UPDATED"
    REMITTANCE_DELETED = "REMITTANCE_DELETED"
    REMITTANCE_APPROVED = "REMITTANCE_APPROVED"
    REMITTANCE_REJECTED = "REMITTANCE_REJECTED"

    # Merchant finance
    BALANCE_ADJUSTED = "BALANCE_ADJUSTED"
    BALANCE_HELD = "BALANCE_HELD"
    BALANCE_RELEASED = "BALANCE_RELEASED"

    # Rider settlement
    SETTLEMENT_RECORDED = "SETTLEMENT_RECORDED"
    SETTLEMENT_APPROVED = "SETTLEMENT_APPROVED"
    SETTLEMENT_REJECTED = "SETTLEMENT_REJECTED"

    # Invoices
    INVOICE_GENERATED = "INVOICE_GENERATED"
    INVOICE_PROCESSING = "INVOICE_PROCESSING"
    INVOICE_PAID = "INVOICE_PAID"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_role: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """
    Add an audit entry to the current transaction.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action (None for system)
        actor_role: Role of the actor
        entity_type: Kind of record acted upon ("parcel", "invoice"...)
        entity_id: ID of that record
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_role=actor_role,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_data=metadata,
    )
    db.add(audit_log)
    await db.flush()
    return audit_log


async def get_audit_trail(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering, most recent first.
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if entity_type:
        query = query.where(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        query = query.where(AuditLog.entity_id == entity_id)
    if action:
        query = query.where(AuditLog.action == action)

    result = await db.execute(query.limit(limit))
    return list(result.scalars().all())
