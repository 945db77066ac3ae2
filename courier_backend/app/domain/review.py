"""
Single-shot admin review shared by remittance records and rider settlements.
"""

from typing import Optional, Type, TypeVar

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from courier_backend.app.core.exceptions import (
    InsufficientPermissionsError, NotFoundError, StateConflictError, ValidationError
)
from courier_backend.app.core.time_utils import utcnow
from courier_backend.app.models.billing_enums import ReviewStatus
from courier_backend.app.models.enums import UserRole

T = TypeVar("T")


async def load_for_review(db: AsyncSession, model: Type[T], record_id: int, label: str) -> T:
    """Load a reviewable record with a row lock and fresh attributes."""
    result = await db.execute(
        select(model)
        .where(model.id == record_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    record = result.scalar_one_or_none()
    if record is None:
        raise NotFoundError(label, record_id)
    return record


async def flush_review(db: AsyncSession, record, label: str) -> None:
    """
    Flush a change to a reviewable record.

    Raises:
        StateConflictError: the record was changed or reviewed by someone else since it was read
    """
    try:
        await db.flush()
    except StaleDataError as e:
        raise StateConflictError(
            f"{label} {record.id} was changed by another request",
            details={"id": record.id, "reason": "stale"},
        ) from e


def ensure_pending(record, label: str) -> None:
    if record.review_status != ReviewStatus.PENDING:
        raise StateConflictError(
            f"{label} {record.id} was already {record.review_status.value.lower()}",
            details={"id": record.id, "review_status": record.review_status.value}
        )


def finalize_review(
    record,
    label: str,
    decision: ReviewStatus,
    reviewer_id: int,
    reviewer_role: UserRole,
    reason: Optional[str] = None,
    admin_notes: Optional[str] = None,
) -> None:
    """
    Move a PENDING record to APPROVED or REJECTED and stamp the reviewer.

    Raises:
        InsufficientPermissionsError: reviewer is not an admin
        ValidationError: rejection without a reason
        StateConflictError: record already reviewed
    """
    if reviewer_role != UserRole.ADMIN:
        raise InsufficientPermissionsError(f"Only an admin can review a {label.lower()}")
    if decision == ReviewStatus.PENDING:
        raise ValidationError("A review must approve or reject")
    reason = (reason or "").strip() or None
    if decision == ReviewStatus.REJECTED and reason is None:
        raise ValidationError("A rejection reason is required")
    ensure_pending(record, label)

    record.review_status = decision
    record.reviewed_by = reviewer_id
    record.reviewed_at = utcnow()
    record.review_reason = reason
    record.admin_notes = admin_notes
