"""
Hub cash remittance records.

A hub manager declares cash moved to the operator's bank account; an admin
approves or rejects it once. Only the creator may edit or delete, and only
while the record is PENDING.
"""

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from courier_backend.app.core.exceptions import CustodyMismatchError
from courier_backend.app.db.session import atomic
from courier_backend.app.domain.finance.ledger_service import to_money
from courier_backend.app.domain.parcels.parcel_service import load_hub
from courier_backend.app.domain.review import ensure_pending, finalize_review, flush_review, load_for_review
from courier_backend.app.models.billing_enums import ReviewStatus
from courier_backend.app.models.enums import UserRole
from courier_backend.app.models.hub_transfer_record import HubTransferRecord
from courier_backend.app.schemas.transfer_record import TransferRecordCreate, TransferRecordUpdate
from courier_backend.app.services.audit import AuditAction, log_event

logger = logging.getLogger("courier.remittance")

LABEL = "Transfer record"


async def _load_record(db: AsyncSession, record_id: int) -> HubTransferRecord:
    return await load_for_review(db, HubTransferRecord, record_id, LABEL)


def _require_creator(record: HubTransferRecord, hub_manager_id: int) -> None:
    if record.hub_manager_id != hub_manager_id:
        raise CustodyMismatchError(
            f"{LABEL} {record.id} was submitted by another hub manager",
            details={"id": record.id}
        )


async def create_record(
    db: AsyncSession, hub_id: int, hub_manager_id: int, data: TransferRecordCreate
) -> HubTransferRecord:
    async with atomic(db):
        await load_hub(db, hub_id)
        record = HubTransferRecord(
            hub_id=hub_id,
            hub_manager_id=hub_manager_id,
            transferred_amount=to_money(data.transferred_amount),
            admin_bank_name=data.admin_bank_name,
            admin_bank_account_number=data.admin_bank_account_number,
            admin_account_holder_name=data.admin_account_holder_name,
            transaction_reference_id=data.transaction_reference_id,
            proof_file_url=data.proof.url,
            proof_file_type=data.proof.content_type,
            proof_file_size=data.proof.size,
            transfer_date=data.transfer_date,
            notes=data.notes,
            review_status=ReviewStatus.PENDING,
        )
        db.add(record)
        await db.flush()
        await log_event(
            db, AuditAction.REMITTANCE_CREATED, actor_id=hub_manager_id, actor_role=UserRole.HUB_MANAGER.value,
            entity_type="hub_transfer_record", entity_id=record.id,
            metadata={"hub_id": hub_id, "amount": str(record.transferred_amount)},
        )

    logger.info("Remittance %s of %s submitted by hub %s", record.id, record.transferred_amount, hub_id)
    return record


async def update_record(
    db: AsyncSession, record_id: int, hub_manager_id: int, changes: TransferRecordUpdate
) -> HubTransferRecord:
    async with atomic(db):
        record = await _load_record(db, record_id)
        _require_creator(record, hub_manager_id)
        ensure_pending(record, LABEL)

        fields = changes.model_dump(exclude_unset=True, exclude={"proof"})
        if "transferred_amount" in fields:
            fields["transferred_amount"] = to_money(fields["transferred_amount"])
        for name, value in fields.items():
            setattr(record, name, value)
        if changes.proof is not None:
            record.proof_file_url = changes.proof.url
            record.proof_file_type = changes.proof.content_type
            record.proof_file_size = changes.proof.size

        await flush_review(db, record, LABEL)
        await log_event(
            db, AuditAction.REMITTANCE_UPDATED, actor_id=hub_manager_id, actor_role=UserRole.HUB_MANAGER.value,
            entity_type="hub_transfer_record", entity_id=record.id,
            metadata={"fields": sorted(changes.model_dump(exclude_unset=True))},
        )
    return record


async def delete_record(db: AsyncSession, record_id: int, hub_manager_id: int) -> None:
    async with atomic(db):
        record = await _load_record(db, record_id)
        _require_creator(record, hub_manager_id)
        ensure_pending(record, LABEL)
        await db.delete(record)
        await flush_review(db, record, LABEL)
        await log_event(
            db, AuditAction.REMITTANCE_DELETED, actor_id=hub_manager_id, actor_role=UserRole.HUB_MANAGER.value,
            entity_type="hub_transfer_record", entity_id=record_id,
        )


async def approve_record(
    db: AsyncSession,
    record_id: int,
    reviewer_id: int,
    reviewer_role: UserRole,
    admin_notes: Optional[str] = None,
) -> HubTransferRecord:
    async with atomic(db):
        record = await _load_record(db, record_id)
        finalize_review(record, LABEL, ReviewStatus.APPROVED, reviewer_id, reviewer_role, admin_notes=admin_notes)
        await flush_review(db, record, LABEL)
        await log_event(
            db, AuditAction.REMITTANCE_APPROVED, actor_id=reviewer_id, actor_role=reviewer_role.value,
            entity_type="hub_transfer_record", entity_id=record.id,
        )
    return record


async def reject_record(
    db: AsyncSession,
    record_id: int,
    reviewer_id: int,
    reviewer_role: UserRole,
    reason: str,
    admin_notes: Optional[str] = None,
) -> HubTransferRecord:
    async with atomic(db):
        record = await _load_record(db, record_id)
        finalize_review(
            record, LABEL, ReviewStatus.REJECTED, reviewer_id, reviewer_role,
            reason=reason, admin_notes=admin_notes
        )
        await flush_review(db, record, LABEL)
        await log_event(
            db, AuditAction.REMITTANCE_REJECTED, actor_id=reviewer_id, actor_role=reviewer_role.value,
            entity_type="hub_transfer_record", entity_id=record.id,
            metadata={"reason": record.review_reason},
        )
    return record
