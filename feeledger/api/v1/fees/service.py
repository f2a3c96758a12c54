"""Fee assessment and staff bulk operations. Every batch commits as one unit of work."""

import logging
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.exceptions import NotFoundError, UnknownFeeItem
from feeledger.core.models import FeeItem, Student
from feeledger.core.money import ZERO
from feeledger.db.unit_of_work import run_ledger_unit, student_scope
from feeledger.events.audit import AuditFact
from feeledger.events.effects import LedgerEffects
from feeledger.events.notifications import NotificationSink
from feeledger.ledger import fee_items as ledger
from feeledger.ledger.accounts import get_or_create_account, recalculate_for_student

from .schemas import (
    BulkFeeUpdateRequest,
    BulkOperationResponse,
    BulkWaiveRequest,
    FeeAssessRequest,
    FeeItemResponse,
)

logger = logging.getLogger(__name__)


async def _student_ids_for(db: AsyncSession, fee_item_ids: Sequence[UUID]) -> Dict[UUID, UUID]:
    """fee item id -> student id. Every requested id must exist."""
    rows = (
        await db.execute(select(FeeItem.id, FeeItem.student_id).where(FeeItem.id.in_(list(fee_item_ids))))
    ).all()
    owners = {fee_item_id: student_id for fee_item_id, student_id in rows}
    missing = [str(i) for i in fee_item_ids if i not in owners]
    if missing:
        raise UnknownFeeItem(f"Fee items not found: {', '.join(missing)}")
    return owners


async def _open_accounts(db: AsyncSession, student_ids) -> None:
    for student_id in sorted(set(student_ids), key=str):
        student = await db.get(Student, student_id)
        await get_or_create_account(db, student.user_id)


async def _recalculate_students(db: AsyncSession, student_ids, effects: LedgerEffects) -> None:
    for student_id in sorted(set(student_ids), key=str):
        student = await db.get(Student, student_id)
        await recalculate_for_student(db, student, effects=effects)


async def _items(db: AsyncSession, fee_item_ids: Sequence[UUID]) -> List[FeeItemResponse]:
    rows = (await db.execute(select(FeeItem).where(FeeItem.id.in_(list(fee_item_ids))))).scalars().all()
    by_id = {item.id: item for item in rows}
    return [FeeItemResponse.model_validate(by_id[i]) for i in fee_item_ids if i in by_id]


async def assess_fee(
    db: AsyncSession,
    payload: FeeAssessRequest,
    performed_by: Optional[UUID],
    sink: NotificationSink,
) -> FeeItemResponse:
    student = await db.get(Student, payload.student_id)
    if not student:
        raise NotFoundError("Student not found")

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        item = await ledger.assess_fee(
            session,
            student,
            name=payload.name,
            amount=payload.amount,
            school_year=payload.school_year,
            semester=payload.semester,
            due_date=payload.due_date,
            notes=payload.notes,
        )
        await recalculate_for_student(session, student, effects=effects)
        effects.record(
            AuditFact(
                action="fee_assessed",
                reference_table="fee_items",
                reference_id=item.id,
                student_id=student.id,
                performed_by=performed_by,
                data={"name": item.name, "amount": str(item.original_amount)},
            )
        )
        return item.id, effects

    fee_item_id, effects = await run_ledger_unit(db, student_scope(student.id), work)
    await effects.release(db, sink)
    return FeeItemResponse.model_validate(await db.get(FeeItem, fee_item_id))


async def bulk_update_fees(
    db: AsyncSession,
    payload: BulkFeeUpdateRequest,
    performed_by: Optional[UUID],
    sink: NotificationSink,
) -> BulkOperationResponse:
    fee_item_ids = list(dict.fromkeys(payload.fee_item_ids))
    owners = await _student_ids_for(db, fee_item_ids)

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        await _open_accounts(session, owners.values())
        total_delta = ZERO
        for fee_item_id in fee_item_ids:
            old_amount, new_amount = await ledger.update_fee_amount(
                session, fee_item_id, payload.update_type, payload.value
            )
            total_delta += new_amount - old_amount
        await _recalculate_students(session, owners.values(), effects)
        effects.record(
            AuditFact(
                action="bulk_fee_update",
                reference_table="fee_items",
                reference_id=None,
                performed_by=performed_by,
                data={
                    "update_type": payload.update_type.value,
                    "value": str(payload.value),
                    "updated_count": len(fee_item_ids),
                    "fee_item_ids": [str(i) for i in fee_item_ids],
                    "reason": payload.reason,
                },
                description=payload.reason,
            )
        )
        return total_delta, effects

    scopes = [student_scope(s) for s in owners.values()]
    total_delta, effects = await run_ledger_unit(db, scopes, work)
    await effects.release(db, sink)
    logger.info("Bulk fee update (%s) on %d items by %s", payload.update_type.value, len(fee_item_ids), performed_by)
    return BulkOperationResponse(
        message=f"Updated {len(fee_item_ids)} fee items successfully",
        affected_count=len(fee_item_ids),
        total_amount=total_delta,
        items=await _items(db, fee_item_ids),
    )


async def bulk_waive_fees(
    db: AsyncSession,
    payload: BulkWaiveRequest,
    performed_by: Optional[UUID],
    sink: NotificationSink,
) -> BulkOperationResponse:
    fee_item_ids = list(dict.fromkeys(payload.fee_item_ids))
    owners = await _student_ids_for(db, fee_item_ids)

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        await _open_accounts(session, owners.values())
        waived_count = 0
        total_waived = ZERO
        for fee_item_id in fee_item_ids:
            waived = await ledger.apply_waiver(
                session,
                fee_item_id,
                reason=payload.waiver_reason,
                amount=payload.waiver_amount,
                percentage=payload.waiver_percentage,
                performed_by=performed_by,
            )
            if waived > ZERO:
                waived_count += 1
                total_waived += waived
        await _recalculate_students(session, owners.values(), effects)
        effects.record(
            AuditFact(
                action="bulk_fee_waiver",
                reference_table="fee_items",
                reference_id=None,
                performed_by=performed_by,
                data={
                    "waived_count": waived_count,
                    "total_waived_amount": str(total_waived),
                    "waiver_reason": payload.waiver_reason,
                    "waiver_percentage": str(payload.waiver_percentage) if payload.waiver_percentage else None,
                    "waiver_amount": str(payload.waiver_amount) if payload.waiver_amount else None,
                },
                description=payload.waiver_reason,
            )
        )
        return waived_count, total_waived, effects

    scopes = [student_scope(s) for s in owners.values()]
    waived_count, total_waived, effects = await run_ledger_unit(db, scopes, work)
    await effects.release(db, sink)
    return BulkOperationResponse(
        message=f"Fees waived successfully for {waived_count} items",
        affected_count=waived_count,
        total_amount=total_waived,
        items=await _items(db, fee_item_ids),
    )
