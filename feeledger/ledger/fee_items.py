"""
Fee item ledger: the only code allowed to change amount_paid, waiver_amount, balance or status.

Every function here expects to run inside feeledger.db.unit_of_work.run_ledger_unit and
re-reads the fee item under a row lock before computing anything.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.enums import FeeItemStatus, FeeUpdateType, TransactionKind
from feeledger.core.exceptions import InvalidAmount, UnknownFeeItem, ValidationError
from feeledger.core.models import FeeItem, Student, Transaction
from feeledger.core.money import ZERO, clamp_non_negative, percent_of, to_money
from feeledger.db.unit_of_work import lock_for_update
from feeledger.events.audit import AuditFact
from feeledger.events.effects import LedgerEffects
from feeledger.ledger.numbers import format_ledger_reference

logger = logging.getLogger(__name__)

SETTLED_STATUSES = (FeeItemStatus.paid.value, FeeItemStatus.waived.value)
OPEN_STATUSES = (
    FeeItemStatus.pending.value,
    FeeItemStatus.processing.value,
    FeeItemStatus.partial.value,
)


def compute_balance(original_amount, amount_paid, waiver_amount=ZERO) -> Decimal:
    return clamp_non_negative(to_money(original_amount) - to_money(amount_paid) - to_money(waiver_amount))


def derive_status(original_amount, amount_paid, balance, waiver_amount=ZERO) -> FeeItemStatus:
    """Single source of truth for pending / partial / paid / waived."""
    if to_money(balance) <= ZERO:
        if to_money(waiver_amount) > ZERO:
            return FeeItemStatus.waived
        return FeeItemStatus.paid
    if to_money(amount_paid) > ZERO:
        return FeeItemStatus.partial
    return FeeItemStatus.pending


def _settle(item: FeeItem) -> None:
    item.balance = compute_balance(item.original_amount, item.amount_paid, item.waiver_amount)
    status = derive_status(item.original_amount, item.amount_paid, item.balance, item.waiver_amount)
    # processing is an advisory overlay on pending, set while a gateway payment is in flight
    if status == FeeItemStatus.pending and item.status == FeeItemStatus.processing.value:
        return
    item.status = status.value


async def _locked_item(db: AsyncSession, fee_item_id: UUID) -> FeeItem:
    item = await lock_for_update(db, FeeItem, fee_item_id)
    if not item:
        raise UnknownFeeItem("Fee item not found")
    return item


async def _student_user_id(db: AsyncSession, student_id: UUID) -> UUID:
    student = await db.get(Student, student_id)
    if not student:
        raise ValidationError("Student not found")
    return student.user_id


async def apply_payment(db: AsyncSession, fee_item_id: UUID, amount) -> Decimal:
    """
    Apply up to `amount` to the fee item and return what was actually applied.

    Returns 0 when the item is already paid or waived; the caller redistributes the rest.
    """
    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidAmount("Payment amount must be greater than zero")
    item = await _locked_item(db, fee_item_id)
    if item.status in SETTLED_STATUSES:
        return ZERO
    applied = min(amount, to_money(item.balance))
    if applied <= ZERO:
        return ZERO
    item.amount_paid = to_money(item.amount_paid) + applied
    _settle(item)
    await db.flush()
    return applied


async def apply_waiver(
    db: AsyncSession,
    fee_item_id: UUID,
    *,
    reason: str,
    amount=None,
    percentage=None,
    performed_by: Optional[UUID] = None,
    effects: Optional[LedgerEffects] = None,
) -> Decimal:
    """
    Waive part of the remaining balance. Percentages apply to the current balance.

    Every call is an additional waiver; callers must not double-submit.
    """
    if (amount is None) == (percentage is None):
        raise ValidationError("Either waiver percentage or waiver amount must be specified")
    if amount is not None and to_money(amount) <= ZERO:
        raise InvalidAmount("Waiver amount must be greater than zero")
    if percentage is not None and not (Decimal("0") < Decimal(str(percentage)) <= Decimal("100")):
        raise ValidationError("Waiver percentage must be between 0 and 100")

    item = await _locked_item(db, fee_item_id)
    balance = to_money(item.balance)
    requested = to_money(amount) if amount is not None else percent_of(balance, percentage)
    waived = min(requested, balance)
    if waived <= ZERO:
        return ZERO

    old_status = item.status
    item.waiver_amount = to_money(item.waiver_amount) + waived
    item.waiver_reason = reason
    _settle(item)

    db.add(
        Transaction(
            user_id=await _student_user_id(db, item.student_id),
            student_id=item.student_id,
            fee_item_id=item.id,
            reference=format_ledger_reference("WVR"),
            kind=TransactionKind.WAIVER.value,
            amount=waived,
            status="paid",
            meta={"reason": reason},
        )
    )
    await db.flush()
    if effects is not None:
        effects.record(
            AuditFact(
                action="fee_waiver",
                reference_table="fee_items",
                reference_id=item.id,
                student_id=item.student_id,
                performed_by=performed_by,
                data={
                    "waived_amount": str(waived),
                    "old_status": old_status,
                    "new_status": item.status,
                    "reason": reason,
                },
            )
        )
    return waived


async def update_fee_amount(
    db: AsyncSession,
    fee_item_id: UUID,
    update_type: FeeUpdateType,
    value,
) -> Tuple[Decimal, Decimal]:
    """Re-assess a fee item's original amount. Returns (old_amount, new_amount)."""
    value = Decimal(str(value))
    if value < 0:
        raise ValidationError("Update value cannot be negative")
    item = await _locked_item(db, fee_item_id)
    old_amount = to_money(item.original_amount)
    if update_type == FeeUpdateType.SET_AMOUNT:
        new_amount = to_money(value)
    elif update_type == FeeUpdateType.ADJUST_PERCENTAGE:
        new_amount = old_amount + percent_of(old_amount, value)
    else:
        new_amount = old_amount + to_money(value)

    settled = to_money(item.amount_paid) + to_money(item.waiver_amount)
    if new_amount < settled:
        raise ValidationError("New amount cannot be less than the amount already paid or waived")

    old_balance = to_money(item.balance)
    item.original_amount = new_amount
    _settle(item)
    delta = to_money(item.balance) - old_balance
    if delta != ZERO:
        db.add(
            Transaction(
                user_id=await _student_user_id(db, item.student_id),
                student_id=item.student_id,
                fee_item_id=item.id,
                reference=format_ledger_reference("ADJ"),
                kind=TransactionKind.ADJUSTMENT.value,
                amount=delta,
                status="pending",
                meta={"old_amount": str(old_amount), "new_amount": str(new_amount)},
            )
        )
    await db.flush()
    return old_amount, new_amount


async def assess_fee(
    db: AsyncSession,
    student: Student,
    *,
    name: str,
    amount,
    school_year: Optional[str] = None,
    semester: Optional[str] = None,
    due_date: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> FeeItem:
    """Create a fee item and its charge transaction."""
    amount = to_money(amount)
    if amount <= ZERO:
        raise InvalidAmount("Fee amount must be greater than zero")
    item = FeeItem(
        student_id=student.id,
        name=name.strip(),
        school_year=school_year,
        semester=semester,
        original_amount=amount,
        amount_paid=ZERO,
        waiver_amount=ZERO,
        balance=amount,
        status=FeeItemStatus.pending.value,
        due_date=due_date,
        notes=notes,
    )
    db.add(item)
    await db.flush()
    db.add(
        Transaction(
            user_id=student.user_id,
            student_id=student.id,
            fee_item_id=item.id,
            reference=format_ledger_reference("FEE"),
            kind=TransactionKind.CHARGE.value,
            amount=amount,
            status="pending",
            meta={"fee_name": item.name, "school_year": school_year, "semester": semester},
        )
    )
    await db.flush()
    return item


async def mark_processing(db: AsyncSession, fee_item_id: UUID) -> bool:
    """pending -> processing while a gateway payment is in flight. Reserves nothing."""
    item = await _locked_item(db, fee_item_id)
    if item.status != FeeItemStatus.pending.value:
        return False
    item.status = FeeItemStatus.processing.value
    await db.flush()
    return True


async def clear_processing(db: AsyncSession, fee_item_id: UUID) -> bool:
    """Drop the processing overlay and fall back to the derived status."""
    item = await _locked_item(db, fee_item_id)
    if item.status != FeeItemStatus.processing.value:
        return False
    item.status = derive_status(
        item.original_amount, item.amount_paid, item.balance, item.waiver_amount
    ).value
    await db.flush()
    return True
