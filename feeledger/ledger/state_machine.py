"""
Payment lifecycle: initiated -> pending -> completed | failed | cancelled.

Terminal states absorb: asking for the state a payment is already in is a no-op, asking
a terminal payment for a different state raises InvalidTransition. Completion applies
the payment to the ledger, writes exactly one payment transaction and recalculates the
account inside the caller's unit of work.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.clock import utcnow
from feeledger.core.enums import TERMINAL_PAYMENT_STATUSES, PaymentStatus, TransactionKind
from feeledger.core.exceptions import InvalidTransition, NotFoundError
from feeledger.core.models import Payment, PaymentFeeItem, Student, Transaction
from feeledger.core.money import ZERO, to_money
from feeledger.db.unit_of_work import lock_for_update, run_ledger_unit, student_scope
from feeledger.events.audit import AuditFact
from feeledger.events.effects import LedgerEffects
from feeledger.events.notifications import (
    NotificationSink,
    PaymentCompleted,
    PaymentFailed,
    PaymentStatusChanged,
)
from feeledger.ledger import fee_items as ledger
from feeledger.ledger.accounts import get_or_create_account, recalculate_for_student
from feeledger.ledger.allocation import apply_payment_allocation, load_links
from feeledger.ledger.numbers import generate_receipt_number

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    PaymentStatus.initiated: {
        PaymentStatus.pending,
        PaymentStatus.completed,
        PaymentStatus.failed,
        PaymentStatus.cancelled,
    },
    PaymentStatus.pending: {
        PaymentStatus.completed,
        PaymentStatus.failed,
        PaymentStatus.cancelled,
    },
}

# Payments that keep a fee item in processing
_ACTIVE_STATUSES = (PaymentStatus.pending.value, PaymentStatus.completed.value)


@dataclass(frozen=True)
class TransitionResult:
    payment: Payment
    old_status: PaymentStatus
    new_status: PaymentStatus
    changed: bool


def can_transition(old: PaymentStatus, new: PaymentStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(old, set())


async def _mark_linked_processing(db: AsyncSession, payment: Payment) -> None:
    for link in await load_links(db, payment.id):
        await ledger.mark_processing(db, link.fee_item_id)


async def _release_linked(db: AsyncSession, payment: Payment) -> None:
    """Drop the processing overlay from linked items no other active payment is holding."""
    for link in await load_links(db, payment.id):
        others = await db.execute(
            select(PaymentFeeItem.id)
            .join(Payment, Payment.id == PaymentFeeItem.payment_id)
            .where(
                PaymentFeeItem.fee_item_id == link.fee_item_id,
                PaymentFeeItem.payment_id != payment.id,
                Payment.status.in_(_ACTIVE_STATUSES),
            )
            .limit(1)
        )
        if others.first() is None:
            await ledger.clear_processing(db, link.fee_item_id)


async def _payment_transaction_exists(db: AsyncSession, payment_id: UUID) -> bool:
    found = await db.execute(select(Transaction.id).where(Transaction.payment_id == payment_id))
    return found.first() is not None


async def _complete(
    db: AsyncSession,
    payment: Payment,
    effects: LedgerEffects,
    performed_by: Optional[UUID],
) -> None:
    now = utcnow()
    if payment.paid_at is None:
        payment.paid_at = now
    if payment.receipt_number is None:
        payment.receipt_number = await generate_receipt_number(db)

    student = await db.get(Student, payment.student_id)
    await get_or_create_account(db, student.user_id)
    applied, unapplied = await apply_payment_allocation(db, payment)
    payment.unapplied_amount = unapplied
    if unapplied > ZERO:
        logger.warning(
            "Payment %s completed with %s unapplied: no open fee items left",
            payment.reference_number,
            unapplied,
        )
        effects.record(
            AuditFact(
                action="payment_unapplied_remainder",
                reference_table="payments",
                reference_id=payment.id,
                student_id=payment.student_id,
                performed_by=performed_by,
                data={"amount": str(payment.amount), "unapplied_amount": str(unapplied)},
            )
        )
    await _release_linked(db, payment)

    if not await _payment_transaction_exists(db, payment.id):
        links = await load_links(db, payment.id)
        db.add(
            Transaction(
                user_id=student.user_id,
                student_id=payment.student_id,
                fee_item_id=links[0].fee_item_id if len(links) == 1 else None,
                payment_id=payment.id,
                reference=payment.reference_number,
                kind=TransactionKind.PAYMENT.value,
                amount=applied,
                status="paid",
                payment_channel=payment.payment_method,
                paid_at=payment.paid_at,
                meta={
                    "receipt_number": payment.receipt_number,
                    "allocations": [
                        {"fee_item_id": str(link.fee_item_id), "amount": str(to_money(link.applied_amount))}
                        for link in links
                        if to_money(link.applied_amount) > ZERO
                    ],
                },
            )
        )
        await db.flush()

    await recalculate_for_student(db, student, effects=effects)

    effects.notify(
        PaymentCompleted(
            student_id=payment.student_id,
            payment_id=payment.id,
            reference_number=payment.reference_number,
            receipt_number=payment.receipt_number,
            amount=to_money(payment.amount),
            applied_amount=applied,
        )
    )
    effects.record(
        AuditFact(
            action="payment_completed",
            reference_table="payments",
            reference_id=payment.id,
            student_id=payment.student_id,
            performed_by=performed_by,
            data={
                "reference_number": payment.reference_number,
                "receipt_number": payment.receipt_number,
                "amount": str(payment.amount),
                "applied_amount": str(applied),
                "payment_method": payment.payment_method,
            },
        )
    )


async def transition(
    db: AsyncSession,
    payment_id: UUID,
    new_status: PaymentStatus,
    *,
    effects: LedgerEffects,
    reason: Optional[str] = None,
    performed_by: Optional[UUID] = None,
) -> TransitionResult:
    """Move a payment to `new_status` with all side effects. Must run inside a ledger unit."""
    payment = await lock_for_update(db, Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")

    new = PaymentStatus(new_status)
    old = PaymentStatus(payment.status)
    if old == new:
        return TransitionResult(payment, old, new, changed=False)
    if old in TERMINAL_PAYMENT_STATUSES:
        raise InvalidTransition(f"Payment is already {old.value}")
    if not can_transition(old, new):
        raise InvalidTransition(f"Payment cannot move from {old.value} to {new.value}")

    payment.status = new.value
    if new == PaymentStatus.pending:
        await _mark_linked_processing(db, payment)
    elif new == PaymentStatus.completed:
        await _complete(db, payment, effects, performed_by)
    else:
        payment.failure_reason = reason
        await _release_linked(db, payment)
    await db.flush()

    logger.info("Payment %s: %s -> %s", payment.reference_number, old.value, new.value)
    effects.notify(
        PaymentStatusChanged(
            student_id=payment.student_id,
            payment_id=payment.id,
            reference_number=payment.reference_number,
            amount=to_money(payment.amount),
            old_status=old.value,
            new_status=new.value,
        )
    )
    if new == PaymentStatus.failed:
        effects.notify(
            PaymentFailed(
                student_id=payment.student_id,
                payment_id=payment.id,
                reference_number=payment.reference_number,
                amount=to_money(payment.amount),
                reason=reason,
            )
        )
    if new in (PaymentStatus.failed, PaymentStatus.cancelled):
        effects.record(
            AuditFact(
                action=f"payment_{new.value}",
                reference_table="payments",
                reference_id=payment.id,
                student_id=payment.student_id,
                performed_by=performed_by,
                data={"reference_number": payment.reference_number, "reason": reason},
            )
        )
    return TransitionResult(payment, old, new, changed=True)


async def transition_payment(
    db: AsyncSession,
    payment_id: UUID,
    new_status: PaymentStatus,
    *,
    sink: NotificationSink,
    reason: Optional[str] = None,
    performed_by: Optional[UUID] = None,
) -> TransitionResult:
    """Run `transition` as its own unit of work, then release its notifications and audit facts."""
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")

    async def work(session: AsyncSession) -> Tuple[TransitionResult, LedgerEffects]:
        effects = LedgerEffects()
        result = await transition(
            session, payment_id, new_status, effects=effects, reason=reason, performed_by=performed_by
        )
        return result, effects

    result, effects = await run_ledger_unit(db, student_scope(payment.student_id), work)
    await effects.release(db, sink)
    return result
