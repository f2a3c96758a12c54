from decimal import Decimal

import pytest
from sqlalchemy import func, select

from feeledger.core.clock import as_utc
from feeledger.core.enums import FeeItemStatus, PaymentStatus, TransactionKind
from feeledger.core.exceptions import InvalidTransition
from feeledger.core.models import FinancialAuditLog, Transaction
from feeledger.events.notifications import PaymentCompleted, PaymentFailed, PaymentStatusChanged
from feeledger.ledger.state_machine import can_transition, transition_payment


def test_allowed_transitions() -> None:
    assert can_transition(PaymentStatus.initiated, PaymentStatus.pending)
    assert can_transition(PaymentStatus.pending, PaymentStatus.completed)
    assert not can_transition(PaymentStatus.pending, PaymentStatus.initiated)
    for terminal in (PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.cancelled):
        assert not can_transition(terminal, PaymentStatus.pending)
        assert not can_transition(terminal, PaymentStatus.completed)


async def _payment_transactions(db_session, payment_id):
    return (
        await db_session.execute(select(Transaction).where(Transaction.payment_id == payment_id))
    ).scalars().all()


async def test_pending_marks_fee_items_processing(db_session, make_student, make_fee_item, make_payment) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")

    await make_payment(student, "200.00", fee_item_ids=[item.id])

    await db_session.refresh(item)
    assert item.status == FeeItemStatus.processing.value
    assert item.balance == Decimal("500.00")


async def test_completion_applies_once(db_session, sink, make_student, make_fee_item, make_payment) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "200.00", fee_item_ids=[item.id])

    result = await transition_payment(db_session, payment.id, PaymentStatus.completed, sink=sink)
    assert result.changed
    paid_at, receipt_number = result.payment.paid_at, result.payment.receipt_number
    assert receipt_number.startswith("RCP")

    again = await transition_payment(db_session, payment.id, PaymentStatus.completed, sink=sink)
    assert not again.changed
    assert as_utc(again.payment.paid_at) == as_utc(paid_at)
    assert again.payment.receipt_number == receipt_number

    await db_session.refresh(item)
    assert item.amount_paid == Decimal("200.00")
    assert item.status == FeeItemStatus.partial.value

    transactions = await _payment_transactions(db_session, payment.id)
    assert len(transactions) == 1
    assert transactions[0].kind == TransactionKind.PAYMENT.value
    assert transactions[0].amount == Decimal("200.00")
    assert transactions[0].fee_item_id == item.id
    assert transactions[0].meta["receipt_number"] == receipt_number

    completed = [f for f in sink.facts if isinstance(f, PaymentCompleted)]
    assert len(completed) == 1
    assert completed[0].applied_amount == Decimal("200.00")


@pytest.mark.parametrize("terminal", [PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.cancelled])
async def test_terminal_states_absorb(db_session, sink, make_student, make_fee_item, make_payment, terminal) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "100.00", fee_item_ids=[item.id])
    payment_id = payment.id
    await transition_payment(db_session, payment_id, terminal, sink=sink)

    for other in (PaymentStatus.pending, PaymentStatus.completed, PaymentStatus.failed, PaymentStatus.cancelled):
        if other == terminal:
            continue
        with pytest.raises(InvalidTransition):
            await transition_payment(db_session, payment_id, other, sink=sink)

    await db_session.refresh(payment)
    assert payment.status == terminal.value


async def test_failure_reverts_processing_and_records_reason(
    db_session, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id])

    result = await transition_payment(
        db_session, payment.id, PaymentStatus.failed, sink=sink, reason="Card declined"
    )

    assert result.changed
    assert result.payment.failure_reason == "Card declined"
    await db_session.refresh(item)
    assert item.status == FeeItemStatus.pending.value
    assert item.amount_paid == Decimal("0.00")
    assert await _payment_transactions(db_session, payment.id) == []

    assert [type(f) for f in sink.facts] == [PaymentStatusChanged, PaymentFailed]
    actions = (await db_session.execute(select(FinancialAuditLog.action))).scalars().all()
    assert actions == ["payment_failed"]


async def test_processing_kept_while_another_payment_is_in_flight(
    db_session, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    first = await make_payment(student, "100.00", fee_item_ids=[item.id])
    await make_payment(student, "100.00", fee_item_ids=[item.id])

    await transition_payment(db_session, first.id, PaymentStatus.cancelled, sink=sink)

    await db_session.refresh(item)
    assert item.status == FeeItemStatus.processing.value


async def test_initiated_payment_can_complete_directly(
    db_session, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "300.00")
    payment = await make_payment(student, "300.00", fee_item_ids=[item.id], status=PaymentStatus.initiated)

    await transition_payment(db_session, payment.id, PaymentStatus.completed, sink=sink)

    await db_session.refresh(item)
    assert item.status == FeeItemStatus.paid.value
    count = (
        await db_session.execute(select(func.count(Transaction.id)).where(Transaction.payment_id == payment.id))
    ).scalar_one()
    assert count == 1
