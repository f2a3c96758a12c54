import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from feeledger.core.enums import FeeItemStatus, FeeUpdateType, TransactionKind
from feeledger.core.exceptions import InvalidAmount, UnknownFeeItem, ValidationError
from feeledger.core.models import FeeItem, Transaction
from feeledger.db.unit_of_work import run_ledger_unit, student_scope
from feeledger.events.effects import LedgerEffects
from feeledger.ledger import fee_items as ledger


async def _apply(session, student, fee_item_id, amount) -> Decimal:
    async def work(s):
        return await ledger.apply_payment(s, fee_item_id, Decimal(amount))

    return await run_ledger_unit(session, student_scope(student.id), work)


def test_derive_status() -> None:
    assert ledger.derive_status(Decimal("100"), Decimal("0"), Decimal("100")) == FeeItemStatus.pending
    assert ledger.derive_status(Decimal("100"), Decimal("40"), Decimal("60")) == FeeItemStatus.partial
    assert ledger.derive_status(Decimal("100"), Decimal("100"), Decimal("0")) == FeeItemStatus.paid
    assert (
        ledger.derive_status(Decimal("100"), Decimal("40"), Decimal("0"), Decimal("60"))
        == FeeItemStatus.waived
    )


def test_compute_balance_never_negative() -> None:
    assert ledger.compute_balance("100", "150") == Decimal("0.00")
    assert ledger.compute_balance("100", "40", "10") == Decimal("50.00")


async def test_partial_then_full_payment(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "5000.00")

    applied = await _apply(db_session, student, item.id, "3000.00")
    assert applied == Decimal("3000.00")
    await db_session.refresh(item)
    assert item.amount_paid == Decimal("3000.00")
    assert item.balance == Decimal("2000.00")
    assert item.status == FeeItemStatus.partial.value

    applied = await _apply(db_session, student, item.id, "2000.00")
    assert applied == Decimal("2000.00")
    await db_session.refresh(item)
    assert item.amount_paid == Decimal("5000.00")
    assert item.balance == Decimal("0.00")
    assert item.status == FeeItemStatus.paid.value


async def test_apply_caps_at_balance_and_returns_zero_when_paid(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "100.00")

    assert await _apply(db_session, student, item.id, "250.00") == Decimal("100.00")
    assert await _apply(db_session, student, item.id, "10.00") == Decimal("0.00")

    await db_session.refresh(item)
    assert item.amount_paid + item.balance == item.original_amount
    assert item.balance == Decimal("0.00")


async def test_apply_rejects_non_positive_amount(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "100.00")

    with pytest.raises(InvalidAmount):
        await _apply(db_session, student, item.id, "0")
    with pytest.raises(InvalidAmount):
        await _apply(db_session, student, item.id, "-5")


async def test_apply_unknown_fee_item(db_session, make_student) -> None:
    import uuid

    student = await make_student()
    with pytest.raises(UnknownFeeItem):
        await _apply(db_session, student, uuid.uuid4(), "10")


async def test_concurrent_payments_never_exceed_balance(
    session_factory, db_session, make_student, make_fee_item
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "100.00")

    async def pay(amount: str) -> Decimal:
        async with session_factory() as session:
            return await _apply(session, student, item.id, amount)

    results = await asyncio.gather(pay("60.00"), pay("60.00"), pay("60.00"))

    assert results == [Decimal("60.00"), Decimal("40.00"), Decimal("0.00")]
    refreshed = (
        await db_session.execute(
            select(FeeItem).where(FeeItem.id == item.id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert refreshed.amount_paid == Decimal("100.00")
    assert refreshed.balance == Decimal("0.00")
    assert refreshed.status == FeeItemStatus.paid.value


async def test_waiver_reduces_balance_without_touching_amount_paid(
    db_session, make_student, make_fee_item
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "1000.00")
    await _apply(db_session, student, item.id, "200.00")
    effects = LedgerEffects()

    async def work(s):
        return await ledger.apply_waiver(
            s, item.id, percentage=Decimal("50"), reason="Scholarship", effects=effects
        )

    waived = await run_ledger_unit(db_session, student_scope(student.id), work)

    assert waived == Decimal("400.00")
    await db_session.refresh(item)
    assert item.amount_paid == Decimal("200.00")
    assert item.waiver_amount == Decimal("400.00")
    assert item.balance == Decimal("400.00")
    assert item.status == FeeItemStatus.partial.value
    assert [fact.action for fact in effects.audit] == ["fee_waiver"]

    waivers = (
        await db_session.execute(
            select(Transaction).where(
                Transaction.fee_item_id == item.id, Transaction.kind == TransactionKind.WAIVER.value
            )
        )
    ).scalars().all()
    assert [t.amount for t in waivers] == [Decimal("400.00")]


async def test_full_waiver_marks_item_waived(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "300.00")

    async def work(s):
        return await ledger.apply_waiver(s, item.id, amount=Decimal("500.00"), reason="Hardship")

    waived = await run_ledger_unit(db_session, student_scope(student.id), work)

    assert waived == Decimal("300.00")
    await db_session.refresh(item)
    assert item.balance == Decimal("0.00")
    assert item.status == FeeItemStatus.waived.value


async def test_waiver_requires_exactly_one_of_amount_or_percentage(
    db_session, make_student, make_fee_item
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "300.00")

    async def work(s):
        return await ledger.apply_waiver(s, item.id, reason="Oops")

    with pytest.raises(ValidationError):
        await run_ledger_unit(db_session, student_scope(student.id), work)


async def test_update_fee_amount_records_adjustment(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "1000.00")
    await _apply(db_session, student, item.id, "1000.00")

    async def work(s):
        return await ledger.update_fee_amount(s, item.id, FeeUpdateType.ADJUST_PERCENTAGE, Decimal("10"))

    old_amount, new_amount = await run_ledger_unit(db_session, student_scope(student.id), work)

    assert (old_amount, new_amount) == (Decimal("1000.00"), Decimal("1100.00"))
    await db_session.refresh(item)
    assert item.balance == Decimal("100.00")
    assert item.status == FeeItemStatus.partial.value
    adjustment = (
        await db_session.execute(
            select(Transaction).where(Transaction.kind == TransactionKind.ADJUSTMENT.value)
        )
    ).scalar_one()
    assert adjustment.amount == Decimal("100.00")


async def test_update_fee_amount_cannot_go_below_amount_paid(db_session, make_student, make_fee_item) -> None:
    student = await make_student()
    item = await make_fee_item(student, "1000.00")
    await _apply(db_session, student, item.id, "600.00")

    async def work(s):
        return await ledger.update_fee_amount(s, item.id, FeeUpdateType.SET_AMOUNT, Decimal("500"))

    with pytest.raises(ValidationError):
        await run_ledger_unit(db_session, student_scope(student.id), work)
    await db_session.refresh(item)
    assert item.original_amount == Decimal("1000.00")
