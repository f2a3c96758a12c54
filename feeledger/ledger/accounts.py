"""
Account balance aggregator. Positive balance means the holder owes money.

The balance is derived two ways, from fee item balances and from the transaction
journal (charges + adjustments - payments - waivers); the two must agree. Clearing the
balance promotes the student one year level, or graduates them from the last one.
"""

import logging
from decimal import Decimal
from typing import Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.enums import YEAR_LEVELS, StudentStatus, TransactionKind
from feeledger.core.exceptions import NotFoundError
from feeledger.core.models import Account, FeeItem, Student, Transaction
from feeledger.core.money import ZERO, to_money
from feeledger.events.audit import AuditFact
from feeledger.events.effects import LedgerEffects
from feeledger.ledger.numbers import generate_account_number

logger = logging.getLogger(__name__)

# Sign each journal kind contributes to the amount owed
_JOURNAL_SIGNS = {
    TransactionKind.CHARGE.value: 1,
    TransactionKind.ADJUSTMENT.value: 1,
    TransactionKind.PAYMENT.value: -1,
    TransactionKind.WAIVER.value: -1,
}


async def _locked_account_for_user(db: AsyncSession, user_id: UUID) -> Optional[Account]:
    stmt = (
        select(Account)
        .where(Account.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def _locked_student_for_user(db: AsyncSession, user_id: UUID) -> Optional[Student]:
    stmt = (
        select(Student)
        .where(Student.user_id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def get_or_create_account(db: AsyncSession, user_id: UUID) -> Account:
    """
    Accounts are created lazily the first time they are needed.

    A new account opens at what the holder's fee items currently say is owed, so opening
    it before a ledger mutation records the pre-mutation balance the promotion check needs.
    """
    account = await _locked_account_for_user(db, user_id)
    if account:
        return account
    student_id = (await db.execute(select(Student.id).where(Student.user_id == user_id))).scalar_one_or_none()
    account = Account(
        user_id=user_id,
        account_number=await generate_account_number(db),
        balance=await fee_item_balance(db, student_id) if student_id is not None else ZERO,
    )
    db.add(account)
    await db.flush()
    logger.info("Created account %s for user %s", account.account_number, user_id)
    return account


async def fee_item_balance(db: AsyncSession, student_id: UUID) -> Decimal:
    stmt = select(func.coalesce(func.sum(FeeItem.balance), 0)).where(FeeItem.student_id == student_id)
    return to_money((await db.execute(stmt)).scalar_one())


async def journal_balance(db: AsyncSession, student_id: UUID) -> Decimal:
    stmt = (
        select(Transaction.kind, func.coalesce(func.sum(Transaction.amount), 0))
        .where(Transaction.student_id == student_id)
        .group_by(Transaction.kind)
    )
    total = ZERO
    for kind, amount in (await db.execute(stmt)).all():
        total += _JOURNAL_SIGNS.get(kind, 0) * to_money(amount)
    return total


async def balance_views(db: AsyncSession, student_id: UUID) -> Tuple[Decimal, Decimal]:
    """(sum of fee item balances, journal balance). Equal on a consistent ledger."""
    return await fee_item_balance(db, student_id), await journal_balance(db, student_id)


def next_year_level(year_level: str) -> Optional[str]:
    """The level after `year_level`, or None when it is the last one."""
    index = YEAR_LEVELS.index(year_level)
    if index + 1 < len(YEAR_LEVELS):
        return YEAR_LEVELS[index + 1]
    return None


def promote(student: Student, effects: Optional[LedgerEffects] = None) -> bool:
    """Advance one year level or graduate. Graduated students are never touched again."""
    if student.status == StudentStatus.graduated.value:
        return False
    if student.year_level not in YEAR_LEVELS:
        logger.warning("Student %s has unknown year level %r; skipping promotion", student.id, student.year_level)
        return False

    old_level = student.year_level
    new_level = next_year_level(old_level)
    if new_level is None:
        student.status = StudentStatus.graduated.value
        logger.info("Student %s graduated from %s", student.id, old_level)
    else:
        student.year_level = new_level
        logger.info("Student %s promoted from %s to %s", student.id, old_level, new_level)

    if effects is not None:
        effects.record(
            AuditFact(
                action="student_promoted",
                reference_table="students",
                reference_id=student.id,
                student_id=student.id,
                data={"old_year_level": old_level, "new_year_level": student.year_level, "status": student.status},
            )
        )
    return True


async def recalculate(
    db: AsyncSession,
    account: Account,
    *,
    effects: Optional[LedgerEffects] = None,
) -> Decimal:
    """
    Write the account's balance from the fee items and run the promotion check.

    Promotion only fires when this recalculation moves the balance from owing to cleared,
    so repeated recalculations of a settled account never promote twice. Callers that
    clear fee items open the account (get_or_create_account) before mutating them.
    """
    student = await _locked_student_for_user(db, account.user_id)
    old_balance = to_money(account.balance)
    if student is None:
        account.balance = ZERO
        await db.flush()
        return ZERO

    from_items, from_journal = await balance_views(db, student.id)
    if from_items != from_journal:
        logger.warning(
            "Balance views disagree for student %s: fee items %s, journal %s",
            student.id,
            from_items,
            from_journal,
        )
    account.balance = from_items
    await db.flush()

    if old_balance > ZERO and from_items <= ZERO:
        promote(student, effects)
        await db.flush()
    return from_items


async def recalculate_for_student(
    db: AsyncSession,
    student: Student,
    *,
    effects: Optional[LedgerEffects] = None,
) -> Account:
    account = await get_or_create_account(db, student.user_id)
    await recalculate(db, account, effects=effects)
    return account


async def load_account(db: AsyncSession, account_id: UUID) -> Account:
    account = await db.get(Account, account_id)
    if not account:
        raise NotFoundError("Account not found")
    return account
