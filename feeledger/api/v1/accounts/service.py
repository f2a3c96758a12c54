"""Account recalculation on demand."""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.models import Account, Student
from feeledger.core.money import ZERO
from feeledger.db.unit_of_work import lock_for_update, run_ledger_unit, student_scope
from feeledger.events.effects import LedgerEffects
from feeledger.events.notifications import NotificationSink
from feeledger.ledger.accounts import balance_views, load_account, recalculate

from .schemas import AccountBalanceResponse


async def recalculate_account(
    db: AsyncSession,
    account_id: UUID,
    sink: NotificationSink,
) -> AccountBalanceResponse:
    account = await load_account(db, account_id)
    student = (
        await db.execute(select(Student).where(Student.user_id == account.user_id))
    ).scalar_one_or_none()
    scope = student_scope(student.id) if student else f"user:{account.user_id}"

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        await recalculate(session, await lock_for_update(session, Account, account_id), effects=effects)
        return effects

    effects = await run_ledger_unit(db, scope, work)
    await effects.release(db, sink)

    fee_item_balance, journal = ZERO, ZERO
    if student:
        await db.refresh(student)
        fee_item_balance, journal = await balance_views(db, student.id)
    return AccountBalanceResponse(
        id=account.id,
        user_id=account.user_id,
        account_number=account.account_number,
        balance=account.balance,
        fee_item_balance=fee_item_balance,
        journal_balance=journal,
        year_level=student.year_level if student else None,
        student_status=student.status if student else None,
    )
