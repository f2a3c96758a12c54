"""
Payment allocation: how much of a payment goes to which fee item.

`allocate` is pure. The loaders turn fee item rows into candidates, and
`apply_payment_allocation` replays the plan against current balances when a payment
completes, so money that arrives after another payment already settled an item still
lands somewhere open.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.clock import as_utc
from feeledger.core.enums import AllocationStrategy
from feeledger.core.exceptions import AmountMismatch, InvalidAmount, UnknownFeeItem, ValidationError
from feeledger.core.models import FeeItem, Payment, PaymentFeeItem
from feeledger.core.money import ZERO, money_sum, to_money
from feeledger.ledger import fee_items as ledger

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class Candidate:
    fee_item_id: UUID
    balance: Decimal
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Allocation:
    fee_item_id: UUID
    amount: Decimal


def oldest_first(candidates: Iterable[Candidate]) -> List[Candidate]:
    open_items = [c for c in candidates if to_money(c.balance) > ZERO]
    return sorted(open_items, key=lambda c: (as_utc(c.created_at) or _EPOCH, str(c.fee_item_id)))


def allocate(
    total_amount,
    candidates: Sequence[Candidate],
    strategy: AllocationStrategy,
    *,
    strict: bool = True,
) -> List[Allocation]:
    """
    Greedy allocation: each item gets min(balance, remaining) until the money runs out.

    Explicit selection keeps the caller's order; oldest-first orders by creation time.
    With `strict`, an amount larger than the open balance is rejected before anything
    is planned instead of leaving an unapplied remainder.
    """
    total = to_money(total_amount)
    if total <= ZERO:
        raise InvalidAmount("Payment amount must be greater than zero")

    if strategy == AllocationStrategy.EXPLICIT:
        ordered = list(candidates)
    else:
        ordered = oldest_first(candidates)

    available = money_sum(c.balance for c in ordered if to_money(c.balance) > ZERO)
    if strict and total > available:
        if strategy == AllocationStrategy.EXPLICIT:
            raise AmountMismatch(
                f"Payment amount {total} exceeds the balance of the selected fees ({available})"
            )
        raise AmountMismatch(f"Payment amount {total} exceeds the outstanding balance ({available})")

    plan: List[Allocation] = []
    remaining = total
    for candidate in ordered:
        if remaining <= ZERO:
            break
        balance = to_money(candidate.balance)
        if balance <= ZERO:
            continue
        amount = min(balance, remaining)
        plan.append(Allocation(candidate.fee_item_id, amount))
        remaining -= amount
    return plan


def _candidate(item: FeeItem) -> Candidate:
    return Candidate(fee_item_id=item.id, balance=to_money(item.balance), created_at=item.created_at)


async def load_selected_candidates(
    db: AsyncSession, student_id: UUID, fee_item_ids: Sequence[UUID]
) -> List[Candidate]:
    """Candidates for explicit selection, in the order the caller listed them."""
    if not fee_item_ids:
        raise ValidationError("At least one fee item must be selected")
    if len(set(fee_item_ids)) != len(fee_item_ids):
        raise ValidationError("Fee items may only be selected once")

    rows = (await db.execute(select(FeeItem).where(FeeItem.id.in_(list(fee_item_ids))))).scalars().all()
    by_id = {item.id: item for item in rows}
    candidates = []
    for fee_item_id in fee_item_ids:
        item = by_id.get(fee_item_id)
        if item is None or item.student_id != student_id:
            raise UnknownFeeItem("Fee item not found")
        candidates.append(_candidate(item))
    return candidates


async def load_open_candidates(
    db: AsyncSession, student_id: UUID, exclude: Iterable[UUID] = ()
) -> List[Candidate]:
    """All unpaid or partially paid fee items of the student, oldest first."""
    stmt = (
        select(FeeItem)
        .where(
            FeeItem.student_id == student_id,
            FeeItem.status.in_(ledger.OPEN_STATUSES),
            FeeItem.balance > 0,
        )
        .order_by(FeeItem.created_at, FeeItem.id)
    )
    excluded = set(exclude)
    return [_candidate(item) for item in (await db.execute(stmt)).scalars().all() if item.id not in excluded]


async def plan_payment(
    db: AsyncSession,
    student_id: UUID,
    amount,
    strategy: AllocationStrategy,
    fee_item_ids: Optional[Sequence[UUID]] = None,
) -> List[Allocation]:
    if strategy == AllocationStrategy.EXPLICIT:
        candidates = await load_selected_candidates(db, student_id, fee_item_ids or [])
    else:
        candidates = await load_open_candidates(db, student_id)
    return allocate(amount, candidates, strategy, strict=True)


def link_allocations(payment: Payment, plan: Sequence[Allocation]) -> List[PaymentFeeItem]:
    return [
        PaymentFeeItem(
            payment_id=payment.id,
            fee_item_id=allocation.fee_item_id,
            position=position,
            planned_amount=allocation.amount,
            applied_amount=ZERO,
        )
        for position, allocation in enumerate(plan)
    ]


async def load_links(db: AsyncSession, payment_id: UUID) -> List[PaymentFeeItem]:
    stmt = (
        select(PaymentFeeItem)
        .where(PaymentFeeItem.payment_id == payment_id)
        .order_by(PaymentFeeItem.position)
        .execution_options(populate_existing=True)
    )
    return list((await db.execute(stmt)).scalars().all())


async def apply_payment_allocation(db: AsyncSession, payment: Payment) -> Tuple[Decimal, Decimal]:
    """
    Apply a completed payment to the ledger. Returns (applied, unapplied).

    Linked fee items are settled first, in their planned order, each up to its current
    balance. Whatever they no longer absorb cascades to the student's other open items,
    oldest first. Anything still left is reported as unapplied.
    """
    remaining = to_money(payment.amount)
    links = await load_links(db, payment.id)

    for link in links:
        if remaining <= ZERO:
            break
        applied = await ledger.apply_payment(db, link.fee_item_id, remaining)
        link.applied_amount = to_money(link.applied_amount) + applied
        remaining -= applied

    if remaining > ZERO:
        spill = await load_open_candidates(db, payment.student_id, exclude=[link.fee_item_id for link in links])
        position = len(links)
        for candidate in spill:
            if remaining <= ZERO:
                break
            applied = await ledger.apply_payment(db, candidate.fee_item_id, remaining)
            if applied <= ZERO:
                continue
            db.add(
                PaymentFeeItem(
                    payment_id=payment.id,
                    fee_item_id=candidate.fee_item_id,
                    position=position,
                    planned_amount=ZERO,
                    applied_amount=applied,
                )
            )
            position += 1
            remaining -= applied
            logger.info(
                "Payment %s: %s redirected to fee item %s", payment.reference_number, applied, candidate.fee_item_id
            )

    await db.flush()
    applied_total = to_money(payment.amount) - remaining
    return applied_total, remaining
