"""Payment initiation, staff-recorded payments, lookups and risk scoring."""

import logging
import uuid
from typing import List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.schemas import CurrentUser
from feeledger.core.clock import utcnow
from feeledger.core.collaborators import Collaborators
from feeledger.core.config import settings
from feeledger.core.enums import AllocationStrategy, PaymentStatus
from feeledger.core.exceptions import GatewayError, NotFoundError, RateLimitedError, ValidationError
from feeledger.core.models import Payment, PaymentGatewayDetail, Student
from feeledger.core.money import ZERO, to_money
from feeledger.db.unit_of_work import run_ledger_unit, student_scope
from feeledger.events.effects import LedgerEffects
from feeledger.gateways.reconciliation import ReconciliationOutcome, confirm_payment
from feeledger.ledger.allocation import link_allocations, load_links, plan_payment
from feeledger.ledger.numbers import generate_reference_number
from feeledger.ledger.state_machine import transition, transition_payment
from feeledger.risk.scorer import BLOCKED_MESSAGE, PaymentRequest, load_student_history
from feeledger.risk.store import acquire_rate_limit, initiation_rate_key

from .schemas import (
    ManualPaymentCreate,
    PaymentAllocationResponse,
    PaymentHandle,
    PaymentInitiateRequest,
    PaymentResponse,
    RiskCheckResponse,
    RiskScoreRequest,
    RiskScoreResponse,
)

logger = logging.getLogger(__name__)


async def _get_student(db: AsyncSession, student_id: UUID) -> Student:
    student = await db.get(Student, student_id)
    if not student:
        raise NotFoundError("Student not found")
    return student


def _validate_amount_limits(amount) -> None:
    if amount < to_money(settings.payment_min_amount):
        raise ValidationError(f"Minimum payment amount is {to_money(settings.payment_min_amount)}")
    if amount > to_money(settings.payment_max_amount):
        raise ValidationError(f"Maximum payment amount is {to_money(settings.payment_max_amount)}")


def _strategy(fee_item_ids: Optional[List[UUID]]) -> AllocationStrategy:
    return AllocationStrategy.EXPLICIT if fee_item_ids else AllocationStrategy.OLDEST_FIRST


async def _to_response(db: AsyncSession, payment: Payment) -> PaymentResponse:
    links = await load_links(db, payment.id)
    response = PaymentResponse.model_validate(payment)
    response.allocations = [PaymentAllocationResponse.model_validate(link) for link in links]
    return response


async def initiate_payment(
    db: AsyncSession,
    collaborators: Collaborators,
    student_id: UUID,
    payload: PaymentInitiateRequest,
    *,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> PaymentHandle:
    """
    Fraud gate, rate limit, allocation, then the gateway call.

    The payment and its fee item links commit as `initiated` before the gateway is
    contacted. A gateway failure moves it to `failed`; success records the gateway
    detail and moves it to `pending`.
    """
    amount = to_money(payload.amount)
    _validate_amount_limits(amount)
    student = await _get_student(db, student_id)
    gateway = collaborators.gateways.get(payload.payment_method)

    history = await load_student_history(db, student.id)
    assessment = await collaborators.scorer.score(
        PaymentRequest(
            student_id=student.id,
            amount=amount,
            payment_method=gateway.name.value,
            ip_address=ip_address,
            user_agent=user_agent,
        ),
        history,
    )
    if assessment.blocked:
        return PaymentHandle(blocked=True, message=BLOCKED_MESSAGE)

    if not await acquire_rate_limit(
        collaborators.store, initiation_rate_key(student.id), settings.payment_rate_limit_seconds
    ):
        raise RateLimitedError()

    strategy = _strategy(payload.fee_item_ids)
    gateway_fee = gateway.calculate_fee(amount)

    async def create(session: AsyncSession) -> UUID:
        plan = await plan_payment(session, student.id, amount, strategy, payload.fee_item_ids)
        payment = Payment(
            id=uuid.uuid4(),
            student_id=student.id,
            amount=amount,
            payment_method=gateway.name.value,
            allocation_strategy=strategy.value,
            reference_number=await generate_reference_number(session),
            status=PaymentStatus.initiated.value,
            description=payload.description or "Online Payment",
            unapplied_amount=ZERO,
            meta={
                "gateway": gateway.name.value,
                "gateway_fee": str(gateway_fee),
                "risk_score": assessment.total_score,
                "initiated_at": utcnow().isoformat(),
                "ip_address": ip_address,
                "user_agent": user_agent,
            },
        )
        session.add(payment)
        await session.flush()
        session.add_all(link_allocations(payment, plan))
        await session.flush()
        return payment.id

    payment_id = await run_ledger_unit(db, student_scope(student.id), create)
    payment = await db.get(Payment, payment_id)

    try:
        initiation = await gateway.initiate(payment)
    except Exception as e:
        detail = e.detail if isinstance(e, GatewayError) else repr(e)
        logger.error("Gateway %s initiation failed for %s: %s", gateway.name.value, payment.reference_number, detail)
        await transition_payment(
            db, payment_id, PaymentStatus.failed, sink=collaborators.sink, reason="Gateway initiation failed"
        )
        raise GatewayError(detail=detail)

    async def record(session: AsyncSession):
        effects = LedgerEffects()
        session.add(
            PaymentGatewayDetail(
                payment_id=payment_id,
                gateway=gateway.name.value,
                gateway_transaction_id=initiation.external_transaction_id,
                gateway_status="initiated",
                gateway_response_data=initiation.response_data,
                gateway_fee_amount=gateway_fee,
                redirect_url=initiation.redirect_url,
                qr_code=initiation.qr_code,
                expires_at=initiation.expires_at,
            )
        )
        result = await transition(session, payment_id, PaymentStatus.pending, effects=effects)
        return result, effects

    result, effects = await run_ledger_unit(db, student_scope(student.id), record)
    await effects.release(db, collaborators.sink)

    return PaymentHandle(
        message="Payment initiated successfully",
        payment_id=payment_id,
        reference_number=result.payment.reference_number,
        status=result.payment.status,
        gateway=gateway.name.value,
        redirect_url=initiation.redirect_url,
        qr_code=initiation.qr_code,
        expires_at=initiation.expires_at,
        gateway_fee=gateway_fee,
    )


async def record_manual_payment(
    db: AsyncSession,
    collaborators: Collaborators,
    payload: ManualPaymentCreate,
    recorded_by: Optional[UUID],
) -> PaymentResponse:
    """Staff-recorded payment: created and completed in one unit of work."""
    amount = to_money(payload.amount)
    if amount <= ZERO:
        raise ValidationError("Payment amount must be greater than zero")
    student = await _get_student(db, payload.student_id)
    strategy = _strategy(payload.fee_item_ids)

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        plan = await plan_payment(session, student.id, amount, strategy, payload.fee_item_ids)
        payment = Payment(
            id=uuid.uuid4(),
            student_id=student.id,
            amount=amount,
            payment_method=payload.payment_method.value,
            allocation_strategy=strategy.value,
            reference_number=await generate_reference_number(session),
            status=PaymentStatus.initiated.value,
            description=payload.description or "Payment recorded by staff",
            paid_at=payload.paid_at,
            unapplied_amount=ZERO,
            recorded_by=recorded_by,
            meta={"recorded_at": utcnow().isoformat()},
        )
        session.add(payment)
        await session.flush()
        session.add_all(link_allocations(payment, plan))
        await session.flush()
        await transition(
            session, payment.id, PaymentStatus.completed, effects=effects, performed_by=recorded_by
        )
        return payment.id, effects

    payment_id, effects = await run_ledger_unit(db, student_scope(student.id), work)
    await effects.release(db, collaborators.sink)
    payment = await db.get(Payment, payment_id)
    logger.info("Manual payment %s recorded by %s", payment.reference_number, recorded_by)
    return await _to_response(db, payment)


def _ensure_visible(payment: Payment, current_user: CurrentUser) -> None:
    if current_user.is_staff:
        return
    if current_user.student_id is None or payment.student_id != current_user.student_id:
        raise NotFoundError("Payment not found")


async def get_payment(db: AsyncSession, reference_number: str, current_user: CurrentUser) -> PaymentResponse:
    payment = (
        await db.execute(select(Payment).where(Payment.reference_number == reference_number))
    ).scalar_one_or_none()
    if not payment:
        raise NotFoundError("Payment not found")
    _ensure_visible(payment, current_user)
    return await _to_response(db, payment)


async def list_student_payments(db: AsyncSession, student_id: UUID) -> List[PaymentResponse]:
    payments = (
        await db.execute(
            select(Payment).where(Payment.student_id == student_id).order_by(Payment.created_at.desc())
        )
    ).scalars().all()
    return [await _to_response(db, payment) for payment in payments]


async def confirm(
    db: AsyncSession,
    collaborators: Collaborators,
    payment_id: UUID,
    current_user: CurrentUser,
    raw_status: Optional[str] = None,
) -> ReconciliationOutcome:
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    _ensure_visible(payment, current_user)
    return await confirm_payment(
        db, collaborators.gateways, payment_id, sink=collaborators.sink, raw_status=raw_status
    )


async def score_risk(
    db: AsyncSession,
    collaborators: Collaborators,
    payload: RiskScoreRequest,
) -> RiskScoreResponse:
    """Staff preview of the fraud score. Does not record the device or location."""
    student = await _get_student(db, payload.student_id)
    history = await load_student_history(db, student.id)
    assessment = await collaborators.scorer.score(
        PaymentRequest(
            student_id=student.id,
            amount=to_money(payload.amount),
            payment_method=payload.payment_method.value,
            ip_address=payload.ip_address,
            user_agent=payload.user_agent,
        ),
        history,
        track=False,
    )
    return RiskScoreResponse(
        total_score=assessment.total_score,
        threshold=assessment.threshold,
        blocked=assessment.blocked,
        breakdown=assessment.breakdown(),
        checks=[
            RiskCheckResponse(name=c.name, score=c.score, reason=c.reason, risk_level=c.risk_level)
            for c in assessment.checks
        ],
    )
