"""
Gateway reconciliation: webhooks and return-URL confirmations drive payment transitions.

(gateway, gateway_transaction_id) is the idempotency key. Deliveries for a payment that
is already terminal, or already in the reported state, are acknowledged without side
effects, so replays and concurrent duplicates collapse to a single transition.
"""

import json
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.clock import utcnow
from feeledger.core.enums import TERMINAL_PAYMENT_STATUSES, PaymentStatus
from feeledger.core.exceptions import (
    GatewayError,
    InvalidSignature,
    NotFoundError,
    UnknownTransaction,
    ValidationError,
)
from feeledger.core.models import Payment, PaymentGatewayDetail
from feeledger.db.unit_of_work import lock_for_update, run_ledger_unit, student_scope
from feeledger.events.effects import LedgerEffects
from feeledger.events.notifications import NotificationSink
from feeledger.gateways.base import Gateway, GatewayEvent
from feeledger.gateways.registry import GatewayRegistry
from feeledger.ledger.state_machine import transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationOutcome:
    payment_id: Optional[UUID]
    status: Optional[str]
    changed: bool


def calculate_gateway_fees(registry: GatewayRegistry, amount, gateway_name) -> Decimal:
    """Fixed + percentage fee the gateway charges for `amount`. Informational; never hits the ledger."""
    return registry.get(gateway_name).calculate_fee(amount)


def _parse_payload(gateway: Gateway, raw_body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise GatewayError(detail=f"{gateway.name.value} webhook body is not JSON: {e}", status_code=400)
    if not isinstance(payload, dict):
        raise GatewayError(detail=f"{gateway.name.value} webhook body is not an object", status_code=400)
    return payload


async def _find_detail(db: AsyncSession, gateway: Gateway, external_transaction_id: str) -> PaymentGatewayDetail:
    stmt = select(PaymentGatewayDetail).where(
        PaymentGatewayDetail.gateway == gateway.name.value,
        PaymentGatewayDetail.gateway_transaction_id == external_transaction_id,
    )
    detail = (await db.execute(stmt)).scalar_one_or_none()
    if not detail:
        raise UnknownTransaction(detail=f"{gateway.name.value} transaction {external_transaction_id} not found")
    return detail


async def reconcile(
    db: AsyncSession,
    gateway: Gateway,
    event: GatewayEvent,
    *,
    sink: NotificationSink,
    payload: Optional[Dict[str, Any]] = None,
) -> ReconciliationOutcome:
    """Apply one gateway-reported status to its payment."""
    detail = await _find_detail(db, gateway, event.external_transaction_id)
    target = gateway.normalize_status(event.raw_status)
    if target is None:
        logger.info(
            "Ignoring unmapped %s status %r for transaction %s",
            gateway.name.value,
            event.raw_status,
            event.external_transaction_id,
        )
        return ReconciliationOutcome(detail.payment_id, None, changed=False)

    payment = await db.get(Payment, detail.payment_id)
    if not payment:
        raise UnknownTransaction(detail=f"Gateway detail {detail.id} has no payment")

    async def work(session: AsyncSession):
        effects = LedgerEffects()
        locked_payment = await lock_for_update(session, Payment, detail.payment_id)
        current = PaymentStatus(locked_payment.status)
        if current in TERMINAL_PAYMENT_STATUSES or current == target:
            return None, current, effects

        locked_detail = await lock_for_update(session, PaymentGatewayDetail, detail.id)
        response_data = dict(locked_detail.gateway_response_data or {})
        response_data["last_event"] = payload if payload is not None else {"status": event.raw_status}
        response_data["processed_at"] = utcnow().isoformat()
        locked_detail.gateway_status = event.raw_status
        locked_detail.gateway_response_data = response_data
        locked_detail.processed_at = utcnow()

        reason = None
        if target in (PaymentStatus.failed, PaymentStatus.cancelled):
            reason = f"{gateway.name.value} reported {event.raw_status}"
        result = await transition(session, locked_payment.id, target, effects=effects, reason=reason)
        return result, result.new_status, effects

    result, status, effects = await run_ledger_unit(db, student_scope(payment.student_id), work)
    if result is None:
        logger.info(
            "Duplicate %s delivery for %s: payment already %s",
            gateway.name.value,
            event.external_transaction_id,
            status.value,
        )
        return ReconciliationOutcome(detail.payment_id, status.value, changed=False)

    await effects.release(db, sink)
    return ReconciliationOutcome(detail.payment_id, status.value, changed=True)


async def process_webhook(
    db: AsyncSession,
    registry: GatewayRegistry,
    gateway_name: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    sink: NotificationSink,
) -> ReconciliationOutcome:
    """Verify, parse and reconcile one webhook delivery. The signature is checked first."""
    gateway = registry.get(gateway_name)
    if not gateway.verify_signature(raw_body, headers, gateway.webhook_secret):
        logger.warning("Rejected %s webhook with invalid signature", gateway.name.value)
        raise InvalidSignature(detail=f"{gateway.name.value} signature mismatch")
    payload = _parse_payload(gateway, raw_body)
    event = gateway.extract(payload)
    return await reconcile(db, gateway, event, sink=sink, payload=payload)


async def confirm_payment(
    db: AsyncSession,
    registry: GatewayRegistry,
    payment_id: UUID,
    *,
    sink: NotificationSink,
    raw_status: Optional[str] = None,
) -> ReconciliationOutcome:
    """
    Return-URL confirmation. Completion is only taken from the gateway itself
    (fetch_status); a status supplied by the redirect can only fail or cancel.
    """
    payment = await db.get(Payment, payment_id)
    if not payment:
        raise NotFoundError("Payment not found")
    if PaymentStatus(payment.status) in TERMINAL_PAYMENT_STATUSES:
        return ReconciliationOutcome(payment.id, payment.status, changed=False)

    stmt = (
        select(PaymentGatewayDetail)
        .where(PaymentGatewayDetail.payment_id == payment.id)
        .order_by(PaymentGatewayDetail.created_at.desc())
        .limit(1)
    )
    detail = (await db.execute(stmt)).scalar_one_or_none()
    if not detail:
        raise ValidationError("Payment has no gateway transaction to confirm")
    gateway = registry.get(detail.gateway)

    status = await gateway.fetch_status(detail.gateway_transaction_id)
    if status is None and raw_status is not None:
        if gateway.normalize_status(raw_status) in (PaymentStatus.failed, PaymentStatus.cancelled):
            status = raw_status
    if status is None:
        return ReconciliationOutcome(payment.id, payment.status, changed=False)

    event = GatewayEvent(external_transaction_id=detail.gateway_transaction_id, raw_status=status)
    return await reconcile(db, gateway, event, sink=sink, payload={"source": "confirm", "status": status})
