import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from conftest import gcash_webhook

from feeledger.core.enums import FeeItemStatus, PaymentStatus
from feeledger.core.exceptions import GatewayError, InvalidSignature, UnknownTransaction, UnsupportedGateway
from feeledger.core.models import FeeItem, Payment, PaymentGatewayDetail, Transaction
from feeledger.events.notifications import PaymentCompleted
from feeledger.gateways.reconciliation import calculate_gateway_fees, confirm_payment, process_webhook


async def _reload(db_session, model, ident):
    return (
        await db_session.execute(
            select(model).where(model.id == ident).execution_options(populate_existing=True)
        )
    ).scalar_one()


async def test_success_webhook_completes_payment(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "1500.00")
    payment = await make_payment(student, "1500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-1")

    body, headers = gcash_webhook("QR-1", "SUCCESS")
    outcome = await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)

    assert outcome.payment_id == payment.id
    assert outcome.status == PaymentStatus.completed.value
    assert outcome.changed
    item = await _reload(db_session, FeeItem, item.id)
    assert item.status == FeeItemStatus.paid.value
    detail = (
        await db_session.execute(select(PaymentGatewayDetail).where(PaymentGatewayDetail.payment_id == payment.id))
    ).scalar_one()
    assert detail.gateway_status == "SUCCESS"
    assert detail.processed_at is not None
    assert detail.gateway_response_data["last_event"] == {"qr_id": "QR-1", "status": "SUCCESS"}


async def test_replayed_webhook_has_no_further_effect(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "1500.00")
    payment = await make_payment(student, "1000.00", fee_item_ids=[item.id], gateway_transaction_id="QR-2")
    body, headers = gcash_webhook("QR-2", "SUCCESS")

    first = await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)
    second = await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)

    assert first.changed and not second.changed
    assert second.status == PaymentStatus.completed.value
    item = await _reload(db_session, FeeItem, item.id)
    assert item.amount_paid == Decimal("1000.00")
    count = (
        await db_session.execute(select(func.count(Transaction.id)).where(Transaction.payment_id == payment.id))
    ).scalar_one()
    assert count == 1
    assert len([f for f in sink.facts if isinstance(f, PaymentCompleted)]) == 1


async def test_concurrent_duplicate_deliveries_apply_once(
    session_factory, db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "800.00")
    await make_payment(student, "800.00", fee_item_ids=[item.id], gateway_transaction_id="QR-3")
    body, headers = gcash_webhook("QR-3", "SUCCESS")

    async def deliver():
        async with session_factory() as session:
            return await process_webhook(session, collaborators.gateways, "gcash", body, headers, sink=sink)

    outcomes = await asyncio.gather(deliver(), deliver(), deliver())

    assert sorted(o.changed for o in outcomes) == [False, False, True]
    item = await _reload(db_session, FeeItem, item.id)
    assert item.amount_paid == Decimal("800.00")


async def test_invalid_signature_is_rejected_before_anything_else(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-4")

    body, headers = gcash_webhook("QR-4", "SUCCESS", secret="not-the-secret")
    with pytest.raises(InvalidSignature):
        await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)

    body, _ = gcash_webhook("QR-4", "SUCCESS")
    with pytest.raises(InvalidSignature):
        await process_webhook(db_session, collaborators.gateways, "gcash", body, {}, sink=sink)

    payment = await _reload(db_session, Payment, payment.id)
    assert payment.status == PaymentStatus.pending.value
    assert sink.facts == []


async def test_unknown_transaction(db_session, collaborators, sink) -> None:
    body, headers = gcash_webhook("QR-missing", "SUCCESS")
    with pytest.raises(UnknownTransaction):
        await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)


async def test_unsupported_gateway(db_session, collaborators, sink) -> None:
    body, headers = gcash_webhook("QR-5", "SUCCESS")
    with pytest.raises(UnsupportedGateway):
        await process_webhook(db_session, collaborators.gateways, "venmo", body, headers, sink=sink)


async def test_signed_non_json_body_is_rejected(db_session, collaborators, sink) -> None:
    from feeledger.gateways.base import hmac_sha256_hex
    from conftest import GCASH_SECRET

    body = b"not json"
    headers = {"X-GCash-Signature": hmac_sha256_hex(GCASH_SECRET, body)}
    with pytest.raises(GatewayError) as exc_info:
        await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)
    assert exc_info.value.status_code == 400


async def test_unmapped_status_leaves_payment_alone(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-6")

    body, headers = gcash_webhook("QR-6", "REFUND_REQUESTED")
    outcome = await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)

    assert outcome.status is None and not outcome.changed
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.status == PaymentStatus.pending.value


async def test_late_success_after_failure_is_ignored(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-7")

    body, headers = gcash_webhook("QR-7", "FAILED")
    await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)
    body, headers = gcash_webhook("QR-7", "SUCCESS")
    outcome = await process_webhook(db_session, collaborators.gateways, "gcash", body, headers, sink=sink)

    assert outcome.status == PaymentStatus.failed.value and not outcome.changed
    item = await _reload(db_session, FeeItem, item.id)
    assert item.amount_paid == Decimal("0.00")
    assert item.status == FeeItemStatus.pending.value
    payment = await _reload(db_session, Payment, payment.id)
    assert payment.failure_reason == "gcash reported FAILED"


async def test_confirm_takes_completion_only_from_the_gateway(
    db_session, collaborators, gcash, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-8")

    outcome = await confirm_payment(db_session, collaborators.gateways, payment.id, sink=sink, raw_status="SUCCESS")
    assert not outcome.changed
    assert outcome.status == PaymentStatus.pending.value

    gcash.remote_statuses["QR-8"] = "SUCCESS"
    outcome = await confirm_payment(db_session, collaborators.gateways, payment.id, sink=sink)
    assert outcome.changed
    assert outcome.status == PaymentStatus.completed.value


async def test_confirm_accepts_cancellation_from_the_redirect(
    db_session, collaborators, sink, make_student, make_fee_item, make_payment
) -> None:
    student = await make_student()
    item = await make_fee_item(student, "500.00")
    payment = await make_payment(student, "500.00", fee_item_ids=[item.id], gateway_transaction_id="QR-9")

    outcome = await confirm_payment(db_session, collaborators.gateways, payment.id, sink=sink, raw_status="EXPIRED")

    assert outcome.changed
    assert outcome.status == PaymentStatus.cancelled.value


def test_gateway_fee_is_informational(collaborators) -> None:
    assert calculate_gateway_fees(collaborators.gateways, Decimal("1000.00"), "gcash") == Decimal("25.00")
