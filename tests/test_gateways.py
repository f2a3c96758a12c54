import json
from decimal import Decimal

import pytest

from feeledger.core.enums import GatewayName, PaymentMethod, PaymentStatus
from feeledger.core.exceptions import GatewayError, UnsupportedGateway
from feeledger.core.models import Payment
from feeledger.gateways.base import hmac_sha256_hex
from feeledger.gateways.paypal import PayPalGateway
from feeledger.gateways.registry import GatewayRegistry
from feeledger.gateways.status_maps import normalize_status
from feeledger.gateways.stripe import StripeGateway, parse_signature_header

SECRET = "whsec_test"


@pytest.fixture()
def stripe_gateway() -> StripeGateway:
    return StripeGateway(
        secret_key="sk_test",
        create_session_url="http://stripe.test/sessions",
        expiry_hours=24,
        currency="php",
        public_base_url="http://test/",
        webhook_secret=SECRET,
        fixed_fee=Decimal("15.00"),
        percentage_fee=Decimal("3.5"),
    )


@pytest.fixture()
def paypal_gateway() -> PayPalGateway:
    return PayPalGateway(
        access_token="A21AA",
        create_order_url="http://paypal.test/orders",
        expiry_hours=3,
        currency="PHP",
        public_base_url="http://test",
        webhook_secret=SECRET,
    )


def test_status_maps() -> None:
    assert normalize_status(GatewayName.GCASH, "SUCCESS") == PaymentStatus.completed
    assert normalize_status(GatewayName.GCASH, "EXPIRED") == PaymentStatus.cancelled
    assert normalize_status(GatewayName.PAYPAL, "PAYMENT.CAPTURE.DENIED") == PaymentStatus.failed
    assert normalize_status(GatewayName.STRIPE, "checkout.session.completed") == PaymentStatus.completed
    assert normalize_status(GatewayName.STRIPE, "SUCCESS") is None
    assert normalize_status(GatewayName.GCASH, None) is None


@pytest.mark.parametrize(
    "event_type, expected",
    [
        ("checkout.session.async_payment_succeeded", PaymentStatus.completed),
        ("checkout.session.async_payment_failed", PaymentStatus.failed),
        ("checkout.session.expired", PaymentStatus.cancelled),
        ("payment_intent.succeeded", None),
        ("payment_intent.payment_failed", None),
        ("charge.refunded", None),
    ],
)
def test_stripe_maps_only_checkout_session_events(stripe_gateway, event_type, expected) -> None:
    event = stripe_gateway.extract({"type": event_type, "data": {"object": {"id": "cs_test_9"}}})

    assert event.external_transaction_id == "cs_test_9"
    assert stripe_gateway.normalize_status(event.raw_status) == expected


def test_parse_stripe_signature_header() -> None:
    assert parse_signature_header("t=1700000000, v1=abc,v0=old") == {"t": "1700000000", "v1": "abc", "v0": "old"}


def test_stripe_signature(stripe_gateway) -> None:
    body = json.dumps({"type": "checkout.session.completed", "data": {"object": {"id": "cs_1"}}}).encode()
    signature = hmac_sha256_hex(SECRET, b"1700000000." + body)

    assert stripe_gateway.verify_signature(body, {"stripe-signature": f"t=1700000000,v1={signature}"}, SECRET)
    assert not stripe_gateway.verify_signature(body, {"Stripe-Signature": f"t=1700000001,v1={signature}"}, SECRET)
    assert not stripe_gateway.verify_signature(body, {"Stripe-Signature": f"v1={signature}"}, SECRET)
    assert not stripe_gateway.verify_signature(body, {}, SECRET)
    assert not stripe_gateway.verify_signature(body, {"Stripe-Signature": f"t=1700000000,v1={signature}"}, None)

    event = stripe_gateway.extract(json.loads(body))
    assert (event.external_transaction_id, event.raw_status) == ("cs_1", "checkout.session.completed")


def test_paypal_signature_and_capture_events(paypal_gateway) -> None:
    payload = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": "CAPTURE-1", "supplementary_data": {"related_ids": {"order_id": "ORDER-1"}}},
    }
    body = json.dumps(payload).encode()

    headers = {"PayPal-Transmission-Sig": hmac_sha256_hex(SECRET, body)}
    assert paypal_gateway.verify_signature(body, headers, SECRET)
    assert not paypal_gateway.verify_signature(body + b" ", headers, SECRET)

    event = paypal_gateway.extract(payload)
    assert event.external_transaction_id == "ORDER-1"
    approved = paypal_gateway.extract({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "ORDER-2"}})
    assert approved.external_transaction_id == "ORDER-2"
    with pytest.raises(GatewayError):
        paypal_gateway.extract({"event_type": "CHECKOUT.ORDER.APPROVED"})


def test_fee_is_fixed_plus_percentage(stripe_gateway) -> None:
    assert stripe_gateway.calculate_fee(Decimal("1000.00")) == Decimal("50.00")


async def test_stripe_initiation_sends_minor_units(stripe_gateway, monkeypatch) -> None:
    sent = {}

    async def fake_post(url, payload, headers):
        sent.update(url=url, payload=payload, headers=headers)
        return {"id": "cs_test_1", "url": "https://checkout.stripe.test/cs_test_1", "expires_at": 1780000000}

    monkeypatch.setattr(stripe_gateway, "_post", fake_post)
    payment = Payment(
        amount=Decimal("1234.50"), description="Tuition", reference_number="PAY20260601ABCDEFGH"
    )

    initiation = await stripe_gateway.initiate(payment)

    assert initiation.external_transaction_id == "cs_test_1"
    assert initiation.redirect_url == "https://checkout.stripe.test/cs_test_1"
    assert int(initiation.expires_at.timestamp()) == 1780000000
    assert sent["payload"]["line_items"][0]["price_data"]["unit_amount"] == 123450
    assert sent["headers"]["Authorization"] == "Bearer sk_test"


async def test_paypal_initiation_requires_approve_link(paypal_gateway, monkeypatch) -> None:
    async def fake_post(url, payload, headers):
        return {"id": "ORDER-9", "links": [{"rel": "self", "href": "http://paypal.test/ORDER-9"}]}

    monkeypatch.setattr(paypal_gateway, "_post", fake_post)

    with pytest.raises(GatewayError):
        await paypal_gateway.initiate(Payment(amount=Decimal("100.00")))


def test_registry(stripe_gateway, paypal_gateway) -> None:
    registry = GatewayRegistry([stripe_gateway, paypal_gateway])

    assert registry.get("stripe") is stripe_gateway
    assert registry.get(PaymentMethod.PAYPAL.value) is paypal_gateway
    with pytest.raises(UnsupportedGateway):
        registry.get("gcash")
    with pytest.raises(UnsupportedGateway):
        registry.get("bitcoin")
