"""
Per-gateway raw status vocabularies mapped onto PaymentStatus.

A raw status that is not in its gateway's table maps to None: the payment is left as is.
"""

from typing import Dict, Optional

from feeledger.core.enums import GatewayName, PaymentStatus

GCASH_STATUSES: Dict[str, PaymentStatus] = {
    "SUCCESS": PaymentStatus.completed,
    "FAILED": PaymentStatus.failed,
    "CANCELLED": PaymentStatus.failed,
    "EXPIRED": PaymentStatus.cancelled,
    "PENDING": PaymentStatus.pending,
}

PAYPAL_STATUSES: Dict[str, PaymentStatus] = {
    "PAYMENT.CAPTURE.COMPLETED": PaymentStatus.completed,
    "PAYMENT.SALE.COMPLETED": PaymentStatus.completed,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.failed,
    "PAYMENT.SALE.DENIED": PaymentStatus.failed,
    "PAYMENT.SALE.REVERSED": PaymentStatus.failed,
    "CHECKOUT.ORDER.APPROVED": PaymentStatus.pending,
    "PAYMENT.CAPTURE.PENDING": PaymentStatus.pending,
}

STRIPE_STATUSES: Dict[str, PaymentStatus] = {
    # Only checkout.session.* events carry the session id stored on the gateway detail
    "checkout.session.completed": PaymentStatus.completed,
    "checkout.session.async_payment_succeeded": PaymentStatus.completed,
    "checkout.session.async_payment_failed": PaymentStatus.failed,
    "checkout.session.expired": PaymentStatus.cancelled,
}

STATUS_MAPS: Dict[GatewayName, Dict[str, PaymentStatus]] = {
    GatewayName.GCASH: GCASH_STATUSES,
    GatewayName.PAYPAL: PAYPAL_STATUSES,
    GatewayName.STRIPE: STRIPE_STATUSES,
}


def normalize_status(gateway: GatewayName, raw_status: Optional[str]) -> Optional[PaymentStatus]:
    if not raw_status:
        return None
    return STATUS_MAPS[GatewayName(gateway)].get(raw_status)
