import hmac
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from feeledger.core.clock import utcnow
from feeledger.core.enums import GatewayName
from feeledger.core.exceptions import GatewayError
from feeledger.core.models import Payment
from feeledger.core.money import to_minor_units
from feeledger.gateways.base import Gateway, GatewayEvent, GatewayInitiation, header, hmac_sha256_hex

SIGNATURE_HEADER = "Stripe-Signature"


def parse_signature_header(value: str) -> Dict[str, str]:
    """`t=1700000000,v1=abc...` -> {"t": "1700000000", "v1": "abc..."}"""
    parts = {}
    for item in value.split(","):
        key, sep, val = item.strip().partition("=")
        if sep:
            parts.setdefault(key, val)
    return parts


class StripeGateway(Gateway):
    """Checkout sessions. Webhook events are keyed by `type` and `data.object.id`."""

    name = GatewayName.STRIPE

    def __init__(
        self,
        *,
        secret_key: Optional[str],
        create_session_url: str,
        expiry_hours: int,
        currency: str,
        public_base_url: str,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.secret_key = secret_key
        self.create_session_url = create_session_url
        self.expiry_hours = expiry_hours
        self.currency = currency
        self.public_base_url = public_base_url.rstrip("/")

    async def initiate(self, payment: Payment) -> GatewayInitiation:
        if not self.secret_key:
            raise GatewayError(detail="Stripe secret key is not configured")
        return_url = f"{self.public_base_url}/api/v1/payments/{payment.id}/confirm"
        expires_at = utcnow() + timedelta(hours=self.expiry_hours)
        payload = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "success_url": return_url + "?session_id={CHECKOUT_SESSION_ID}",
            "cancel_url": return_url,
            "client_reference_id": f"PAYMENT_{payment.id}",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.currency,
                        "product_data": {
                            "name": payment.description or "School fee payment",
                            "metadata": {"payment_id": str(payment.id)},
                        },
                        "unit_amount": to_minor_units(payment.amount),
                    },
                    "quantity": 1,
                }
            ],
            "expires_at": int(expires_at.timestamp()),
        }
        headers = {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}
        result = await self._post(self.create_session_url, payload, headers)
        if not result.get("id"):
            raise GatewayError(detail=f"Stripe session response missing id: {result}")
        if result.get("expires_at"):
            expires_at = datetime.fromtimestamp(int(result["expires_at"]), tz=timezone.utc)
        return GatewayInitiation(
            external_transaction_id=result["id"],
            redirect_url=result.get("url"),
            expires_at=expires_at,
            response_data=result,
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        value = header(headers, SIGNATURE_HEADER)
        if not secret or not value:
            return False
        parts = parse_signature_header(value)
        timestamp, signature = parts.get("t"), parts.get("v1")
        if not timestamp or not signature:
            return False
        signed_payload = timestamp.encode() + b"." + raw_body
        return hmac.compare_digest(signature, hmac_sha256_hex(secret, signed_payload))

    def extract(self, payload: Dict[str, Any]) -> GatewayEvent:
        obj = (payload.get("data") or {}).get("object") or {}
        if not obj.get("id"):
            raise GatewayError(detail="Stripe webhook without data.object.id", status_code=400)
        return GatewayEvent(external_transaction_id=str(obj["id"]), raw_status=str(payload.get("type") or ""))
