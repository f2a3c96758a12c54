import hmac
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from feeledger.core.clock import utcnow
from feeledger.core.enums import GatewayName
from feeledger.core.exceptions import GatewayError
from feeledger.core.models import Payment
from feeledger.gateways.base import Gateway, GatewayEvent, GatewayInitiation, header, hmac_sha256_hex

SIGNATURE_HEADER = "PayPal-Transmission-Sig"


class PayPalGateway(Gateway):
    """Checkout orders. Webhook events are keyed by `event_type` and `resource.id`."""

    name = GatewayName.PAYPAL

    def __init__(
        self,
        *,
        access_token: Optional[str],
        create_order_url: str,
        expiry_hours: int,
        currency: str,
        public_base_url: str,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.access_token = access_token
        self.create_order_url = create_order_url
        self.expiry_hours = expiry_hours
        self.currency = currency
        self.public_base_url = public_base_url.rstrip("/")

    async def initiate(self, payment: Payment) -> GatewayInitiation:
        if not self.access_token:
            raise GatewayError(detail="PayPal access token is not configured")
        return_url = f"{self.public_base_url}/api/v1/payments/{payment.id}/confirm"
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": f"PAYMENT_{payment.id}",
                    "description": payment.description,
                    "amount": {"currency_code": self.currency, "value": str(payment.amount)},
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": return_url,
                "user_action": "PAY_NOW",
            },
        }
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}
        result = await self._post(self.create_order_url, payload, headers)
        approve = next((link for link in result.get("links", []) if link.get("rel") == "approve"), None)
        if not result.get("id") or approve is None:
            raise GatewayError(detail=f"PayPal order response incomplete: {result}")
        return GatewayInitiation(
            external_transaction_id=result["id"],
            redirect_url=approve.get("href"),
            expires_at=utcnow() + timedelta(hours=self.expiry_hours),
            response_data=result,
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        signature = header(headers, SIGNATURE_HEADER)
        if not secret or not signature:
            return False
        return hmac.compare_digest(signature, hmac_sha256_hex(secret, raw_body))

    def extract(self, payload: Dict[str, Any]) -> GatewayEvent:
        resource = payload.get("resource") or {}
        # Capture events reference the order through supplementary_data
        order_id = (
            ((resource.get("supplementary_data") or {}).get("related_ids") or {}).get("order_id")
            or resource.get("id")
        )
        if not order_id:
            raise GatewayError(detail="PayPal webhook without resource id", status_code=400)
        return GatewayEvent(external_transaction_id=str(order_id), raw_status=str(payload.get("event_type") or ""))
