import hmac
from datetime import timedelta
from typing import Any, Dict, Mapping, Optional

from feeledger.core.clock import utcnow
from feeledger.core.enums import GatewayName
from feeledger.core.exceptions import GatewayError
from feeledger.core.models import Payment
from feeledger.gateways.base import Gateway, GatewayEvent, GatewayInitiation, header, hmac_sha256_hex

SIGNATURE_HEADER = "X-GCash-Signature"


class GCashGateway(Gateway):
    """QR code payments. Webhooks carry `qr_id` and a SUCCESS/FAILED/CANCELLED/EXPIRED status."""

    name = GatewayName.GCASH

    def __init__(
        self,
        *,
        api_key: Optional[str],
        qr_generate_url: str,
        payment_status_url: str,
        expiry_seconds: int,
        public_base_url: str,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key
        self.qr_generate_url = qr_generate_url
        self.payment_status_url = payment_status_url
        self.expiry_seconds = expiry_seconds
        self.public_base_url = public_base_url.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise GatewayError(detail="GCash API key is not configured")
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    async def initiate(self, payment: Payment) -> GatewayInitiation:
        payload = {
            "amount": str(payment.amount),
            "description": payment.description,
            "merchant_order_id": f"PAYMENT_{payment.id}",
            "expiry_seconds": self.expiry_seconds,
            "callback_url": f"{self.public_base_url}/api/v1/webhooks/gcash",
            "success_url": f"{self.public_base_url}/api/v1/payments/{payment.id}/confirm",
            "fail_url": f"{self.public_base_url}/api/v1/payments/{payment.id}/confirm",
        }
        result = await self._post(self.qr_generate_url, payload, self._headers())
        data = result.get("data") or {}
        if not data.get("qr_id"):
            raise GatewayError(detail=f"GCash response missing qr_id: {result}")
        return GatewayInitiation(
            external_transaction_id=data["qr_id"],
            qr_code=data.get("qr_code"),
            expires_at=utcnow() + timedelta(seconds=self.expiry_seconds),
            response_data=result,
        )

    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        signature = header(headers, SIGNATURE_HEADER)
        if not secret or not signature:
            return False
        return hmac.compare_digest(signature, hmac_sha256_hex(secret, raw_body))

    def extract(self, payload: Dict[str, Any]) -> GatewayEvent:
        qr_id = payload.get("qr_id")
        if not qr_id:
            raise GatewayError(detail="GCash webhook without qr_id", status_code=400)
        return GatewayEvent(external_transaction_id=str(qr_id), raw_status=str(payload.get("status") or ""))

    async def fetch_status(self, external_transaction_id: str) -> Optional[str]:
        result = await self._get(self.payment_status_url, {"qr_id": external_transaction_id}, self._headers())
        data = result.get("data") or {}
        return data.get("status")
