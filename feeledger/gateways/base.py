"""
Uniform contract every payment gateway implements.

Gateways only talk to the outside world. They never touch the ledger; reconciliation
turns what they report into payment state transitions.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from feeledger.core.enums import GatewayName, PaymentStatus
from feeledger.core.exceptions import GatewayError
from feeledger.core.models import Payment
from feeledger.core.money import percent_of, to_money
from feeledger.gateways.status_maps import normalize_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayInitiation:
    external_transaction_id: str
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    response_data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayEvent:
    """What a webhook says: which external transaction, and its raw gateway status."""

    external_transaction_id: str
    raw_status: str


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup for plain dicts as well as Starlette Headers."""
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class Gateway(ABC):
    name: GatewayName

    def __init__(
        self,
        *,
        webhook_secret: Optional[str],
        fixed_fee=Decimal("0"),
        percentage_fee=Decimal("0"),
        timeout: float = 30.0,
    ) -> None:
        self.webhook_secret = webhook_secret
        self.fixed_fee = to_money(fixed_fee)
        self.percentage_fee = Decimal(str(percentage_fee))
        self.timeout = timeout

    @abstractmethod
    async def initiate(self, payment: Payment) -> GatewayInitiation:
        """Open the payment at the gateway (QR code, checkout session, order)."""

    @abstractmethod
    def verify_signature(self, raw_body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
        """True only when the body was signed with `secret`. Never raises."""

    @abstractmethod
    def extract(self, payload: Dict[str, Any]) -> GatewayEvent:
        """Pull the external transaction id and raw status out of a webhook payload."""

    async def fetch_status(self, external_transaction_id: str) -> Optional[str]:
        """Ask the gateway for the raw status of a transaction. None when unsupported."""
        return None

    def normalize_status(self, raw_status: Optional[str]) -> Optional[PaymentStatus]:
        return normalize_status(self.name, raw_status)

    def calculate_fee(self, amount) -> Decimal:
        return to_money(self.fixed_fee + percent_of(amount, self.percentage_fee))

    async def _post(self, url: str, payload: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
                response.raise_for_status()
                return response.json()
        except httpx.TimeoutException as e:
            raise GatewayError(detail=f"{self.name.value} timed out: {e}")
        except httpx.HTTPStatusError as e:
            raise GatewayError(
                detail=f"{self.name.value} returned {e.response.status_code}: {e.response.text[:500]}"
            )
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(detail=f"{self.name.value} request failed: {e}")

    async def _get(self, url: str, params: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(url, params=params, headers=headers)
                response.raise_for_status()
                return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GatewayError(detail=f"{self.name.value} status lookup failed: {e}")
