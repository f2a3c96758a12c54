from typing import Dict, Iterable, Optional

from feeledger.core.config import Settings, settings as default_settings
from feeledger.core.enums import GatewayName
from feeledger.core.exceptions import UnsupportedGateway
from feeledger.gateways.base import Gateway
from feeledger.gateways.gcash import GCashGateway
from feeledger.gateways.paypal import PayPalGateway
from feeledger.gateways.stripe import StripeGateway


class GatewayRegistry:
    """Gateways by name. Payment methods with the same name are routed to them."""

    def __init__(self, gateways: Iterable[Gateway] = ()) -> None:
        self._gateways: Dict[GatewayName, Gateway] = {}
        for gateway in gateways:
            self.register(gateway)

    def register(self, gateway: Gateway) -> None:
        self._gateways[gateway.name] = gateway

    def get(self, name) -> Gateway:
        try:
            return self._gateways[GatewayName(name)]
        except (KeyError, ValueError):
            raise UnsupportedGateway(detail=f"Unsupported gateway: {name}")


def build_registry(config: Optional[Settings] = None) -> GatewayRegistry:
    config = config or default_settings
    return GatewayRegistry(
        [
            GCashGateway(
                api_key=config.gcash_api_key,
                qr_generate_url=config.gcash_qr_generate_url,
                payment_status_url=config.gcash_payment_status_url,
                expiry_seconds=config.gcash_qr_expiry_seconds,
                public_base_url=config.public_base_url,
                webhook_secret=config.gcash_webhook_secret,
                fixed_fee=config.gcash_fixed_fee,
                percentage_fee=config.gcash_percentage_fee,
            ),
            PayPalGateway(
                access_token=config.paypal_access_token,
                create_order_url=config.paypal_create_order_url,
                expiry_hours=config.paypal_order_expiry_hours,
                currency=config.paypal_currency,
                public_base_url=config.public_base_url,
                webhook_secret=config.paypal_webhook_secret,
                fixed_fee=config.paypal_fixed_fee,
                percentage_fee=config.paypal_percentage_fee,
            ),
            StripeGateway(
                secret_key=config.stripe_secret_key,
                create_session_url=config.stripe_create_session_url,
                expiry_hours=config.stripe_session_expiry_hours,
                currency=config.stripe_currency,
                public_base_url=config.public_base_url,
                webhook_secret=config.stripe_webhook_secret,
                fixed_fee=config.stripe_fixed_fee,
                percentage_fee=config.stripe_percentage_fee,
            ),
        ]
    )
