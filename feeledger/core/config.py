from decimal import Decimal
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field(..., alias="DATABASE_URL")

    jwt_secret_key: str = Field(..., alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    # Payment limits
    payment_min_amount: Decimal = Field(Decimal("1.00"), alias="PAYMENT_MIN_AMOUNT")
    payment_max_amount: Decimal = Field(Decimal("100000.00"), alias="PAYMENT_MAX_AMOUNT")
    payment_currency: str = Field("PHP", alias="PAYMENT_CURRENCY")
    payment_rate_limit_seconds: int = Field(300, alias="PAYMENT_RATE_LIMIT_SECONDS")

    # Concurrent-modification retries for ledger units of work
    ledger_max_retries: int = Field(3, alias="LEDGER_MAX_RETRIES")

    # Fraud scoring
    fraud_threshold: int = Field(50, alias="FRAUD_THRESHOLD")
    fraud_failed_attempts_window_minutes: int = Field(60, alias="FRAUD_FAILED_ATTEMPTS_WINDOW_MINUTES")
    fraud_max_failed_attempts: int = Field(5, alias="FRAUD_MAX_FAILED_ATTEMPTS")
    fraud_max_travel_speed_kmh: int = Field(1000, alias="FRAUD_MAX_TRAVEL_SPEED_KMH")
    fraud_max_payments_hour: int = Field(5, alias="FRAUD_MAX_PAYMENTS_HOUR")
    fraud_max_payments_day: int = Field(15, alias="FRAUD_MAX_PAYMENTS_DAY")
    fraud_max_payments_week: int = Field(50, alias="FRAUD_MAX_PAYMENTS_WEEK")

    # GCash
    gcash_api_key: Optional[str] = Field(None, alias="GCASH_API_KEY")
    gcash_webhook_secret: Optional[str] = Field(None, alias="GCASH_WEBHOOK_SECRET")
    gcash_qr_generate_url: str = Field("https://api.gcash.com/v1/qr/generate", alias="GCASH_QR_GENERATE_URL")
    gcash_payment_status_url: str = Field("https://api.gcash.com/v1/payment/status", alias="GCASH_PAYMENT_STATUS_URL")
    gcash_qr_expiry_seconds: int = Field(900, alias="GCASH_QR_EXPIRY_SECONDS")
    gcash_fixed_fee: Decimal = Field(Decimal("0"), alias="GCASH_FIXED_FEE")
    gcash_percentage_fee: Decimal = Field(Decimal("2.5"), alias="GCASH_PERCENTAGE_FEE")

    # PayPal
    paypal_access_token: Optional[str] = Field(None, alias="PAYPAL_ACCESS_TOKEN")
    paypal_webhook_secret: Optional[str] = Field(None, alias="PAYPAL_WEBHOOK_SECRET")
    paypal_create_order_url: str = Field(
        "https://api-m.sandbox.paypal.com/v2/checkout/orders", alias="PAYPAL_CREATE_ORDER_URL"
    )
    paypal_order_expiry_hours: int = Field(2, alias="PAYPAL_ORDER_EXPIRY_HOURS")
    paypal_currency: str = Field("USD", alias="PAYPAL_CURRENCY")
    paypal_fixed_fee: Decimal = Field(Decimal("0.30"), alias="PAYPAL_FIXED_FEE")
    paypal_percentage_fee: Decimal = Field(Decimal("4.4"), alias="PAYPAL_PERCENTAGE_FEE")

    # Stripe
    stripe_secret_key: Optional[str] = Field(None, alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: Optional[str] = Field(None, alias="STRIPE_WEBHOOK_SECRET")
    stripe_create_session_url: str = Field(
        "https://api.stripe.com/v1/checkout/sessions", alias="STRIPE_CREATE_SESSION_URL"
    )
    stripe_session_expiry_hours: int = Field(24, alias="STRIPE_SESSION_EXPIRY_HOURS")
    stripe_currency: str = Field("php", alias="STRIPE_CURRENCY")
    stripe_fixed_fee: Decimal = Field(Decimal("2.50"), alias="STRIPE_FIXED_FEE")
    stripe_percentage_fee: Decimal = Field(Decimal("3.0"), alias="STRIPE_PERCENTAGE_FEE")

    # Callback URLs handed to gateways at initiation
    public_base_url: str = Field("http://localhost:8000", alias="PUBLIC_BASE_URL")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
