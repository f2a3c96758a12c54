"""Gateway-side record of a payment attempt. (gateway, gateway_transaction_id) is the webhook idempotency key."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, Numeric, String, UniqueConstraint, Uuid

from feeledger.core.clock import utcnow
from feeledger.db.session import Base


class PaymentGatewayDetail(Base):
    __tablename__ = "payment_gateway_details"
    __table_args__ = (
        UniqueConstraint("gateway", "gateway_transaction_id", name="uq_gateway_transaction"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    gateway = Column(String(20), nullable=False)
    gateway_transaction_id = Column(String(255), nullable=False)
    # Raw external vocabulary (SUCCESS, PAYMENT.CAPTURE.COMPLETED, ...)
    gateway_status = Column(String(100), nullable=False, default="initiated")
    gateway_response_data = Column(JSON, nullable=True)
    gateway_fee_amount = Column(Numeric(12, 2), nullable=False, default=0)
    redirect_url = Column(String(1024), nullable=True)
    qr_code = Column(String(2048), nullable=True)
    # Advisory only; resolved when the gateway reports expiry itself
    expires_at = Column(DateTime(timezone=True), nullable=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
