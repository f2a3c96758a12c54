"""Transaction: immutable ledger entry (charge, payment, waiver, adjustment) for history and accounting."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, JSON, Numeric, String, Uuid

from feeledger.core.clock import utcnow
from feeledger.db.session import Base


class Transaction(Base):
    """
    Balance view: charges + adjustments - payments - waivers.
    At most one row per payment (unique payment_id).
    """

    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint(
            "kind IN ('charge','payment','waiver','adjustment')",
            name="chk_transaction_kind",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True)
    fee_item_id = Column(Uuid, ForeignKey("fee_items.id", ondelete="RESTRICT"), nullable=True)
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="RESTRICT"), nullable=True, unique=True)
    reference = Column(String(60), nullable=False)
    kind = Column(String(20), nullable=False)
    # Positive except for adjustments, which carry the signed balance delta
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="paid")
    payment_channel = Column(String(30), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
