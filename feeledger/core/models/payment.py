"""Payment: one per payment attempt, plus the ordered fee items it is meant to settle."""

import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
)

from feeledger.core.clock import utcnow
from feeledger.core.enums import AllocationStrategy, PaymentStatus
from feeledger.db.session import Base


class Payment(Base):
    """Status moves only through feeledger.ledger.state_machine. Immutable once completed except meta."""

    __tablename__ = "payments"
    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated','pending','completed','failed','cancelled')",
            name="chk_payment_status",
        ),
        CheckConstraint("amount > 0", name="chk_payment_amount_positive"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="RESTRICT"), nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String(30), nullable=False)
    allocation_strategy = Column(String(20), nullable=False, default=AllocationStrategy.OLDEST_FIRST.value)
    reference_number = Column(String(40), nullable=False, unique=True)
    receipt_number = Column(String(40), nullable=True, unique=True)
    status = Column(String(20), nullable=False, default=PaymentStatus.initiated.value)
    description = Column(String(255), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    # Money received but not absorbed by any open fee item at completion time
    unapplied_amount = Column(Numeric(12, 2), nullable=False, default=0)
    failure_reason = Column(String(255), nullable=True)
    recorded_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    meta = Column(JSON, nullable=True)
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}


class PaymentFeeItem(Base):
    """Fee items a payment targets, in application order, with what was actually applied."""

    __tablename__ = "payment_fee_items"
    __table_args__ = (
        UniqueConstraint("payment_id", "fee_item_id", name="uq_payment_fee_item"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_id = Column(Uuid, ForeignKey("payments.id", ondelete="CASCADE"), nullable=False, index=True)
    fee_item_id = Column(Uuid, ForeignKey("fee_items.id", ondelete="RESTRICT"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    planned_amount = Column(Numeric(12, 2), nullable=False)
    applied_amount = Column(Numeric(12, 2), nullable=False, default=0)
