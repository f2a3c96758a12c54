"""Fee item: one assessed fee for one student for one term."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, Uuid

from feeledger.core.clock import utcnow
from feeledger.core.enums import FeeItemStatus
from feeledger.db.session import Base


class FeeItem(Base):
    """
    Ledger row for a single assessed fee.
    amount_paid, waiver_amount, balance and status change only through feeledger.ledger.fee_items.
    """

    __tablename__ = "fee_items"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','processing','partial','paid','waived')",
            name="chk_fee_item_status",
        ),
        CheckConstraint("balance >= 0", name="chk_fee_item_balance_non_negative"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id = Column(Uuid, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    school_year = Column(String(20), nullable=True)
    semester = Column(String(20), nullable=True)

    original_amount = Column(Numeric(12, 2), nullable=False)
    amount_paid = Column(Numeric(12, 2), nullable=False, default=0)
    waiver_amount = Column(Numeric(12, 2), nullable=False, default=0)
    waiver_reason = Column(Text, nullable=True)
    balance = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default=FeeItemStatus.pending.value)

    due_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    # Optimistic concurrency: UPDATE ... WHERE version_id = <read value>
    version_id = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version_id}
