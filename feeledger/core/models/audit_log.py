"""Financial audit log: one row per ledger mutation fact."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text, Uuid

from feeledger.core.clock import utcnow
from feeledger.db.session import Base


class FinancialAuditLog(Base):
    __tablename__ = "financial_audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    action = Column(String(50), nullable=False)  # payment_completed, payment_failed, fee_waiver, bulk_fee_update, ...
    reference_table = Column(String(50), nullable=False)
    reference_id = Column(Uuid, nullable=True)
    student_id = Column(Uuid, nullable=True)
    performed_by = Column(Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    data = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
