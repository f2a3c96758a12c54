"""Account: one per user. balance > 0 means the holder owes money."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Uuid
from sqlalchemy.orm import relationship

from feeledger.core.clock import utcnow
from feeledger.db.session import Base


class Account(Base):
    """Aggregate balance. Written only by the account balance aggregator."""

    __tablename__ = "accounts"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, unique=True)
    account_number = Column(String(20), nullable=False, unique=True)
    balance = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="account")
