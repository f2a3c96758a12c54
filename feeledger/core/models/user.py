"""User: login identity. Students, staff and the account holder all hang off a user row."""

import uuid

from sqlalchemy import Column, DateTime, String, Uuid
from sqlalchemy.orm import relationship

from feeledger.core.clock import utcnow
from feeledger.db.session import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    # STUDENT, ADMIN, ACCOUNTING, SUPER_ADMIN
    role = Column(String(50), nullable=False, default="STUDENT")
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    student = relationship("Student", back_populates="user", uselist=False)
    account = relationship("Account", back_populates="user", uselist=False)
