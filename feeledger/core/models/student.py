"""Student profile: year level and enrollment status driven by promotion."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, String, Uuid
from sqlalchemy.orm import relationship

from feeledger.core.clock import utcnow
from feeledger.core.enums import StudentStatus
from feeledger.db.session import Base


class Student(Base):
    __tablename__ = "students"
    __table_args__ = (
        CheckConstraint(
            "status IN ('enrolled','graduated','inactive')",
            name="chk_student_status",
        ),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    student_number = Column(String(50), nullable=False, unique=True)
    course = Column(String(100), nullable=True)
    year_level = Column(String(20), nullable=False, default="1st Year")
    status = Column(String(20), nullable=False, default=StudentStatus.enrolled.value)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="student")
