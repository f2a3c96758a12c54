"""
Audit facts for financial mutations. Written after the ledger commit, best effort.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.models import FinancialAuditLog

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditFact:
    action: str
    reference_table: str
    reference_id: Optional[UUID]
    student_id: Optional[UUID] = None
    performed_by: Optional[UUID] = None
    data: Optional[dict] = None
    description: Optional[str] = None


async def record_audit_facts(db: AsyncSession, facts: List[AuditFact]) -> None:
    """Append one audit row per fact and commit. Failures are logged, never raised."""
    if not facts:
        return
    try:
        for fact in facts:
            db.add(
                FinancialAuditLog(
                    action=fact.action,
                    reference_table=fact.reference_table,
                    reference_id=fact.reference_id,
                    student_id=fact.student_id,
                    performed_by=fact.performed_by,
                    data=fact.data,
                    description=fact.description,
                )
            )
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to write %d audit log entries", len(facts))
