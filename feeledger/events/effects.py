from dataclasses import dataclass, field
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.events.audit import AuditFact, record_audit_facts
from feeledger.events.notifications import NotificationFact, NotificationSink, dispatch_notifications


@dataclass
class LedgerEffects:
    """Facts collected inside a unit of work, released only once it has committed."""

    notifications: List[NotificationFact] = field(default_factory=list)
    audit: List[AuditFact] = field(default_factory=list)

    def notify(self, fact: NotificationFact) -> None:
        self.notifications.append(fact)

    def record(self, fact: AuditFact) -> None:
        self.audit.append(fact)

    async def release(self, db: AsyncSession, sink: NotificationSink) -> None:
        await record_audit_facts(db, self.audit)
        await dispatch_notifications(sink, self.notifications)
