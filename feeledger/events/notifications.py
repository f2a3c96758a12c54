"""
Notification facts emitted by payment transitions and the sinks that receive them.

Facts are dispatched after the ledger commit. A failing sink is logged and ignored:
delivery problems never undo a committed transition.
"""

import logging
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import List, Optional, Protocol, Union
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentCompleted:
    student_id: UUID
    payment_id: UUID
    reference_number: str
    receipt_number: str
    amount: Decimal
    applied_amount: Decimal


@dataclass(frozen=True)
class PaymentFailed:
    student_id: UUID
    payment_id: UUID
    reference_number: str
    amount: Decimal
    reason: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatusChanged:
    student_id: UUID
    payment_id: UUID
    reference_number: str
    amount: Decimal
    old_status: str
    new_status: str


NotificationFact = Union[PaymentCompleted, PaymentFailed, PaymentStatusChanged]


class NotificationSink(Protocol):
    async def send(self, fact: NotificationFact) -> None:
        ...


class LoggingNotificationSink:
    """Default sink: writes each fact to the application log."""

    async def send(self, fact: NotificationFact) -> None:
        logger.info("Notification %s: %s", type(fact).__name__, asdict(fact))


@dataclass
class RecordingNotificationSink:
    """Keeps facts in memory; used by tests and local tooling."""

    facts: List[NotificationFact] = field(default_factory=list)

    async def send(self, fact: NotificationFact) -> None:
        self.facts.append(fact)


async def dispatch_notifications(sink: NotificationSink, facts: List[NotificationFact]) -> None:
    for fact in facts:
        try:
            await sink.send(fact)
        except Exception:
            logger.exception("Notification sink failed for %s", type(fact).__name__)
