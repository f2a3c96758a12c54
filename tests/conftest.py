import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./feeledger-test.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

import hashlib
import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.security import create_access_token
from feeledger.core.clock import utcnow
from feeledger.core.collaborators import Collaborators, get_collaborators
from feeledger.core.enums import AllocationStrategy, PaymentStatus
from feeledger.core.exceptions import GatewayError
from feeledger.core.models import FeeItem, Payment, PaymentGatewayDetail, Student, User
from feeledger.db.session import build_engine, build_session_factory, create_schema, get_db
from feeledger.db.unit_of_work import run_ledger_unit, student_scope
from feeledger.events.effects import LedgerEffects
from feeledger.events.notifications import RecordingNotificationSink
from feeledger.gateways.base import GatewayInitiation
from feeledger.gateways.gcash import GCashGateway
from feeledger.gateways.registry import GatewayRegistry
from feeledger.ledger import fee_items as ledger
from feeledger.ledger.accounts import recalculate_for_student
from feeledger.ledger.allocation import link_allocations, plan_payment
from feeledger.ledger.numbers import generate_reference_number
from feeledger.ledger.state_machine import transition
from feeledger.main import app
from feeledger.risk.scorer import FraudRules, RiskScorer
from feeledger.risk.store import InMemoryTTLStore

GCASH_SECRET = "gcash-webhook-secret"


class FakeClock:
    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeGCashGateway(GCashGateway):
    """GCash without the network: QR ids are derived from the reference number."""

    def __init__(self) -> None:
        super().__init__(
            api_key="test-api-key",
            qr_generate_url="http://gcash.test/qr",
            payment_status_url="http://gcash.test/status",
            expiry_seconds=900,
            public_base_url="http://test",
            webhook_secret=GCASH_SECRET,
            fixed_fee=Decimal("0"),
            percentage_fee=Decimal("2.5"),
        )
        self.initiated = []
        self.remote_statuses: Dict[str, str] = {}
        self.fail_initiation = False

    async def initiate(self, payment) -> GatewayInitiation:
        if self.fail_initiation:
            raise GatewayError(detail="gcash test outage")
        qr_id = f"QR-{payment.reference_number}"
        self.initiated.append(qr_id)
        return GatewayInitiation(
            external_transaction_id=qr_id,
            qr_code="data:image/png;base64,AAAA",
            expires_at=utcnow() + timedelta(seconds=self.expiry_seconds),
            response_data={"data": {"qr_id": qr_id}},
        )

    async def fetch_status(self, external_transaction_id: str) -> Optional[str]:
        return self.remote_statuses.get(external_transaction_id)


def gcash_webhook(qr_id: str, status: str, secret: str = GCASH_SECRET):
    """(raw body, headers) for a signed GCash webhook delivery."""
    body = json.dumps({"qr_id": qr_id, "status": status}).encode()
    signature = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return body, {"Content-Type": "application/json", "X-GCash-Signature": signature}


def auth_headers(user: User) -> Dict[str, str]:
    token = create_access_token(subject={"sub": str(user.id), "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
async def engine(tmp_path):
    """Fresh SQLite file database per test."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(clock) -> InMemoryTTLStore:
    return InMemoryTTLStore(clock=clock)


@pytest.fixture()
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture()
def gcash() -> FakeGCashGateway:
    return FakeGCashGateway()


@pytest.fixture()
def collaborators(gcash, store, sink) -> Collaborators:
    # Real clock for the scorer: payment history timestamps come from the database
    return Collaborators(
        gateways=GatewayRegistry([gcash]),
        store=store,
        sink=sink,
        scorer=RiskScorer(store, rules=FraudRules(threshold=50)),
    )


@pytest.fixture()
async def client(session_factory, collaborators) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, one session per request."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_collaborators] = lambda: collaborators
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(db_session):
    async def _make(role: str = "ACCOUNTING") -> User:
        user = User(full_name=f"{role.title()} User", email=f"{uuid.uuid4().hex}@example.com", role=role)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture()
def make_student(db_session):
    async def _make(year_level: str = "1st Year", status: str = "enrolled") -> Student:
        user = User(full_name="Juan Dela Cruz", email=f"{uuid.uuid4().hex}@example.com", role="STUDENT")
        db_session.add(user)
        await db_session.flush()
        student = Student(
            user_id=user.id,
            student_number=f"2026-{uuid.uuid4().hex[:6].upper()}",
            course="BSIT",
            year_level=year_level,
            status=status,
        )
        db_session.add(student)
        await db_session.commit()
        return student

    return _make


@pytest.fixture()
def make_fee_item(db_session):
    """Assess a fee through the ledger so the account and the journal stay consistent."""

    async def _make(
        student: Student,
        amount,
        *,
        name: str = "Tuition Fee",
        created_at: Optional[datetime] = None,
    ) -> FeeItem:
        async def work(session: AsyncSession):
            item = await ledger.assess_fee(session, student, name=name, amount=Decimal(str(amount)))
            if created_at is not None:
                item.created_at = created_at
            await recalculate_for_student(session, student)
            return item

        return await run_ledger_unit(db_session, student_scope(student.id), work)

    return _make


@pytest.fixture()
def student_user(db_session):
    async def _get(student: Student) -> User:
        return await db_session.get(User, student.user_id)

    return _get


@pytest.fixture()
def make_payment(db_session):
    """
    Payment planned against the student's fee items, optionally registered with GCash
    and moved past `initiated`, the way initiation leaves it.
    """

    async def _make(
        student: Student,
        amount,
        *,
        fee_item_ids: Optional[List[uuid.UUID]] = None,
        status: PaymentStatus = PaymentStatus.pending,
        gateway_transaction_id: Optional[str] = None,
    ) -> Payment:
        strategy = AllocationStrategy.EXPLICIT if fee_item_ids else AllocationStrategy.OLDEST_FIRST

        async def work(session: AsyncSession) -> Payment:
            plan = await plan_payment(session, student.id, Decimal(str(amount)), strategy, fee_item_ids)
            payment = Payment(
                id=uuid.uuid4(),
                student_id=student.id,
                amount=Decimal(str(amount)),
                payment_method="gcash",
                allocation_strategy=strategy.value,
                reference_number=await generate_reference_number(session),
                status=PaymentStatus.initiated.value,
                unapplied_amount=Decimal("0"),
            )
            session.add(payment)
            await session.flush()
            session.add_all(link_allocations(payment, plan))
            if gateway_transaction_id:
                session.add(
                    PaymentGatewayDetail(
                        payment_id=payment.id,
                        gateway="gcash",
                        gateway_transaction_id=gateway_transaction_id,
                        gateway_status="initiated",
                    )
                )
            await session.flush()
            if status != PaymentStatus.initiated:
                await transition(session, payment.id, status, effects=LedgerEffects())
            return payment

        return await run_ledger_unit(db_session, student_scope(student.id), work)

    return _make
