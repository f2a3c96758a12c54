"""
Fraud / risk scoring for payment initiation.

Seven independent checks each contribute non-negative points; the request is blocked
when the total reaches the threshold. `evaluate` is a pure function of the request,
the student's payment history, a snapshot of the tracking state and the current time.
`RiskScorer` reads that snapshot from the key-value store and, after scoring, records
the device and location seen. Scoring never writes to the ledger.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.clock import Clock, as_utc, utcnow
from feeledger.core.config import Settings, settings as default_settings
from feeledger.core.enums import PaymentStatus
from feeledger.core.models import Payment
from feeledger.core.money import ZERO, to_money
from feeledger.risk.geo import GeoLocator, GeoPoint, NullGeoLocator, haversine_km
from feeledger.risk.store import KeyValueStore, device_key, location_key, parse_timestamp

logger = logging.getLogger(__name__)

DEVICE_TTL_SECONDS = 30 * 24 * 60 * 60
LOCATION_TTL_SECONDS = 24 * 60 * 60
LOCATION_HISTORY_SIZE = 10
MAX_TRACKED_DEVICES = 20
HISTORY_LIMIT = 1000

BLOCKED_MESSAGE = "Payment blocked due to security concerns. Please contact support."


@dataclass(frozen=True)
class PaymentRequest:
    student_id: UUID
    amount: Decimal
    payment_method: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class PaymentRecord:
    amount: Decimal
    payment_method: str
    status: str
    created_at: datetime


@dataclass(frozen=True)
class StudentHistory:
    """All recorded payments of a student, newest first."""

    student_id: UUID
    payments: Tuple[PaymentRecord, ...] = ()

    def completed(self) -> List[PaymentRecord]:
        return [p for p in self.payments if p.status == PaymentStatus.completed.value]

    def since(self, moment: datetime) -> List[PaymentRecord]:
        return [p for p in self.payments if p.created_at > moment]


@dataclass(frozen=True)
class TrackingSnapshot:
    devices: Tuple[Dict[str, Any], ...] = ()
    locations: Tuple[Dict[str, Any], ...] = ()
    current_location: Optional[GeoPoint] = None


@dataclass(frozen=True)
class CheckResult:
    name: str
    score: int
    reason: str
    risk_level: str = "low"


@dataclass(frozen=True)
class RiskAssessment:
    total_score: int
    threshold: int
    checks: Tuple[CheckResult, ...]

    @property
    def blocked(self) -> bool:
        return self.total_score >= self.threshold

    def breakdown(self) -> Dict[str, int]:
        return {check.name: check.score for check in self.checks}


@dataclass(frozen=True)
class FraudRules:
    threshold: int = 50
    failed_attempts_window_minutes: int = 60
    max_failed_attempts: int = 5
    max_travel_speed_kmh: int = 1000
    max_payments_hour: int = 5
    max_payments_day: int = 15
    max_payments_week: int = 50
    min_amount: Decimal = field(default=Decimal("1.00"))

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "FraudRules":
        config = config or default_settings
        return cls(
            threshold=config.fraud_threshold,
            failed_attempts_window_minutes=config.fraud_failed_attempts_window_minutes,
            max_failed_attempts=config.fraud_max_failed_attempts,
            max_travel_speed_kmh=config.fraud_max_travel_speed_kmh,
            max_payments_hour=config.fraud_max_payments_hour,
            max_payments_day=config.fraud_max_payments_day,
            max_payments_week=config.fraud_max_payments_week,
            min_amount=config.payment_min_amount,
        )


def device_hash(user_agent: Optional[str]) -> str:
    return hashlib.sha256((user_agent or "").encode()).hexdigest()


def check_amount(amount: Decimal, history: StudentHistory) -> CheckResult:
    recent = history.completed()[:10]
    if not recent:
        return CheckResult("amount", 0, "No payment history for comparison")
    amounts = [to_money(p.amount) for p in recent]
    average = sum(amounts, ZERO) / len(amounts)
    largest = max(amounts)
    if amount > average * 3 or amount > largest * 5:
        return CheckResult("amount", 25, f"Amount {amount} is unusually high compared to average {average:.2f}", "high")
    if ZERO < amount < average * Decimal("0.1"):
        return CheckResult("amount", 10, f"Amount {amount} is unusually small compared to typical payments", "medium")
    return CheckResult("amount", 0, "Payment amount within normal range")


def check_failed_attempts(history: StudentHistory, now: datetime, rules: FraudRules) -> CheckResult:
    window = rules.failed_attempts_window_minutes
    failed = [
        p for p in history.since(now - timedelta(minutes=window)) if p.status == PaymentStatus.failed.value
    ]
    count = len(failed)
    if count >= rules.max_failed_attempts:
        return CheckResult("failed_attempts", 30, f"{count} failed attempts in the last {window} minutes", "high")
    if count >= rules.max_failed_attempts / 2:
        return CheckResult("failed_attempts", 15, f"{count} failed attempts in the last {window} minutes", "medium")
    return CheckResult("failed_attempts", 0, "No excessive failed attempts detected")


def check_patterns(amount: Decimal, history: StudentHistory, now: datetime, rules: FraudRules) -> CheckResult:
    score = 0
    reasons = []

    if amount > 1000 and amount % 1000 == 0:
        score += 10
        reasons.append("Round amount payment")

    methods = {p.payment_method for p in history.since(now - timedelta(hours=24))}
    if len(methods) >= 3:
        score += 15
        reasons.append(f"Used {len(methods)} different payment methods in 24 hours")

    rapid = [p for p in history.since(now - timedelta(minutes=30)) if p.status == PaymentStatus.completed.value]
    if len(rapid) >= 3:
        score += 20
        reasons.append(f"{len(rapid)} payments in the last 30 minutes")

    completed = history.completed()
    near_minimum = [p for p in completed if to_money(p.amount) <= to_money(rules.min_amount * Decimal("1.1"))]
    if len(completed) >= 5 and Decimal(len(near_minimum)) / len(completed) > Decimal("0.8"):
        score += 10
        reasons.append("Consistently paying minimum amounts")

    level = "high" if score > 15 else "medium" if score > 5 else "low"
    return CheckResult("patterns", score, "; ".join(reasons) or "No suspicious patterns detected", level)


def _updated_locations(snapshot: TrackingSnapshot, now: datetime) -> List[Dict[str, Any]]:
    current = snapshot.current_location
    entry = {
        "lat": current.lat,
        "lon": current.lon,
        "country": current.country,
        "city": current.city,
        "timestamp": now.isoformat(),
    }
    return ([entry] + list(snapshot.locations))[:LOCATION_HISTORY_SIZE]


def check_location(snapshot: TrackingSnapshot, now: datetime, rules: FraudRules) -> CheckResult:
    current = snapshot.current_location
    if current is None:
        return CheckResult("location", 0, "Unable to determine location")

    for seen in snapshot.locations:
        distance = haversine_km(current.lat, current.lon, seen["lat"], seen["lon"])
        hours = max((now - parse_timestamp(seen["timestamp"])).total_seconds(), 0) / 3600
        if distance > hours * rules.max_travel_speed_kmh:
            return CheckResult(
                "location", 25, f"Impossible travel: {distance:.0f} km in {hours * 60:.0f} minutes", "high"
            )

    # Lookups without a country say nothing about where the payer is
    countries = {loc["country"] for loc in _updated_locations(snapshot, now)[:5] if loc.get("country")}
    if len(countries) > 2:
        return CheckResult("location", 15, f"Access from {len(countries)} different countries recently", "medium")
    return CheckResult("location", 0, "Location check passed")


def check_velocity(history: StudentHistory, now: datetime, rules: FraudRules) -> CheckResult:
    windows = (
        ("hour", timedelta(hours=1), rules.max_payments_hour),
        ("day", timedelta(days=1), rules.max_payments_day),
        ("week", timedelta(days=7), rules.max_payments_week),
    )
    score = 0
    reasons = []
    for period, span, limit in windows:
        count = len(history.since(now - span))
        if count > limit:
            score += 10
            reasons.append(f"{count} payments in the last {period} (limit {limit})")
    level = "high" if score > 10 else "medium" if score > 0 else "low"
    return CheckResult("velocity", score, "; ".join(reasons) or "Payment velocity within limits", level)


def check_device(request: PaymentRequest, snapshot: TrackingSnapshot) -> CheckResult:
    current = device_hash(request.user_agent)
    for device in snapshot.devices:
        if device["hash"] == current:
            if device.get("ip") != request.ip_address:
                return CheckResult("device", 15, "Same device used from a different IP address", "medium")
            return CheckResult("device", 0, "Device fingerprint check passed")
    if len(snapshot.devices) >= 5:
        return CheckResult("device", 20, "New device after too many known devices", "high")
    return CheckResult("device", 10, "First payment from this device", "medium")


def check_payment_method(request: PaymentRequest, history: StudentHistory) -> CheckResult:
    completed = history.completed()
    if not completed:
        return CheckResult("payment_method", 0, "First payment from student")
    usage = sum(1 for p in completed if p.payment_method == request.payment_method)
    if usage == 0:
        return CheckResult("payment_method", 5, f"Using {request.payment_method} for the first time")
    percentage = usage * 100 / len(completed)
    if percentage < 10 and len(completed) >= 5:
        return CheckResult(
            "payment_method", 10, f"{request.payment_method} is only {percentage:.0f}% of payment history", "medium"
        )
    return CheckResult("payment_method", 0, "Payment method usage within normal pattern")


def evaluate(
    request: PaymentRequest,
    history: StudentHistory,
    snapshot: TrackingSnapshot,
    now: datetime,
    rules: FraudRules,
) -> RiskAssessment:
    amount = to_money(request.amount)
    checks = (
        check_amount(amount, history),
        check_failed_attempts(history, now, rules),
        check_patterns(amount, history, now, rules),
        check_location(snapshot, now, rules),
        check_velocity(history, now, rules),
        check_device(request, snapshot),
        check_payment_method(request, history),
    )
    return RiskAssessment(total_score=sum(c.score for c in checks), threshold=rules.threshold, checks=checks)


class RiskScorer:
    def __init__(
        self,
        store: KeyValueStore,
        *,
        clock: Clock = utcnow,
        locator: Optional[GeoLocator] = None,
        rules: Optional[FraudRules] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.locator = locator or NullGeoLocator()
        self.rules = rules or FraudRules.from_settings()

    async def snapshot(self, request: PaymentRequest) -> TrackingSnapshot:
        devices = await self.store.get(device_key(request.student_id), [])
        locations = await self.store.get(location_key(request.student_id), [])
        current = await self.locator.locate(request.ip_address) if request.ip_address else None
        return TrackingSnapshot(devices=tuple(devices), locations=tuple(locations), current_location=current)

    async def _track(self, request: PaymentRequest, snapshot: TrackingSnapshot, now: datetime) -> None:
        current = device_hash(request.user_agent)
        devices = [dict(d) for d in snapshot.devices]
        for device in devices:
            if device["hash"] == current:
                device["ip"] = request.ip_address
                device["last_used"] = now.isoformat()
                break
        else:
            devices.append(
                {"hash": current, "ip": request.ip_address, "first_seen": now.isoformat(), "last_used": now.isoformat()}
            )
        await self.store.set(device_key(request.student_id), devices[-MAX_TRACKED_DEVICES:], DEVICE_TTL_SECONDS)

        if snapshot.current_location is not None:
            await self.store.set(
                location_key(request.student_id), _updated_locations(snapshot, now), LOCATION_TTL_SECONDS
            )

    async def score(self, request: PaymentRequest, history: StudentHistory, *, track: bool = True) -> RiskAssessment:
        """Score a request. With `track`, the device and location are remembered afterwards."""
        now = self.clock()
        snapshot = await self.snapshot(request)
        assessment = evaluate(request, history, snapshot, now, self.rules)
        if track:
            await self._track(request, snapshot, now)

        logger.info(
            "Fraud analysis for student %s: score %d/%d %s",
            request.student_id,
            assessment.total_score,
            assessment.threshold,
            assessment.breakdown(),
        )
        if assessment.blocked:
            logger.warning(
                "Blocked payment for student %s (%s %s): %s",
                request.student_id,
                request.amount,
                request.payment_method,
                [c.reason for c in assessment.checks if c.score],
            )
        return assessment


async def load_student_history(db: AsyncSession, student_id: UUID) -> StudentHistory:
    stmt = (
        select(Payment.amount, Payment.payment_method, Payment.status, Payment.created_at)
        .where(Payment.student_id == student_id)
        .order_by(Payment.created_at.desc())
        .limit(HISTORY_LIMIT)
    )
    rows = (await db.execute(stmt)).all()
    return StudentHistory(
        student_id=student_id,
        payments=tuple(
            PaymentRecord(
                amount=to_money(amount),
                payment_method=method,
                status=status,
                created_at=as_utc(created_at),
            )
            for amount, method, status, created_at in rows
        ),
    )


def history_from_records(student_id: UUID, records: Sequence[PaymentRecord]) -> StudentHistory:
    ordered = sorted(records, key=lambda p: p.created_at, reverse=True)
    return StudentHistory(student_id=student_id, payments=tuple(ordered))
