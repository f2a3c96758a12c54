"""
Caller-facing identifiers: payment reference numbers, receipt numbers, account numbers.

Formats are opaque to callers; uniqueness is the contract. Each generator draws a random
candidate and checks the owning table before handing it out (the unique index is the
final guard).
"""

import secrets
import string
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.clock import utcnow
from feeledger.core.models import Account, Payment

_ALPHABET = string.ascii_uppercase + string.digits
_MAX_ATTEMPTS = 20


def _random_part(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def format_reference_number(now: Optional[datetime] = None, random_part: Optional[str] = None) -> str:
    """PAY + YYYYMMDD + 8 random uppercase alphanumerics, e.g. PAY20261018K3J9Q2ZT."""
    now = now or utcnow()
    return "PAY" + now.strftime("%Y%m%d") + (random_part or _random_part(8))


def format_receipt_number(now: Optional[datetime] = None, random_part: Optional[str] = None) -> str:
    now = now or utcnow()
    return "RCP" + now.strftime("%Y%m%d") + (random_part or _random_part(8))


def format_account_number() -> str:
    return "ACC-" + "".join(secrets.choice(string.digits) for _ in range(6))


async def _unused(db: AsyncSession, column, make: Callable[[], str]) -> str:
    for _ in range(_MAX_ATTEMPTS):
        candidate = make()
        taken = (await db.execute(select(column).where(column == candidate))).first()
        if taken is None:
            return candidate
    raise RuntimeError(f"Could not generate a unique value for {column}")


async def generate_reference_number(db: AsyncSession) -> str:
    return await _unused(db, Payment.reference_number, format_reference_number)


async def generate_receipt_number(db: AsyncSession) -> str:
    return await _unused(db, Payment.receipt_number, format_receipt_number)


async def generate_account_number(db: AsyncSession) -> str:
    return await _unused(db, Account.account_number, format_account_number)


def format_ledger_reference(prefix: str) -> str:
    """Reference for non-payment ledger entries: FEE-, WVR-, ADJ- + 10 random characters."""
    return f"{prefix}-{_random_part(10)}"
