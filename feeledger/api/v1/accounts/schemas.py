"""Accounts schemas."""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel


class AccountBalanceResponse(BaseModel):
    id: UUID
    user_id: UUID
    account_number: str
    balance: Decimal
    fee_item_balance: Decimal
    journal_balance: Decimal
    year_level: Optional[str] = None
    student_status: Optional[str] = None
