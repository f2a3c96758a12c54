"""Fees schemas."""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from feeledger.core.enums import FeeItemStatus, FeeUpdateType


class FeeAssessRequest(BaseModel):
    student_id: UUID
    name: str = Field(..., min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    school_year: Optional[str] = Field(None, max_length=20)
    semester: Optional[str] = Field(None, max_length=20)
    due_date: Optional[datetime] = None
    notes: Optional[str] = None


class FeeItemResponse(BaseModel):
    id: UUID
    student_id: UUID
    name: str
    school_year: Optional[str] = None
    semester: Optional[str] = None
    original_amount: Decimal
    amount_paid: Decimal
    waiver_amount: Decimal
    waiver_reason: Optional[str] = None
    balance: Decimal
    status: FeeItemStatus
    due_date: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class BulkFeeUpdateRequest(BaseModel):
    fee_item_ids: List[UUID] = Field(..., min_length=1)
    update_type: FeeUpdateType
    value: Decimal = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=255)


class BulkWaiveRequest(BaseModel):
    fee_item_ids: List[UUID] = Field(..., min_length=1)
    waiver_reason: str = Field(..., min_length=1, max_length=255)
    waiver_percentage: Optional[Decimal] = Field(None, gt=0, le=100)
    waiver_amount: Optional[Decimal] = Field(None, gt=0)

    @model_validator(mode="after")
    def validate_waiver(self) -> "BulkWaiveRequest":
        if (self.waiver_percentage is None) == (self.waiver_amount is None):
            raise ValueError("Either waiver percentage or waiver amount must be specified")
        return self


class BulkOperationResponse(BaseModel):
    success: bool = True
    message: str
    affected_count: int
    total_amount: Decimal
    items: List[FeeItemResponse]
