"""Payments schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from feeledger.core.enums import AllocationStrategy, GatewayName, PaymentMethod


class PaymentInitiateRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: GatewayName
    fee_item_ids: Optional[List[UUID]] = Field(
        None, description="Explicit selection, applied in this order. Omit to pay oldest fees first."
    )
    description: Optional[str] = Field(None, max_length=255)


class PaymentHandle(BaseModel):
    """Result of initiation. blocked=True is the fraud decision, not an error."""

    blocked: bool = False
    message: str
    payment_id: Optional[UUID] = None
    reference_number: Optional[str] = None
    status: Optional[str] = None
    gateway: Optional[str] = None
    redirect_url: Optional[str] = None
    qr_code: Optional[str] = None
    expires_at: Optional[datetime] = None
    gateway_fee: Optional[Decimal] = None


class ManualPaymentCreate(BaseModel):
    """Staff-recorded payment (cash, bank transfer, card at the cashier)."""

    student_id: UUID
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    payment_method: PaymentMethod
    fee_item_ids: Optional[List[UUID]] = None
    description: Optional[str] = Field(None, max_length=255)
    paid_at: Optional[datetime] = None

    @model_validator(mode="after")
    def validate_offline_method(self) -> "ManualPaymentCreate":
        if self.payment_method.value in {g.value for g in GatewayName}:
            raise ValueError("Online gateway payments must go through initiation")
        return self


class PaymentAllocationResponse(BaseModel):
    fee_item_id: UUID
    planned_amount: Decimal
    applied_amount: Decimal

    class Config:
        from_attributes = True


class PaymentResponse(BaseModel):
    id: UUID
    student_id: UUID
    amount: Decimal
    payment_method: str
    allocation_strategy: AllocationStrategy
    reference_number: str
    receipt_number: Optional[str] = None
    status: str
    description: Optional[str] = None
    paid_at: Optional[datetime] = None
    unapplied_amount: Decimal
    failure_reason: Optional[str] = None
    created_at: datetime
    allocations: List[PaymentAllocationResponse] = []

    class Config:
        from_attributes = True


class PaymentConfirmRequest(BaseModel):
    status: Optional[str] = Field(None, description="Raw gateway status from the return URL, if any")


class ReconciliationResponse(BaseModel):
    success: bool = True
    payment_id: Optional[UUID] = None
    status: Optional[str] = None
    changed: bool


class RiskScoreRequest(BaseModel):
    student_id: UUID
    amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class RiskCheckResponse(BaseModel):
    name: str
    score: int
    reason: str
    risk_level: str


class RiskScoreResponse(BaseModel):
    total_score: int
    threshold: int
    blocked: bool
    breakdown: Dict[str, int]
    checks: List[RiskCheckResponse]
