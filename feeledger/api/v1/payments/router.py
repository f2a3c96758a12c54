"""Payments router: initiation, staff-recorded payments, status, confirmation, risk preview."""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.dependencies import get_current_user, require_staff, require_student
from feeledger.auth.schemas import CurrentUser
from feeledger.core.collaborators import Collaborators, get_collaborators
from feeledger.core.exceptions import ServiceError
from feeledger.db.session import get_db

from .schemas import (
    ManualPaymentCreate,
    PaymentConfirmRequest,
    PaymentHandle,
    PaymentInitiateRequest,
    PaymentResponse,
    ReconciliationResponse,
    RiskScoreRequest,
    RiskScoreResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])


@router.post(
    "/initiate",
    response_model=PaymentHandle,
    status_code=status.HTTP_201_CREATED,
)
async def initiate_payment(
    payload: PaymentInitiateRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_student),
):
    try:
        handle = await service.initiate_payment(
            db,
            collaborators,
            current_user.student_id,
            payload,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    if handle.blocked:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=handle.model_dump(mode="json"))
    return handle


@router.post(
    "/manual",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def record_manual_payment(
    payload: ManualPaymentCreate,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> PaymentResponse:
    try:
        return await service.record_manual_payment(db, collaborators, payload, current_user.id)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/risk-score", response_model=RiskScoreResponse)
async def score_payment_risk(
    payload: RiskScoreRequest,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> RiskScoreResponse:
    try:
        return await service.score_risk(db, collaborators, payload)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.get("/student/{student_id}", response_model=List[PaymentResponse])
async def list_student_payments(
    student_id: UUID,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> List[PaymentResponse]:
    if not current_user.is_staff and current_user.student_id != student_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Student not found")
    return await service.list_student_payments(db, student_id)


@router.get("/{reference_number}", response_model=PaymentResponse)
async def get_payment(
    reference_number: str,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
) -> PaymentResponse:
    try:
        return await service.get_payment(db, reference_number, current_user)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/{payment_id}/confirm", response_model=ReconciliationResponse)
async def confirm_payment(
    payment_id: UUID,
    payload: PaymentConfirmRequest,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(get_current_user),
) -> ReconciliationResponse:
    try:
        outcome = await service.confirm(db, collaborators, payment_id, current_user, payload.status)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
    return ReconciliationResponse(payment_id=outcome.payment_id, status=outcome.status, changed=outcome.changed)
