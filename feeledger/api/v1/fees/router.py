"""Fees router: assessment, bulk amount updates, bulk waivers."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.dependencies import require_staff
from feeledger.auth.schemas import CurrentUser
from feeledger.core.collaborators import Collaborators, get_collaborators
from feeledger.core.exceptions import ServiceError
from feeledger.db.session import get_db

from .schemas import (
    BulkFeeUpdateRequest,
    BulkOperationResponse,
    BulkWaiveRequest,
    FeeAssessRequest,
    FeeItemResponse,
)
from . import service

router = APIRouter(prefix="/api/v1/fees", tags=["fees"])


@router.post(
    "/assess",
    response_model=FeeItemResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assess_fee(
    payload: FeeAssessRequest,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> FeeItemResponse:
    try:
        return await service.assess_fee(db, payload, current_user.id, collaborators.sink)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/bulk-update", response_model=BulkOperationResponse)
async def bulk_update_fees(
    payload: BulkFeeUpdateRequest,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> BulkOperationResponse:
    try:
        return await service.bulk_update_fees(db, payload, current_user.id, collaborators.sink)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/bulk-waive", response_model=BulkOperationResponse)
async def bulk_waive_fees(
    payload: BulkWaiveRequest,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> BulkOperationResponse:
    try:
        return await service.bulk_waive_fees(db, payload, current_user.id, collaborators.sink)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
