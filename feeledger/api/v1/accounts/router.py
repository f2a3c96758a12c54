"""Accounts router: staff-triggered balance recalculation."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.auth.dependencies import require_staff
from feeledger.auth.schemas import CurrentUser
from feeledger.core.collaborators import Collaborators, get_collaborators
from feeledger.core.exceptions import ServiceError
from feeledger.db.session import get_db

from .schemas import AccountBalanceResponse
from . import service

router = APIRouter(prefix="/api/v1/accounts", tags=["accounts"])


@router.post("/{account_id}/recalculate", response_model=AccountBalanceResponse)
async def recalculate_account(
    account_id: UUID,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
    current_user: CurrentUser = Depends(require_staff),
) -> AccountBalanceResponse:
    try:
        return await service.recalculate_account(db, account_id, collaborators.sink)
    except ServiceError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)
