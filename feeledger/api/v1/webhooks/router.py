"""Gateway webhooks. Failures answer with a generic body; details go to the log only."""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from feeledger.core.collaborators import Collaborators, get_collaborators
from feeledger.core.exceptions import GatewayError, ServiceError
from feeledger.db.session import get_db
from feeledger.gateways.reconciliation import process_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/{gateway}")
async def receive_webhook(
    gateway: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    collaborators: Collaborators = Depends(get_collaborators),
) -> JSONResponse:
    raw_body = await request.body()
    try:
        outcome = await process_webhook(
            db, collaborators.gateways, gateway, raw_body, request.headers, sink=collaborators.sink
        )
    except GatewayError as e:
        logger.warning("Webhook %s rejected (%s): %s", gateway, type(e).__name__, e.detail)
        return JSONResponse(status_code=e.status_code, content={"success": False})
    except ServiceError as e:
        logger.error("Webhook %s failed: %s", gateway, e.message)
        return JSONResponse(status_code=e.status_code, content={"success": False})
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content={
            "success": True,
            "payment_id": str(outcome.payment_id) if outcome.payment_id else None,
            "status": outcome.status,
        },
    )
