import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feeledger.api.v1.accounts.router import router as accounts_router
from feeledger.api.v1.fees.router import router as fees_router
from feeledger.api.v1.payments.router import router as payments_router
from feeledger.api.v1.webhooks.router import router as webhooks_router
from feeledger.core.config import settings


def create_app() -> FastAPI:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="Fee Ledger")

    # CORS: allow the student portal and staff frontend to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(payments_router)
    app.include_router(webhooks_router)
    app.include_router(accounts_router)
    app.include_router(fees_router)

    return app


app = create_app()
