"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from escrow_ledger.config import settings
from escrow_ledger.errors import LedgerError, PaymentProviderUnavailable
from escrow_ledger.middleware import (
    BodySizeLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from escrow_ledger.routers import connect, jobs, operator, users, webhooks
from escrow_ledger.services.split import SplitPolicy, validate_split_policy

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 5


def configure_logging() -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    # The Stripe SDK logs every request at INFO.
    logging.getLogger("stripe").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    configure_logging()
    validate_split_policy(SplitPolicy.from_settings())
    if not settings.partner_a_account_id or not settings.partner_b_account_id:
        logger.warning("Partner payout accounts are not configured; releases will be blocked")

    sweeper_task = None
    if settings.sweeper_enabled:
        from escrow_ledger.services.sweeper import run_sweeper
        sweeper_task = asyncio.create_task(run_sweeper())

    yield

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass


app = FastAPI(
    title="Escrow Ledger",
    description="Escrowed card payments and three-way payouts for a handyman marketplace",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: last added is outermost)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_bytes)
app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    headers = None
    if isinstance(exc, PaymentProviderUnavailable):
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.detail, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


app.include_router(users.router)
app.include_router(jobs.router)
app.include_router(operator.router)
app.include_router(connect.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}
