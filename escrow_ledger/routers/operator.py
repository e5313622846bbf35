"""Operator tools: the escrow queue, manual release, reversal, refund, sweeps."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_ledger.auth.middleware import AuthenticatedUser, require_role
from escrow_ledger.database import get_db, get_session_factory
from escrow_ledger.models.payment import RecipientRole, ReleaseStatus
from escrow_ledger.models.user import UserRole
from escrow_ledger.routers.responses import release_response, reversal_response
from escrow_ledger.schemas.payment import (
    EscrowResponse,
    RefundRequest,
    RefundResponse,
    ReleaseResponse,
    ReversalResponse,
    ReverseTransfers,
    SweepResponse,
)
from escrow_ledger.services import escrow as escrow_service
from escrow_ledger.services import jobs as job_service
from escrow_ledger.services import sweeper
from escrow_ledger.services.gateway import PaymentGateway, get_gateway
from escrow_ledger.services.intents import IntentStore, get_escrow_for_job, get_intent_store

router = APIRouter(
    prefix="/operator",
    tags=["operator"],
)

_operator = require_role(UserRole.OPERATOR)


@router.get("/escrows", response_model=list[EscrowResponse])
async def list_escrows(
    release_status: str | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
) -> list[EscrowResponse]:
    """Filter by release_status=capture_failed or partially_released for the attention queue."""
    try:
        status = ReleaseStatus(release_status) if release_status else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown release status {release_status!r}")
    escrows = await escrow_service.list_escrows(db, status, limit)
    return [EscrowResponse.model_validate(e) for e in escrows]


@router.post("/jobs/{job_id}/release", response_model=ReleaseResponse)
async def release_escrow(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReleaseResponse:
    """Finish a release: retries capture or only the transfers that failed."""
    result = await escrow_service.release_escrow(db, gateway, job_id, actor=str(auth.user_id))
    return release_response(result)


@router.post("/jobs/{job_id}/reverse-transfers", response_model=ReversalResponse)
async def reverse_transfers(
    job_id: uuid.UUID,
    data: ReverseTransfers | None = None,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReversalResponse:
    amounts = None
    reason = "dispute"
    if data is not None:
        reason = data.reason
        if data.amounts is not None:
            amounts = {RecipientRole(role): cents for role, cents in data.amounts.items()}
    result = await escrow_service.reverse_all_transfers(
        db, gateway, job_id, amounts=amounts, reason=reason, actor=str(auth.user_id),
    )
    return reversal_response(result)


@router.post("/jobs/{job_id}/refund", response_model=RefundResponse)
async def refund_job(
    job_id: uuid.UUID,
    data: RefundRequest | None = None,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> RefundResponse:
    """Refund a captured payment. With dispute=true, transfers are reversed first."""
    data = data or RefundRequest()
    actor = str(auth.user_id)
    if data.dispute:
        reversal, escrow = await escrow_service.dispute_refund(
            db, gateway, job_id, actor=actor, reason=data.reason,
        )
        return RefundResponse(
            job_id=job_id,
            escrow=EscrowResponse.model_validate(escrow),
            reversal=reversal_response(reversal),
        )

    job = await job_service.get_job(db, job_id)
    escrow = await get_escrow_for_job(db, job_id, for_update=True)
    if escrow is None:
        raise HTTPException(status_code=404, detail="No payment for this job")
    escrow = await escrow_service.refund_captured(
        db, gateway, job, escrow, actor=actor, reason=data.reason,
    )
    return RefundResponse(job_id=job_id, escrow=EscrowResponse.model_validate(escrow))


@router.post("/sweeps", response_model=SweepResponse)
async def run_sweeps(
    auth: AuthenticatedUser = Depends(_operator),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
    store: IntentStore = Depends(get_intent_store),
) -> SweepResponse:
    """Run the auto-release and abandoned-checkout sweeps now."""
    report = await sweeper.run_sweep(session_factory, gateway, store)
    if report is None:
        return SweepResponse(skipped=True)
    return SweepResponse(**report.to_dict())
