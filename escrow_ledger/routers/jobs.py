"""Job lifecycle and payment endpoints."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.auth.middleware import AuthenticatedUser, require_role, verify_request
from escrow_ledger.database import get_db
from escrow_ledger.models.job import JobStatus
from escrow_ledger.models.user import UserRole
from escrow_ledger.routers.responses import release_response
from escrow_ledger.schemas.job import CancelJob, JobCreate, JobResponse, RejectCompletion
from escrow_ledger.schemas.payment import (
    EscrowResponse,
    IntentResponse,
    ReleaseResponse,
    TransferResponse,
)
from escrow_ledger.services import escrow as escrow_service
from escrow_ledger.services import intents as intent_service
from escrow_ledger.services import jobs as job_service
from escrow_ledger.services.gateway import PaymentGateway, get_gateway
from escrow_ledger.services.intents import IntentStore, get_intent_store

router = APIRouter(prefix="/jobs", tags=["jobs"])

_customer = require_role(UserRole.CUSTOMER)
_provider = require_role(UserRole.PROVIDER)


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    data: JobCreate,
    auth: AuthenticatedUser = Depends(_customer),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.create_job(
        db, auth.user, data.service_type, data.description, data.location, data.budget,
    )
    return JobResponse.model_validate(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    status: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[JobResponse]:
    """Providers see the open board plus their own jobs; customers see their own."""
    try:
        status_filter = JobStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown job status {status!r}")
    jobs = await job_service.list_jobs(db, auth.user, status_filter, limit, offset)
    return [JobResponse.model_validate(j) for j in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.get_visible_job(db, job_id, auth.user)
    return JobResponse.model_validate(job)


# --- Payment ---

@router.post("/{job_id}/payment-intent", response_model=IntentResponse)
async def create_payment_intent(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_customer),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    store: IntentStore = Depends(get_intent_store),
) -> IntentResponse:
    """Authorize (hold) the job total. Repeated calls return the same intent."""
    handle = await intent_service.create_intent(db, gateway, store, job_id, auth.user)
    return IntentResponse(
        job_id=uuid.UUID(handle.job_id),
        intent_id=handle.intent_id,
        client_secret=handle.client_secret,
        status=handle.status,
        amount_cents=handle.amount_cents,
        currency=handle.currency,
    )


@router.post("/{job_id}/payment/confirm", response_model=JobResponse)
async def confirm_payment(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_customer),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> JobResponse:
    """Called after the card is confirmed client-side; advances the job to pending."""
    job = await job_service.confirm_payment(db, gateway, job_id, auth.user)
    return JobResponse.model_validate(job)


@router.get("/{job_id}/payment", response_model=EscrowResponse)
async def get_payment(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> EscrowResponse:
    """Payment status, read through to the processor."""
    job = await job_service.get_job(db, job_id)
    job_service.assert_party(job, auth.user)
    escrow = await intent_service.get_escrow_for_job(db, job_id)
    if escrow is None:
        raise HTTPException(status_code=404, detail="No payment for this job")
    await intent_service.get_status(db, gateway, escrow.intent_id)
    return EscrowResponse.model_validate(escrow)


@router.get("/{job_id}/transfers", response_model=list[TransferResponse])
async def get_transfers(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
) -> list[TransferResponse]:
    job = await job_service.get_job(db, job_id)
    job_service.assert_party(job, auth.user)
    transfers = await escrow_service.get_transfers(db, job_id)
    return [TransferResponse.model_validate(t) for t in transfers]


# --- Lifecycle ---

@router.post("/{job_id}/claim", response_model=JobResponse)
async def claim_job(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> JobResponse:
    """First claim wins; later claimants get 409 job_already_claimed."""
    job = await job_service.claim_job(db, gateway, job_id, auth.user)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/done", response_model=JobResponse)
async def mark_done(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.mark_done(db, job_id, auth.user)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/confirm", response_model=ReleaseResponse)
async def confirm_completion(
    job_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_customer),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ReleaseResponse:
    """Customer confirms the work: the job completes and the escrow is released."""
    result = await job_service.confirm_completion(db, gateway, job_id, auth.user)
    return release_response(result)


@router.post("/{job_id}/reject", response_model=JobResponse)
async def reject_completion(
    job_id: uuid.UUID,
    data: RejectCompletion,
    auth: AuthenticatedUser = Depends(_customer),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.reject_completion(db, job_id, auth.user, data.reason)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelJob | None = None,
    auth: AuthenticatedUser = Depends(verify_request),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
    store: IntentStore = Depends(get_intent_store),
) -> JobResponse:
    """Cancel before completion: the hold is released, or the capture refunded."""
    reason = data.reason if data else "cancelled by customer"
    job = await job_service.cancel_job(db, gateway, store, job_id, auth.user, reason)
    return JobResponse.model_validate(job)
