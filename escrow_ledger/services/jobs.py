"""Job lifecycle business logic.

Every status change goes through ``job_state.transition_job`` so concurrent
callers are serialized by the database. Money moves are delegated to the
intent manager and the release engine; notifications are sent after the
transition has committed and never affect it.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from fastapi import HTTPException
from sqlalchemy import ColumnElement, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import (
    InvalidRequest,
    InvalidStateTransition,
    JobAlreadyClaimed,
    OnboardingIncomplete,
)
from escrow_ledger.models.job import AUTO_RELEASE_ACTOR, Job, JobStatus
from escrow_ledger.models.payment import EscrowAction, PaymentStatus
from escrow_ledger.models.user import User, UserRole, UserStatus
from escrow_ledger.services import escrow as escrow_service
from escrow_ledger.services import onboarding
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.gateway import PaymentGateway
from escrow_ledger.services.intents import (
    IntentStore,
    apply_intent_snapshot,
    get_escrow_for_job,
)
from escrow_ledger.services.job_state import auto_release_due_at, transition_job
from escrow_ledger.services.notifications import notify_job_event
from escrow_ledger.services.split import catalog_price_cents, platform_fee_for, to_minor_units

logger = logging.getLogger(__name__)


def assert_party(job: Job, user: User, allowed: str = "both") -> None:
    """Ensure user is a party to the job. allowed: 'customer', 'provider', 'both'.

    Operators pass every check.
    """
    if user.role == UserRole.OPERATOR:
        return
    is_customer = job.customer_id == user.user_id
    is_provider = job.provider_id is not None and job.provider_id == user.user_id
    if allowed == "customer" and not is_customer:
        raise HTTPException(status_code=403, detail="Only the customer can perform this action")
    if allowed == "provider" and not is_provider:
        raise HTTPException(status_code=403, detail="Only the assigned provider can perform this action")
    if allowed == "both" and not (is_customer or is_provider):
        raise HTTPException(status_code=403, detail="Not a party to this job")


async def get_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    result = await db.execute(select(Job).where(Job.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


async def create_job(
    db: AsyncSession,
    customer: User,
    service_type: str,
    description: str,
    location: str,
    budget: Decimal | None = None,
) -> Job:
    """Customer posts a job. It waits in awaiting_payment until the card is authorized."""
    if customer.role != UserRole.CUSTOMER:
        raise HTTPException(status_code=403, detail="Only customers can post jobs")
    if not service_type:
        raise InvalidRequest("service_type is required")

    service_fee = to_minor_units(budget) if budget is not None else catalog_price_cents(service_type)
    if service_fee <= 0:
        raise InvalidRequest("Service fee must be positive", service_fee_cents=service_fee)

    job = Job(
        job_id=uuid.uuid4(),
        customer_id=customer.user_id,
        service_type=service_type,
        description=description,
        location=location,
        service_fee_cents=service_fee,
        platform_fee_cents=platform_fee_for(service_fee),
        currency=settings.currency,
        status=JobStatus.AWAITING_PAYMENT,
        reopen_count=0,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    logger.info(
        "Job %s created by %s: %s, %d + %d cents",
        job.job_id, customer.user_id, service_type, job.service_fee_cents, job.platform_fee_cents,
    )
    return job


async def list_jobs(
    db: AsyncSession,
    user: User,
    status: JobStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    """Providers see the open board plus their own jobs; customers see their own."""
    query = select(Job)
    if user.role == UserRole.CUSTOMER:
        query = query.where(Job.customer_id == user.user_id)
    elif user.role == UserRole.PROVIDER:
        query = query.where(
            or_(Job.status == JobStatus.PENDING, Job.provider_id == user.user_id)
        )
    if status is not None:
        query = query.where(Job.status == status)
    query = query.order_by(Job.created_at.desc()).offset(offset).limit(limit)
    result = await db.execute(query)
    return list(result.scalars().all())


async def get_visible_job(db: AsyncSession, job_id: uuid.UUID, user: User) -> Job:
    job = await get_job(db, job_id)
    if user.role == UserRole.PROVIDER and job.status == JobStatus.PENDING:
        return job
    assert_party(job, user)
    return job


# ---------------------------------------------------------------------------
# Payment authorization
# ---------------------------------------------------------------------------

async def record_authorization(
    db: AsyncSession, job: Job, source: str
) -> Job:
    """Advance awaiting_payment -> pending once the intent is requires_capture.

    Called from both the synchronous confirm path and the webhook; whichever
    arrives second finds the job already pending and does nothing.
    """
    escrow = await get_escrow_for_job(db, job.job_id)
    if escrow is None or escrow.payment_status not in (
        PaymentStatus.REQUIRES_CAPTURE, PaymentStatus.SUCCEEDED,
    ):
        return job
    if job.status != JobStatus.AWAITING_PAYMENT:
        return job

    try:
        job = await transition_job(db, job, JobStatus.PENDING)
    except InvalidStateTransition:
        # The other path got there first.
        logger.info("Job %s already left awaiting_payment (%s)", job.job_id, job.status.value)
        return job

    await log_audit(
        db, escrow.escrow_id, EscrowAction.AUTHORIZED, escrow.amount_cents,
        actor=source, metadata={"intent_id": escrow.intent_id},
    )
    await db.commit()
    await notify_job_event(db, job, "job.payment_authorized")
    return job


async def confirm_payment(
    db: AsyncSession, gateway: PaymentGateway, job_id: uuid.UUID, customer: User
) -> Job:
    """Synchronous path after the customer confirms the card client-side."""
    job = await get_job(db, job_id)
    assert_party(job, customer, allowed="customer")
    escrow = await get_escrow_for_job(db, job_id)
    if escrow is None:
        raise InvalidRequest("No payment intent exists for this job yet")

    snapshot = await gateway.retrieve_payment_intent(escrow.intent_id)
    if apply_intent_snapshot(escrow, snapshot):
        await db.commit()
    if escrow.payment_status not in (PaymentStatus.REQUIRES_CAPTURE, PaymentStatus.SUCCEEDED):
        raise InvalidStateTransition(
            f"Payment is not authorized yet (status {escrow.payment_status.value})",
            payment_status=escrow.payment_status.value,
        )
    return await record_authorization(db, job, source=str(customer.user_id))


# ---------------------------------------------------------------------------
# Provider actions
# ---------------------------------------------------------------------------

async def claim_job(
    db: AsyncSession, gateway: PaymentGateway, job_id: uuid.UUID, provider: User
) -> Job:
    """First claim wins. A losing claimant gets ``JobAlreadyClaimed``."""
    if provider.role != UserRole.PROVIDER:
        raise HTTPException(status_code=403, detail="Only providers can claim jobs")
    if provider.status != UserStatus.ACTIVE:
        raise HTTPException(status_code=403, detail="Provider account is not approved")

    job = await get_job(db, job_id)
    if job.provider_id == provider.user_id and job.status != JobStatus.PENDING:
        return job  # Retry of a claim that already succeeded
    if job.status != JobStatus.PENDING:
        if job.provider_id is not None:
            raise JobAlreadyClaimed("This job is no longer available", job_id=job_id)
        raise InvalidStateTransition(
            f"Cannot claim a job that is {job.status.value}", current=job.status.value,
        )

    # Unready providers can't be paid, so they may not take work.
    try:
        await onboarding.ensure_provider_ready(db, gateway, provider.user_id)
    except OnboardingIncomplete:
        logger.info("Provider %s tried to claim job %s before onboarding", provider.user_id, job_id)
        raise

    try:
        job = await transition_job(
            db, job, JobStatus.IN_PROGRESS,
            Job.provider_id.is_(None),
            provider_id=provider.user_id,
            claimed_at=utcnow(),
        )
    except InvalidStateTransition:
        if job.provider_id == provider.user_id:
            return job
        logger.info("Provider %s lost the claim race for job %s", provider.user_id, job_id)
        raise JobAlreadyClaimed("This job is no longer available", job_id=job_id)

    await notify_job_event(db, job, "job.claimed")
    return job


async def mark_done(db: AsyncSession, job_id: uuid.UUID, provider: User) -> Job:
    """Provider claims the work is finished; starts the auto-release clock."""
    job = await get_job(db, job_id)
    assert_party(job, provider, allowed="provider")

    marked = utcnow()
    job = await transition_job(
        db, job, JobStatus.PENDING_CONFIRMATION,
        marked_done_at=marked,
        auto_release_at=auto_release_due_at(marked),
    )
    await notify_job_event(db, job, "job.marked_done")
    return job


# ---------------------------------------------------------------------------
# Customer resolution
# ---------------------------------------------------------------------------

async def confirm_completion(
    db: AsyncSession, gateway: PaymentGateway, job_id: uuid.UUID, customer: User
) -> escrow_service.ReleaseResult:
    """Customer confirms the work; the job completes and escrow is released."""
    job = await get_job(db, job_id)
    assert_party(job, customer, allowed="customer")
    return await _complete_and_release(db, gateway, job, actor=str(customer.user_id))


async def _complete_and_release(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    actor: str,
    *conditions: ColumnElement[bool],
) -> escrow_service.ReleaseResult:
    if job.status == JobStatus.PENDING_CONFIRMATION:
        escrow = await get_escrow_for_job(db, job.job_id)
        if escrow is None:
            raise InvalidRequest("No payment exists for this job")
        # Block before completing: an unpayable provider must not end up
        # with a completed job and captured funds.
        await escrow_service.check_release_ready(db, gateway, job, escrow)
        job = await transition_job(
            db, job, JobStatus.COMPLETED, *conditions,
            completed_at=utcnow(),
            completed_by=actor,
        )
        await notify_job_event(db, job, "job.completed")
    return await escrow_service.release_escrow(db, gateway, job.job_id, actor=actor)


async def reject_completion(
    db: AsyncSession, job_id: uuid.UUID, customer: User, reason: str
) -> Job:
    """Customer disputes the completion claim; the job goes back to in_progress."""
    job = await get_job(db, job_id)
    assert_party(job, customer, allowed="customer")
    if not reason:
        raise InvalidRequest("A reason is required to reopen a job")

    job = await transition_job(
        db, job, JobStatus.IN_PROGRESS,
        auto_release_at=None,
        marked_done_at=None,
        reopen_count=Job.reopen_count + 1,
        last_rejection_reason=reason,
    )
    await notify_job_event(db, job, "job.reopened", {"reason": reason})
    return job


async def auto_complete(
    db: AsyncSession, gateway: PaymentGateway, job_id: uuid.UUID, now: datetime
) -> escrow_service.ReleaseResult | None:
    """Complete a job whose confirmation window is strictly past. None if not due."""
    job = await get_job(db, job_id)
    if job.status == JobStatus.PENDING_CONFIRMATION:
        if job.auto_release_at is None or now <= job.auto_release_at:
            return None
        return await _complete_and_release(
            db, gateway, job, AUTO_RELEASE_ACTOR,
            Job.auto_release_at < now,
        )
    if job.status == JobStatus.COMPLETED and job.completed_by == AUTO_RELEASE_ACTOR:
        # Completed by an earlier sweep whose release did not finish.
        return await escrow_service.release_escrow(db, gateway, job.job_id, actor=AUTO_RELEASE_ACTOR)
    return None


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def cancel_job(
    db: AsyncSession,
    gateway: PaymentGateway,
    store: IntentStore,
    job_id: uuid.UUID,
    user: User,
    reason: str = "cancelled by customer",
) -> Job:
    """Cancel a job that hasn't reached pending_confirmation.

    Before capture the intent is cancelled; after capture it is refunded.
    Calling again on a cancelled job retries an unfinished void.
    """
    job = await get_job(db, job_id)
    if user.role != UserRole.OPERATOR:
        assert_party(job, user, allowed="customer")
    return await _cancel(db, gateway, store, job, actor=str(user.user_id), reason=reason)


async def _cancel(
    db: AsyncSession,
    gateway: PaymentGateway,
    store: IntentStore,
    job: Job,
    actor: str,
    reason: str,
    void_reason: str = "requested_by_customer",
) -> Job:
    if job.status != JobStatus.CANCELLED:
        job = await transition_job(
            db, job, JobStatus.CANCELLED,
            cancelled_at=utcnow(),
            cancelled_by=actor,
            cancellation_reason=reason,
        )
        await notify_job_event(db, job, "job.cancelled", {"reason": reason})

    await escrow_service.void_payment(db, gateway, job, actor=actor, reason=void_reason)
    await store.evict(str(job.job_id))
    return job


async def cancel_abandoned(
    db: AsyncSession,
    gateway: PaymentGateway,
    store: IntentStore,
    job_id: uuid.UUID,
    now: datetime,
) -> Job | None:
    """Cancel a job left in awaiting_payment past the abandonment window."""
    job = await get_job(db, job_id)
    cutoff = now - timedelta(minutes=settings.abandoned_job_minutes)
    if job.status != JobStatus.AWAITING_PAYMENT or job.created_at >= cutoff:
        return None
    return await _cancel(
        db, gateway, store, job,
        actor="sweeper", reason="payment abandoned", void_reason="abandoned",
    )
