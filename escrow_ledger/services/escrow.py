"""Escrow release engine: capture, three-way transfer, reversal, refund.

Release is not atomic across recipients: the processor has no multi-destination
transfer. If some transfers fail after capture, the ones that succeeded are
kept, the escrow is parked in ``partially_released`` and
``PartialTransferFailure`` is raised for an operator. Calling
``release_escrow`` again resends only the transfers that haven't gone out.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.database import utcnow
from escrow_ledger.errors import (
    InvalidRequest,
    InvalidStateTransition,
    LedgerError,
    PartialTransferFailure,
)
from escrow_ledger.models.connected_account import ConnectedAccount
from escrow_ledger.models.job import Job
from escrow_ledger.models.payment import (
    CANCELLABLE_PAYMENT_STATUSES,
    REVERSIBLE_TRANSFER_STATUSES,
    EscrowAction,
    EscrowPayment,
    PaymentStatus,
    RecipientRole,
    ReleaseStatus,
    TransferRecord,
    TransferStatus,
)
from escrow_ledger.services import onboarding
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.gateway import PaymentGateway, TransferSnapshot
from escrow_ledger.services.intents import apply_intent_snapshot, get_escrow_for_job
from escrow_ledger.services.job_state import EscrowOperation, assert_operation_allowed
from escrow_ledger.services.split import Split, SplitPolicy, compute_split

logger = logging.getLogger(__name__)

_SENDABLE = {TransferStatus.PENDING, TransferStatus.FAILED}


@dataclass
class ReleaseResult:
    job_id: uuid.UUID
    escrow: EscrowPayment
    split: Split
    transfers: list[TransferRecord]
    already_released: bool = False


@dataclass
class ReversalOutcome:
    recipient_role: RecipientRole
    status: str  # reversed, partially_reversed, already_reversed, not_transferred, failed
    amount_cents: int = 0
    error: str | None = None


@dataclass
class ReversalResult:
    job_id: uuid.UUID
    outcomes: list[ReversalOutcome] = field(default_factory=list)

    @property
    def reversed_cents(self) -> int:
        return sum(o.amount_cents for o in self.outcomes if o.status in ("reversed", "partially_reversed"))

    @property
    def failed(self) -> list[ReversalOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def already_reversed(self) -> bool:
        """True when this call found nothing left to reverse."""
        return bool(self.outcomes) and all(
            o.status in ("already_reversed", "not_transferred") for o in self.outcomes
        )


async def _get_job(db: AsyncSession, job_id: uuid.UUID) -> Job:
    result = await db.execute(select(Job).where(Job.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


async def _require_escrow(
    db: AsyncSession, job_id: uuid.UUID, for_update: bool = False
) -> EscrowPayment:
    escrow = await get_escrow_for_job(db, job_id, for_update=for_update)
    if escrow is None:
        raise HTTPException(status_code=404, detail="Escrow not found for this job")
    return escrow


async def get_transfers(db: AsyncSession, job_id: uuid.UUID) -> list[TransferRecord]:
    result = await db.execute(
        select(TransferRecord)
        .where(TransferRecord.job_id == job_id)
        .order_by(TransferRecord.recipient_role)
    )
    return list(result.scalars().all())


def split_for(escrow: EscrowPayment) -> Split:
    split = compute_split(escrow.service_fee_cents, escrow.platform_fee_cents, SplitPolicy.from_settings())
    if split.total_cents != escrow.amount_cents:
        raise InvalidRequest(
            "Split does not add up to the authorized amount",
            split=split.total_cents,
            authorized=escrow.amount_cents,
        )
    return split


async def check_release_ready(
    db: AsyncSession, gateway: PaymentGateway, job: Job, escrow: EscrowPayment
) -> dict[RecipientRole, ConnectedAccount]:
    """Every recipient with a non-zero share must be able to receive transfers.

    Raises OnboardingIncomplete before anything irreversible happens.
    """
    if job.provider_id is None:
        raise InvalidRequest("Job has no assigned provider")
    split = split_for(escrow)
    accounts = {
        RecipientRole.PROVIDER: await onboarding.ensure_provider_ready(db, gateway, job.provider_id),
    }
    for role in (RecipientRole.PARTNER_A, RecipientRole.PARTNER_B):
        if split.amount_for(role) > 0:
            accounts[role] = await onboarding.ensure_partner_ready(db, gateway, role)
    return accounts


async def release_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: str | None = None,
) -> ReleaseResult:
    """Capture the held funds and pay provider and partners.

    Idempotent: a released escrow returns its transfers untouched; a partial
    release resends only the transfers still owed.
    """
    job = await _get_job(db, job_id)
    assert_operation_allowed(job.status, EscrowOperation.RELEASE)
    escrow = await _require_escrow(db, job_id)

    if escrow.release_status == ReleaseStatus.RELEASED:
        return ReleaseResult(
            job_id=job_id, escrow=escrow, split=split_for(escrow),
            transfers=await get_transfers(db, job_id), already_released=True,
        )
    if escrow.release_status in (ReleaseStatus.VOIDED, ReleaseStatus.REFUNDED):
        raise InvalidStateTransition(
            f"Escrow was {escrow.release_status.value}, nothing to release",
            release_status=escrow.release_status.value,
        )

    accounts = await check_release_ready(db, gateway, job, escrow)

    # Re-read under lock; readiness checks above may have committed.
    escrow = await _require_escrow(db, job_id, for_update=True)
    await _capture(db, gateway, job, escrow, actor)
    return await _transfer_split(db, gateway, job, escrow, accounts, actor)


async def _capture(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    escrow: EscrowPayment,
    actor: str | None,
) -> None:
    assert_operation_allowed(job.status, EscrowOperation.CAPTURE)
    if escrow.payment_status == PaymentStatus.SUCCEEDED:
        return

    if escrow.payment_status != PaymentStatus.REQUIRES_CAPTURE:
        apply_intent_snapshot(escrow, await gateway.retrieve_payment_intent(escrow.intent_id))
        if escrow.payment_status == PaymentStatus.SUCCEEDED:
            await db.commit()
            return
        if escrow.payment_status != PaymentStatus.REQUIRES_CAPTURE:
            await db.commit()
            raise InvalidStateTransition(
                f"Payment is not authorized (status {escrow.payment_status.value})",
                payment_status=escrow.payment_status.value,
            )

    try:
        snapshot = await gateway.capture_payment_intent(
            escrow.intent_id, idempotency_key=f"capture:{job.job_id}",
        )
    except LedgerError as exc:
        escrow.release_status = ReleaseStatus.CAPTURE_FAILED
        escrow.last_error = exc.detail
        await log_audit(
            db, escrow.escrow_id, EscrowAction.CAPTURE_FAILED, escrow.amount_cents,
            actor=actor, metadata={"error": exc.code, "detail": exc.detail},
        )
        await db.commit()
        logger.error(
            "Capture failed for job %s (intent %s): %s; operator attention required",
            job.job_id, escrow.intent_id, exc.detail,
        )
        raise

    apply_intent_snapshot(escrow, snapshot)
    escrow.last_error = None
    await log_audit(
        db, escrow.escrow_id, EscrowAction.CAPTURED, escrow.amount_cents,
        actor=actor, metadata={"intent_id": escrow.intent_id},
    )
    await db.commit()
    logger.info("Captured %d %s for job %s", escrow.amount_cents, escrow.currency, job.job_id)


async def _transfer_split(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    escrow: EscrowPayment,
    accounts: dict[RecipientRole, ConnectedAccount],
    actor: str | None,
) -> ReleaseResult:
    split = split_for(escrow)
    records = {record.recipient_role: record for record in await get_transfers(db, job.job_id)}

    # Record every owed transfer before sending any, so a crash mid-release
    # leaves a durable trail of what was intended.
    for role in RecipientRole:
        if role in records:
            continue
        amount = split.amount_for(role)
        records[role] = TransferRecord(
            transfer_id=uuid.uuid4(),
            escrow_id=escrow.escrow_id,
            job_id=job.job_id,
            recipient_role=role,
            destination_account_id=(
                accounts[role].processor_account_id if role in accounts else ""
            ),
            amount_cents=amount,
            currency=escrow.currency,
            status=TransferStatus.PENDING if amount > 0 else TransferStatus.SKIPPED,
            reversed_cents=0,
            attempt=1,
        )
        db.add(records[role])
    await db.commit()

    to_send = [r for r in records.values() if r.status in _SENDABLE]
    outcomes = await asyncio.gather(
        *(_send_transfer(gateway, job, escrow, record) for record in to_send),
        return_exceptions=True,
    )

    failed: list[TransferRecord] = []
    for record, outcome in zip(to_send, outcomes):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, LedgerError):
                detail, retryable = outcome.detail, outcome.retryable
            else:
                detail, retryable = repr(outcome), False
            record.status = TransferStatus.FAILED
            record.failure_reason = detail
            if not retryable:
                # A definitive rejection is stored under its key; retries need a new one.
                record.attempt += 1
            failed.append(record)
            logger.error(
                "Transfer of %d to %s (%s) for job %s failed: %s",
                record.amount_cents, record.recipient_role.value,
                record.destination_account_id, job.job_id, detail,
            )
        else:
            record.status = TransferStatus.CREATED
            record.processor_transfer_id = outcome.id
            record.failure_reason = None

    transfers = sorted(records.values(), key=lambda r: r.recipient_role.value)
    if failed:
        escrow.release_status = ReleaseStatus.PARTIALLY_RELEASED
        escrow.last_error = "; ".join(
            f"{r.recipient_role.value}: {r.failure_reason}" for r in failed
        )
        await log_audit(
            db, escrow.escrow_id, EscrowAction.PARTIALLY_RELEASED,
            sum(r.amount_cents for r in transfers if r.status == TransferStatus.CREATED),
            actor=actor,
            metadata={"failed_roles": [r.recipient_role.value for r in failed], **split.to_dict()},
        )
        await db.commit()
        logger.error(
            "Partial release for job %s: %d of %d transfers failed; operator attention required",
            job.job_id, len(failed), len(to_send),
        )
        raise PartialTransferFailure(
            "Funds were captured but some transfers failed",
            job_id=job.job_id,
            failed_roles=[r.recipient_role.value for r in failed],
        )

    escrow.release_status = ReleaseStatus.RELEASED
    escrow.released_at = utcnow()
    escrow.last_error = None
    await log_audit(
        db, escrow.escrow_id, EscrowAction.RELEASED, split.total_cents,
        actor=actor, metadata=split.to_dict(),
    )
    await db.commit()
    logger.info("Released escrow for job %s: %s", job.job_id, split.to_dict())
    return ReleaseResult(job_id=job.job_id, escrow=escrow, split=split, transfers=transfers)


async def _send_transfer(
    gateway: PaymentGateway, job: Job, escrow: EscrowPayment, record: TransferRecord
) -> TransferSnapshot:
    return await gateway.create_transfer(
        amount_cents=record.amount_cents,
        currency=record.currency,
        destination=record.destination_account_id,
        metadata={
            "job_id": str(job.job_id),
            "intent_id": escrow.intent_id,
            "recipient": record.recipient_role.value,
        },
        idempotency_key=f"transfer:{job.job_id}:{record.recipient_role.value}:{record.attempt}",
        transfer_group=f"job_{job.job_id}",
        description=f"{record.recipient_role.value} share for job {job.job_id}",
    )


async def reverse_all_transfers(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    amounts: dict[RecipientRole, int] | None = None,
    reason: str = "dispute",
    actor: str | None = None,
) -> ReversalResult:
    """Reverse what was transferred for a job.

    ``amounts`` limits the call to the given roles and caps each reversal;
    omitted means full reversal of every transfer. A transfer is never
    reversed past its original amount, so repeating a call is a no-op.
    """
    job = await _get_job(db, job_id)
    assert_operation_allowed(job.status, EscrowOperation.REVERSE)
    escrow = await _require_escrow(db, job_id)

    result = await db.execute(
        select(TransferRecord)
        .where(TransferRecord.job_id == job_id)
        .order_by(TransferRecord.recipient_role)
        .with_for_update()
    )
    records = list(result.scalars().all())
    outcome = ReversalResult(job_id=job_id)

    for record in records:
        if amounts is not None and record.recipient_role not in amounts:
            continue
        role = record.recipient_role
        if record.status not in REVERSIBLE_TRANSFER_STATUSES and record.status != TransferStatus.REVERSED:
            outcome.outcomes.append(ReversalOutcome(role, "not_transferred"))
            continue
        remaining = record.reversible_cents
        if remaining <= 0:
            outcome.outcomes.append(ReversalOutcome(role, "already_reversed"))
            continue

        requested = amounts.get(role) if amounts is not None else None
        if requested is not None and requested <= 0:
            raise InvalidRequest("Reversal amount must be positive", recipient=role.value)
        amount = remaining if requested is None else min(requested, remaining)

        try:
            reversal = await gateway.create_transfer_reversal(
                record.processor_transfer_id,  # type: ignore[arg-type]
                idempotency_key=f"reverse:{record.processor_transfer_id}:{record.reversed_cents}:{amount}",
                amount_cents=amount,
                metadata={"job_id": str(job_id), "reason": reason, "recipient": role.value},
            )
        except LedgerError as exc:
            logger.error(
                "Reversal of %s transfer %s for job %s failed: %s",
                role.value, record.processor_transfer_id, job_id, exc.detail,
            )
            outcome.outcomes.append(ReversalOutcome(role, "failed", error=exc.detail))
            continue

        record.reversed_cents += reversal.amount_cents
        record.status = (
            TransferStatus.REVERSED if record.reversible_cents <= 0
            else TransferStatus.PARTIALLY_REVERSED
        )
        outcome.outcomes.append(ReversalOutcome(role, record.status.value, reversal.amount_cents))
        await log_audit(
            db, escrow.escrow_id, EscrowAction.REVERSED, reversal.amount_cents,
            actor=actor,
            metadata={"recipient": role.value, "reversal_id": reversal.id, "reason": reason},
        )

    await db.commit()
    if outcome.reversed_cents:
        logger.info("Reversed %d cents of transfers for job %s", outcome.reversed_cents, job_id)
    return outcome


async def refund_captured(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    escrow: EscrowPayment,
    actor: str | None = None,
    reason: str = "requested_by_customer",
) -> EscrowPayment:
    """Refund a captured charge in full. No-op if already refunded."""
    assert_operation_allowed(job.status, EscrowOperation.REFUND)
    if escrow.release_status == ReleaseStatus.REFUNDED:
        return escrow
    if escrow.payment_status != PaymentStatus.SUCCEEDED:
        raise InvalidStateTransition(
            f"Only captured payments can be refunded (status {escrow.payment_status.value})",
            payment_status=escrow.payment_status.value,
        )
    # Money already sent to recipients has to come back before the customer is refunded.
    outstanding = [
        t.recipient_role.value for t in await get_transfers(db, job.job_id)
        if t.status in REVERSIBLE_TRANSFER_STATUSES
    ]
    if outstanding:
        raise InvalidStateTransition(
            "Transfers have been paid out; refund with dispute=true to reverse them first",
            release_status=escrow.release_status.value,
            transferred_roles=outstanding,
        )

    refund = await gateway.create_refund(
        escrow.intent_id,
        idempotency_key=f"refund:{job.job_id}",
        reason=reason,
        metadata={"job_id": str(job.job_id)},
    )
    escrow.release_status = ReleaseStatus.REFUNDED
    escrow.refund_id = refund.id
    escrow.refunded_cents = refund.amount_cents
    escrow.refunded_at = utcnow()
    await log_audit(
        db, escrow.escrow_id, EscrowAction.REFUNDED, refund.amount_cents,
        actor=actor, metadata={"refund_id": refund.id, "reason": reason},
    )
    await db.commit()
    logger.info("Refunded %d cents for job %s", refund.amount_cents, job.job_id)
    return escrow


async def void_payment(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    actor: str | None = None,
    reason: str = "requested_by_customer",
) -> EscrowPayment | None:
    """Undo the payment of a cancelled job.

    Before capture the intent is cancelled and no money moves; after capture
    the charge is refunded. Decided on processor truth, not the local mirror.
    """
    escrow = await get_escrow_for_job(db, job.job_id, for_update=True)
    if escrow is None:
        return None
    if escrow.release_status in (ReleaseStatus.VOIDED, ReleaseStatus.REFUNDED):
        return escrow

    apply_intent_snapshot(escrow, await gateway.retrieve_payment_intent(escrow.intent_id))

    if escrow.payment_status == PaymentStatus.SUCCEEDED:
        return await refund_captured(db, gateway, job, escrow, actor=actor)

    assert_operation_allowed(job.status, EscrowOperation.CANCEL_INTENT)
    if escrow.payment_status in CANCELLABLE_PAYMENT_STATUSES:
        snapshot = await gateway.cancel_payment_intent(
            escrow.intent_id, reason=reason, idempotency_key=f"cancel_intent:{job.job_id}",
        )
        apply_intent_snapshot(escrow, snapshot)

    escrow.release_status = ReleaseStatus.VOIDED
    await log_audit(
        db, escrow.escrow_id, EscrowAction.VOIDED, escrow.amount_cents,
        actor=actor, metadata={"reason": reason},
    )
    await db.commit()
    logger.info("Voided payment %s for job %s", escrow.intent_id, job.job_id)
    return escrow


async def dispute_refund(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: str | None = None,
    reason: str = "dispute",
) -> tuple[ReversalResult, EscrowPayment]:
    """Claw back every transfer of a completed job, then refund the customer.

    The refund is withheld if any reversal fails, so the platform never pays
    out twice.
    """
    job = await _get_job(db, job_id)
    assert_operation_allowed(job.status, EscrowOperation.REFUND)
    reversal = await reverse_all_transfers(db, gateway, job_id, reason=reason, actor=actor)
    if reversal.failed:
        raise PartialTransferFailure(
            "Some transfers could not be reversed; refund withheld",
            job_id=job_id,
            failed_roles=[o.recipient_role.value for o in reversal.failed],
        )
    escrow = await _require_escrow(db, job_id, for_update=True)
    escrow = await refund_captured(db, gateway, job, escrow, actor=actor)
    return reversal, escrow


async def list_escrows(
    db: AsyncSession, release_status: ReleaseStatus | None = None, limit: int = 100
) -> list[EscrowPayment]:
    query = select(EscrowPayment).order_by(EscrowPayment.updated_at.desc()).limit(limit)
    if release_status is not None:
        query = query.where(EscrowPayment.release_status == release_status)
    result = await db.execute(query)
    return list(result.scalars().all())
