"""Webhook reconciliation listener.

Stripe delivers events at least once and in no particular order, so every
handler re-reads the object from the processor (or applies an absolute value)
instead of trusting the event body, and is safe to apply twice. Processed
event ids are stored; a redelivery is acknowledged without re-applying.
"""

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import InvalidSignature, InvalidStateTransition
from escrow_ledger.models.job import Job, JobStatus
from escrow_ledger.models.payment import (
    EscrowAction,
    EscrowPayment,
    PaymentStatus,
    ReleaseStatus,
    TransferRecord,
    TransferStatus,
)
from escrow_ledger.models.processor_event import ProcessorEvent
from escrow_ledger.services import jobs as job_service
from escrow_ledger.services import onboarding
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.gateway import PaymentGateway
from escrow_ledger.services.intents import apply_intent_snapshot
from escrow_ledger.services.job_state import transition_job

logger = logging.getLogger(__name__)


@dataclass
class HandledResult:
    event_id: str
    event_type: str
    handled: bool
    duplicate: bool = False
    detail: str | None = None

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "handled": self.handled,
            "duplicate": self.duplicate,
            "detail": self.detail,
        }


def verify_event(payload: bytes, sig_header: str | None) -> dict[str, Any]:
    """Check the Stripe-Signature header and decode the event.

    Raises InvalidSignature for a missing, stale or forged signature.
    """
    if not sig_header:
        logger.warning("Webhook rejected: missing Stripe-Signature header")
        raise InvalidSignature("Missing webhook signature")
    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            settings.stripe_webhook_secret,
            tolerance=settings.webhook_tolerance_seconds,
        )
    except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
        logger.warning("Webhook rejected: signature verification failed (%s)", exc)
        raise InvalidSignature("Webhook signature verification failed") from exc

    try:
        event = json.loads(payload)
    except ValueError as exc:
        logger.warning("Webhook rejected: signed payload is not JSON")
        raise InvalidSignature("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict) or "id" not in event or "type" not in event:
        raise InvalidSignature("Webhook payload is not an event")
    return event


async def handle_event(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> HandledResult:
    event_id = event["id"]
    event_type = event["type"]

    seen = await db.get(ProcessorEvent, event_id)
    if seen is not None and seen.handled:
        logger.info("Webhook %s (%s) already processed", event_id, event_type)
        return HandledResult(event_id, event_type, handled=True, duplicate=True)

    handler = HANDLERS.get(event_type)
    if handler is None:
        logger.info("Ignoring unhandled webhook event type %s (%s)", event_type, event_id)
        return HandledResult(event_id, event_type, handled=False)

    detail = await handler(db, gateway, event)

    # Re-read: handlers commit, and a concurrent delivery may have recorded it.
    seen = await db.get(ProcessorEvent, event_id)
    if seen is None:
        db.add(ProcessorEvent(
            event_id=event_id,
            event_type=event_type,
            handled=True,
            outcome={"detail": detail},
        ))
    else:
        seen.handled = True
        seen.outcome = {"detail": detail}
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return HandledResult(event_id, event_type, handled=True, duplicate=True, detail=detail)

    logger.info("Webhook %s (%s): %s", event_id, event_type, detail)
    return HandledResult(event_id, event_type, handled=True, detail=detail)


def _object(event: dict[str, Any]) -> dict[str, Any]:
    return event["data"]["object"]


# ---------------------------------------------------------------------------
# Payment intents
# ---------------------------------------------------------------------------

async def _escrow_by_intent(db: AsyncSession, intent_id: str) -> EscrowPayment | None:
    result = await db.execute(
        select(EscrowPayment).where(EscrowPayment.intent_id == intent_id)
    )
    return result.scalar_one_or_none()


async def _job_for(db: AsyncSession, escrow: EscrowPayment) -> Job:
    result = await db.execute(select(Job).where(Job.job_id == escrow.job_id))
    return result.scalar_one()


async def _on_payment_intent(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> str:
    intent_id = _object(event)["id"]
    escrow = await _escrow_by_intent(db, intent_id)
    if escrow is None:
        return f"untracked intent {intent_id}"

    previous = escrow.payment_status
    snapshot = await gateway.retrieve_payment_intent(intent_id)
    apply_intent_snapshot(escrow, snapshot)
    job = await _job_for(db, escrow)

    if escrow.payment_status == PaymentStatus.REQUIRES_PAYMENT_METHOD and snapshot.last_error:
        if previous != escrow.payment_status or event["type"] == "payment_intent.payment_failed":
            await log_audit(
                db, escrow.escrow_id, EscrowAction.PAYMENT_FAILED, escrow.amount_cents,
                actor="webhook", metadata={"error": snapshot.last_error},
            )
            logger.warning(
                "Payment for job %s failed: %s", job.job_id, snapshot.last_error,
            )
        await db.commit()
        return f"payment failed for job {job.job_id}"

    if escrow.payment_status == PaymentStatus.CANCELED:
        return await _on_intent_canceled(db, job, escrow)

    await db.commit()
    if escrow.payment_status in (PaymentStatus.REQUIRES_CAPTURE, PaymentStatus.SUCCEEDED):
        job = await job_service.record_authorization(db, job, source="webhook")
    return f"intent {escrow.payment_status.value}, job {job.status.value}"


async def _on_intent_canceled(db: AsyncSession, job: Job, escrow: EscrowPayment) -> str:
    if escrow.release_status == ReleaseStatus.OPEN:
        escrow.release_status = ReleaseStatus.VOIDED
        await log_audit(
            db, escrow.escrow_id, EscrowAction.VOIDED, escrow.amount_cents,
            actor="webhook", metadata={"reason": "canceled at processor"},
        )
    await db.commit()

    if job.status == JobStatus.AWAITING_PAYMENT:
        try:
            job = await transition_job(
                db, job, JobStatus.CANCELLED,
                cancelled_at=utcnow(),
                cancelled_by="processor",
                cancellation_reason="payment intent canceled",
            )
        except InvalidStateTransition:
            pass
    elif job.status in (JobStatus.PENDING, JobStatus.IN_PROGRESS, JobStatus.PENDING_CONFIRMATION):
        # The hold is gone (expired or cancelled outside the ledger) but work goes on.
        logger.error(
            "Payment hold for active job %s (%s) was canceled at the processor; "
            "operator attention required", job.job_id, job.status.value,
        )
    return f"intent canceled, job {job.status.value}"


# ---------------------------------------------------------------------------
# Connected accounts
# ---------------------------------------------------------------------------

async def _on_account_updated(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> str:
    account_id = _object(event)["id"]
    account = await onboarding.sync_account(db, gateway, account_id, source="webhook")
    if account is None:
        return f"untracked account {account_id}"
    return f"account {account_id} {account.onboarding_status.value}"


async def _on_account_deauthorized(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> str:
    account_id = event.get("account")
    if not account_id:
        return "no account on event"
    account = await onboarding.mark_deauthorized(db, account_id)
    if account is None:
        return f"untracked account {account_id}"
    return f"account {account_id} deauthorized"


# ---------------------------------------------------------------------------
# Transfers and payouts
# ---------------------------------------------------------------------------

async def _transfer_record(db: AsyncSession, obj: dict[str, Any]) -> TransferRecord | None:
    result = await db.execute(
        select(TransferRecord).where(TransferRecord.processor_transfer_id == obj["id"])
    )
    record = result.scalar_one_or_none()
    if record is not None:
        return record

    # Created at the processor but the local write was lost: match on metadata.
    metadata = obj.get("metadata") or {}
    try:
        job_id = uuid.UUID(metadata.get("job_id", ""))
    except ValueError:
        return None
    result = await db.execute(
        select(TransferRecord).where(
            TransferRecord.job_id == job_id,
            TransferRecord.processor_transfer_id.is_(None),
        )
    )
    for candidate in result.scalars().all():
        if candidate.recipient_role.value == metadata.get("recipient"):
            candidate.processor_transfer_id = obj["id"]
            return candidate
    return None


async def _on_transfer(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> str:
    obj = _object(event)
    event_type = event["type"]
    record = await _transfer_record(db, obj)
    if record is None:
        logger.info("%s for untracked transfer %s", event_type, obj["id"])
        return f"untracked transfer {obj['id']}"

    if event_type == "transfer.created":
        if record.status in (TransferStatus.PENDING, TransferStatus.FAILED):
            record.status = TransferStatus.CREATED
            record.failure_reason = None
    elif event_type == "transfer.paid":
        if record.status in (TransferStatus.PENDING, TransferStatus.CREATED):
            record.status = TransferStatus.PAID
    elif event_type == "transfer.failed":
        await _on_transfer_failed(db, record, obj)
    elif event_type == "transfer.reversed":
        reversed_cents = obj.get("amount_reversed") or 0
        record.reversed_cents = max(record.reversed_cents, min(reversed_cents, record.amount_cents))
        if record.reversed_cents > 0:
            record.status = (
                TransferStatus.REVERSED if record.reversible_cents <= 0
                else TransferStatus.PARTIALLY_REVERSED
            )

    await db.commit()
    return f"transfer {obj['id']} ({record.recipient_role.value}) {record.status.value}"


async def _on_transfer_failed(db: AsyncSession, record: TransferRecord, obj: dict[str, Any]) -> None:
    if record.status == TransferStatus.FAILED:
        return
    record.status = TransferStatus.FAILED
    record.failure_reason = obj.get("failure_message") or "transfer failed at processor"
    # The failed transfer id is spent; a retry needs a fresh idempotency key.
    record.attempt += 1
    record.processor_transfer_id = None

    escrow = await db.get(EscrowPayment, record.escrow_id)
    if escrow is not None and escrow.release_status == ReleaseStatus.RELEASED:
        escrow.release_status = ReleaseStatus.PARTIALLY_RELEASED
        escrow.last_error = f"{record.recipient_role.value}: {record.failure_reason}"
        await log_audit(
            db, escrow.escrow_id, EscrowAction.PARTIALLY_RELEASED, record.amount_cents,
            actor="webhook", metadata={"failed_roles": [record.recipient_role.value]},
        )
    logger.error(
        "Transfer %s of %d to %s for job %s failed: %s; operator attention required",
        obj["id"], record.amount_cents, record.recipient_role.value,
        record.job_id, record.failure_reason,
    )


async def _on_payout(
    db: AsyncSession, gateway: PaymentGateway, event: dict[str, Any]
) -> str:
    obj = _object(event)
    account_id = event.get("account") or "platform"
    if event["type"] == "payout.failed":
        logger.error(
            "Payout %s of %s %s to %s failed: %s",
            obj["id"], obj.get("amount"), obj.get("currency"), account_id,
            obj.get("failure_message") or obj.get("failure_code"),
        )
        return f"payout {obj['id']} failed"
    logger.info("Payout %s of %s %s to %s paid", obj["id"], obj.get("amount"), obj.get("currency"), account_id)
    return f"payout {obj['id']} paid"


EventHandler = Callable[[AsyncSession, PaymentGateway, dict[str, Any]], Awaitable[str]]

HANDLERS: dict[str, EventHandler] = {
    "payment_intent.amount_capturable_updated": _on_payment_intent,
    "payment_intent.succeeded": _on_payment_intent,
    "payment_intent.payment_failed": _on_payment_intent,
    "payment_intent.canceled": _on_payment_intent,
    "account.updated": _on_account_updated,
    "account.application.deauthorized": _on_account_deauthorized,
    "transfer.created": _on_transfer,
    "transfer.paid": _on_transfer,
    "transfer.failed": _on_transfer,
    "transfer.reversed": _on_transfer,
    "payout.paid": _on_payout,
    "payout.failed": _on_payout,
}
