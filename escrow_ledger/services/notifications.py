"""Best-effort notifications on job transitions.

Each message is recorded in the ``notifications`` table before it is sent, and
its outcome is written back afterwards. Nothing here may fail the caller: the
transition that triggered the notification has already been committed.
"""

import logging
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.models.job import Job
from escrow_ledger.models.notification import Notification, NotificationStatus
from escrow_ledger.models.user import User
from escrow_ledger.services.email import EmailSender, get_email_sender

logger = logging.getLogger(__name__)

CUSTOMER = "customer"
PROVIDER = "provider"

# event type -> (recipients, subject, body)
_TEMPLATES: dict[str, tuple[tuple[str, ...], str, str]] = {
    "job.payment_authorized": (
        (CUSTOMER,),
        "Payment authorized for your {service_type} job",
        "Your card has been authorized for {total}. You will only be charged "
        "once you confirm the job is done.",
    ),
    "job.claimed": (
        (CUSTOMER,),
        "A handyman accepted your {service_type} job",
        "Your job at {location} has been accepted and is now in progress.",
    ),
    "job.marked_done": (
        (CUSTOMER,),
        "Please confirm your {service_type} job",
        "The handyman has marked your job as done. Please confirm or report a "
        "problem. If we hear nothing, payment is released on {auto_release_at}.",
    ),
    "job.reopened": (
        (PROVIDER,),
        "The customer reopened your {service_type} job",
        "The customer did not accept the completion claim: {reason}",
    ),
    "job.completed": (
        (CUSTOMER, PROVIDER),
        "Your {service_type} job is complete",
        "The job has been completed and payment has been released.",
    ),
    "job.cancelled": (
        (CUSTOMER, PROVIDER),
        "Your {service_type} job was cancelled",
        "The job was cancelled ({reason}). Any hold on the card has been released "
        "or refunded.",
    ),
}


class _Defaults(dict):
    def __missing__(self, key: str) -> str:
        return ""


async def notify_job_event(
    db: AsyncSession,
    job: Job,
    event_type: str,
    details: dict | None = None,
    sender: EmailSender | None = None,
) -> list[Notification]:
    """Email the parties of ``job`` about ``event_type``. Never raises."""
    template = _TEMPLATES.get(event_type)
    if template is None:
        logger.debug("No notification template for %s", event_type)
        return []

    try:
        return await _deliver(db, job, event_type, template, details or {}, sender)
    except Exception:
        logger.exception("Notification %s for job %s could not be recorded", event_type, job.job_id)
        await db.rollback()
        await db.refresh(job)
        return []


async def _deliver(
    db: AsyncSession,
    job: Job,
    event_type: str,
    template: tuple[tuple[str, ...], str, str],
    details: dict,
    sender: EmailSender | None,
) -> list[Notification]:
    recipients, subject_tpl, body_tpl = template
    user_ids = {CUSTOMER: job.customer_id, PROVIDER: job.provider_id}
    wanted = [user_ids[r] for r in recipients if user_ids[r] is not None]
    if not wanted:
        return []

    result = await db.execute(select(User).where(User.user_id.in_(wanted)))
    users = {u.user_id: u for u in result.scalars().all()}

    fields = _Defaults(
        job_id=str(job.job_id),
        service_type=job.service_type,
        location=job.location,
        total=f"{job.total_cents / 100:.2f} {job.currency.upper()}",
        auto_release_at=job.auto_release_at.isoformat() if job.auto_release_at else "",
        **{k: str(v) for k, v in details.items()},
    )
    subject = subject_tpl.format_map(fields)
    body = body_tpl.format_map(fields)

    sent: list[tuple[Notification, User]] = []
    for user_id in wanted:
        user = users.get(user_id)
        if user is None:
            continue
        notification = Notification(
            notification_id=uuid.uuid4(),
            recipient_user_id=user_id,
            job_id=job.job_id,
            channel="email",
            event_type=event_type,
            payload={"subject": subject, "body": body},
            status=NotificationStatus.PENDING,
            attempts=0,
        )
        db.add(notification)
        sent.append((notification, user))
    await db.commit()

    sender = sender or get_email_sender()
    for notification, user in sent:
        notification.attempts += 1
        try:
            await sender.send(user.email, subject, body)
        except Exception as exc:
            notification.status = NotificationStatus.FAILED
            notification.last_error = str(exc)[:500]
            logger.warning(
                "Notification %s to %s failed: %s", event_type, user.user_id, exc,
            )
        else:
            notification.status = NotificationStatus.SENT
    await db.commit()
    return [n for n, _ in sent]
