"""Job status state machine.

Transition legality lives in ``VALID_TRANSITIONS`` (models/job.py) and is
checked only here. Every transition is a conditional UPDATE on the job's
current status, so two racing callers can't both move the same job: the
loser's UPDATE matches zero rows and it gets ``InvalidStateTransition``.

The state machine also gates which money operations are legal per status;
the intent manager and release engine consult ``assert_operation_allowed``
before touching the processor.
"""

import enum
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import ColumnElement, update
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import InvalidStateTransition
from escrow_ledger.models.job import Job, JobStatus, VALID_TRANSITIONS

logger = logging.getLogger(__name__)


class EscrowOperation(enum.Enum):
    AUTHORIZE = "authorize"
    CANCEL_INTENT = "cancel_intent"
    REFUND = "refund"
    CAPTURE = "capture"
    RELEASE = "release"
    REVERSE = "reverse"


OPERATIONS_BY_STATUS: dict[JobStatus, set[EscrowOperation]] = {
    JobStatus.AWAITING_PAYMENT: {EscrowOperation.AUTHORIZE, EscrowOperation.CANCEL_INTENT},
    JobStatus.PENDING: {EscrowOperation.CANCEL_INTENT, EscrowOperation.REFUND},
    JobStatus.IN_PROGRESS: {EscrowOperation.CANCEL_INTENT, EscrowOperation.REFUND},
    JobStatus.PENDING_CONFIRMATION: set(),
    JobStatus.COMPLETED: {
        EscrowOperation.CAPTURE,
        EscrowOperation.RELEASE,
        EscrowOperation.REVERSE,
        EscrowOperation.REFUND,
    },
    # A cancelled job may still need its hold voided or its capture refunded.
    JobStatus.CANCELLED: {EscrowOperation.CANCEL_INTENT, EscrowOperation.REFUND},
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def assert_transition(current: JobStatus, target: JobStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateTransition(
            f"Cannot transition from {current.value} to {target.value}",
            current=current.value,
            target=target.value,
        )


def assert_operation_allowed(status: JobStatus, operation: EscrowOperation) -> None:
    if operation not in OPERATIONS_BY_STATUS.get(status, set()):
        raise InvalidStateTransition(
            f"Cannot {operation.value.replace('_', ' ')} while job is {status.value}",
            current=status.value,
            operation=operation.value,
        )


async def transition_job(
    db: AsyncSession,
    job: Job,
    target: JobStatus,
    *conditions: ColumnElement[bool],
    **values: object,
) -> Job:
    """Move ``job`` to ``target`` iff it is still in the status we loaded.

    Extra SQL ``conditions`` narrow the update further (e.g. the assigned
    provider, or an auto-release deadline). Commits on success.
    """
    source = job.status
    assert_transition(source, target)

    result = await db.execute(
        update(Job)
        .where(Job.job_id == job.job_id, Job.status == source, *conditions)
        .values(status=target, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(job)
        raise InvalidStateTransition(
            f"Job is no longer {source.value} (currently {job.status.value})",
            current=job.status.value,
            target=target.value,
        )

    await db.commit()
    await db.refresh(job)
    logger.info("Job %s: %s -> %s", job.job_id, source.value, target.value)
    return job


# ---------------------------------------------------------------------------
# Working-day arithmetic for auto-release
# ---------------------------------------------------------------------------

def business_tz() -> timezone:
    return timezone(timedelta(hours=settings.business_utc_offset_hours))


def add_working_days(start: datetime, days: int) -> datetime:
    """Add ``days`` working days (Mon-Fri) to ``start``, keeping the time of day.

    Weekdays are judged on the business calendar, not UTC.
    """
    local = start.astimezone(business_tz())
    added = 0
    while added < days:
        local += timedelta(days=1)
        if local.weekday() < 5:
            added += 1
    return local.astimezone(start.tzinfo)


def auto_release_due_at(marked_done_at: datetime) -> datetime:
    return add_working_days(marked_done_at, settings.auto_release_working_days)


def is_auto_release_due(job: Job, now: datetime) -> bool:
    """Strictly past the due time, and still awaiting confirmation."""
    return (
        job.status == JobStatus.PENDING_CONFIRMATION
        and job.auto_release_at is not None
        and now > job.auto_release_at
    )
