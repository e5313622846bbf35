"""Periodic lifecycle sweeps.

Two sweeps run every ``sweep_interval_seconds``:

- auto-release: jobs in pending_confirmation strictly past their working-day
  due time are completed and their escrow released;
- abandoned checkout: jobs still awaiting payment after
  ``abandoned_job_minutes`` are cancelled and their intents voided.

Each job is handled in its own session, and every step is a conditional
update, so a sweep can be re-run (or race another instance) without doing
anything twice. A Redis lock keeps the periodic sweep to one instance per
interval.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import LedgerError, backoff_delay
from escrow_ledger.models.job import AUTO_RELEASE_ACTOR, Job, JobStatus
from escrow_ledger.models.payment import EscrowPayment, ReleaseStatus
from escrow_ledger.services import jobs as job_service
from escrow_ledger.services.gateway import PaymentGateway
from escrow_ledger.services.intents import IntentStore

logger = logging.getLogger(__name__)

LOCK_KEY = "sweeper:lock"

SessionFactory = Callable[[], AsyncSession]


@dataclass
class SweepReport:
    released: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"released": self.released, "cancelled": self.cancelled, "failed": self.failed}


async def _due_for_release(session_factory: SessionFactory, now: datetime) -> list[uuid.UUID]:
    async with session_factory() as db:
        result = await db.execute(
            select(Job.job_id).where(
                Job.status == JobStatus.PENDING_CONFIRMATION,
                Job.auto_release_at.is_not(None),
                Job.auto_release_at < now,
            )
        )
        due = list(result.scalars().all())
        # Auto-completed earlier but the release didn't finish.
        result = await db.execute(
            select(Job.job_id)
            .join(EscrowPayment, EscrowPayment.job_id == Job.job_id)
            .where(
                Job.status == JobStatus.COMPLETED,
                Job.completed_by == AUTO_RELEASE_ACTOR,
                EscrowPayment.release_status.in_(
                    [ReleaseStatus.OPEN, ReleaseStatus.PARTIALLY_RELEASED]
                ),
            )
        )
        return due + list(result.scalars().all())


async def release_overdue_confirmations(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    now: datetime | None = None,
    report: SweepReport | None = None,
) -> SweepReport:
    now = now or utcnow()
    report = report or SweepReport()
    for job_id in await _due_for_release(session_factory, now):
        try:
            async with session_factory() as db:
                result = await job_service.auto_complete(db, gateway, job_id, now)
            if result is not None:
                report.released.append(str(job_id))
                logger.info("Auto-released job %s", job_id)
        except LedgerError as exc:
            report.failed[str(job_id)] = exc.code
            logger.warning("Auto-release of job %s blocked: %s (%s)", job_id, exc.detail, exc.code)
        except Exception:
            report.failed[str(job_id)] = "error"
            logger.exception("Auto-release of job %s failed", job_id)
    return report


async def cancel_abandoned_jobs(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    store: IntentStore,
    now: datetime | None = None,
    report: SweepReport | None = None,
) -> SweepReport:
    now = now or utcnow()
    report = report or SweepReport()
    cutoff = now - timedelta(minutes=settings.abandoned_job_minutes)
    async with session_factory() as db:
        result = await db.execute(
            select(Job.job_id).where(
                Job.status == JobStatus.AWAITING_PAYMENT,
                Job.created_at < cutoff,
            )
        )
        stale = list(result.scalars().all())

    for job_id in stale:
        try:
            async with session_factory() as db:
                job = await job_service.cancel_abandoned(db, gateway, store, job_id, now)
            if job is not None:
                report.cancelled.append(str(job_id))
                logger.info("Cancelled abandoned job %s", job_id)
        except LedgerError as exc:
            report.failed[str(job_id)] = exc.code
            logger.warning("Cancelling abandoned job %s failed: %s (%s)", job_id, exc.detail, exc.code)
        except Exception:
            report.failed[str(job_id)] = "error"
            logger.exception("Cancelling abandoned job %s failed", job_id)
    return report


async def run_sweep(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    store: IntentStore,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
) -> SweepReport | None:
    """Run both sweeps once. With ``redis``, skip (return None) if another instance holds the lock."""
    if redis is not None:
        ttl = max(settings.sweep_interval_seconds - 1, 1)
        if not await redis.set(LOCK_KEY, "1", nx=True, ex=ttl):
            logger.debug("Sweep skipped, another instance holds the lock")
            return None

    now = now or utcnow()
    report = SweepReport()
    await release_overdue_confirmations(session_factory, gateway, now, report)
    await cancel_abandoned_jobs(session_factory, gateway, store, now, report)
    if report.released or report.cancelled or report.failed:
        logger.info(
            "Sweep: %d released, %d cancelled, %d failed",
            len(report.released), len(report.cancelled), len(report.failed),
        )
    return report


async def run_sweeper() -> None:
    """Background loop started from the app lifespan."""
    from escrow_ledger.database import async_session_factory
    from escrow_ledger.redis import redis_client
    from escrow_ledger.services.gateway import get_gateway
    from escrow_ledger.services.intents import get_intent_store

    redis = redis_client()
    failures = 0
    while True:
        try:
            await run_sweep(async_session_factory, get_gateway(), get_intent_store(), redis)
            failures = 0
            await asyncio.sleep(settings.sweep_interval_seconds)
        except asyncio.CancelledError:
            logger.info("Sweeper shutting down")
            break
        except Exception:
            delay = backoff_delay(
                failures,
                base=settings.sweep_retry_base_seconds,
                max_delay=settings.sweep_interval_seconds,
            )
            failures += 1
            logger.exception("Sweeper error (%d in a row), retrying in %.1fs", failures, delay)
            await asyncio.sleep(delay)

    await redis.aclose()
