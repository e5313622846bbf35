"""Payment intent manager.

Authorizes (never captures) the job total against the customer's card. The
capture happens later, in the release engine; until then the funds are held
on the card. That hold is the escrow.

Creation is idempotent per job at three levels:

1. An ``IntentStore`` collapses concurrent callers in flight onto one
   creation, and replays the finished result to later callers. A failed
   creation is evicted so the next call retries.
2. The ``escrow_payments`` row (unique per job) lets any instance resume an
   existing intent instead of creating another.
3. The processor-side idempotency key is derived from the job id, so even a
   duplicate request that slips through creates nothing new.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from functools import lru_cache
from typing import Protocol

import redis.asyncio as aioredis
from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import InvalidRequest, InvalidStateTransition, PaymentProviderUnavailable
from escrow_ledger.models.job import Job, JobStatus
from escrow_ledger.models.payment import EscrowAction, EscrowPayment, PaymentStatus
from escrow_ledger.models.user import User
from escrow_ledger.services.audit import log_audit
from escrow_ledger.services.gateway import IntentSnapshot, PaymentGateway
from escrow_ledger.services.job_state import EscrowOperation, assert_operation_allowed

logger = logging.getLogger(__name__)


@dataclass
class IntentHandle:
    """What a customer's checkout needs to confirm the card."""
    job_id: str
    intent_id: str
    client_secret: str | None
    status: str
    amount_cents: int
    currency: str

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "IntentHandle":
        return cls(**json.loads(raw))


IntentFactory = Callable[[], Awaitable[IntentHandle]]


# ---------------------------------------------------------------------------
# Idempotency stores
# ---------------------------------------------------------------------------

class IntentStore(Protocol):
    async def get_or_create(self, job_id: str, factory: IntentFactory) -> IntentHandle: ...

    async def evict(self, job_id: str) -> None: ...


class InMemoryIntentStore:
    """Process-local store. Correct only for a single-instance deployment.

    Finished handles are kept for ``ttl_seconds`` and at most ``max_entries``
    of them, oldest dropped first. A dropped job resumes from its escrow row.
    """

    def __init__(self, ttl_seconds: float = 86400, max_entries: int = 10_000) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._entries: dict[str, asyncio.Future[IntentHandle]] = {}
        self._finished_at: dict[str, float] = {}  # Insertion order is completion order

    def __len__(self) -> int:
        return len(self._entries)

    def _prune(self, now: float) -> None:
        while self._finished_at:
            job_id, finished = next(iter(self._finished_at.items()))
            if now - finished < self.ttl_seconds and len(self._finished_at) < self.max_entries:
                break
            del self._finished_at[job_id]
            self._entries.pop(job_id, None)

    async def get_or_create(self, job_id: str, factory: IntentFactory) -> IntentHandle:
        loop = asyncio.get_running_loop()
        self._prune(loop.time())
        entry = self._entries.get(job_id)
        if entry is not None:
            return await asyncio.shield(entry)

        future: asyncio.Future[IntentHandle] = loop.create_future()
        self._entries[job_id] = future
        try:
            handle = await factory()
        except asyncio.CancelledError:
            self._entries.pop(job_id, None)
            future.cancel()
            raise
        except Exception as exc:
            self._entries.pop(job_id, None)
            future.set_exception(exc)
            future.exception()  # Mark retrieved; waiters (if any) still get it
            raise
        future.set_result(handle)
        self._finished_at[job_id] = loop.time()
        return handle

    async def evict(self, job_id: str) -> None:
        self._entries.pop(job_id, None)
        self._finished_at.pop(job_id, None)


class RedisIntentStore:
    """Shared store for multi-instance deployments.

    A ``SET NX`` marker claims the creation; other instances poll until the
    marker is replaced by the finished handle or disappears (creator failed,
    in which case they try to claim it themselves).
    """

    KEY_PREFIX = "intent:job:"
    IN_FLIGHT = b"in_flight"

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int,
        wait_seconds: int,
        poll_interval: float = 0.1,
    ) -> None:
        self.redis = redis
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_interval = poll_interval

    async def get_or_create(self, job_id: str, factory: IntentFactory) -> IntentHandle:
        key = f"{self.KEY_PREFIX}{job_id}"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wait_seconds

        while True:
            # The in-flight marker expires on its own if its owner dies mid-call.
            if await self.redis.set(key, self.IN_FLIGHT, nx=True, ex=self.wait_seconds * 2):
                try:
                    handle = await factory()
                except BaseException:
                    await self.redis.delete(key)
                    raise
                await self.redis.set(key, handle.to_json(), ex=self.ttl_seconds)
                return handle

            raw = await self.redis.get(key)
            if raw is not None and raw != self.IN_FLIGHT:
                return IntentHandle.from_json(raw)
            if loop.time() >= deadline:
                raise PaymentProviderUnavailable(
                    "Payment setup for this job is still in progress, please retry",
                    job_id=job_id,
                )
            await asyncio.sleep(self.poll_interval)

    async def evict(self, job_id: str) -> None:
        await self.redis.delete(f"{self.KEY_PREFIX}{job_id}")


@lru_cache
def get_intent_store() -> IntentStore:
    if settings.intent_store_backend == "redis":
        from escrow_ledger.redis import redis_client
        return RedisIntentStore(
            redis_client(),
            ttl_seconds=settings.intent_store_ttl_seconds,
            wait_seconds=settings.intent_store_wait_seconds,
        )
    return InMemoryIntentStore(
        ttl_seconds=settings.intent_store_ttl_seconds,
        max_entries=settings.intent_store_max_entries,
    )


# ---------------------------------------------------------------------------
# Intent operations
# ---------------------------------------------------------------------------

def intent_idempotency_key(job_id: uuid.UUID, attempt: int = 1) -> str:
    return f"create_intent:{job_id}:{attempt}"


def apply_intent_snapshot(escrow: EscrowPayment, snapshot: IntentSnapshot) -> bool:
    """Copy processor truth onto the local mirror. Returns True if status changed.

    Safe to apply any number of times, in any order relative to the
    synchronous path: it only ever sets fields to what the processor says.
    """
    status = PaymentStatus(snapshot.status)
    changed = escrow.payment_status != status
    escrow.payment_status = status
    if snapshot.last_error:
        escrow.last_error = snapshot.last_error
    if status == PaymentStatus.REQUIRES_CAPTURE and escrow.authorized_at is None:
        escrow.authorized_at = utcnow()
    if status == PaymentStatus.SUCCEEDED and escrow.captured_at is None:
        escrow.captured_at = utcnow()
    return changed


def _handle_for(job_id: uuid.UUID, snapshot: IntentSnapshot) -> IntentHandle:
    return IntentHandle(
        job_id=str(job_id),
        intent_id=snapshot.id,
        client_secret=snapshot.client_secret,
        status=snapshot.status,
        amount_cents=snapshot.amount_cents,
        currency=snapshot.currency,
    )


async def get_escrow_for_job(
    db: AsyncSession, job_id: uuid.UUID, for_update: bool = False
) -> EscrowPayment | None:
    query = select(EscrowPayment).where(EscrowPayment.job_id == job_id)
    if for_update:
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def create_intent(
    db: AsyncSession,
    gateway: PaymentGateway,
    store: IntentStore,
    job_id: uuid.UUID | None,
    customer: User,
    idempotency_key: str | None = None,
) -> IntentHandle:
    """Authorize the job total on the customer's card, at most once per job."""
    if job_id is None:
        raise InvalidRequest("job_id is required to create a payment intent")

    result = await db.execute(select(Job).where(Job.job_id == job_id))
    job = result.scalar_one_or_none()
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.customer_id != customer.user_id:
        raise HTTPException(status_code=403, detail="Only the customer can pay for this job")

    key = idempotency_key or intent_idempotency_key(job.job_id)

    async def _create() -> IntentHandle:
        return await _create_or_resume(db, gateway, job, customer, key)

    return await store.get_or_create(str(job.job_id), _create)


async def _create_or_resume(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    customer: User,
    idempotency_key: str,
) -> IntentHandle:
    existing = await get_escrow_for_job(db, job.job_id)
    if existing is not None:
        return await _resume(db, gateway, job, existing)

    assert_operation_allowed(job.status, EscrowOperation.AUTHORIZE)

    metadata = {
        "job_id": str(job.job_id),
        "customer_id": str(job.customer_id),
        "provider_id": str(job.provider_id) if job.provider_id else "",
        "service_type": job.service_type,
        "service_fee_cents": str(job.service_fee_cents),
        "platform_fee_cents": str(job.platform_fee_cents),
        "total_cents": str(job.total_cents),
        "platform": "escrow-ledger",
    }
    snapshot = await gateway.create_payment_intent(
        amount_cents=job.total_cents,
        currency=job.currency,
        metadata=metadata,
        idempotency_key=idempotency_key,
        description=f"{job.service_type} service - Job #{job.job_id}",
        receipt_email=customer.email,
    )

    escrow = EscrowPayment(
        escrow_id=uuid.uuid4(),
        job_id=job.job_id,
        customer_id=job.customer_id,
        intent_id=snapshot.id,
        amount_cents=snapshot.amount_cents,
        service_fee_cents=job.service_fee_cents,
        platform_fee_cents=job.platform_fee_cents,
        currency=snapshot.currency,
    )
    apply_intent_snapshot(escrow, snapshot)
    db.add(escrow)
    await log_audit(
        db, escrow.escrow_id, EscrowAction.CREATED, escrow.amount_cents,
        actor=str(customer.user_id), metadata={"intent_id": snapshot.id},
    )
    try:
        await db.commit()
    except IntegrityError:
        # Another instance recorded the same intent first.
        await db.rollback()
        existing = await get_escrow_for_job(db, job.job_id)
        if existing is None:
            raise
        await db.refresh(job)
        return await _resume(db, gateway, job, existing)

    logger.info(
        "Created payment intent %s for job %s (%d %s)",
        snapshot.id, job.job_id, snapshot.amount_cents, snapshot.currency,
    )
    return _handle_for(job.job_id, snapshot)


async def _resume(
    db: AsyncSession, gateway: PaymentGateway, job: Job, escrow: EscrowPayment
) -> IntentHandle:
    if escrow.payment_status == PaymentStatus.CANCELED:
        raise InvalidStateTransition(
            "The payment for this job was cancelled", current=job.status.value,
        )
    snapshot = await gateway.retrieve_payment_intent(escrow.intent_id)
    if apply_intent_snapshot(escrow, snapshot):
        await db.commit()
    return _handle_for(job.job_id, snapshot)


async def get_status(
    db: AsyncSession, gateway: PaymentGateway, intent_id: str
) -> IntentSnapshot:
    """Read-through to the processor; refreshes the local mirror as a side effect."""
    snapshot = await gateway.retrieve_payment_intent(intent_id)
    result = await db.execute(
        select(EscrowPayment).where(EscrowPayment.intent_id == intent_id)
    )
    escrow = result.scalar_one_or_none()
    if escrow is not None and apply_intent_snapshot(escrow, snapshot):
        await db.commit()
    return snapshot
