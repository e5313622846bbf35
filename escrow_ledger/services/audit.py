import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.models.payment import EscrowAction, EscrowAuditLog


async def log_audit(
    db: AsyncSession,
    escrow_id: uuid.UUID,
    action: EscrowAction,
    amount_cents: int,
    actor: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Append to the immutable audit log. Flushed with the caller's commit."""
    entry = EscrowAuditLog(
        escrow_audit_id=uuid.uuid4(),
        escrow_id=escrow_id,
        action=action,
        actor=actor,
        amount_cents=amount_cents,
        metadata_=metadata,
    )
    db.add(entry)
