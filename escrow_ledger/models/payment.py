"""Escrowed payment, transfer and audit log models."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.database import Base, JSONType, UTCDateTime, utcnow


class PaymentStatus(enum.Enum):
    """Mirror of the processor-side PaymentIntent status."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


# Statuses where the intent can still be cancelled rather than refunded.
CANCELLABLE_PAYMENT_STATUSES = {
    PaymentStatus.REQUIRES_PAYMENT_METHOD,
    PaymentStatus.REQUIRES_CONFIRMATION,
    PaymentStatus.REQUIRES_ACTION,
    PaymentStatus.PROCESSING,
    PaymentStatus.REQUIRES_CAPTURE,
}


class ReleaseStatus(enum.Enum):
    OPEN = "open"  # Intent exists, funds not yet settled anywhere
    CAPTURE_FAILED = "capture_failed"
    PARTIALLY_RELEASED = "partially_released"
    RELEASED = "released"
    VOIDED = "voided"  # Intent cancelled, no money moved
    REFUNDED = "refunded"


# Release states an operator has to look at.
OPERATOR_QUEUE_STATUSES = {ReleaseStatus.CAPTURE_FAILED, ReleaseStatus.PARTIALLY_RELEASED}


class EscrowAction(enum.Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    PAYMENT_FAILED = "payment_failed"
    CAPTURED = "captured"
    CAPTURE_FAILED = "capture_failed"
    RELEASED = "released"
    PARTIALLY_RELEASED = "partially_released"
    TRANSFER_RETRIED = "transfer_retried"
    REVERSED = "reversed"
    VOIDED = "voided"
    REFUNDED = "refunded"


class RecipientRole(enum.Enum):
    PARTNER_A = "partner_a"
    PARTNER_B = "partner_b"
    PROVIDER = "provider"


class TransferStatus(enum.Enum):
    PENDING = "pending"
    CREATED = "created"
    PAID = "paid"
    FAILED = "failed"
    SKIPPED = "skipped"  # Zero amount, nothing sent
    PARTIALLY_REVERSED = "partially_reversed"
    REVERSED = "reversed"


# Transfers that moved money and may still be reversed.
REVERSIBLE_TRANSFER_STATUSES = {
    TransferStatus.CREATED,
    TransferStatus.PAID,
    TransferStatus.PARTIALLY_REVERSED,
}


class EscrowPayment(Base):
    __tablename__ = "escrow_payments"

    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False
    )
    intent_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    service_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=PaymentStatus.REQUIRES_PAYMENT_METHOD,
    )
    release_status: Mapped[ReleaseStatus] = mapped_column(
        Enum(ReleaseStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=ReleaseStatus.OPEN,
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    refund_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    refunded_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    authorized_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    captured_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )


class TransferRecord(Base):
    """One row per recipient of a release."""

    __tablename__ = "transfers"
    __table_args__ = (UniqueConstraint("job_id", "recipient_role"),)

    transfer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False
    )
    recipient_role: Mapped[RecipientRole] = mapped_column(
        Enum(RecipientRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    destination_account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[TransferStatus] = mapped_column(
        Enum(TransferStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=TransferStatus.PENDING,
    )
    processor_transfer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True
    )
    reversed_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Part of the idempotency key; bumped after a definitive failure.
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )

    @property
    def reversible_cents(self) -> int:
        return self.amount_cents - self.reversed_cents


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    escrow_audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False
    )
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    actor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
