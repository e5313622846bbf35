"""Initial escrow ledger schema.

Revision ID: 001
Revises:
Create Date: 2026-10-12
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUM_TYPES = (
    "userrole", "userstatus", "jobstatus", "paymentstatus", "releasestatus",
    "escrowaction", "recipientrole", "transferstatus", "accountownerrole",
    "onboardingstatus", "notificationstatus",
)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("user_id", sa.Uuid(), primary_key=True),
        sa.Column("public_key", sa.String(128), unique=True, nullable=False),
        sa.Column("role", sa.Enum("customer", "provider", "operator", name="userrole"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending_approval", "active", "rejected", "suspended", name="userstatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("phone", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("provider_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=True),
        sa.Column("service_type", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("location", sa.String(512), nullable=False),
        sa.Column("service_fee_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "awaiting_payment", "pending", "in_progress", "pending_confirmation",
                "completed", "cancelled", name="jobstatus",
            ),
            nullable=False,
            server_default="awaiting_payment",
        ),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("marked_done_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_release_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_by", sa.String(64), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by", sa.String(64), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("reopen_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_rejection_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_customer_id", "jobs", ["customer_id"])
    op.create_index("ix_jobs_provider_id", "jobs", ["provider_id"])
    op.create_index(
        "ix_jobs_auto_release_at", "jobs", ["auto_release_at"],
        postgresql_where=sa.text("status = 'pending_confirmation'"),
    )

    op.create_table(
        "escrow_payments",
        sa.Column("escrow_id", sa.Uuid(), primary_key=True),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False),
        sa.Column("customer_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("intent_id", sa.String(255), unique=True, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("service_fee_cents", sa.Integer(), nullable=False),
        sa.Column("platform_fee_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "payment_status",
            sa.Enum(
                "requires_payment_method", "requires_confirmation", "requires_action",
                "processing", "requires_capture", "succeeded", "canceled",
                name="paymentstatus",
            ),
            nullable=False,
        ),
        sa.Column(
            "release_status",
            sa.Enum(
                "open", "capture_failed", "partially_released", "released", "voided", "refunded",
                name="releasestatus",
            ),
            nullable=False,
            server_default="open",
        ),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("refund_id", sa.String(255), nullable=True),
        sa.Column("refunded_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("released_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_escrow_payments_release_status", "escrow_payments", ["release_status"])

    op.create_table(
        "transfers",
        sa.Column("transfer_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column("job_id", sa.Uuid(), sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "recipient_role",
            sa.Enum("partner_a", "partner_b", "provider", name="recipientrole"),
            nullable=False,
        ),
        sa.Column("destination_account_id", sa.String(255), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "created", "paid", "failed", "skipped", "partially_reversed", "reversed",
                name="transferstatus",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("processor_transfer_id", sa.String(255), unique=True, nullable=True),
        sa.Column("reversed_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("job_id", "recipient_role", name="uq_transfers_job_id_recipient_role"),
    )

    op.create_table(
        "escrow_audit_log",
        sa.Column("escrow_audit_id", sa.Uuid(), primary_key=True),
        sa.Column("escrow_id", sa.Uuid(), sa.ForeignKey("escrow_payments.escrow_id", ondelete="RESTRICT"), nullable=False),
        sa.Column(
            "action",
            sa.Enum(
                "created", "authorized", "payment_failed", "captured", "capture_failed",
                "released", "partially_released", "transfer_retried", "reversed",
                "voided", "refunded",
                name="escrowaction",
            ),
            nullable=False,
        ),
        sa.Column("actor", sa.String(64), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", JSONB, nullable=True),
    )
    op.create_index("ix_escrow_audit_log_escrow_id", "escrow_audit_log", ["escrow_id"])

    op.create_table(
        "connected_accounts",
        sa.Column("connected_account_id", sa.Uuid(), primary_key=True),
        sa.Column("processor_account_id", sa.String(255), unique=True, nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), sa.ForeignKey("users.user_id", ondelete="RESTRICT"), unique=True, nullable=True),
        sa.Column(
            "owner_role",
            sa.Enum("provider", "partner_a", "partner_b", name="accountownerrole"),
            nullable=False,
        ),
        sa.Column("email", sa.String(320), nullable=True),
        sa.Column(
            "onboarding_status",
            sa.Enum("pending", "complete", "deauthorized", name="onboardingstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("details_submitted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("charges_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payouts_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("requirements_due", JSONB, nullable=True),
        sa.Column("disabled_reason", sa.String(255), nullable=True),
        sa.Column("payout_interval", sa.String(16), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "processor_events",
        sa.Column("event_id", sa.String(255), primary_key=True),
        sa.Column("event_type", sa.String(128), nullable=False),
        sa.Column("handled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("outcome", JSONB, nullable=True),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "notifications",
        sa.Column("notification_id", sa.Uuid(), primary_key=True),
        sa.Column("recipient_user_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("channel", sa.String(16), nullable=False, server_default="email"),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", JSONB, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "sent", "failed", name="notificationstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_job_id", "notifications", ["job_id"])


def downgrade() -> None:
    op.drop_table("notifications")
    op.drop_table("processor_events")
    op.drop_table("connected_accounts")
    op.drop_table("escrow_audit_log")
    op.drop_table("transfers")
    op.drop_table("escrow_payments")
    op.drop_table("jobs")
    op.drop_table("users")
    for name in ENUM_TYPES:
        op.execute(f"DROP TYPE IF EXISTS {name}")
