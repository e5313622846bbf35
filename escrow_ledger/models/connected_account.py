"""Connected payout sub-accounts for providers and platform partners."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import Boolean, Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from escrow_ledger.database import Base, JSONType, UTCDateTime, utcnow


class AccountOwnerRole(enum.Enum):
    PROVIDER = "provider"
    PARTNER_A = "partner_a"
    PARTNER_B = "partner_b"


class OnboardingStatus(enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    DEAUTHORIZED = "deauthorized"


class ConnectedAccount(Base):
    __tablename__ = "connected_accounts"

    connected_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    processor_account_id: Mapped[str] = mapped_column(
        String(255), unique=True, nullable=False
    )
    # Null for partner accounts, which belong to the platform rather than a user.
    owner_user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.user_id", ondelete="RESTRICT"), unique=True, nullable=True
    )
    owner_role: Mapped[AccountOwnerRole] = mapped_column(
        Enum(AccountOwnerRole, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    onboarding_status: Mapped[OnboardingStatus] = mapped_column(
        Enum(OnboardingStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=OnboardingStatus.PENDING,
    )
    details_submitted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    charges_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    payouts_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    requirements_due: Mapped[list | None] = mapped_column(JSONType, nullable=True, default=list)
    disabled_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payout_interval: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    @property
    def can_receive_transfers(self) -> bool:
        return (
            self.onboarding_status == OnboardingStatus.COMPLETE
            and self.payouts_enabled
        )
