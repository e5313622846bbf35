"""Pydantic v2 schemas for connected-account onboarding."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectedAccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    connected_account_id: uuid.UUID
    processor_account_id: str
    owner_role: str
    onboarding_status: str
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool
    requirements_due: list[str] | None
    disabled_reason: str | None
    payout_interval: str | None
    last_synced_at: datetime | None

    @field_validator("owner_role", "onboarding_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)


class OnboardingLinkRequest(BaseModel):
    return_url: str | None = Field(None, max_length=2048)
    refresh_url: str | None = Field(None, max_length=2048)


class LinkResponse(BaseModel):
    url: str
    expires_at: datetime | None = None


class PayoutScheduleUpdate(BaseModel):
    schedule: str = Field(..., pattern="^(daily|weekly|monthly|instant)$")
