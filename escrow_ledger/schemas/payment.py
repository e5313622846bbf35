"""Pydantic v2 schemas for payments, escrow and transfers."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class IntentResponse(BaseModel):
    job_id: uuid.UUID
    intent_id: str
    client_secret: str | None
    status: str
    amount_cents: int
    currency: str


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: uuid.UUID
    job_id: uuid.UUID
    intent_id: str
    amount_cents: int
    service_fee_cents: int
    platform_fee_cents: int
    currency: str
    payment_status: str
    release_status: str
    last_error: str | None
    refunded_cents: int
    authorized_at: datetime | None
    captured_at: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None

    @field_validator("payment_status", "release_status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        return _enum_value(v)


class TransferResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transfer_id: uuid.UUID
    recipient_role: str
    destination_account_id: str
    amount_cents: int
    currency: str
    status: str
    processor_transfer_id: str | None
    reversed_cents: int
    failure_reason: str | None

    @field_validator("recipient_role", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class SplitResponse(BaseModel):
    provider_cents: int
    partner_a_cents: int
    partner_b_cents: int
    total_cents: int


class ReleaseResponse(BaseModel):
    job_id: uuid.UUID
    already_released: bool
    escrow: EscrowResponse
    split: SplitResponse
    transfers: list[TransferResponse]


class ReverseTransfers(BaseModel):
    """Omit ``amounts`` for a full reversal of every transfer.

    Otherwise maps recipient role to the amount (cents) to reverse; roles not
    listed are left alone.
    """
    amounts: dict[str, int] | None = None
    reason: str = Field("dispute", max_length=256)

    @field_validator("amounts")
    @classmethod
    def validate_amounts(cls, v: dict[str, int] | None) -> dict[str, int] | None:
        if v is None:
            return v
        allowed = {"provider", "partner_a", "partner_b"}
        unknown = set(v) - allowed
        if unknown:
            raise ValueError(f"Unknown recipient roles: {', '.join(sorted(unknown))}")
        if any(amount <= 0 for amount in v.values()):
            raise ValueError("Reversal amounts must be positive")
        return v


class ReversalOutcomeResponse(BaseModel):
    recipient_role: str
    status: str
    amount_cents: int
    error: str | None


class ReversalResponse(BaseModel):
    job_id: uuid.UUID
    reversed_cents: int
    already_reversed: bool
    outcomes: list[ReversalOutcomeResponse]


class RefundRequest(BaseModel):
    reason: str = Field(
        "requested_by_customer", pattern="^(duplicate|fraudulent|requested_by_customer)$",
    )
    # Reverse the transfers of a released job first.
    dispute: bool = False


class RefundResponse(BaseModel):
    job_id: uuid.UUID
    escrow: EscrowResponse
    reversal: ReversalResponse | None = None


class SweepResponse(BaseModel):
    skipped: bool = False
    released: list[str] = []
    cancelled: list[str] = []
    failed: dict[str, str] = {}
