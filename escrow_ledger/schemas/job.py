"""Pydantic v2 schemas for job lifecycle endpoints."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobCreate(BaseModel):
    """Customer posts a job.

    ``budget`` is the service fee in major units. Omit it to use the catalog
    price for ``service_type``. The platform fee is added on top.
    """
    service_type: str = Field(..., min_length=1, max_length=64)
    description: str = Field(..., min_length=1, max_length=4096)
    location: str = Field(..., min_length=1, max_length=512)
    budget: Decimal | None = Field(None, gt=0, max_digits=10, decimal_places=2)


class RejectCompletion(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2048)


class CancelJob(BaseModel):
    reason: str = Field("cancelled by customer", max_length=2048)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    customer_id: uuid.UUID
    provider_id: uuid.UUID | None
    service_type: str
    description: str
    location: str
    service_fee_cents: int
    platform_fee_cents: int
    total_cents: int
    currency: str
    status: str
    claimed_at: datetime | None
    marked_done_at: datetime | None
    auto_release_at: datetime | None
    completed_at: datetime | None
    completed_by: str | None
    cancelled_at: datetime | None
    cancelled_by: str | None
    cancellation_reason: str | None
    reopen_count: int
    last_rejection_reason: str | None
    created_at: datetime

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
