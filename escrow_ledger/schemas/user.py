"""Pydantic v2 schemas for users."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

from escrow_ledger.auth.signing import is_valid_public_key


class UserCreate(BaseModel):
    public_key: str = Field(..., min_length=64, max_length=64)
    role: str = Field(..., pattern="^(customer|provider|operator)$")
    display_name: str = Field(..., min_length=1, max_length=128)
    email: str = Field(..., min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    phone: str | None = Field(None, max_length=32)
    operator_token: str | None = None

    @field_validator("public_key")
    @classmethod
    def validate_public_key(cls, v: str) -> str:
        if not is_valid_public_key(v):
            raise ValueError("public_key must be a hex-encoded Ed25519 verify key")
        return v.lower()


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    public_key: str
    role: str
    status: str
    display_name: str
    email: str
    phone: str | None
    created_at: datetime

    @field_validator("role", "status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)
