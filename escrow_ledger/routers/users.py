"""User registration and operator moderation endpoints."""

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.auth.middleware import AuthenticatedUser, require_role, verify_request
from escrow_ledger.database import get_db
from escrow_ledger.models.user import UserRole
from escrow_ledger.schemas.user import UserCreate, UserResponse
from escrow_ledger.services import users as user_service

router = APIRouter(prefix="/users", tags=["users"])

_operator = require_role(UserRole.OPERATOR)


@router.post("", response_model=UserResponse, status_code=201)
async def register_user(
    data: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    """Register with an Ed25519 public key. Providers await operator approval."""
    user = await user_service.register_user(db, data)
    return UserResponse.model_validate(user)


@router.get("/me", response_model=UserResponse)
async def get_me(auth: AuthenticatedUser = Depends(verify_request)) -> UserResponse:
    return UserResponse.model_validate(auth.user)


@router.post("/{user_id}/approve", response_model=UserResponse)
async def approve_provider(
    user_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await user_service.moderate_provider(db, user_id, "approve", auth.user)
    return UserResponse.model_validate(user)


@router.post("/{user_id}/reject", response_model=UserResponse)
async def reject_provider(
    user_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await user_service.moderate_provider(db, user_id, "reject", auth.user)
    return UserResponse.model_validate(user)


@router.post("/{user_id}/suspend", response_model=UserResponse)
async def suspend_provider(
    user_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
) -> UserResponse:
    user = await user_service.moderate_provider(db, user_id, "suspend", auth.user)
    return UserResponse.model_validate(user)
