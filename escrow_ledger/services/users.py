"""User registration and provider approval."""

import hmac
import logging
import uuid

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.errors import InvalidStateTransition
from escrow_ledger.models.user import User, UserRole, UserStatus
from escrow_ledger.schemas.user import UserCreate

logger = logging.getLogger(__name__)

# Operator moderation actions on providers: action -> (allowed from, result)
_MODERATION: dict[str, tuple[set[UserStatus], UserStatus]] = {
    "approve": ({UserStatus.PENDING_APPROVAL, UserStatus.SUSPENDED}, UserStatus.ACTIVE),
    "reject": ({UserStatus.PENDING_APPROVAL}, UserStatus.REJECTED),
    "suspend": ({UserStatus.ACTIVE}, UserStatus.SUSPENDED),
}


async def register_user(db: AsyncSession, data: UserCreate) -> User:
    """Register a customer, provider or operator.

    Providers start pending approval. Operators need the configured token.
    """
    role = UserRole(data.role)
    if role == UserRole.OPERATOR:
        if not settings.operator_token or not hmac.compare_digest(
            data.operator_token or "", settings.operator_token
        ):
            raise HTTPException(status_code=403, detail="Operator registration not permitted")

    result = await db.execute(select(User).where(User.public_key == data.public_key))
    if result.scalar_one_or_none() is not None:
        raise HTTPException(status_code=409, detail="Public key already registered")

    user = User(
        user_id=uuid.uuid4(),
        public_key=data.public_key,
        role=role,
        status=UserStatus.PENDING_APPROVAL if role == UserRole.PROVIDER else UserStatus.ACTIVE,
        display_name=data.display_name,
        email=data.email,
        phone=data.phone,
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Registered %s %s", role.value, user.user_id)
    return user


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def moderate_provider(
    db: AsyncSession, user_id: uuid.UUID, action: str, operator: User
) -> User:
    user = await get_user(db, user_id)
    if user.role != UserRole.PROVIDER:
        raise HTTPException(status_code=422, detail="Only providers are moderated")

    allowed_from, target = _MODERATION[action]
    if user.status == target:
        return user
    if user.status not in allowed_from:
        raise InvalidStateTransition(
            f"Cannot {action} a provider who is {user.status.value}",
            current=user.status.value,
        )
    user.status = target
    await db.commit()
    await db.refresh(user)
    logger.info("Operator %s: %s provider %s", operator.user_id, action, user_id)
    return user
