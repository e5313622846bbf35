"""Signed-request authentication dependency for FastAPI.

Requests carry ``Authorization: LedgerSig <user_id>:<signature>`` plus
``X-Timestamp`` and ``X-Nonce``. The signature covers the timestamp, nonce,
method, path and body hash; the nonce is burned in Redis so a captured
request can't be replayed.
"""

import uuid
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.auth.signing import is_timestamp_valid, verify_signature
from escrow_ledger.config import settings
from escrow_ledger.database import get_db
from escrow_ledger.models.user import User, UserRole, UserStatus
from escrow_ledger.redis import get_redis

SCHEME = "LedgerSig "

# Statuses that may still authenticate. Pending providers can onboard
# their payout account while they wait for approval.
_ALLOWED_STATUSES = {UserStatus.ACTIVE, UserStatus.PENDING_APPROVAL}


class AuthenticatedUser:
    def __init__(self, user_id: uuid.UUID, user: User) -> None:
        self.user_id = user_id
        self.user = user

    @property
    def role(self) -> UserRole:
        return self.user.role


async def verify_request(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> AuthenticatedUser:
    auth_header = request.headers.get("Authorization")
    timestamp = request.headers.get("X-Timestamp")
    nonce = request.headers.get("X-Nonce")

    if not auth_header or not timestamp or not nonce:
        raise HTTPException(status_code=403, detail="Missing authentication headers")
    if not auth_header.startswith(SCHEME):
        raise HTTPException(status_code=403, detail="Invalid authorization scheme")

    try:
        user_id_str, signature = auth_header[len(SCHEME):].split(":", 1)
        user_id = uuid.UUID(user_id_str)
    except ValueError:
        raise HTTPException(status_code=403, detail="Malformed authorization header")

    if not is_timestamp_valid(timestamp, settings.signature_max_age_seconds):
        raise HTTPException(status_code=403, detail="Request timestamp expired")

    result = await db.execute(select(User).where(User.user_id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise HTTPException(status_code=403, detail="User not found")
    if user.status not in _ALLOWED_STATUSES:
        raise HTTPException(status_code=403, detail=f"User is {user.status.value}")

    body = await request.body()
    if not verify_signature(
        user.public_key, signature, timestamp, nonce, request.method, request.url.path, body,
    ):
        raise HTTPException(status_code=403, detail="Invalid signature")

    # Burn the nonce only once the signature checks out.
    if not await redis.set(f"nonce:{nonce}", "1", nx=True, ex=settings.nonce_ttl_seconds):
        raise HTTPException(status_code=403, detail="Nonce already used")

    return AuthenticatedUser(user_id=user_id, user=user)


def require_role(*roles: UserRole) -> Callable[..., Awaitable[AuthenticatedUser]]:
    """Dependency factory: the authenticated user must hold one of ``roles``."""

    async def _check(auth: AuthenticatedUser = Depends(verify_request)) -> AuthenticatedUser:
        if auth.role not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Requires role: {', '.join(r.value for r in roles)}",
            )
        return auth

    return _check
