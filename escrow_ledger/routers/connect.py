"""Connected-account onboarding endpoints for providers."""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Response
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.auth.middleware import AuthenticatedUser, require_role
from escrow_ledger.database import get_db
from escrow_ledger.models.connected_account import ConnectedAccount
from escrow_ledger.models.user import UserRole
from escrow_ledger.schemas.connect import (
    ConnectedAccountResponse,
    LinkResponse,
    OnboardingLinkRequest,
    PayoutScheduleUpdate,
)
from escrow_ledger.services import onboarding
from escrow_ledger.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/connect", tags=["connect"])

_provider = require_role(UserRole.PROVIDER)
_operator = require_role(UserRole.OPERATOR)


@router.post("/accounts", response_model=ConnectedAccountResponse)
async def create_account(
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ConnectedAccountResponse:
    """Create the provider's payout account, or return the existing one."""
    account = await onboarding.create_account(db, gateway, auth.user)
    return ConnectedAccountResponse.model_validate(account)


@router.post("/accounts/onboarding-link", response_model=LinkResponse)
async def create_onboarding_link(
    data: OnboardingLinkRequest | None = None,
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LinkResponse:
    account = await onboarding.require_account_for_user(db, auth.user_id)
    data = data or OnboardingLinkRequest()
    link = await onboarding.create_onboarding_link(
        gateway, account, return_url=data.return_url, refresh_url=data.refresh_url,
    )
    return LinkResponse(url=link.url, expires_at=link.expires_at)


@router.get("/accounts/status", response_model=ConnectedAccountResponse)
async def get_status(
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ConnectedAccountResponse:
    """Server-side status fetch; call this on return from hosted onboarding."""
    account = await onboarding.require_account_for_user(db, auth.user_id)
    account = await onboarding.sync_account(db, gateway, account.processor_account_id, source="return")
    return ConnectedAccountResponse.model_validate(account)


@router.post("/accounts/login-link", response_model=LinkResponse)
async def create_login_link(
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> LinkResponse:
    account = await onboarding.require_account_for_user(db, auth.user_id)
    link = await onboarding.create_login_link(gateway, account)
    return LinkResponse(url=link.url, expires_at=link.expires_at)


@router.patch("/accounts/payout-schedule", response_model=ConnectedAccountResponse)
async def update_payout_schedule(
    data: PayoutScheduleUpdate,
    auth: AuthenticatedUser = Depends(_provider),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> ConnectedAccountResponse:
    account = await onboarding.require_account_for_user(db, auth.user_id)
    account = await onboarding.update_payout_schedule(db, gateway, account, data.schedule)
    return ConnectedAccountResponse.model_validate(account)


@router.delete("/accounts/{connected_account_id}", status_code=204)
async def delete_account(
    connected_account_id: uuid.UUID,
    auth: AuthenticatedUser = Depends(_operator),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> Response:
    """Test-mode cleanup only."""
    account = await db.get(ConnectedAccount, connected_account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Connected account not found")
    await onboarding.delete_account(db, gateway, account)
    return Response(status_code=204)
