"""Connected-account onboarding tracker.

A provider gets one Express account, created on their first onboarding
attempt. Local onboarding state is only ever flipped from a server-side
status fetch: returning from the hosted onboarding page proves nothing.

Status is refreshed on the return redirect (synchronous path) and on
``account.updated`` webhooks. Both paths fetch the account from the
processor and apply the same rule, so they converge on processor truth.
"""

import logging
import uuid

from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.database import utcnow
from escrow_ledger.errors import InvalidRequest, OnboardingIncomplete
from escrow_ledger.models.connected_account import (
    AccountOwnerRole,
    ConnectedAccount,
    OnboardingStatus,
)
from escrow_ledger.models.payment import RecipientRole
from escrow_ledger.models.user import User, UserRole
from escrow_ledger.services.gateway import AccountSnapshot, LinkSnapshot, PaymentGateway

logger = logging.getLogger(__name__)

# Public schedule names to processor payout intervals.
PAYOUT_INTERVALS = {
    "daily": "daily",
    "weekly": "weekly",
    "monthly": "monthly",
    "instant": "manual",
}

_PARTNER_ROLES = {
    RecipientRole.PARTNER_A: AccountOwnerRole.PARTNER_A,
    RecipientRole.PARTNER_B: AccountOwnerRole.PARTNER_B,
}


def apply_account_snapshot(account: ConnectedAccount, snapshot: AccountSnapshot) -> None:
    was_complete = account.onboarding_status == OnboardingStatus.COMPLETE

    account.details_submitted = snapshot.details_submitted
    account.charges_enabled = snapshot.charges_enabled
    account.payouts_enabled = snapshot.payouts_enabled
    account.requirements_due = list(snapshot.requirements_due)
    account.disabled_reason = snapshot.disabled_reason
    if snapshot.payout_interval:
        account.payout_interval = snapshot.payout_interval
    account.last_synced_at = utcnow()

    if account.onboarding_status == OnboardingStatus.DEAUTHORIZED:
        return
    account.onboarding_status = (
        OnboardingStatus.COMPLETE if snapshot.onboarding_complete else OnboardingStatus.PENDING
    )
    if account.onboarding_status == OnboardingStatus.COMPLETE and not was_complete:
        logger.info("Connected account %s completed onboarding", account.processor_account_id)
    elif was_complete and account.onboarding_status != OnboardingStatus.COMPLETE:
        logger.warning(
            "Connected account %s lost onboarding completeness (due: %s, disabled: %s)",
            account.processor_account_id, snapshot.requirements_due, snapshot.disabled_reason,
        )


async def get_account_for_user(db: AsyncSession, user_id: uuid.UUID) -> ConnectedAccount | None:
    result = await db.execute(
        select(ConnectedAccount).where(ConnectedAccount.owner_user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_account(db: AsyncSession, processor_account_id: str) -> ConnectedAccount | None:
    result = await db.execute(
        select(ConnectedAccount).where(
            ConnectedAccount.processor_account_id == processor_account_id
        )
    )
    return result.scalar_one_or_none()


async def require_account_for_user(db: AsyncSession, user_id: uuid.UUID) -> ConnectedAccount:
    account = await get_account_for_user(db, user_id)
    if account is None:
        raise HTTPException(status_code=404, detail="No connected account; start onboarding first")
    return account


async def create_account(
    db: AsyncSession, gateway: PaymentGateway, provider: User
) -> ConnectedAccount:
    """Create the provider's connected account, or return the existing one."""
    if provider.role != UserRole.PROVIDER:
        raise HTTPException(status_code=403, detail="Only providers have payout accounts")

    existing = await get_account_for_user(db, provider.user_id)
    if existing is not None:
        return existing

    snapshot = await gateway.create_connected_account(
        email=provider.email,
        name=provider.display_name,
        country=settings.connect_country,
        payout_interval=settings.stripe_payout_interval,
        metadata={
            "user_id": str(provider.user_id),
            "account_type": "provider",
            "platform": "escrow-ledger",
        },
        idempotency_key=f"create_account:{provider.user_id}",
    )
    account = ConnectedAccount(
        connected_account_id=uuid.uuid4(),
        processor_account_id=snapshot.id,
        owner_user_id=provider.user_id,
        owner_role=AccountOwnerRole.PROVIDER,
        email=provider.email,
    )
    apply_account_snapshot(account, snapshot)
    db.add(account)
    await db.commit()
    await db.refresh(account)
    logger.info("Created connected account %s for provider %s", snapshot.id, provider.user_id)
    return account


async def create_onboarding_link(
    gateway: PaymentGateway,
    account: ConnectedAccount,
    return_url: str | None = None,
    refresh_url: str | None = None,
) -> LinkSnapshot:
    return await gateway.create_account_link(
        account.processor_account_id,
        return_url=return_url or settings.connect_return_url,
        refresh_url=refresh_url or settings.connect_refresh_url,
    )


async def get_status(gateway: PaymentGateway, processor_account_id: str) -> AccountSnapshot:
    """Authoritative onboarding state, read from the processor. Never cached."""
    return await gateway.retrieve_account(processor_account_id)


async def sync_account(
    db: AsyncSession, gateway: PaymentGateway, processor_account_id: str, source: str
) -> ConnectedAccount | None:
    """Refresh local state from the processor. None if we don't track the account."""
    account = await get_account(db, processor_account_id)
    if account is None:
        logger.info("Ignoring %s sync for untracked account %s", source, processor_account_id)
        return None

    snapshot = await get_status(gateway, processor_account_id)
    apply_account_snapshot(account, snapshot)
    await db.commit()
    await db.refresh(account)
    logger.info(
        "Synced account %s via %s: status=%s payouts_enabled=%s",
        processor_account_id, source, account.onboarding_status.value, account.payouts_enabled,
    )
    return account


async def mark_deauthorized(db: AsyncSession, processor_account_id: str) -> ConnectedAccount | None:
    account = await get_account(db, processor_account_id)
    if account is None:
        return None
    account.onboarding_status = OnboardingStatus.DEAUTHORIZED
    account.payouts_enabled = False
    account.charges_enabled = False
    account.last_synced_at = utcnow()
    await db.commit()
    logger.warning("Connected account %s deauthorized the platform", processor_account_id)
    return account


async def create_login_link(gateway: PaymentGateway, account: ConnectedAccount) -> LinkSnapshot:
    if account.onboarding_status != OnboardingStatus.COMPLETE:
        raise OnboardingIncomplete("Finish onboarding before opening the payout dashboard")
    return await gateway.create_login_link(account.processor_account_id)


async def update_payout_schedule(
    db: AsyncSession, gateway: PaymentGateway, account: ConnectedAccount, schedule: str
) -> ConnectedAccount:
    interval = PAYOUT_INTERVALS.get(schedule)
    if interval is None:
        raise InvalidRequest(
            f"Unknown payout schedule {schedule!r}", allowed=sorted(PAYOUT_INTERVALS),
        )
    snapshot = await gateway.update_payout_schedule(account.processor_account_id, interval)
    apply_account_snapshot(account, snapshot)
    account.payout_interval = interval
    await db.commit()
    await db.refresh(account)
    return account


async def delete_account(
    db: AsyncSession, gateway: PaymentGateway, account: ConnectedAccount
) -> None:
    """Cleanup tooling only: refused unless running against test-mode keys."""
    if not settings.stripe_test_mode:
        raise InvalidRequest("Connected accounts can only be deleted in test mode")
    await gateway.delete_account(account.processor_account_id)
    await db.delete(account)
    await db.commit()
    logger.warning("Deleted connected account %s", account.processor_account_id)


async def ensure_provider_ready(
    db: AsyncSession, gateway: PaymentGateway, provider_id: uuid.UUID
) -> ConnectedAccount:
    """The provider's account, if it can receive transfers. Re-checks the processor once."""
    account = await get_account_for_user(db, provider_id)
    if account is None:
        raise OnboardingIncomplete(
            "Provider has not started payout onboarding", provider_id=provider_id,
        )
    if not account.can_receive_transfers:
        account = await sync_account(db, gateway, account.processor_account_id, "readiness")
        if account is None or not account.can_receive_transfers:
            raise OnboardingIncomplete(
                "Provider payout account is not ready to receive transfers",
                provider_id=provider_id,
            )
    return account


async def ensure_partner_ready(
    db: AsyncSession, gateway: PaymentGateway, role: RecipientRole
) -> ConnectedAccount:
    """The configured partner account for ``role``, tracked on first use."""
    processor_account_id = {
        RecipientRole.PARTNER_A: settings.partner_a_account_id,
        RecipientRole.PARTNER_B: settings.partner_b_account_id,
    }[role]
    if not processor_account_id:
        raise OnboardingIncomplete(f"No connected account configured for {role.value}")

    account = await get_account(db, processor_account_id)
    if account is None:
        snapshot = await get_status(gateway, processor_account_id)
        account = ConnectedAccount(
            connected_account_id=uuid.uuid4(),
            processor_account_id=processor_account_id,
            owner_role=_PARTNER_ROLES[role],
            email=snapshot.email,
        )
        apply_account_snapshot(account, snapshot)
        db.add(account)
        await db.commit()
        await db.refresh(account)
    elif not account.can_receive_transfers:
        account = await sync_account(db, gateway, processor_account_id, "readiness")

    if account is None or not account.can_receive_transfers:
        raise OnboardingIncomplete(
            f"{role.value} payout account is not ready to receive transfers",
            account_id=processor_account_id,
        )
    return account
