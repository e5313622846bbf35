"""Payment processor gateway.

All processor calls go through a ``PaymentGateway``. The production
implementation wraps the Stripe SDK; tests swap in an in-memory fake through
the ``get_gateway`` dependency.

The Stripe SDK is synchronous, so each call runs in a worker thread with an
overall deadline. SDK exceptions never escape this module: they are translated
into the ledger error taxonomy so callers can tell a declined card (tell the
customer) from an outage (retry with backoff).
"""

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from functools import lru_cache
from typing import Any, Protocol

import stripe

from escrow_ledger.config import settings
from escrow_ledger.errors import (
    InvalidRequest,
    LedgerError,
    PaymentDeclined,
    PaymentProviderUnavailable,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class IntentSnapshot:
    id: str
    status: str
    amount_cents: int
    currency: str
    client_secret: str | None = None
    latest_charge: str | None = None
    last_error: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass
class TransferSnapshot:
    id: str
    amount_cents: int
    currency: str
    destination: str
    reversed_cents: int = 0


@dataclass
class ReversalSnapshot:
    id: str
    transfer_id: str
    amount_cents: int


@dataclass
class RefundSnapshot:
    id: str
    amount_cents: int
    status: str


@dataclass
class AccountSnapshot:
    id: str
    details_submitted: bool
    charges_enabled: bool
    payouts_enabled: bool
    requirements_due: list[str] = field(default_factory=list)
    eventually_due: list[str] = field(default_factory=list)
    past_due: list[str] = field(default_factory=list)
    disabled_reason: str | None = None
    email: str | None = None
    payout_interval: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def onboarding_complete(self) -> bool:
        """All three capability flags set and nothing currently due.

        details_submitted alone only means the hosted form was finished.
        """
        return (
            self.details_submitted
            and self.charges_enabled
            and self.payouts_enabled
            and not self.requirements_due
        )


@dataclass
class LinkSnapshot:
    url: str
    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Snapshot builders (shared with webhook handling, which receives the same objects)
# ---------------------------------------------------------------------------

def intent_snapshot(obj: Mapping[str, Any]) -> IntentSnapshot:
    last_error = obj.get("last_payment_error") or {}
    return IntentSnapshot(
        id=obj["id"],
        status=obj["status"],
        amount_cents=obj["amount"],
        currency=obj["currency"],
        client_secret=obj.get("client_secret"),
        latest_charge=obj.get("latest_charge"),
        last_error=last_error.get("message") if last_error else None,
        metadata=dict(obj.get("metadata") or {}),
    )


def account_snapshot(obj: Mapping[str, Any]) -> AccountSnapshot:
    requirements = obj.get("requirements") or {}
    schedule = ((obj.get("settings") or {}).get("payouts") or {}).get("schedule") or {}
    return AccountSnapshot(
        id=obj["id"],
        details_submitted=bool(obj.get("details_submitted")),
        charges_enabled=bool(obj.get("charges_enabled")),
        payouts_enabled=bool(obj.get("payouts_enabled")),
        requirements_due=list(requirements.get("currently_due") or []),
        eventually_due=list(requirements.get("eventually_due") or []),
        past_due=list(requirements.get("past_due") or []),
        disabled_reason=requirements.get("disabled_reason"),
        email=obj.get("email"),
        payout_interval=schedule.get("interval"),
        metadata=dict(obj.get("metadata") or {}),
    )


def transfer_snapshot(obj: Mapping[str, Any]) -> TransferSnapshot:
    return TransferSnapshot(
        id=obj["id"],
        amount_cents=obj["amount"],
        currency=obj["currency"],
        destination=obj["destination"],
        reversed_cents=obj.get("amount_reversed") or 0,
    )


# ---------------------------------------------------------------------------
# Gateway interface
# ---------------------------------------------------------------------------

class PaymentGateway(Protocol):
    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        description: str | None = None,
        receipt_email: str | None = None,
    ) -> IntentSnapshot: ...

    async def retrieve_payment_intent(self, intent_id: str) -> IntentSnapshot: ...

    async def capture_payment_intent(
        self, intent_id: str, idempotency_key: str
    ) -> IntentSnapshot: ...

    async def cancel_payment_intent(
        self, intent_id: str, reason: str, idempotency_key: str
    ) -> IntentSnapshot: ...

    async def create_refund(
        self,
        intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> RefundSnapshot: ...

    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        transfer_group: str | None = None,
        description: str | None = None,
    ) -> TransferSnapshot: ...

    async def create_transfer_reversal(
        self,
        transfer_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ReversalSnapshot: ...

    async def create_connected_account(
        self,
        email: str,
        name: str,
        country: str,
        payout_interval: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> AccountSnapshot: ...

    async def retrieve_account(self, account_id: str) -> AccountSnapshot: ...

    async def update_payout_schedule(
        self, account_id: str, interval: str
    ) -> AccountSnapshot: ...

    async def delete_account(self, account_id: str) -> None: ...

    async def create_account_link(
        self, account_id: str, return_url: str, refresh_url: str
    ) -> LinkSnapshot: ...

    async def create_login_link(self, account_id: str) -> LinkSnapshot: ...


# ---------------------------------------------------------------------------
# Stripe implementation
# ---------------------------------------------------------------------------

def translate_stripe_error(operation: str, exc: Exception) -> LedgerError:
    """Map a Stripe SDK exception onto the ledger taxonomy."""
    if isinstance(exc, stripe.CardError):
        logger.warning(
            "Card declined during %s: code=%s decline_code=%s",
            operation, exc.code, getattr(exc, "decline_code", None),
        )
        return PaymentDeclined(
            str(exc.user_message or "Your card was declined"),
            operation=operation,
            decline_code=getattr(exc, "decline_code", None),
        )
    if isinstance(exc, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError)):
        logger.error("Stripe unavailable during %s: %s", operation, exc)
        return PaymentProviderUnavailable(
            "Payment provider is temporarily unavailable, please retry",
            operation=operation,
        )
    if isinstance(
        exc,
        (stripe.InvalidRequestError, stripe.AuthenticationError,
         stripe.PermissionError, stripe.IdempotencyError),
    ):
        logger.error("Stripe rejected %s: %s", operation, exc)
        return InvalidRequest(
            f"Payment provider rejected the request: {exc.user_message or exc}",
            operation=operation,
            stripe_code=exc.code,
        )
    logger.error("Unexpected Stripe error during %s: %r", operation, exc)
    return PaymentProviderUnavailable(
        "Payment provider returned an unexpected error", operation=operation,
    )


class StripeGateway:
    """PaymentGateway backed by the Stripe API."""

    def __init__(
        self,
        api_key: str,
        timeout_seconds: int = 10,
        max_network_retries: int = 2,
    ) -> None:
        stripe.api_key = api_key
        stripe.max_network_retries = max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        # Upper bound on one call including the SDK's own network retries.
        self.deadline_seconds = timeout_seconds * (max_network_retries + 1) + 5

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **params: Any) -> Any:
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **params), timeout=self.deadline_seconds,
            )
        except TimeoutError as exc:
            logger.error("Stripe %s timed out after %.1fs", operation, time.monotonic() - start)
            raise PaymentProviderUnavailable(
                "Payment provider timed out, please retry", operation=operation,
            ) from exc
        except stripe.StripeError as exc:
            raise translate_stripe_error(operation, exc) from exc
        logger.info("Stripe %s completed in %.0fms", operation, (time.monotonic() - start) * 1000)
        return result

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str,
        description: str | None = None,
        receipt_email: str | None = None,
    ) -> IntentSnapshot:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "capture_method": "manual",
            "payment_method_types": ["card"],
            "metadata": metadata,
            "statement_descriptor_suffix": settings.statement_descriptor[:22],
            "idempotency_key": idempotency_key,
        }
        if description:
            params["description"] = description
        if receipt_email:
            params["receipt_email"] = receipt_email
        intent = await self._call("create_payment_intent", stripe.PaymentIntent.create, **params)
        return intent_snapshot(intent)

    async def retrieve_payment_intent(self, intent_id: str) -> IntentSnapshot:
        intent = await self._call(
            "retrieve_payment_intent", stripe.PaymentIntent.retrieve, intent_id,
        )
        return intent_snapshot(intent)

    async def capture_payment_intent(
        self, intent_id: str, idempotency_key: str
    ) -> IntentSnapshot:
        intent = await self._call(
            "capture_payment_intent", stripe.PaymentIntent.capture, intent_id,
            idempotency_key=idempotency_key,
        )
        return intent_snapshot(intent)

    async def cancel_payment_intent(
        self, intent_id: str, reason: str, idempotency_key: str
    ) -> IntentSnapshot:
        intent = await self._call(
            "cancel_payment_intent", stripe.PaymentIntent.cancel, intent_id,
            cancellation_reason=reason, idempotency_key=idempotency_key,
        )
        return intent_snapshot(intent)

    async def create_refund(
        self,
        intent_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        reason: str = "requested_by_customer",
        metadata: dict[str, str] | None = None,
    ) -> RefundSnapshot:
        params: dict[str, Any] = {
            "payment_intent": intent_id,
            "reason": reason,
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if amount_cents is not None:
            params["amount"] = amount_cents
        refund = await self._call("create_refund", stripe.Refund.create, **params)
        return RefundSnapshot(id=refund["id"], amount_cents=refund["amount"], status=refund["status"])

    async def create_transfer(
        self,
        amount_cents: int,
        currency: str,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        transfer_group: str | None = None,
        description: str | None = None,
    ) -> TransferSnapshot:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency,
            "destination": destination,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if transfer_group:
            params["transfer_group"] = transfer_group
        if description:
            params["description"] = description
        transfer = await self._call("create_transfer", stripe.Transfer.create, **params)
        return transfer_snapshot(transfer)

    async def create_transfer_reversal(
        self,
        transfer_id: str,
        idempotency_key: str,
        amount_cents: int | None = None,
        metadata: dict[str, str] | None = None,
    ) -> ReversalSnapshot:
        params: dict[str, Any] = {
            "metadata": metadata or {},
            "idempotency_key": idempotency_key,
        }
        if amount_cents is not None:
            params["amount"] = amount_cents
        reversal = await self._call(
            "create_transfer_reversal", stripe.Transfer.create_reversal, transfer_id, **params,
        )
        return ReversalSnapshot(
            id=reversal["id"], transfer_id=transfer_id, amount_cents=reversal["amount"],
        )

    async def create_connected_account(
        self,
        email: str,
        name: str,
        country: str,
        payout_interval: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> AccountSnapshot:
        account = await self._call(
            "create_connected_account", stripe.Account.create,
            type="express",
            country=country,
            email=email,
            capabilities={"transfers": {"requested": True}},
            business_type="individual",
            business_profile={"name": name, "product_description": "Handyman services"},
            settings={"payouts": {"schedule": {"interval": payout_interval}}},
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return account_snapshot(account)

    async def retrieve_account(self, account_id: str) -> AccountSnapshot:
        account = await self._call("retrieve_account", stripe.Account.retrieve, account_id)
        return account_snapshot(account)

    async def update_payout_schedule(self, account_id: str, interval: str) -> AccountSnapshot:
        account = await self._call(
            "update_payout_schedule", stripe.Account.modify, account_id,
            settings={"payouts": {"schedule": {"interval": interval}}},
        )
        return account_snapshot(account)

    async def delete_account(self, account_id: str) -> None:
        await self._call("delete_account", stripe.Account.delete, account_id)

    async def create_account_link(
        self, account_id: str, return_url: str, refresh_url: str
    ) -> LinkSnapshot:
        link = await self._call(
            "create_account_link", stripe.AccountLink.create,
            account=account_id,
            return_url=return_url,
            refresh_url=refresh_url,
            type="account_onboarding",
        )
        expires_at = link.get("expires_at")
        return LinkSnapshot(
            url=link["url"],
            expires_at=datetime.fromtimestamp(expires_at, UTC) if expires_at else None,
        )

    async def create_login_link(self, account_id: str) -> LinkSnapshot:
        link = await self._call(
            "create_login_link", stripe.Account.create_login_link, account_id,
        )
        return LinkSnapshot(url=link["url"])


@lru_cache
def get_gateway() -> PaymentGateway:
    return StripeGateway(
        api_key=settings.stripe_secret_key,
        timeout_seconds=settings.stripe_api_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
    )
