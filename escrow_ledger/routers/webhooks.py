"""Stripe webhook endpoint."""

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.database import get_db
from escrow_ledger.schemas.webhook import WebhookAck
from escrow_ledger.services import reconciliation
from escrow_ledger.services.gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> WebhookAck:
    """Verify, deduplicate and apply a Stripe event.

    Unknown event types are acknowledged. A bad signature is a 400; a handler
    failure is a 5xx so Stripe redelivers.
    """
    payload = await request.body()
    event = reconciliation.verify_event(payload, stripe_signature)
    result = await reconciliation.handle_event(db, gateway, event)
    return WebhookAck(
        event_id=result.event_id,
        event_type=result.event_type,
        handled=result.handled,
        duplicate=result.duplicate,
    )
