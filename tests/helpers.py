"""Flow helpers shared by the HTTP tests."""

import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass

from httpx import AsyncClient, Response

from escrow_ledger.auth.signing import generate_keypair
from tests.conftest import WEBHOOK_SECRET, encode_body, make_auth_headers, make_user_data
from tests.fakes import FakeGateway


@dataclass
class Actor:
    user_id: str
    private_key: str
    role: str


async def register(client: AsyncClient, role: str, **overrides: object) -> Actor:
    priv, pub = generate_keypair()
    resp = await client.post("/users", json=make_user_data(role, pub, **overrides))
    assert resp.status_code == 201, resp.text
    return Actor(resp.json()["user_id"], priv, role)


async def call(
    client: AsyncClient,
    actor: Actor,
    method: str,
    path: str,
    body: dict | list | None = None,
) -> Response:
    """Send a signed request as ``actor``."""
    content = encode_body(body)
    # The signature covers the path only, not the query string.
    signed_path = path.split("?", 1)[0]
    headers = make_auth_headers(actor.user_id, actor.private_key, method, signed_path, content)
    if body is not None:
        headers["Content-Type"] = "application/json"
    return await client.request(method, path, content=content, headers=headers)


async def onboarded_provider(
    client: AsyncClient, operator: Actor, gateway: FakeGateway, approve: bool = True
) -> Actor:
    """A provider with a payout account that can receive transfers."""
    provider = await register(client, "provider")
    if approve:
        resp = await call(client, operator, "POST", f"/users/{provider.user_id}/approve")
        assert resp.status_code == 200, resp.text
    resp = await call(client, provider, "POST", "/connect/accounts")
    assert resp.status_code == 200, resp.text
    account_id = resp.json()["processor_account_id"]
    gateway.complete_onboarding(account_id)
    resp = await call(client, provider, "GET", "/connect/accounts/status")
    assert resp.json()["onboarding_status"] == "complete"
    return provider


async def post_job(client: AsyncClient, customer: Actor, **fields: object) -> dict:
    body = {
        "service_type": "Plumbing",
        "description": "Leaking kitchen tap",
        "location": "10 Anson Road, Singapore",
        **fields,
    }
    resp = await call(client, customer, "POST", "/jobs", body)
    assert resp.status_code == 201, resp.text
    return resp.json()


async def pay_for_job(
    client: AsyncClient, customer: Actor, gateway: FakeGateway, job_id: str
) -> str:
    """Create the intent, authorize the card and confirm. Returns the intent id."""
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/payment-intent")
    assert resp.status_code == 200, resp.text
    intent_id = resp.json()["intent_id"]
    gateway.authorize(intent_id)
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/payment/confirm")
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "pending"
    return intent_id


async def job_in_progress(
    client: AsyncClient,
    customer: Actor,
    provider: Actor,
    gateway: FakeGateway,
    **fields: object,
) -> str:
    job_id = (await post_job(client, customer, **fields))["job_id"]
    await pay_for_job(client, customer, gateway, job_id)
    resp = await call(client, provider, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "in_progress"
    return job_id


async def job_marked_done(
    client: AsyncClient,
    customer: Actor,
    provider: Actor,
    gateway: FakeGateway,
    **fields: object,
) -> str:
    job_id = await job_in_progress(client, customer, provider, gateway, **fields)
    resp = await call(client, provider, "POST", f"/jobs/{job_id}/done")
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "pending_confirmation"
    return job_id


async def completed_job(
    client: AsyncClient,
    customer: Actor,
    provider: Actor,
    gateway: FakeGateway,
    **fields: object,
) -> dict:
    """A job confirmed by the customer. Returns the release response."""
    job_id = await job_marked_done(client, customer, provider, gateway, **fields)
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 200, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------

def stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode()}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str | None = None, **extra: object) -> bytes:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
        **extra,
    }
    return json.dumps(event).encode()


async def deliver(client: AsyncClient, payload: bytes, signature: str | None = None) -> Response:
    headers = {"Content-Type": "application/json"}
    headers["Stripe-Signature"] = signature if signature is not None else stripe_signature(payload)
    return await client.post("/webhooks/stripe", content=payload, headers=headers)
