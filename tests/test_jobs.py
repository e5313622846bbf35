"""Tests for the job lifecycle endpoints: post, pay, claim, done, confirm, reject."""

import uuid
from datetime import datetime

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from escrow_ledger.errors import JobAlreadyClaimed
from escrow_ledger.models.job import Job
from escrow_ledger.models.user import User
from escrow_ledger.services.job_state import add_working_days
from escrow_ledger.services.jobs import claim_job
from tests.fakes import FakeGateway
from tests.helpers import (
    call,
    job_in_progress,
    job_marked_done,
    onboarded_provider,
    pay_for_job,
    post_job,
    register,
)


@pytest.mark.asyncio
async def test_post_job_uses_catalog_price(client: AsyncClient) -> None:
    customer = await register(client, "customer")
    job = await post_job(client, customer)
    assert job["status"] == "awaiting_payment"
    assert job["service_fee_cents"] == 12000
    assert job["platform_fee_cents"] == 500
    assert job["total_cents"] == 12500
    assert job["currency"] == "sgd"
    assert job["provider_id"] is None


@pytest.mark.asyncio
async def test_post_job_with_budget(client: AsyncClient) -> None:
    customer = await register(client, "customer")
    job = await post_job(client, customer, budget="150.50")
    assert job["service_fee_cents"] == 15050
    assert job["total_cents"] == 15550


@pytest.mark.asyncio
async def test_post_job_rejects_bad_budget(client: AsyncClient) -> None:
    customer = await register(client, "customer")
    body = {"service_type": "Plumbing", "description": "x", "location": "y", "budget": "-5"}
    resp = await call(client, customer, "POST", "/jobs", body)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_only_customers_post_jobs(client: AsyncClient) -> None:
    provider = await register(client, "provider")
    body = {"service_type": "Plumbing", "description": "x", "location": "y"}
    resp = await call(client, provider, "POST", "/jobs", body)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_full_lifecycle_with_reopen(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)

    job_id = await job_marked_done(client, customer, provider, gateway)
    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    job = resp.json()
    marked = datetime.fromisoformat(job["marked_done_at"])
    assert datetime.fromisoformat(job["auto_release_at"]) == add_working_days(marked, 3)
    assert job["provider_id"] == provider.user_id

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/reject", {"reason": "Tap still drips"})
    assert resp.status_code == 200
    job = resp.json()
    assert job["status"] == "in_progress"
    assert job["reopen_count"] == 1
    assert job["last_rejection_reason"] == "Tap still drips"
    assert job["auto_release_at"] is None

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/done")
    assert resp.json()["status"] == "pending_confirmation"

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 200
    release = resp.json()
    assert release["escrow"]["release_status"] == "released"
    assert release["escrow"]["payment_status"] == "succeeded"

    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    assert resp.json()["status"] == "completed"
    assert resp.json()["completed_by"] == customer.user_id


@pytest.mark.asyncio
async def test_second_claim_loses(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    first = await onboarded_provider(client, operator, gateway)
    second = await onboarded_provider(client, operator, gateway)
    job_id = await job_in_progress(client, customer, first, gateway)

    resp = await call(client, second, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 409
    assert resp.json()["error"] == "job_already_claimed"

    # The winner retrying its claim is not an error.
    resp = await call(client, first, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 200
    assert resp.json()["provider_id"] == first.user_id


@pytest.mark.asyncio
async def test_claim_race_on_stale_read(
    client: AsyncClient,
    gateway: FakeGateway,
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    """Both providers saw the job pending; the conditional update picks one."""
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    winner = await onboarded_provider(client, operator, gateway)
    loser = await onboarded_provider(client, operator, gateway)
    job_id = (await post_job(client, customer))["job_id"]
    await pay_for_job(client, customer, gateway, job_id)

    async with session_factory() as stale:
        seen = await stale.get(Job, uuid.UUID(job_id))
        assert seen is not None and seen.provider_id is None
        loser_user = await stale.get(User, uuid.UUID(loser.user_id))

        resp = await call(client, winner, "POST", f"/jobs/{job_id}/claim")
        assert resp.status_code == 200

        with pytest.raises(JobAlreadyClaimed):
            await claim_job(stale, gateway, uuid.UUID(job_id), loser_user)

    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    assert resp.json()["provider_id"] == winner.user_id


@pytest.mark.asyncio
async def test_unapproved_provider_cannot_claim(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway, approve=False)
    job_id = (await post_job(client, customer))["job_id"]
    await pay_for_job(client, customer, gateway, job_id)

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_claim_requires_onboarding(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await register(client, "provider")
    await call(client, operator, "POST", f"/users/{provider.user_id}/approve")
    job_id = (await post_job(client, customer))["job_id"]
    await pay_for_job(client, customer, gateway, job_id)

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 409
    assert resp.json()["error"] == "onboarding_incomplete"

    # Account created but the hosted form is unfinished.
    await call(client, provider, "POST", "/connect/accounts")
    resp = await call(client, provider, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 409
    assert resp.json()["error"] == "onboarding_incomplete"

    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    assert resp.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_cannot_claim_unpaid_job(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    job_id = (await post_job(client, customer))["job_id"]

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/claim")
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state_transition"


@pytest.mark.asyncio
async def test_illegal_transitions_rejected(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    job_id = await job_in_progress(client, customer, provider, gateway)

    # Confirming work that was never marked done.
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state_transition"

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/done")
    assert resp.status_code == 200
    resp = await call(client, provider, "POST", f"/jobs/{job_id}/done")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_assigned_provider_marks_done(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    other = await onboarded_provider(client, operator, gateway)
    job_id = await job_in_progress(client, customer, provider, gateway)

    resp = await call(client, other, "POST", f"/jobs/{job_id}/done")
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_reject_requires_reason(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    job_id = await job_marked_done(client, customer, provider, gateway)

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/reject", {"reason": ""})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_job_visibility(client: AsyncClient, gateway: FakeGateway) -> None:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    stranger = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    unpaid = (await post_job(client, customer))["job_id"]
    open_job = (await post_job(client, customer))["job_id"]
    await pay_for_job(client, customer, gateway, open_job)

    resp = await call(client, stranger, "GET", f"/jobs/{open_job}")
    assert resp.status_code == 403

    # Providers see paid jobs on the board, not unpaid ones.
    resp = await call(client, provider, "GET", f"/jobs/{open_job}")
    assert resp.status_code == 200
    resp = await call(client, provider, "GET", f"/jobs/{unpaid}")
    assert resp.status_code == 403

    resp = await call(client, provider, "GET", "/jobs")
    assert [j["job_id"] for j in resp.json()] == [open_job]

    resp = await call(client, customer, "GET", "/jobs")
    assert {j["job_id"] for j in resp.json()} == {unpaid, open_job}
    resp = await call(client, stranger, "GET", "/jobs")
    assert resp.json() == []

    resp = await call(client, customer, "GET", "/jobs?status=awaiting_payment")
    assert [j["job_id"] for j in resp.json()] == [unpaid]
    resp = await call(client, customer, "GET", "/jobs?status=bogus")
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_job_not_found(client: AsyncClient) -> None:
    customer = await register(client, "customer")
    resp = await call(client, customer, "GET", f"/jobs/{uuid.uuid4()}")
    assert resp.status_code == 404
