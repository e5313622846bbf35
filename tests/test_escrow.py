"""Tests for the escrow release engine: capture, three-way transfer, reversal, refund, void."""

import uuid
from dataclasses import replace

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_ledger.config import settings
from escrow_ledger.errors import InvalidRequest, PaymentProviderUnavailable
from escrow_ledger.models.payment import EscrowAction, EscrowAuditLog, EscrowPayment, TransferRecord
from tests.fakes import PARTNER_A, PARTNER_B, FakeGateway
from tests.helpers import (
    Actor,
    call,
    completed_job,
    job_in_progress,
    job_marked_done,
    onboarded_provider,
    pay_for_job,
    post_job,
    register,
)


async def _parties(client: AsyncClient, gateway: FakeGateway) -> tuple[Actor, Actor, Actor]:
    operator = await register(client, "operator")
    customer = await register(client, "customer")
    provider = await onboarded_provider(client, operator, gateway)
    return operator, customer, provider


async def _provider_account(client: AsyncClient, provider: Actor) -> str:
    resp = await call(client, provider, "GET", "/connect/accounts/status")
    return resp.json()["processor_account_id"]


async def _audit_actions(db: AsyncSession, job_id: str) -> list[EscrowAction]:
    result = await db.execute(
        select(EscrowAuditLog.action)
        .join(EscrowPayment, EscrowPayment.escrow_id == EscrowAuditLog.escrow_id)
        .where(EscrowPayment.job_id == uuid.UUID(job_id))
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_release_splits_three_ways(
    client: AsyncClient, gateway: FakeGateway, db_session: AsyncSession
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    provider_account = await _provider_account(client, provider)

    release = await completed_job(client, customer, provider, gateway)
    assert release["already_released"] is False
    assert release["split"] == {
        "provider_cents": 12000,
        "partner_a_cents": 250,
        "partner_b_cents": 250,
        "total_cents": 12500,
    }
    transfers = {t["recipient_role"]: t for t in release["transfers"]}
    assert transfers["provider"]["destination_account_id"] == provider_account
    assert transfers["partner_a"]["destination_account_id"] == PARTNER_A
    assert transfers["partner_b"]["destination_account_id"] == PARTNER_B
    assert {t["status"] for t in transfers.values()} == {"created"}
    assert sum(t["amount_cents"] for t in transfers.values()) == 12500

    assert [t.amount_cents for t in gateway.transfers_to(provider_account)] == [12000]
    assert gateway.calls.count("capture_payment_intent") == 1

    job_id = release["job_id"]
    actions = await _audit_actions(db_session, job_id)
    for action in (EscrowAction.CREATED, EscrowAction.AUTHORIZED, EscrowAction.CAPTURED, EscrowAction.RELEASED):
        assert action in actions

    resp = await call(client, provider, "GET", f"/jobs/{job_id}/transfers")
    assert len(resp.json()) == 3


@pytest.mark.asyncio
async def test_release_is_idempotent(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    release = await completed_job(client, customer, provider, gateway)

    resp = await call(client, operator, "POST", f"/operator/jobs/{release['job_id']}/release")
    assert resp.status_code == 200
    assert resp.json()["already_released"] is True
    assert len(gateway.transfers) == 3
    assert gateway.calls.count("capture_payment_intent") == 1


@pytest.mark.asyncio
async def test_partial_transfer_failure_then_retry(
    client: AsyncClient, gateway: FakeGateway, db_session: AsyncSession
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    provider_account = await _provider_account(client, provider)
    job_id = await job_marked_done(client, customer, provider, gateway)

    gateway.transfer_errors[PARTNER_B] = PaymentProviderUnavailable("Stripe is down")
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 502
    body = resp.json()
    assert body["error"] == "partial_transfer_failure"
    assert body["context"]["failed_roles"] == ["partner_b"]

    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    assert resp.json()["status"] == "completed"
    resp = await call(client, customer, "GET", f"/jobs/{job_id}/payment")
    assert resp.json()["release_status"] == "partially_released"
    assert resp.json()["payment_status"] == "succeeded"

    resp = await call(client, operator, "GET", "/operator/escrows?release_status=partially_released")
    assert [e["job_id"] for e in resp.json()] == [job_id]

    gateway.transfer_errors.clear()
    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/release")
    assert resp.status_code == 200
    assert resp.json()["escrow"]["release_status"] == "released"
    assert {t["status"] for t in resp.json()["transfers"]} == {"created"}

    # Only the failed transfer was resent; nobody was paid twice.
    assert len(gateway.transfers_to(provider_account)) == 1
    assert len(gateway.transfers_to(PARTNER_A)) == 1
    assert len(gateway.transfers_to(PARTNER_B)) == 1
    assert gateway.calls.count("capture_payment_intent") == 1
    assert EscrowAction.PARTIALLY_RELEASED in await _audit_actions(db_session, job_id)


@pytest.mark.asyncio
async def test_definitive_transfer_failure_gets_new_key(
    client: AsyncClient, gateway: FakeGateway, db_session: AsyncSession
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_marked_done(client, customer, provider, gateway)

    gateway.transfer_errors[PARTNER_A] = InvalidRequest("Destination cannot receive transfers")
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 502

    result = await db_session.execute(
        select(TransferRecord).where(TransferRecord.job_id == uuid.UUID(job_id))
    )
    records = {r.recipient_role.value: r for r in result.scalars().all()}
    assert records["partner_a"].status.value == "failed"
    assert records["partner_a"].attempt == 2
    assert records["partner_a"].failure_reason == "Destination cannot receive transfers"
    assert records["provider"].attempt == 1


@pytest.mark.asyncio
async def test_capture_failure_parks_escrow(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_marked_done(client, customer, provider, gateway)

    gateway.capture_error = PaymentProviderUnavailable("Stripe is down")
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 503
    assert gateway.transfers == {}

    resp = await call(client, operator, "GET", "/operator/escrows?release_status=capture_failed")
    assert [e["job_id"] for e in resp.json()] == [job_id]

    gateway.capture_error = None
    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/release")
    assert resp.status_code == 200
    assert resp.json()["escrow"]["release_status"] == "released"


@pytest.mark.asyncio
async def test_missing_partner_account_blocks_before_capture(
    client: AsyncClient, gateway: FakeGateway
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_marked_done(client, customer, provider, gateway)
    object.__setattr__(settings, "partner_b_account_id", "")

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 409
    assert resp.json()["error"] == "onboarding_incomplete"
    assert "capture_payment_intent" not in gateway.calls

    resp = await call(client, customer, "GET", f"/jobs/{job_id}")
    assert resp.json()["status"] == "pending_confirmation"


@pytest.mark.asyncio
async def test_full_reversal_is_idempotent(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]

    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/reverse-transfers")
    assert resp.status_code == 200
    data = resp.json()
    assert data["reversed_cents"] == 12500
    assert data["already_reversed"] is False
    assert {o["status"] for o in data["outcomes"]} == {"reversed"}

    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/reverse-transfers")
    data = resp.json()
    assert data["reversed_cents"] == 0
    assert data["already_reversed"] is True
    assert len(gateway.reversals) == 3


@pytest.mark.asyncio
async def test_partial_reversal_capped_at_transfer(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    path = f"/operator/jobs/{job_id}/reverse-transfers"

    resp = await call(client, operator, "POST", path, {"amounts": {"provider": 2000}})
    data = resp.json()
    assert data["reversed_cents"] == 2000
    assert data["outcomes"] == [
        {"recipient_role": "provider", "status": "partially_reversed", "amount_cents": 2000, "error": None},
    ]

    resp = await call(client, operator, "POST", path, {"amounts": {"provider": 50000}})
    assert resp.json()["reversed_cents"] == 10000
    assert resp.json()["outcomes"][0]["status"] == "reversed"

    resp = await call(client, customer, "GET", f"/jobs/{job_id}/transfers")
    transfers = {t["recipient_role"]: t for t in resp.json()}
    assert transfers["provider"]["reversed_cents"] == 12000
    assert transfers["partner_a"]["reversed_cents"] == 0


@pytest.mark.asyncio
async def test_reversal_amounts_validated(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    path = f"/operator/jobs/{job_id}/reverse-transfers"

    resp = await call(client, operator, "POST", path, {"amounts": {"plumber": 100}})
    assert resp.status_code == 422
    resp = await call(client, operator, "POST", path, {"amounts": {"provider": 0}})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_reversal_requires_completed_job(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_in_progress(client, customer, provider, gateway)

    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/reverse-transfers")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_dispute_refund(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    path = f"/operator/jobs/{job_id}/refund"

    resp = await call(client, operator, "POST", path, {"dispute": True, "reason": "fraudulent"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["reversal"]["reversed_cents"] == 12500
    assert data["escrow"]["release_status"] == "refunded"
    assert data["escrow"]["refunded_cents"] == 12500

    resp = await call(client, operator, "POST", path, {"dispute": True, "reason": "fraudulent"})
    assert resp.status_code == 200
    assert resp.json()["reversal"]["already_reversed"] is True
    assert len(gateway.refunds) == 1
    assert len(gateway.reversals) == 3


@pytest.mark.asyncio
async def test_dispute_refund_withheld_when_reversal_fails(
    client: AsyncClient, gateway: FakeGateway
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    release = await completed_job(client, customer, provider, gateway)
    provider_transfer = next(
        t["processor_transfer_id"] for t in release["transfers"] if t["recipient_role"] == "provider"
    )
    gateway.reversal_errors[provider_transfer] = InvalidRequest("Insufficient funds in account")

    resp = await call(client, operator, "POST", f"/operator/jobs/{release['job_id']}/refund", {"dispute": True})
    assert resp.status_code == 502
    assert resp.json()["context"]["failed_roles"] == ["provider"]
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_plain_refund_refused_after_release(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    path = f"/operator/jobs/{job_id}/refund"

    resp = await call(client, operator, "POST", path, {})
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_state_transition"
    assert sorted(resp.json()["context"]["transferred_roles"]) == ["partner_a", "partner_b", "provider"]
    assert gateway.refunds == []

    resp = await call(client, operator, "POST", path, {"dispute": True})
    assert resp.status_code == 200
    assert len(gateway.reversals) == 3
    assert len(gateway.refunds) == 1


@pytest.mark.asyncio
async def test_plain_refund_refused_after_partial_release(
    client: AsyncClient, gateway: FakeGateway
) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_marked_done(client, customer, provider, gateway)
    gateway.transfer_errors[PARTNER_B] = InvalidRequest("Account cannot receive transfers")

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/confirm")
    assert resp.status_code == 502

    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/refund", {})
    assert resp.status_code == 409
    assert sorted(resp.json()["context"]["transferred_roles"]) == ["partner_a", "provider"]
    assert gateway.refunds == []


@pytest.mark.asyncio
async def test_refund_reason_restricted(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    resp = await call(client, operator, "POST", f"/operator/jobs/{job_id}/refund", {"reason": "because"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_operator_tools_require_operator(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]
    for path in (f"/operator/jobs/{job_id}/release", f"/operator/jobs/{job_id}/refund", "/operator/sweeps"):
        resp = await call(client, customer, "POST", path)
        assert resp.status_code == 403, path


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cancel_before_claim_voids_hold(client: AsyncClient, gateway: FakeGateway) -> None:
    customer = await register(client, "customer")
    job_id = (await post_job(client, customer))["job_id"]
    intent_id = await pay_for_job(client, customer, gateway, job_id)

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/cancel", {"reason": "Fixed it myself"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert resp.json()["cancellation_reason"] == "Fixed it myself"
    assert gateway.intents[intent_id].status == "canceled"

    resp = await call(client, customer, "GET", f"/jobs/{job_id}/payment")
    assert resp.json()["release_status"] == "voided"
    assert resp.json()["payment_status"] == "canceled"

    # Cancelling again is harmless.
    resp = await call(client, customer, "POST", f"/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    assert gateway.calls.count("cancel_payment_intent") == 1


@pytest.mark.asyncio
async def test_cancel_in_progress_job(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_in_progress(client, customer, provider, gateway)

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    resp = await call(client, customer, "GET", f"/jobs/{job_id}/payment")
    assert resp.json()["release_status"] == "voided"
    assert gateway.transfers == {}


@pytest.mark.asyncio
async def test_cancel_after_capture_refunds(client: AsyncClient, gateway: FakeGateway) -> None:
    customer = await register(client, "customer")
    job_id = (await post_job(client, customer))["job_id"]
    intent_id = await pay_for_job(client, customer, gateway, job_id)
    # Captured at the processor outside the normal release path.
    gateway.intents[intent_id] = replace(gateway.intents[intent_id], status="succeeded")

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/cancel")
    assert resp.status_code == 200
    resp = await call(client, customer, "GET", f"/jobs/{job_id}/payment")
    assert resp.json()["release_status"] == "refunded"
    assert resp.json()["refunded_cents"] == 12500
    assert "cancel_payment_intent" not in gateway.calls


@pytest.mark.asyncio
async def test_cannot_cancel_completed_job(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = (await completed_job(client, customer, provider, gateway))["job_id"]

    resp = await call(client, customer, "POST", f"/jobs/{job_id}/cancel")
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_only_customer_or_operator_cancels(client: AsyncClient, gateway: FakeGateway) -> None:
    operator, customer, provider = await _parties(client, gateway)
    job_id = await job_in_progress(client, customer, provider, gateway)

    resp = await call(client, provider, "POST", f"/jobs/{job_id}/cancel")
    assert resp.status_code == 403
    resp = await call(client, operator, "POST", f"/jobs/{job_id}/cancel", {"reason": "No-show"})
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
