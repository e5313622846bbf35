"""Tests for the money split calculator."""

import random
from decimal import Decimal

import pytest

from escrow_ledger.config import settings
from escrow_ledger.models.payment import RecipientRole
from escrow_ledger.services.split import (
    SplitPolicy,
    catalog_price_cents,
    compute_split,
    platform_fee_for,
    to_minor_units,
    validate_split_policy,
)

EVEN = SplitPolicy(share_a=Decimal("0.5"), share_b=Decimal("0.5"))


def test_standard_job_split() -> None:
    """$120 service + $5 platform fee: provider 12000, partners 250 each."""
    split = compute_split(12000, 500, EVEN)
    assert split.provider_cents == 12000
    assert split.partner_a_cents == 250
    assert split.partner_b_cents == 250
    assert split.total_cents == 12500


def test_odd_cent_goes_to_partner_b() -> None:
    split = compute_split(10000, 501, EVEN)
    # 250.5 rounds half-up for A; B takes the remainder.
    assert split.partner_a_cents == 251
    assert split.partner_b_cents == 250
    assert split.total_cents == 10501


def test_uneven_shares() -> None:
    policy = SplitPolicy(share_a=Decimal("0.7"), share_b=Decimal("0.3"))
    split = compute_split(5000, 999, policy)
    assert split.partner_a_cents == 699  # 699.3
    assert split.partner_b_cents == 300


def test_sum_invariant_random() -> None:
    rng = random.Random(20261016)
    for _ in range(2000):
        service = rng.randint(0, 10_000_000)
        platform = rng.randint(0, 100_000)
        share_a = Decimal(rng.randint(0, 100)) / 100
        policy = SplitPolicy(share_a=share_a, share_b=1 - share_a)
        split = compute_split(service, platform, policy)
        assert split.total_cents == service + platform
        assert split.provider_cents == service
        assert 0 <= split.partner_a_cents <= platform
        assert split.partner_b_cents >= 0


def test_misconfigured_share_never_negative() -> None:
    policy = SplitPolicy(share_a=Decimal("1.2"), share_b=Decimal("0.3"))
    split = compute_split(1000, 500, policy)
    assert split.partner_a_cents == 500
    assert split.partner_b_cents == 0
    assert split.total_cents == 1500


def test_zero_platform_fee() -> None:
    split = compute_split(8000, 0, EVEN)
    assert split.partner_a_cents == 0
    assert split.partner_b_cents == 0
    assert split.amount_for(RecipientRole.PROVIDER) == 8000


@pytest.mark.parametrize("service,platform", [(-1, 500), (1000, -5)])
def test_negative_input_rejected(service: int, platform: int) -> None:
    with pytest.raises(ValueError):
        compute_split(service, platform, EVEN)


def test_unbalanced_policy_warns(caplog: pytest.LogCaptureFixture) -> None:
    assert validate_split_policy(EVEN) is True
    bad = SplitPolicy(share_a=Decimal("0.6"), share_b=Decimal("0.6"))
    with caplog.at_level("WARNING", logger="escrow_ledger.services.split"):
        assert validate_split_policy(bad) is False
    assert "expected 1" in caplog.text


def test_minor_units() -> None:
    assert to_minor_units(Decimal("120")) == 12000
    assert to_minor_units(Decimal("19.99")) == 1999
    assert to_minor_units(Decimal("0.005")) == 1


def test_platform_fee_flat_plus_percent() -> None:
    assert platform_fee_for(12000) == 500
    object.__setattr__(settings, "platform_fee_percent", Decimal("0.05"))
    assert platform_fee_for(12000) == 500 + 600


def test_catalog_price() -> None:
    assert catalog_price_cents("Plumbing") == 12000
    assert catalog_price_cents("Something unusual") == to_minor_units(settings.default_service_price)


def test_split_to_dict() -> None:
    assert compute_split(12000, 500, EVEN).to_dict() == {
        "provider_cents": 12000,
        "partner_a_cents": 250,
        "partner_b_cents": 250,
        "total_cents": 12500,
    }
