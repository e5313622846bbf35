"""Money split calculation.

Every job collects ``service fee + platform fee`` from the customer. On release
that total is split three ways:

1. **Provider** receives 100% of the service fee.
2. **Partner A** receives ``round(platform fee x share_a)``.
3. **Partner B** receives whatever is left of the platform fee, so rounding
   never leaks a cent in either direction.

All arithmetic is integer minor units (cents) or Decimal; never float.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from escrow_ledger.config import settings
from escrow_ledger.models.payment import RecipientRole

logger = logging.getLogger(__name__)

SHARE_TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class SplitPolicy:
    share_a: Decimal
    share_b: Decimal

    @classmethod
    def from_settings(cls) -> "SplitPolicy":
        return cls(share_a=settings.partner_a_share, share_b=settings.partner_b_share)

    def is_balanced(self) -> bool:
        return abs(self.share_a + self.share_b - 1) <= SHARE_TOLERANCE


@dataclass(frozen=True)
class Split:
    """Amounts owed to each recipient of a release, in cents."""
    provider_cents: int
    partner_a_cents: int
    partner_b_cents: int

    @property
    def total_cents(self) -> int:
        return self.provider_cents + self.partner_a_cents + self.partner_b_cents

    def amount_for(self, role: RecipientRole) -> int:
        return {
            RecipientRole.PROVIDER: self.provider_cents,
            RecipientRole.PARTNER_A: self.partner_a_cents,
            RecipientRole.PARTNER_B: self.partner_b_cents,
        }[role]

    def to_dict(self) -> dict:
        return {
            "provider_cents": self.provider_cents,
            "partner_a_cents": self.partner_a_cents,
            "partner_b_cents": self.partner_b_cents,
            "total_cents": self.total_cents,
        }


def compute_split(
    service_fee_cents: int, platform_fee_cents: int, policy: SplitPolicy
) -> Split:
    """Split a collected total between provider and the two partners.

    Partner A's share is clamped to the platform fee so a misconfigured policy
    can never push partner B negative.
    """
    if service_fee_cents < 0 or platform_fee_cents < 0:
        raise ValueError("Fees must be non-negative")

    partner_a = int(
        (Decimal(platform_fee_cents) * policy.share_a).quantize(
            Decimal("1"), rounding=ROUND_HALF_UP,
        )
    )
    partner_a = min(max(partner_a, 0), platform_fee_cents)
    return Split(
        provider_cents=service_fee_cents,
        partner_a_cents=partner_a,
        partner_b_cents=platform_fee_cents - partner_a,
    )


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount (e.g. dollars) to integer cents."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def platform_fee_for(service_fee_cents: int) -> int:
    """Platform fee for a job: flat amount plus an optional percentage."""
    percent_part = (Decimal(service_fee_cents) * settings.platform_fee_percent).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP,
    )
    return settings.platform_fee_flat_cents + int(percent_part)


def catalog_price_cents(service_type: str) -> int:
    price = settings.service_prices.get(service_type, settings.default_service_price)
    return to_minor_units(price)


def validate_split_policy(policy: SplitPolicy) -> bool:
    """Log a warning if the partner shares don't sum to 1. Never fatal."""
    if policy.is_balanced():
        return True
    logger.warning(
        "Partner shares sum to %s, expected 1 (share_a=%s, share_b=%s); "
        "partner B will absorb the difference",
        policy.share_a + policy.share_b, policy.share_a, policy.share_b,
    )
    return False
