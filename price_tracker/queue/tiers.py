"""Subscription tier policy table."""

from dataclasses import dataclass
from enum import Enum


class Tier(str, Enum):
    """Subscription tiers."""

    FREE = "free"
    PREMIUM = "premium"
    PREMIUM_PLUS = "premium_plus"


@dataclass(frozen=True)
class TierPolicy:
    """Scheduling and retention limits attached to a tier."""

    check_interval_hours: int
    base_priority: int
    max_products: int
    retention_days: int
    api_access: bool


TIER_POLICIES: dict[Tier, TierPolicy] = {
    Tier.FREE: TierPolicy(
        check_interval_hours=24,
        base_priority=1,
        max_products=5,
        retention_days=7,
        api_access=False,
    ),
    Tier.PREMIUM: TierPolicy(
        check_interval_hours=6,
        base_priority=5,
        max_products=25,
        retention_days=30,
        api_access=False,
    ),
    Tier.PREMIUM_PLUS: TierPolicy(
        check_interval_hours=1,
        base_priority=10,
        max_products=100,
        retention_days=90,
        api_access=True,
    ),
}


def policy_for(tier: Tier | str) -> TierPolicy:
    """
    Look up the policy for a tier.

    Accepts either a ``Tier`` or its stored string value. Unknown values
    raise ``ValueError`` since the tier column is constrained upstream.
    """
    return TIER_POLICIES[Tier(tier)]
