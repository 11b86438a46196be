"""Queue priority computation.

Kept free of any storage access so the scheduling math can be tested on
its own. Priority is an integer in [1, 10], higher runs first.
"""

from datetime import datetime

from price_tracker.queue.tiers import Tier, policy_for

MIN_PRIORITY = 1
MAX_PRIORITY = 10

# (hours overdue strictly greater than, bonus), checked in order
OVERDUE_BONUS_STEPS: tuple[tuple[float, int], ...] = (
    (24.0, 5),
    (12.0, 3),
    (6.0, 2),
    (0.0, 1),
)


def hours_overdue(next_check_at: datetime, now: datetime) -> float:
    """Hours elapsed since a listing became due, never negative."""
    return max(0.0, (now - next_check_at).total_seconds() / 3600)


def overdue_bonus(overdue_hours: float) -> int:
    """Anti-starvation bonus for a listing overdue by ``overdue_hours``."""
    for threshold, bonus in OVERDUE_BONUS_STEPS:
        if overdue_hours > threshold:
            return bonus
    return 0


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, value))


def compute_priority(tier: Tier | str, next_check_at: datetime, now: datetime) -> int:
    """
    Compute the queue priority of a listing.

    Args:
        tier: Owning user's subscription tier
        next_check_at: When the listing became (or becomes) due
        now: Current time (naive UTC)

    Returns:
        Priority in [1, 10]
    """
    base = policy_for(tier).base_priority
    return clamp_priority(base + overdue_bonus(hours_overdue(next_check_at, now)))
