"""Janitor: expires abandoned leases and prunes queue and price history rows."""

import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.config import settings
from price_tracker.db.models import PriceHistory, User
from price_tracker.db.session import AsyncSessionLocal
from price_tracker.queue.listings import ListingRepository, listing_repository
from price_tracker.queue.repository import QueueRepository, queue_repository
from price_tracker.queue.tiers import TIER_POLICIES
from price_tracker import metrics

logger = logging.getLogger(__name__)


class CleanupAction(str, Enum):
    """What a janitor run should clean."""

    EXPIRE = "expire"
    QUEUE = "queue"
    HISTORY = "history"
    ALL = "all"


class Janitor:
    """
    Removes rows that no component references any more.

    Every step only touches rows in a terminal state (or leases that
    already expired past their last attempt), so runs are idempotent and
    safe alongside the populator and processor.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        listings: ListingRepository = listing_repository,
        queue: QueueRepository = queue_repository,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.session_factory = session_factory
        self.listings = listings
        self.queue = queue
        self.clock = clock

    async def run(
        self, action: CleanupAction | str = CleanupAction.ALL, now: Optional[datetime] = None
    ) -> dict:
        """
        Run one cleanup pass.

        Args:
            action: ``expire``, ``queue``, ``history`` or ``all``

        Returns:
            Dict of counts for the steps that ran
        """
        action = CleanupAction(action)
        now = now or self.clock()
        stats: dict = {}

        # Expire first so freshly failed entries age out on the normal schedule
        if action in (CleanupAction.EXPIRE, CleanupAction.ALL):
            stats["leases_expired"] = await self.expire_leases(now)
        if action in (CleanupAction.QUEUE, CleanupAction.ALL):
            stats["queue_deleted"] = await self.prune_queue(now)
        if action in (CleanupAction.HISTORY, CleanupAction.ALL):
            stats["history_deleted"] = await self.prune_history(now)

        logger.info(f"Cleanup ({action.value}) complete: {stats}")
        return stats

    async def expire_leases(self, now: datetime) -> int:
        """Fail entries whose lease ran out on the last allowed attempt."""
        async with self.session_factory() as db:
            expired = await self.queue.fail_exhausted(db, now, settings.max_claim_attempts)
            deactivated = 0
            for entry in expired:
                outcome = await self.listings.record_failure(
                    db,
                    entry.listing_id,
                    f"Lease expired after {settings.max_claim_attempts} attempts",
                    settings.deactivation_threshold,
                )
                if outcome is not None and outcome.deactivated:
                    deactivated += 1
            await db.commit()

        for entry in expired:
            metrics.record_outcome("failed")
            logger.warning(
                f"Queue entry {entry.entry_id} (listing {entry.listing_id}) "
                "abandoned after repeated lease expiry"
            )
        if deactivated:
            metrics.listings_deactivated_total.inc(deactivated)
        return len(expired)

    async def prune_queue(self, now: datetime) -> int:
        """Delete terminal entries older than the queue retention window."""
        cutoff = now - timedelta(hours=settings.queue_retention_hours)
        async with self.session_factory() as db:
            deleted = await self.queue.delete_terminal(db, cutoff)
            await db.commit()

        metrics.janitor_rows_deleted_total.labels(table="scrape_queue").inc(deleted)
        logger.info(f"Deleted {deleted} terminal queue entries processed before {cutoff}")
        return deleted

    async def prune_history(self, now: datetime) -> int:
        """Delete price observations past their owner's tier retention."""
        total = 0
        async with self.session_factory() as db:
            for tier, policy in TIER_POLICIES.items():
                cutoff = now - timedelta(days=policy.retention_days)
                owners = select(User.id).where(User.tier == tier.value)
                result = await db.execute(
                    delete(PriceHistory)
                    .where(
                        PriceHistory.user_id.in_(owners),
                        PriceHistory.scraped_at < cutoff,
                    )
                    .execution_options(synchronize_session=False)
                )
                deleted = result.rowcount or 0
                if deleted:
                    logger.info(
                        f"Pruned {deleted} {tier.value} price observations older than "
                        f"{policy.retention_days} days"
                    )
                total += deleted
            await db.commit()

        metrics.janitor_rows_deleted_total.labels(table="price_history").inc(total)
        return total
