"""Queue populator: turns due listings into pending queue entries."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.config import settings
from price_tracker.db.session import AsyncSessionLocal
from price_tracker.queue.listings import ListingRepository, listing_repository
from price_tracker.queue.priority import compute_priority
from price_tracker.queue.repository import QueueRepository, queue_repository
from price_tracker import metrics

logger = logging.getLogger(__name__)


class QueuePopulator:
    """
    Scans the listing store for due listings and queues them.

    Safe to run repeatedly and concurrently: listings that already have an
    open entry are filtered out by the scan, and the insert itself does
    nothing on conflict with the one-open-entry-per-listing index. Each
    insert commits on its own, so an aborted scan only leaves listings for
    the next run.
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

    async def run(self, now: Optional[datetime] = None) -> dict:
        """
        Run one scan.

        Returns:
            Dict with scanned/enqueued/skipped counts

        Raises:
            SQLAlchemyError: Store failure; the scan is aborted
        """
        now = now or self.clock()
        due_before = now + timedelta(hours=settings.lookahead_hours)
        stats = {"scanned": 0, "enqueued": 0, "skipped": 0}

        after_id = 0
        while True:
            async with self.session_factory() as db:
                due = await self.listings.due_listings(
                    db,
                    due_before=due_before,
                    failure_threshold=settings.deactivation_threshold,
                    after_id=after_id,
                    limit=settings.populate_page_size,
                )
                if not due:
                    break

                for listing in due:
                    stats["scanned"] += 1
                    priority = compute_priority(listing.tier, listing.next_check_at, now)
                    created = await self.queue.enqueue(
                        db,
                        listing_id=listing.id,
                        user_id=listing.user_id,
                        tier=listing.tier,
                        scheduled_for=listing.next_check_at,
                        priority=priority,
                    )
                    await db.commit()

                    if created:
                        stats["enqueued"] += 1
                        metrics.queue_entries_enqueued_total.labels(tier=listing.tier).inc()
                    else:
                        stats["skipped"] += 1

                after_id = due[-1].id

            if len(due) < settings.populate_page_size:
                break

        logger.info(
            f"Populate complete: {stats['scanned']} due, "
            f"{stats['enqueued']} enqueued, {stats['skipped']} already queued"
        )
        return stats
