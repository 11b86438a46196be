"""Scrape queue data access and the lease-based claim protocol.

All cross-run coordination goes through these statements. A claim is a
single conditional UPDATE ... RETURNING, so two concurrent runs always
receive disjoint entries; resolution is conditional on the claim token,
so a run whose lease was taken over resolves nothing.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from price_tracker.db.models import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    TERMINAL_QUEUE_STATUSES,
    ProductListing,
    ScrapeQueueEntry,
)
from price_tracker.db.upsert import dialect_insert

logger = logging.getLogger(__name__)


@dataclass
class ExpiredEntry:
    """An entry failed because its lease expired too many times."""

    entry_id: int
    listing_id: int


def claimable(now: datetime, max_attempts: int):
    """Predicate for entries a run may claim at ``now``.

    Pending entries become eligible at ``scheduled_for``. Processing entries
    become eligible again once their lease has expired, unless they already
    used up their attempts.
    """
    return or_(
        and_(
            ScrapeQueueEntry.status == QUEUE_PENDING,
            ScrapeQueueEntry.scheduled_for <= now,
        ),
        and_(
            ScrapeQueueEntry.status == QUEUE_PROCESSING,
            ScrapeQueueEntry.locked_until < now,
            ScrapeQueueEntry.attempts < max_attempts,
        ),
    )


class QueueRepository:
    """Statements over ``scrape_queue``. Callers own the transaction."""

    async def enqueue(
        self,
        db: AsyncSession,
        *,
        listing_id: int,
        user_id: int,
        tier: str,
        scheduled_for: datetime,
        priority: int,
    ) -> bool:
        """
        Insert a pending entry unless the listing already has an open one.

        Returns:
            True if a new entry was created
        """
        stmt = (
            dialect_insert(db, ScrapeQueueEntry)
            .values(
                listing_id=listing_id,
                user_id=user_id,
                tier=tier,
                scheduled_for=scheduled_for,
                priority=priority,
                status=QUEUE_PENDING,
                attempts=0,
                created_at=datetime.utcnow(),
            )
            .on_conflict_do_nothing()
            .returning(ScrapeQueueEntry.id)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def claim_batch(
        self,
        db: AsyncSession,
        *,
        token: str,
        limit: int,
        lease: timedelta,
        now: datetime,
        max_attempts: int,
        scheduled_before: Optional[datetime] = None,
    ) -> list[ScrapeQueueEntry]:
        """
        Atomically claim up to ``limit`` entries for the run holding ``token``.

        Entries are picked by priority desc, scheduled_for asc. When
        ``scheduled_before`` is given only entries scheduled before it are
        considered, oldest first (starvation reserve).

        The claim is committed before returning.
        """
        if limit <= 0:
            return []

        candidates = select(ScrapeQueueEntry.id).where(claimable(now, max_attempts))
        if scheduled_before is not None:
            candidates = candidates.where(
                ScrapeQueueEntry.scheduled_for < scheduled_before
            ).order_by(ScrapeQueueEntry.scheduled_for.asc(), ScrapeQueueEntry.id.asc())
        else:
            candidates = candidates.order_by(
                ScrapeQueueEntry.priority.desc(),
                ScrapeQueueEntry.scheduled_for.asc(),
                ScrapeQueueEntry.id.asc(),
            )
        candidates = candidates.limit(limit).with_for_update(skip_locked=True)

        stmt = (
            update(ScrapeQueueEntry)
            .where(
                ScrapeQueueEntry.id.in_(candidates),
                claimable(now, max_attempts),
            )
            .values(
                status=QUEUE_PROCESSING,
                locked_until=now + lease,
                locked_by=token,
                attempts=ScrapeQueueEntry.attempts + 1,
            )
            .returning(ScrapeQueueEntry)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        entries = list(result.scalars().all())
        await db.commit()

        entries.sort(key=lambda e: (-e.priority, e.scheduled_for, e.id))
        return entries

    async def complete(
        self, db: AsyncSession, entry_id: int, token: str, now: datetime
    ) -> bool:
        """Mark a claimed entry completed. False if the claim was lost."""
        return await self._resolve(db, entry_id, token, now, QUEUE_COMPLETED, None)

    async def fail(
        self, db: AsyncSession, entry_id: int, token: str, now: datetime, error: str
    ) -> bool:
        """Mark a claimed entry failed. False if the claim was lost."""
        return await self._resolve(db, entry_id, token, now, QUEUE_FAILED, error)

    async def _resolve(
        self,
        db: AsyncSession,
        entry_id: int,
        token: str,
        now: datetime,
        status: str,
        error: Optional[str],
    ) -> bool:
        stmt = (
            update(ScrapeQueueEntry)
            .where(
                ScrapeQueueEntry.id == entry_id,
                ScrapeQueueEntry.status == QUEUE_PROCESSING,
                ScrapeQueueEntry.locked_by == token,
            )
            .values(
                status=status,
                processed_at=now,
                locked_until=None,
                error_message=error[:2000] if error else None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount == 1

    async def release(self, db: AsyncSession, entry_ids: list[int], token: str) -> int:
        """
        Hand claimed-but-unstarted entries back to the pending pool.

        The attempt taken by the claim is returned as well.
        """
        if not entry_ids:
            return 0
        stmt = (
            update(ScrapeQueueEntry)
            .where(
                ScrapeQueueEntry.id.in_(entry_ids),
                ScrapeQueueEntry.status == QUEUE_PROCESSING,
                ScrapeQueueEntry.locked_by == token,
            )
            .values(
                status=QUEUE_PENDING,
                locked_until=None,
                locked_by=None,
                attempts=case(
                    (ScrapeQueueEntry.attempts > 0, ScrapeQueueEntry.attempts - 1),
                    else_=0,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return result.rowcount

    async def fail_exhausted(
        self, db: AsyncSession, now: datetime, max_attempts: int
    ) -> list[ExpiredEntry]:
        """Fail processing entries whose lease expired after the last allowed attempt."""
        stmt = (
            update(ScrapeQueueEntry)
            .where(
                ScrapeQueueEntry.status == QUEUE_PROCESSING,
                ScrapeQueueEntry.locked_until < now,
                ScrapeQueueEntry.attempts >= max_attempts,
            )
            .values(
                status=QUEUE_FAILED,
                processed_at=now,
                locked_until=None,
                error_message=f"Lease expired after {max_attempts} attempts",
            )
            .returning(ScrapeQueueEntry.id, ScrapeQueueEntry.listing_id)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        return [ExpiredEntry(entry_id=row.id, listing_id=row.listing_id) for row in result]

    async def delete_terminal(self, db: AsyncSession, processed_before: datetime) -> int:
        """Delete completed/failed entries processed before the cutoff."""
        stmt = delete(ScrapeQueueEntry).where(
            ScrapeQueueEntry.status.in_(TERMINAL_QUEUE_STATUSES),
            ScrapeQueueEntry.processed_at < processed_before,
        ).execution_options(synchronize_session=False)
        result = await db.execute(stmt)
        return result.rowcount

    async def stats(self, db: AsyncSession, now: datetime) -> dict:
        """Queue depth by status plus health indicators for the dashboard."""
        by_status = {
            QUEUE_PENDING: 0,
            QUEUE_PROCESSING: 0,
            QUEUE_COMPLETED: 0,
            QUEUE_FAILED: 0,
        }
        result = await db.execute(
            select(ScrapeQueueEntry.status, func.count(ScrapeQueueEntry.id)).group_by(
                ScrapeQueueEntry.status
            )
        )
        for status, count in result.all():
            by_status[status] = count

        oldest_pending = await db.scalar(
            select(func.min(ScrapeQueueEntry.scheduled_for)).where(
                ScrapeQueueEntry.status == QUEUE_PENDING
            )
        )
        expired_leases = await db.scalar(
            select(func.count(ScrapeQueueEntry.id)).where(
                ScrapeQueueEntry.status == QUEUE_PROCESSING,
                ScrapeQueueEntry.locked_until < now,
            )
        )
        deactivated = await db.scalar(
            select(func.count(ProductListing.id)).where(ProductListing.is_active.is_(False))
        )

        oldest_age_hours = None
        if oldest_pending is not None:
            oldest_age_hours = round(max(0.0, (now - oldest_pending).total_seconds()) / 3600, 2)

        return {
            "by_status": by_status,
            "oldest_pending_age_hours": oldest_age_hours,
            "expired_leases": expired_leases or 0,
            "deactivated_listings": deactivated or 0,
        }


queue_repository = QueueRepository()
