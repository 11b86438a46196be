"""Queue processor: claim a batch, scrape each listing, record the outcome."""

import asyncio
import time
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.config import settings
from price_tracker.db.models import PriceHistory, ProductListing, ScrapeQueueEntry
from price_tracker.db.session import AsyncSessionLocal
from price_tracker.db.upsert import increment_usage
from price_tracker.errors import ListingNotFound
from price_tracker.logging_config import LoggerAdapter, get_logger
from price_tracker.queue.listings import ListingRepository, listing_repository
from price_tracker.queue.repository import QueueRepository, queue_repository
from price_tracker.queue.tiers import policy_for
from price_tracker.scrape.base import ScrapeResult, ScrapeTarget, Scraper, StoreSession
from price_tracker import metrics

# Extra time given to a scrape beyond the scraper's own HTTP timeout
SCRAPE_TIMEOUT_GRACE_SECONDS = 5.0

WorkItem = tuple[ScrapeQueueEntry, ProductListing, str]


class QueueProcessor:
    """
    Runs one claim-execute-resolve cycle over the scrape queue.

    Concurrency control lives entirely in the queue statements: the claim
    hands this run a disjoint set of entries under a lease, and every
    resolution is conditional on still holding that lease. A run that
    crashes leaves entries to be reclaimed once their lease expires.
    """

    def __init__(
        self,
        scraper: Scraper,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        listings: ListingRepository = listing_repository,
        queue: QueueRepository = queue_repository,
        clock: Callable[[], datetime] = datetime.utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.scraper = scraper
        self.session_factory = session_factory
        self.listings = listings
        self.queue = queue
        self.clock = clock
        self.monotonic = monotonic

    async def run(
        self,
        processor_id: str = "default",
        batch_size: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
    ) -> dict:
        """
        Process one batch.

        Args:
            processor_id: Name of the invoker, for logs and lease ownership
            batch_size: Max entries to claim (defaults to settings)
            time_budget_seconds: Wall-clock budget; no scrape starts after it.
                Independently, no scrape starts once it could outlive the lease.

        Returns:
            Dict with claimed/completed/failed counts plus skipped (missing
            listing), released (budget or lease ran out), lost (lease taken over) and
            errors (outcome could not be written)

        Raises:
            SQLAlchemyError: The claim itself failed
        """
        batch_size = settings.processor_batch_size if batch_size is None else batch_size
        budget = (
            settings.processor_time_budget_seconds
            if time_budget_seconds is None
            else time_budget_seconds
        )
        token = f"{processor_id[:40]}:{uuid4().hex[:16]}"
        log = get_logger(__name__, processor_id=processor_id, run_id=token)
        deadline = self.monotonic() + budget

        stats = {
            "claimed": 0,
            "completed": 0,
            "failed": 0,
            "skipped": 0,
            "released": 0,
            "lost": 0,
            "errors": 0,
        }

        claimed_at = self.clock()
        entries = await self._claim(token, batch_size, claimed_at)
        stats["claimed"] = len(entries)
        metrics.queue_entries_claimed_total.inc(len(entries))
        if not entries:
            log.info(f"[{processor_id}] No eligible queue entries")
            return stats

        async with self.session_factory() as db:
            loaded = await self.listings.load_for_processing(
                db, [entry.listing_id for entry in entries]
            )

        groups: dict[str, list[WorkItem]] = {}
        for entry in entries:
            found = loaded.get(entry.listing_id)
            if found is None:
                await self._skip_missing_listing(entry, token, stats, log)
                continue
            listing, tier = found
            groups.setdefault(listing.store.domain, []).append((entry, listing, tier))

        # No scrape may start that could still be running when the lease ends
        lease_cutoff = (
            claimed_at
            + timedelta(minutes=settings.lease_minutes)
            - timedelta(seconds=settings.scrape_timeout_seconds + SCRAPE_TIMEOUT_GRACE_SECONDS)
        )
        semaphore = asyncio.Semaphore(max(1, settings.processor_max_concurrency))

        async def run_group(domain: str, items: list[WorkItem]) -> None:
            async with semaphore:
                await self._process_group(
                    domain, items, token, deadline, lease_cutoff, stats, log
                )

        await asyncio.gather(*(run_group(domain, items) for domain, items in groups.items()))

        log.info(
            f"[{processor_id}] Processed batch: {stats['claimed']} claimed, "
            f"{stats['completed']} completed, {stats['failed']} failed, "
            f"{stats['skipped']} skipped, {stats['released']} released, "
            f"{stats['lost']} lost, {stats['errors']} errors "
            f"across {len(groups)} stores"
        )
        return stats

    async def _claim(
        self, token: str, batch_size: int, now: datetime
    ) -> list[ScrapeQueueEntry]:
        """Claim the starvation reserve first, then fill the batch by priority."""
        lease = timedelta(minutes=settings.lease_minutes)
        reserve = min(max(0, settings.starvation_reserve_slots), batch_size)

        async with self.session_factory() as db:
            reserved = await self.queue.claim_batch(
                db,
                token=token,
                limit=reserve,
                lease=lease,
                now=now,
                max_attempts=settings.max_claim_attempts,
                scheduled_before=now - timedelta(hours=settings.starvation_threshold_hours),
            )
            by_priority = await self.queue.claim_batch(
                db,
                token=token,
                limit=batch_size - len(reserved),
                lease=lease,
                now=now,
                max_attempts=settings.max_claim_attempts,
            )
        return reserved + by_priority

    async def _process_group(
        self,
        domain: str,
        items: list[WorkItem],
        token: str,
        deadline: float,
        lease_cutoff: datetime,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        """Scrape one store's entries sequentially over a shared session."""
        remaining = list(items)
        reason = ""
        try:
            async with self.scraper.session(domain) as session:
                while remaining:
                    if self.monotonic() >= deadline:
                        reason = "Time budget exhausted"
                        break
                    if self.clock() >= lease_cutoff:
                        reason = "Lease would expire mid-scrape"
                        break
                    entry, listing, tier = remaining.pop(0)
                    await self._process_entry(session, domain, entry, listing, tier, token, stats, log)
        except Exception as e:
            # Opening (or closing) the store session failed
            log.warning(f"Scrape session for {domain} failed: {e}")
            while remaining:
                entry, listing, _ = remaining.pop(0)
                await self._record_failure(
                    entry, listing, f"Session error: {type(e).__name__}: {e}", token, stats, log
                )

        if remaining:
            await self._release(remaining, token, reason, stats, log)

    async def _process_entry(
        self,
        session: StoreSession,
        domain: str,
        entry: ScrapeQueueEntry,
        listing: ProductListing,
        tier: str,
        token: str,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        target = ScrapeTarget(
            listing_id=listing.id,
            url=listing.url,
            store_domain=domain,
            selector_hints=listing.store.selector_hints or {},
        )

        started = self.monotonic()
        result: Optional[ScrapeResult] = None
        error: Optional[str] = None
        try:
            result = await asyncio.wait_for(
                session.scrape(target),
                timeout=settings.scrape_timeout_seconds + SCRAPE_TIMEOUT_GRACE_SECONDS,
            )
        except asyncio.TimeoutError:
            error = f"Scrape timed out after {settings.scrape_timeout_seconds:.0f}s"
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
        metrics.record_scrape(domain, self.monotonic() - started)

        if result is not None:
            await self._record_success(entry, listing, tier, result, token, stats, log)
        else:
            await self._record_failure(entry, listing, error or "Unknown scrape error", token, stats, log)

    async def _record_success(
        self,
        entry: ScrapeQueueEntry,
        listing: ProductListing,
        tier: str,
        result: ScrapeResult,
        token: str,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        now = self.clock()
        interval = policy_for(tier).check_interval_hours
        try:
            async with self.session_factory() as db:
                if not await self.queue.complete(db, entry.id, token, now):
                    await db.rollback()
                    stats["lost"] += 1
                    log.warning(f"Lease lost for queue entry {entry.id}; result discarded")
                    return

                db.add(
                    PriceHistory(
                        listing_id=listing.id,
                        user_id=listing.user_id,
                        price=result.price,
                        raw_price=result.raw_price,
                        currency=result.currency,
                        availability=result.availability,
                        confidence=result.confidence,
                        scraped_at=now,
                    )
                )
                await self.listings.record_success(db, listing.id, now, interval)
                await increment_usage(db, listing.user_id, now.date(), scrapes=1)
                await db.commit()
        except SQLAlchemyError as e:
            stats["errors"] += 1
            log.error(
                f"Could not record success for queue entry {entry.id}: {e}; "
                "entry stays leased until expiry"
            )
            return

        stats["completed"] += 1
        metrics.record_outcome("completed")
        log.debug(f"Listing {listing.id} checked: {result.price} {result.currency}")

    async def _record_failure(
        self,
        entry: ScrapeQueueEntry,
        listing: ProductListing,
        error: str,
        token: str,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        now = self.clock()
        try:
            async with self.session_factory() as db:
                if not await self.queue.fail(db, entry.id, token, now, error):
                    await db.rollback()
                    stats["lost"] += 1
                    log.warning(f"Lease lost for queue entry {entry.id}; failure discarded")
                    return
                outcome = await self.listings.record_failure(
                    db, listing.id, error, settings.deactivation_threshold
                )
                await db.commit()
        except SQLAlchemyError as e:
            stats["errors"] += 1
            log.error(
                f"Could not record failure for queue entry {entry.id}: {e}; "
                "entry stays leased until expiry"
            )
            return

        stats["failed"] += 1
        metrics.record_outcome("failed")
        log.warning(f"Listing {listing.id} check failed: {error}")
        if outcome is not None and outcome.deactivated:
            metrics.listings_deactivated_total.inc()
            log.warning(
                f"Listing {listing.id} deactivated after "
                f"{outcome.consecutive_failures} consecutive failures"
            )

    async def _skip_missing_listing(
        self,
        entry: ScrapeQueueEntry,
        token: str,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        error = ListingNotFound(entry.listing_id)
        log.error(f"Queue entry {entry.id}: {error}; skipping")
        try:
            async with self.session_factory() as db:
                await self.queue.fail(db, entry.id, token, self.clock(), str(error))
                await db.commit()
        except SQLAlchemyError as e:
            stats["errors"] += 1
            log.error(f"Could not fail orphaned queue entry {entry.id}: {e}")
            return
        stats["skipped"] += 1
        metrics.record_outcome("failed")

    async def _release(
        self,
        items: list[WorkItem],
        token: str,
        reason: str,
        stats: dict,
        log: LoggerAdapter,
    ) -> None:
        entry_ids = [entry.id for entry, _, _ in items]
        try:
            async with self.session_factory() as db:
                released = await self.queue.release(db, entry_ids, token)
                await db.commit()
        except SQLAlchemyError as e:
            log.error(f"Could not release {len(entry_ids)} entries: {e}; leases will expire")
            return
        stats["released"] += released
        log.info(f"{reason}; released {released} unstarted entries")
