"""Tests for the queue processor and the lease-based claim protocol."""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select

from price_tracker.config import settings
from price_tracker.db.models import (
    PriceHistory,
    ProductListing,
    ScrapeQueueEntry,
    UsageTracking,
)
from price_tracker.queue.repository import QueueRepository
from price_tracker.worker.populator import QueuePopulator
from price_tracker.worker.processor import QueueProcessor

from conftest import NOW, FakeScraper, fixed_clock


@pytest.fixture(autouse=True)
def processor_settings(monkeypatch):
    monkeypatch.setattr(settings, "processor_batch_size", 20)
    monkeypatch.setattr(settings, "lease_minutes", 5)
    monkeypatch.setattr(settings, "deactivation_threshold", 5)
    monkeypatch.setattr(settings, "max_claim_attempts", 3)
    monkeypatch.setattr(settings, "starvation_reserve_slots", 2)
    monkeypatch.setattr(settings, "starvation_threshold_hours", 24)
    monkeypatch.setattr(settings, "processor_max_concurrency", 2)


async def _all(session_factory, model):
    async with session_factory() as db:
        result = await db.execute(select(model).order_by(model.id))
        return list(result.scalars().all())


async def _get(session_factory, model, pk):
    async with session_factory() as db:
        return await db.get(model, pk)


async def test_empty_queue_is_a_noop(session_factory, fake_scraper):
    processor = QueueProcessor(fake_scraper, session_factory=session_factory, clock=fixed_clock())
    stats = await processor.run("test")

    assert stats["claimed"] == 0
    assert stats["completed"] == 0
    assert stats["failed"] == 0
    assert fake_scraper.calls == []


async def test_batch_of_twenty_all_succeed(session_factory, seed, fake_scraper):
    user = await seed.user("premium")
    store = await seed.store()
    listings = []
    for i in range(25):
        listing = await seed.listing(user, store, next_check_at=NOW - timedelta(hours=1))
        listings.append(listing)
        await seed.queue_entry(listing, tier="premium", priority=5 + (i % 3))

    processor = QueueProcessor(fake_scraper, session_factory=session_factory, clock=fixed_clock())
    stats = await processor.run("test")

    assert stats["claimed"] == 20
    assert stats["completed"] == 20
    assert stats["failed"] == 0

    entries = await _all(session_factory, ScrapeQueueEntry)
    completed = [e for e in entries if e.status == "completed"]
    assert len(completed) == 20
    assert all(e.processed_at == NOW and e.locked_until is None for e in completed)
    # Highest priorities were claimed first
    assert min(e.priority for e in completed) >= max(
        e.priority for e in entries if e.status == "pending"
    )

    completed_listing_ids = {e.listing_id for e in completed}
    for listing in await _all(session_factory, ProductListing):
        if listing.id in completed_listing_ids:
            assert listing.consecutive_failures == 0
            assert listing.last_checked_at == NOW
            assert listing.next_check_at == NOW + timedelta(hours=6)
            assert listing.check_interval_hours == 6

    history = await _all(session_factory, PriceHistory)
    assert len(history) == 20
    [usage] = await _all(session_factory, UsageTracking)
    assert usage.scrapes_performed == 20
    # One session for the single store
    assert fake_scraper.sessions == [store.domain]


async def test_failure_is_isolated_per_entry(session_factory, seed):
    user = await seed.user("free")
    store = await seed.store()
    good = await seed.listing(user, store)
    bad = await seed.listing(user, store, consecutive_failures=2)
    await seed.queue_entry(good)
    bad_entry = await seed.queue_entry(bad)

    scraper = FakeScraper(failing={bad.id})
    processor = QueueProcessor(scraper, session_factory=session_factory, clock=fixed_clock())
    stats = await processor.run("test")

    assert stats["completed"] == 1
    assert stats["failed"] == 1

    entry = await _get(session_factory, ScrapeQueueEntry, bad_entry.id)
    assert entry.status == "failed"
    assert "price element missing" in entry.error_message
    assert entry.processed_at == NOW

    listing = await _get(session_factory, ProductListing, bad.id)
    assert listing.consecutive_failures == 3
    assert listing.is_active is True
    assert listing.next_check_at == bad.next_check_at


async def test_five_failures_deactivate_and_stop_scheduling(session_factory, seed):
    user = await seed.user("free")
    store = await seed.store()
    listing = await seed.listing(user, store, next_check_at=NOW - timedelta(hours=2))
    scraper = FakeScraper(failing={listing.id})

    for cycle in range(5):
        now = NOW + timedelta(hours=cycle)
        populated = await QueuePopulator(session_factory=session_factory, clock=fixed_clock(now)).run()
        assert populated["enqueued"] == 1
        stats = await QueueProcessor(
            scraper, session_factory=session_factory, clock=fixed_clock(now)
        ).run("test")
        assert stats["failed"] == 1

    refreshed = await _get(session_factory, ProductListing, listing.id)
    assert refreshed.consecutive_failures == 5
    assert refreshed.is_active is False

    sixth = await QueuePopulator(
        session_factory=session_factory, clock=fixed_clock(NOW + timedelta(hours=6))
    ).run()
    assert sixth["enqueued"] == 0


async def test_success_resets_failure_streak(session_factory, seed, fake_scraper):
    user = await seed.user("premium_plus")
    store = await seed.store()
    listing = await seed.listing(user, store, consecutive_failures=4)
    await seed.queue_entry(listing, tier="premium_plus", priority=10)

    await QueueProcessor(fake_scraper, session_factory=session_factory, clock=fixed_clock()).run()

    refreshed = await _get(session_factory, ProductListing, listing.id)
    assert refreshed.consecutive_failures == 0
    assert refreshed.next_check_at == NOW + timedelta(hours=1)


async def test_concurrent_claims_are_disjoint(session_factory, seed):
    user = await seed.user("free")
    store = await seed.store()
    for _ in range(10):
        listing = await seed.listing(user, store)
        await seed.queue_entry(listing)

    repo = QueueRepository()

    async def claim(token):
        async with session_factory() as db:
            return await repo.claim_batch(
                db,
                token=token,
                limit=6,
                lease=timedelta(minutes=5),
                now=NOW,
                max_attempts=3,
            )

    first, second = await asyncio.gather(claim("run-a"), claim("run-b"))
    ids_a = {e.id for e in first}
    ids_b = {e.id for e in second}

    assert not ids_a & ids_b
    assert len(ids_a) + len(ids_b) == 10
    entries = await _all(session_factory, ScrapeQueueEntry)
    assert all(e.status == "processing" and e.attempts == 1 for e in entries)


async def test_crashed_claim_recovered_after_lease_expiry(session_factory, seed, fake_scraper):
    user = await seed.user("free")
    store = await seed.store()
    listing = await seed.listing(user, store)
    entry = await seed.queue_entry(listing)
    repo = QueueRepository()

    # First run claims and then "crashes" before resolving
    async with session_factory() as db:
        [claimed] = await repo.claim_batch(
            db, token="crashed", limit=5, lease=timedelta(minutes=5), now=NOW, max_attempts=3
        )
    assert claimed.id == entry.id

    # Still leased: nothing to claim
    early = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock(NOW + timedelta(minutes=4))
    ).run("second")
    assert early["claimed"] == 0

    later = NOW + timedelta(minutes=6)
    stats = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock(later)
    ).run("second")
    assert stats["claimed"] == 1
    assert stats["completed"] == 1

    # The crashed run waking up cannot resolve the entry a second time
    async with session_factory() as db:
        assert await repo.complete(db, entry.id, "crashed", later) is False
        assert await repo.fail(db, entry.id, "crashed", later, "late") is False
        await db.commit()

    resolved = await _get(session_factory, ScrapeQueueEntry, entry.id)
    assert resolved.status == "completed"
    assert resolved.attempts == 2


async def test_exhausted_entry_not_reclaimed(session_factory, seed, fake_scraper):
    user = await seed.user("free")
    store = await seed.store()
    listing = await seed.listing(user, store)
    await seed.queue_entry(
        listing,
        status="processing",
        attempts=3,
        locked_by="gone",
        locked_until=NOW - timedelta(minutes=1),
    )

    stats = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock()
    ).run()
    assert stats["claimed"] == 0


async def test_missing_listing_is_skipped_without_aborting(session_factory, seed, fake_scraper):
    user = await seed.user("free")
    store = await seed.store()
    listing = await seed.listing(user, store)
    await seed.queue_entry(listing)
    orphan = await seed.listing(user, store)
    orphan_entry = await seed.queue_entry(orphan)

    async with session_factory() as db:
        await db.delete(await db.get(ProductListing, orphan.id))
        await db.commit()

    stats = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock()
    ).run()

    assert stats["claimed"] == 2
    assert stats["completed"] == 1
    assert stats["skipped"] == 1
    entry = await _get(session_factory, ScrapeQueueEntry, orphan_entry.id)
    assert entry.status == "failed"
    assert "not found" in entry.error_message


async def test_time_budget_releases_unstarted_entries(session_factory, seed, fake_scraper):
    user = await seed.user("free")
    store = await seed.store()
    for _ in range(3):
        listing = await seed.listing(user, store)
        await seed.queue_entry(listing)

    ticks = iter([0.0] + [1000.0] * 20)
    processor = QueueProcessor(
        fake_scraper,
        session_factory=session_factory,
        clock=fixed_clock(),
        monotonic=lambda: next(ticks),
    )
    stats = await processor.run("test", time_budget_seconds=10)

    assert stats["claimed"] == 3
    assert stats["released"] == 3
    assert fake_scraper.calls == []

    entries = await _all(session_factory, ScrapeQueueEntry)
    assert all(e.status == "pending" and e.attempts == 0 and e.locked_by is None for e in entries)


async def test_starvation_reserve_claims_oldest_entries(session_factory, seed, fake_scraper, monkeypatch):
    monkeypatch.setattr(settings, "processor_batch_size", 3)
    free_user = await seed.user("free")
    plus_user = await seed.user("premium_plus")
    store = await seed.store()

    stale = await seed.listing(free_user, store, next_check_at=NOW - timedelta(hours=30))
    stale_entry = await seed.queue_entry(
        stale, scheduled_for=NOW - timedelta(hours=30), priority=6
    )
    for _ in range(5):
        listing = await seed.listing(plus_user, store)
        await seed.queue_entry(listing, tier="premium_plus", priority=10)

    stats = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock()
    ).run()

    assert stats["claimed"] == 3
    claimed_ids = {t.listing_id for t in fake_scraper.calls}
    assert stale.id in claimed_ids
    assert (await _get(session_factory, ScrapeQueueEntry, stale_entry.id)).status == "completed"


async def test_stores_get_their_own_sessions(session_factory, seed, fake_scraper):
    user = await seed.user("premium")
    store_a = await seed.store("a.example.com")
    store_b = await seed.store("b.example.com")
    for store in (store_a, store_b, store_a):
        listing = await seed.listing(user, store)
        await seed.queue_entry(listing, tier="premium", priority=5)

    stats = await QueueProcessor(
        fake_scraper, session_factory=session_factory, clock=fixed_clock()
    ).run()

    assert stats["completed"] == 3
    assert sorted(fake_scraper.sessions) == ["a.example.com", "b.example.com"]


class SteppingClock:
    """Clock that a test can move forward while a run is in progress."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


async def test_no_scrape_starts_after_lease_cutoff(session_factory, seed, monkeypatch):
    monkeypatch.setattr(settings, "scrape_timeout_seconds", 30.0)
    user = await seed.user("free")
    store = await seed.store()
    first = await seed.listing(user, store)
    second = await seed.listing(user, store)
    await seed.queue_entry(first)
    second_entry = await seed.queue_entry(second)

    clock = SteppingClock(NOW)
    slow_scraper = FakeScraper()
    original_scrape = slow_scraper.scrape

    async def slow_scrape(target):
        # The first scrape eats the whole lease
        clock.now = NOW + timedelta(minutes=5)
        return await original_scrape(target)

    slow_scraper.scrape = slow_scrape

    stats = await QueueProcessor(
        slow_scraper, session_factory=session_factory, clock=clock
    ).run("slow")

    assert stats["claimed"] == 2
    assert stats["completed"] == 1
    assert stats["released"] == 1
    assert [t.listing_id for t in slow_scraper.calls] == [first.id]

    released = await _get(session_factory, ScrapeQueueEntry, second_entry.id)
    assert released.status == "pending"
    assert released.locked_by is None
    assert released.attempts == 0

    # A later run picks the entry up; it is scraped exactly once overall
    other_scraper = FakeScraper()
    later = await QueueProcessor(
        other_scraper, session_factory=session_factory, clock=fixed_clock(NOW + timedelta(minutes=6))
    ).run("other")

    assert later["completed"] == 1
    assert [t.listing_id for t in other_scraper.calls] == [second.id]
    assert (await _get(session_factory, ScrapeQueueEntry, second_entry.id)).status == "completed"


async def test_scrapes_inside_lease_window_proceed(session_factory, seed, fake_scraper, monkeypatch):
    monkeypatch.setattr(settings, "scrape_timeout_seconds", 30.0)
    user = await seed.user("free")
    store = await seed.store()
    for _ in range(2):
        listing = await seed.listing(user, store)
        await seed.queue_entry(listing)

    clock = SteppingClock(NOW)
    original_scrape = fake_scraper.scrape

    async def scrape(target):
        # Lease 5m, cutoff at 4m25s: both scrapes start before it
        clock.now += timedelta(minutes=2)
        return await original_scrape(target)

    fake_scraper.scrape = scrape

    stats = await QueueProcessor(fake_scraper, session_factory=session_factory, clock=clock).run()

    assert stats["completed"] == 2
    assert stats["released"] == 0
