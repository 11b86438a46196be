"""Shared fixtures: a throwaway SQLite database and seed helpers."""

import os
from contextlib import asynccontextmanager

# Point the default engine at SQLite before any price_tracker module creates it
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test_price_tracker.db")

from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from price_tracker.db.models import (
    Base,
    PriceHistory,
    Product,
    ProductListing,
    ScrapeQueueEntry,
    Store,
    User,
    UserWatchlist,
)
from price_tracker.scrape.base import ScrapeResult, ScrapeTarget

NOW = datetime(2026, 1, 15, 12, 0, 0)


def fixed_clock(now: datetime = NOW):
    return lambda: now


@pytest.fixture
async def engine(tmp_path):
    """Per-test SQLite file so concurrent sessions see real locking and RETURNING."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Seeder:
    """Builds users, stores, products and listings for a test."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory
        self._counter = 0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    async def user(self, tier: str = "free") -> User:
        async with self.session_factory() as db:
            user = User(email=f"user{self._next()}@example.com", tier=tier, created_at=NOW)
            db.add(user)
            await db.commit()
            return user

    async def store(self, domain: Optional[str] = None, selector_hints: Optional[dict] = None) -> Store:
        n = self._next()
        async with self.session_factory() as db:
            store = Store(
                name=f"Store {n}",
                domain=domain or f"store{n}.example.com",
                selector_hints=selector_hints or {"price": ".price"},
                created_at=NOW,
            )
            db.add(store)
            await db.commit()
            return store

    async def listing(
        self,
        user: User,
        store: Store,
        next_check_at: datetime = NOW,
        consecutive_failures: int = 0,
        is_active: bool = True,
        product: Optional[Product] = None,
    ) -> ProductListing:
        n = self._next()
        async with self.session_factory() as db:
            if product is None:
                product = Product(user_id=user.id, name=f"Product {n}", created_at=NOW)
                db.add(product)
                await db.flush()
            listing = ProductListing(
                product_id=product.id,
                store_id=store.id,
                user_id=user.id,
                url=f"https://{store.domain}/item/{n}",
                next_check_at=next_check_at,
                check_interval_hours=24,
                consecutive_failures=consecutive_failures,
                is_active=is_active,
                created_at=NOW,
            )
            db.add(listing)
            await db.commit()
            return listing

    async def queue_entry(
        self,
        listing: ProductListing,
        tier: str = "free",
        scheduled_for: datetime = NOW,
        priority: int = 1,
        status: str = "pending",
        **fields,
    ) -> ScrapeQueueEntry:
        async with self.session_factory() as db:
            entry = ScrapeQueueEntry(
                listing_id=listing.id,
                user_id=listing.user_id,
                tier=tier,
                scheduled_for=scheduled_for,
                priority=priority,
                status=status,
                attempts=fields.pop("attempts", 0),
                created_at=NOW,
                **fields,
            )
            db.add(entry)
            await db.commit()
            return entry

    async def observation(
        self, listing: ProductListing, price: str, scraped_at: datetime
    ) -> PriceHistory:
        async with self.session_factory() as db:
            row = PriceHistory(
                listing_id=listing.id,
                user_id=listing.user_id,
                price=Decimal(price),
                currency="USD",
                scraped_at=scraped_at,
            )
            db.add(row)
            await db.commit()
            return row

    async def watchlist(self, user: User, product_id: int, target_price: str, **fields) -> UserWatchlist:
        async with self.session_factory() as db:
            entry = UserWatchlist(
                user_id=user.id,
                product_id=product_id,
                target_price=Decimal(target_price),
                notify_on_drop=fields.pop("notify_on_drop", True),
                is_active=fields.pop("is_active", True),
                created_at=NOW,
                **fields,
            )
            db.add(entry)
            await db.commit()
            return entry


@pytest.fixture
def seed(session_factory) -> Seeder:
    return Seeder(session_factory)


class FakeScraper:
    """Scraper double: records calls and fails for selected listing ids."""

    def __init__(self, price: str = "19.99", failing: Optional[set] = None):
        self.price = Decimal(price)
        self.failing = failing or set()
        self.calls: list[ScrapeTarget] = []
        self.sessions: list[str] = []

    def session(self, store_domain: str):
        scraper = self

        @asynccontextmanager
        async def _session():
            scraper.sessions.append(store_domain)
            yield scraper

        return _session()

    async def scrape(self, target: ScrapeTarget) -> ScrapeResult:
        self.calls.append(target)
        if target.listing_id in self.failing:
            raise RuntimeError("price element missing")
        return ScrapeResult(price=self.price, currency="USD", availability="in_stock")


@pytest.fixture
def fake_scraper() -> FakeScraper:
    return FakeScraper()
