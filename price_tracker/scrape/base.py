"""Boundary types for the external scrape collaborator."""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncContextManager, AsyncIterator, Awaitable, Callable, Optional, Protocol


@dataclass
class ScrapeTarget:
    """What the processor hands to a scraper for one listing."""

    listing_id: int
    url: str
    store_domain: str
    selector_hints: dict = field(default_factory=dict)


@dataclass
class ScrapeResult:
    """Extracted price data for one listing."""

    price: Optional[Decimal]
    currency: str = "USD"
    availability: str = "unknown"
    confidence: float = 1.0
    raw_price: Optional[str] = None


class StoreSession(Protocol):
    """Scraping context reused for every listing of one store within a run."""

    async def scrape(self, target: ScrapeTarget) -> ScrapeResult:
        ...


class Scraper(Protocol):
    """Opens per-store sessions. Any exception from ``scrape`` is a failed check."""

    def session(self, store_domain: str) -> AsyncContextManager[StoreSession]:
        ...


ScrapeFn = Callable[[ScrapeTarget], Awaitable[ScrapeResult]]


class _CallableSession:
    def __init__(self, fn: ScrapeFn):
        self._fn = fn

    async def scrape(self, target: ScrapeTarget) -> ScrapeResult:
        return await self._fn(target)


class CallableScraper:
    """Adapt a plain ``async fn(target) -> ScrapeResult`` to the Scraper protocol."""

    def __init__(self, fn: ScrapeFn):
        self._fn = fn

    @asynccontextmanager
    async def session(self, store_domain: str) -> AsyncIterator[StoreSession]:
        yield _CallableSession(self._fn)
