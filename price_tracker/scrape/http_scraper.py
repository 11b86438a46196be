"""Static HTML scraper driven by per-store selector hints."""

import logging
import re
from contextlib import asynccontextmanager
from decimal import Decimal, InvalidOperation
from typing import AsyncIterator, List, Optional, Tuple, Union

import httpx
from selectolax.parser import HTMLParser, Node

from price_tracker.config import settings
from price_tracker.errors import ScrapeError
from price_tracker.scrape.base import ScrapeResult, ScrapeTarget

logger = logging.getLogger(__name__)

# Tried when a store has no price hint, or its hint stopped matching
DEFAULT_PRICE_SELECTORS = [
    'meta[itemprop="price"]',
    'meta[property="product:price:amount"]',
    '[itemprop="price"]',
    '[data-price]',
    '.price',
]
DEFAULT_CURRENCY_SELECTORS = [
    'meta[itemprop="priceCurrency"]',
    'meta[property="product:price:currency"]',
]
CURRENCY_SYMBOLS = {"$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY"}

OUT_OF_STOCK_MARKERS = ("out of stock", "outofstock", "sold out", "unavailable")
IN_STOCK_MARKERS = ("in stock", "instock", "available", "add to cart")

# Fallback matches are less trustworthy than store-specific hints
HINTED_CONFIDENCE = 1.0
FALLBACK_CONFIDENCE = 0.6


def parse_selectors(selector_input: Union[str, List[str], None]) -> List[str]:
    """Split a selector hint (string, comma-separated string or list) into selectors."""
    if selector_input is None:
        return []
    if isinstance(selector_input, list):
        return [s.strip() for s in selector_input if s and s.strip()]
    return [s.strip() for s in selector_input.split(",") if s.strip()]


def parse_price(text: Optional[str]) -> Optional[Decimal]:
    """
    Parse a price from display text.

    Handles "$1,299.99", "1.299,99 €" and bare numbers. The right-most
    separator is the decimal point unless exactly three digits follow it,
    in which case it groups thousands.

    Returns:
        Decimal price or None if no number is found
    """
    if not text:
        return None

    match = re.search(r"\d[\d.,]*", text)
    if not match:
        return None
    number = match.group(0).rstrip(".,")

    last_sep = max(number.rfind("."), number.rfind(","))
    if last_sep != -1 and len(number) - last_sep - 1 != 3:
        integer_part = re.sub(r"[.,]", "", number[:last_sep])
        number = f"{integer_part}.{number[last_sep + 1:]}"
    else:
        number = re.sub(r"[.,]", "", number)

    try:
        return Decimal(number)
    except (InvalidOperation, ValueError):
        return None


def _node_value(node: Node) -> str:
    """Text of a node, preferring machine-readable attributes."""
    attrs = node.attributes
    for attr in ("content", "data-price", "value"):
        value = attrs.get(attr)
        if value:
            return value.strip()
    return node.text(strip=True)


def _first_match(parser: HTMLParser, selectors: List[str]) -> Tuple[Optional[str], Optional[Node]]:
    for selector in selectors:
        try:
            node = parser.css_first(selector)
        except Exception as e:
            logger.debug(f"Selector error {selector[:50]}: {e}")
            continue
        if node is not None:
            return selector, node
    return None, None


def _normalize_availability(text: Optional[str]) -> str:
    if not text:
        return "unknown"
    lowered = text.lower()
    if any(marker in lowered for marker in OUT_OF_STOCK_MARKERS):
        return "out_of_stock"
    if any(marker in lowered for marker in IN_STOCK_MARKERS):
        return "in_stock"
    return "unknown"


def parse_listing_html(html: str, selector_hints: Optional[dict] = None) -> ScrapeResult:
    """
    Extract price, currency and availability from a product page.

    Args:
        html: Page body
        selector_hints: Store hints with optional ``price``, ``currency``
            and ``availability`` selectors

    Raises:
        ScrapeError: No price could be located (not retriable)
    """
    hints = selector_hints or {}
    parser = HTMLParser(html)

    confidence = HINTED_CONFIDENCE
    _, price_node = _first_match(parser, parse_selectors(hints.get("price")))
    if price_node is None:
        confidence = FALLBACK_CONFIDENCE
        _, price_node = _first_match(parser, DEFAULT_PRICE_SELECTORS)
    if price_node is None:
        raise ScrapeError("Price element not found", retriable=False)

    raw_price = _node_value(price_node)
    price = parse_price(raw_price)
    if price is None:
        raise ScrapeError(f"Unparseable price text: {raw_price[:64]!r}", retriable=False)

    currency = hints.get("default_currency", "USD")
    _, currency_node = _first_match(
        parser, parse_selectors(hints.get("currency")) + DEFAULT_CURRENCY_SELECTORS
    )
    if currency_node is not None and _node_value(currency_node):
        currency = _node_value(currency_node).upper()[:8]
    else:
        for symbol, code in CURRENCY_SYMBOLS.items():
            if symbol in raw_price:
                currency = code
                break

    availability = "unknown"
    availability_selectors = parse_selectors(hints.get("availability"))
    if availability_selectors:
        _, availability_node = _first_match(parser, availability_selectors)
        if availability_node is not None:
            availability = _normalize_availability(_node_value(availability_node))

    return ScrapeResult(
        price=price,
        currency=currency,
        availability=availability,
        confidence=confidence,
        raw_price=raw_price[:64],
    )


class HttpStoreSession:
    """One HTTP client shared by all listings of a store within a run."""

    def __init__(self, client: httpx.AsyncClient, store_domain: str):
        self.client = client
        self.store_domain = store_domain

    async def scrape(self, target: ScrapeTarget) -> ScrapeResult:
        try:
            response = await self.client.get(target.url)
        except httpx.TimeoutException as e:
            raise ScrapeError(f"Timeout fetching {target.url}") from e
        except httpx.HTTPError as e:
            raise ScrapeError(f"{type(e).__name__} fetching {target.url}: {e}") from e

        if response.status_code >= 400:
            retriable = response.status_code >= 500 or response.status_code == 429
            raise ScrapeError(f"HTTP {response.status_code}", retriable=retriable)

        return parse_listing_html(response.text, target.selector_hints)


class HttpScraper:
    """Scraper implementation fetching pages with httpx."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout or settings.scrape_timeout_seconds
        self.user_agent = user_agent or settings.scrape_user_agent
        self._transport = transport

    @asynccontextmanager
    async def session(self, store_domain: str) -> AsyncIterator[HttpStoreSession]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=headers,
            transport=self._transport,
        ) as client:
            logger.debug(f"Opened scrape session for {store_domain}")
            yield HttpStoreSession(client, store_domain)
