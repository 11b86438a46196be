"""Exception types shared across the queue components."""


class PriceTrackerError(Exception):
    """Base class for all application errors."""


class ScrapeError(PriceTrackerError):
    """A scrape attempt failed.

    ``retriable`` distinguishes transient failures (timeouts, 5xx) from
    failures that are likely to repeat (page structure changed). Both are
    recorded the same way; the flag is kept for reporting.
    """

    def __init__(self, message: str, *, retriable: bool = True):
        super().__init__(message)
        self.retriable = retriable


class ProductLimitExceeded(PriceTrackerError):
    """User already tracks the maximum number of products for their tier."""

    def __init__(self, tier: str, limit: int):
        super().__init__(f"Tier '{tier}' allows at most {limit} tracked products")
        self.tier = tier
        self.limit = limit


class ListingNotFound(PriceTrackerError):
    """A queue entry or request references a listing that no longer exists."""

    def __init__(self, listing_id: int):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class StoreUnavailable(PriceTrackerError):
    """The relational store failed during a component run (transient)."""
