"""Listing store access: due scans and the outcome writes made by the processor."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import case, exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from price_tracker.db.models import (
    OPEN_QUEUE_STATUSES,
    Product,
    ProductListing,
    ScrapeQueueEntry,
    Store,
    User,
)
from price_tracker.errors import ListingNotFound, ProductLimitExceeded
from price_tracker.queue.tiers import policy_for

logger = logging.getLogger(__name__)


@dataclass
class DueListing:
    """Projection of a listing the populator should queue."""

    id: int
    user_id: int
    tier: str
    next_check_at: datetime


@dataclass
class FailureOutcome:
    """State of a listing after a recorded failure."""

    consecutive_failures: int
    deactivated: bool


def lock_user(user_id: int):
    """SELECT of a user row holding a row lock for the rest of the transaction."""
    return select(User).where(User.id == user_id).with_for_update()


class ListingRepository:
    """Statements over ``product_listings``. Callers own the transaction."""

    async def due_listings(
        self,
        db: AsyncSession,
        *,
        due_before: datetime,
        failure_threshold: int,
        after_id: int = 0,
        limit: int = 500,
    ) -> list[DueListing]:
        """
        Active listings due by ``due_before`` with no open queue entry.

        Keyset-paginated on listing id so a scan can walk the table in pages.
        """
        open_entry = exists().where(
            ScrapeQueueEntry.listing_id == ProductListing.id,
            ScrapeQueueEntry.status.in_(OPEN_QUEUE_STATUSES),
        )
        query = (
            select(
                ProductListing.id,
                ProductListing.user_id,
                User.tier,
                ProductListing.next_check_at,
            )
            .join(User, User.id == ProductListing.user_id)
            .where(
                ProductListing.is_active.is_(True),
                ProductListing.next_check_at <= due_before,
                ProductListing.consecutive_failures < failure_threshold,
                ProductListing.id > after_id,
                ~open_entry,
            )
            .order_by(ProductListing.id.asc())
            .limit(limit)
        )
        result = await db.execute(query)
        return [
            DueListing(
                id=row.id,
                user_id=row.user_id,
                tier=row.tier,
                next_check_at=row.next_check_at,
            )
            for row in result
        ]

    async def load_for_processing(
        self, db: AsyncSession, listing_ids: list[int]
    ) -> dict[int, tuple[ProductListing, str]]:
        """Load listings (with store) and their owner's current tier, keyed by id."""
        if not listing_ids:
            return {}
        query = (
            select(ProductListing, User.tier)
            .join(User, User.id == ProductListing.user_id)
            .where(ProductListing.id.in_(listing_ids))
            .options(selectinload(ProductListing.store))
        )
        result = await db.execute(query)
        return {listing.id: (listing, tier) for listing, tier in result.all()}

    async def record_success(
        self,
        db: AsyncSession,
        listing_id: int,
        now: datetime,
        check_interval_hours: int,
    ) -> None:
        """Advance the listing's schedule and clear its failure streak."""
        await db.execute(
            update(ProductListing)
            .where(ProductListing.id == listing_id)
            .values(
                last_checked_at=now,
                next_check_at=now + timedelta(hours=check_interval_hours),
                check_interval_hours=check_interval_hours,
                consecutive_failures=0,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )

    async def record_failure(
        self,
        db: AsyncSession,
        listing_id: int,
        error: str,
        threshold: int,
    ) -> Optional[FailureOutcome]:
        """
        Increment the failure streak, deactivating the listing at ``threshold``.

        Done as one conditional UPDATE so concurrent failures never lose an
        increment. Returns None if the listing no longer exists.
        """
        new_count = ProductListing.consecutive_failures + 1
        stmt = (
            update(ProductListing)
            .where(ProductListing.id == listing_id)
            .values(
                consecutive_failures=new_count,
                last_error=error[:2000] if error else None,
                is_active=case(
                    (new_count >= threshold, False),
                    else_=ProductListing.is_active,
                ),
            )
            .returning(ProductListing.consecutive_failures, ProductListing.is_active)
            .execution_options(synchronize_session=False)
        )
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            return None
        return FailureOutcome(
            consecutive_failures=row.consecutive_failures,
            deactivated=row.consecutive_failures == threshold and not row.is_active,
        )

    async def add_listing(
        self,
        db: AsyncSession,
        *,
        user_id: int,
        store_id: int,
        url: str,
        product_id: Optional[int] = None,
        product_name: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ProductListing:
        """
        Start tracking a (product, store) page for a user.

        A new product counts against the tier's product limit; adding
        another store to an already tracked product does not.

        Raises:
            ProductLimitExceeded: The user is at their tier's product limit
            LookupError: Unknown user, store or product
        """
        now = now or datetime.utcnow()
        # Serializes concurrent adds for the same user until this transaction ends
        user = await db.scalar(lock_user(user_id))
        if user is None:
            raise LookupError(f"User {user_id} not found")
        store = await db.get(Store, store_id)
        if store is None:
            raise LookupError(f"Store {store_id} not found")

        policy = policy_for(user.tier)

        if product_id is not None:
            product = await db.get(Product, product_id)
            if product is None or product.user_id != user_id:
                raise LookupError(f"Product {product_id} not found")
        else:
            tracked = await db.scalar(
                select(func.count(Product.id)).where(Product.user_id == user_id)
            )
            if (tracked or 0) >= policy.max_products:
                raise ProductLimitExceeded(user.tier, policy.max_products)
            product = Product(user_id=user_id, name=product_name or url, created_at=now)
            db.add(product)
            await db.flush()

        listing = ProductListing(
            product_id=product.id,
            store_id=store.id,
            user_id=user_id,
            url=url,
            next_check_at=now,
            check_interval_hours=policy.check_interval_hours,
            consecutive_failures=0,
            is_active=True,
            created_at=now,
        )
        db.add(listing)
        await db.flush()
        logger.info(
            "Added listing %s for user %s (product %s, store %s)",
            listing.id, user_id, product.id, store.domain,
        )
        return listing

    async def reactivate(
        self, db: AsyncSession, listing_id: int, now: Optional[datetime] = None
    ) -> ProductListing:
        """Manual reset of a deactivated listing; it becomes due immediately."""
        listing = await db.get(ProductListing, listing_id)
        if listing is None:
            raise ListingNotFound(listing_id)
        listing.is_active = True
        listing.consecutive_failures = 0
        listing.last_error = None
        listing.next_check_at = now or datetime.utcnow()
        await db.flush()
        logger.info("Reactivated listing %s", listing_id)
        return listing


listing_repository = ListingRepository()
