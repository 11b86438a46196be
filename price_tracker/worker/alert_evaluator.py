"""Alert evaluator: notifies users when a product drops to their target price."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from price_tracker.db.models import PriceHistory, Product, ProductListing, User, UserWatchlist
from price_tracker.db.session import AsyncSessionLocal
from price_tracker.db.upsert import increment_usage
from price_tracker.notify.webhook import PriceDropNotification, WebhookNotifier
from price_tracker import metrics

logger = logging.getLogger(__name__)


@dataclass
class LatestObservation:
    price: Decimal
    currency: str
    scraped_at: datetime
    url: str


class AlertEvaluator:
    """
    Compares the latest observed price of each watched product to its target.

    A drop episode starts when the latest price is at or below target and
    ends once any observation above target is recorded. At most one
    notification is sent per episode: the watchlist row is claimed with a
    conditional update of ``last_notified_at`` before delivery, so
    overlapping runs cannot both notify.
    """

    def __init__(
        self,
        notifier: WebhookNotifier,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.notifier = notifier
        self.session_factory = session_factory
        self.clock = clock

    async def run(self, now: Optional[datetime] = None) -> dict:
        """
        Evaluate all active watchlist entries once.

        Returns:
            Dict with evaluated/notified/failed counts
        """
        now = now or self.clock()
        stats = {"evaluated": 0, "notified": 0, "failed": 0}

        async with self.session_factory() as db:
            result = await db.execute(
                select(UserWatchlist, User.email, Product.name)
                .join(User, User.id == UserWatchlist.user_id)
                .join(Product, Product.id == UserWatchlist.product_id)
                .where(
                    UserWatchlist.is_active.is_(True),
                    UserWatchlist.notify_on_drop.is_(True),
                )
                .order_by(UserWatchlist.id)
            )
            watchlists = result.all()

        for watchlist, email, product_name in watchlists:
            stats["evaluated"] += 1
            try:
                outcome = await self._evaluate(watchlist, email, product_name, now)
            except SQLAlchemyError as e:
                logger.error(f"Failed to evaluate watchlist {watchlist.id}: {e}")
                stats["failed"] += 1
                continue
            if outcome is not None:
                stats["notified" if outcome else "failed"] += 1

        logger.info(
            f"Alert evaluation complete: {stats['evaluated']} evaluated, "
            f"{stats['notified']} notified, {stats['failed']} failed"
        )
        return stats

    async def _latest_observation(
        self, db: AsyncSession, product_id: int
    ) -> Optional[LatestObservation]:
        result = await db.execute(
            select(
                PriceHistory.price,
                PriceHistory.currency,
                PriceHistory.scraped_at,
                ProductListing.url,
            )
            .join(ProductListing, ProductListing.id == PriceHistory.listing_id)
            .where(
                ProductListing.product_id == product_id,
                PriceHistory.price.is_not(None),
            )
            .order_by(PriceHistory.scraped_at.desc(), PriceHistory.id.desc())
            .limit(1)
        )
        row = result.one_or_none()
        if row is None:
            return None
        return LatestObservation(
            price=row.price, currency=row.currency, scraped_at=row.scraped_at, url=row.url
        )

    async def _episode_ended_since(
        self, db: AsyncSession, product_id: int, target: Decimal, since: datetime
    ) -> bool:
        """True if the price was seen above target after ``since``."""
        above_target = (
            select(PriceHistory.id)
            .join(ProductListing, ProductListing.id == PriceHistory.listing_id)
            .where(
                ProductListing.product_id == product_id,
                PriceHistory.price > target,
                PriceHistory.scraped_at > since,
            )
        )
        return bool(await db.scalar(select(exists(above_target))))

    async def _evaluate(
        self,
        watchlist: UserWatchlist,
        email: str,
        product_name: str,
        now: datetime,
    ) -> Optional[bool]:
        """
        Notify for one watchlist entry if a new drop episode started.

        Returns:
            None if nothing was due, True if sent, False if delivery failed
        """
        previous_at = watchlist.last_notified_at
        previous_price = watchlist.last_notified_price

        async with self.session_factory() as db:
            latest = await self._latest_observation(db, watchlist.product_id)
            if latest is None or latest.price > watchlist.target_price:
                return None

            if previous_at is not None and not await self._episode_ended_since(
                db, watchlist.product_id, watchlist.target_price, previous_at
            ):
                return None

            claim = (
                update(UserWatchlist)
                .where(
                    UserWatchlist.id == watchlist.id,
                    UserWatchlist.last_notified_at.is_(None)
                    if previous_at is None
                    else UserWatchlist.last_notified_at == previous_at,
                )
                .values(last_notified_at=now, last_notified_price=latest.price)
                .execution_options(synchronize_session=False)
            )
            if (await db.execute(claim)).rowcount != 1:
                await db.rollback()
                logger.debug(f"Watchlist {watchlist.id} already claimed by another run")
                return None
            await db.commit()

        notification = PriceDropNotification(
            watchlist_id=watchlist.id,
            user_id=watchlist.user_id,
            email=email,
            product_name=product_name,
            price=latest.price,
            target_price=watchlist.target_price,
            currency=latest.currency,
            url=latest.url,
        )

        try:
            await self.notifier.send(notification)
        except Exception as e:
            logger.error(f"Notification for watchlist {watchlist.id} failed: {e}")
            async with self.session_factory() as db:
                await db.execute(
                    update(UserWatchlist)
                    .where(
                        UserWatchlist.id == watchlist.id,
                        UserWatchlist.last_notified_at == now,
                    )
                    .values(last_notified_at=previous_at, last_notified_price=previous_price)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            metrics.watchlist_notifications_total.labels(status="failed").inc()
            return False

        async with self.session_factory() as db:
            await increment_usage(db, watchlist.user_id, now.date(), notifications=1)
            await db.commit()

        metrics.watchlist_notifications_total.labels(status="sent").inc()
        logger.info(
            f"Notified user {watchlist.user_id}: {product_name} at {latest.price} "
            f"(target {watchlist.target_price})"
        )
        return True
