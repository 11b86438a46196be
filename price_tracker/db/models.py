"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from price_tracker.queue.tiers import Tier

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"

OPEN_QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING)
TERMINAL_QUEUE_STATUSES = (QUEUE_COMPLETED, QUEUE_FAILED)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Account owning tracked products. Tier drives scheduling and retention."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    tier: Mapped[str] = mapped_column(String(32), default=Tier.FREE.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    products: Mapped[list["Product"]] = relationship(
        "Product", back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "tier IN ('free', 'premium', 'premium_plus')", name="ck_users_tier"
        ),
    )


class Store(Base):
    """Retailer a listing points at. Selector hints feed the scraper."""

    __tablename__ = "stores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    domain: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    selector_hints: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    listings: Mapped[list["ProductListing"]] = relationship(
        "ProductListing", back_populates="store"
    )


class Product(Base):
    """A product a user wants to follow across one or more stores."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    user: Mapped["User"] = relationship("User", back_populates="products")
    listings: Mapped[list["ProductListing"]] = relationship(
        "ProductListing", back_populates="product", cascade="all, delete-orphan"
    )
    watchlists: Mapped[list["UserWatchlist"]] = relationship(
        "UserWatchlist", back_populates="product", cascade="all, delete-orphan"
    )


class ProductListing(Base):
    """One (product, store) page to check on a tier-driven cadence."""

    __tablename__ = "product_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    store_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("stores.id"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # Denormalized owner
    url: Mapped[str] = mapped_column(Text, nullable=False)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_check_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    check_interval_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="listings")
    store: Mapped["Store"] = relationship("Store", back_populates="listings")
    price_history: Mapped[list["PriceHistory"]] = relationship(
        "PriceHistory", back_populates="listing", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("product_id", "store_id", name="uq_listing_product_store"),
        CheckConstraint("consecutive_failures >= 0", name="ck_listing_failures_non_negative"),
        Index(
            "ix_product_listings_due",
            "next_check_at",
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class ScrapeQueueEntry(Base):
    """One scheduled, claimed or resolved attempt to check a listing.

    ``listing_id`` and ``user_id`` are plain references: the queue is
    derived state and never the source of truth for whether a listing is due.
    """

    __tablename__ = "scrape_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=QUEUE_PENDING, nullable=False
    )  # pending, processing, completed, failed
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)  # Claim token
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_queue_priority_range"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_queue_status",
        ),
        Index("ix_scrape_queue_claim", "status", "scheduled_for", "locked_until"),
        # At most one open (pending/processing) entry per listing
        Index(
            "uq_scrape_queue_open_listing",
            "listing_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
            sqlite_where=text("status IN ('pending', 'processing')"),
        ),
    )


class PriceHistory(Base):
    """Immutable scrape observation for a listing."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    listing_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("product_listings.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # For retention
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    raw_price: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    availability: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    scraped_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    listing: Mapped["ProductListing"] = relationship(
        "ProductListing", back_populates="price_history"
    )

    __table_args__ = (
        Index("ix_price_history_listing_scraped", "listing_id", "scraped_at"),
    )


class UserWatchlist(Base):
    """Price target a user set on a product."""

    __tablename__ = "user_watchlists"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id", ondelete="CASCADE"), nullable=False
    )
    target_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    notify_on_drop: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_notified_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_notified_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="watchlists")

    __table_args__ = (
        UniqueConstraint("user_id", "product_id", name="uq_watchlist_user_product"),
    )


class UsageTracking(Base):
    """Per-user daily usage counters."""

    __tablename__ = "usage_tracking"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    usage_date: Mapped[date] = mapped_column(Date, nullable=False)
    scrapes_performed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_user_date"),
    )
