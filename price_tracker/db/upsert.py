"""Dialect-aware INSERT helpers (PostgreSQL in production, SQLite in tests)."""

from datetime import date

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from price_tracker.db.models import UsageTracking


def dialect_insert(db: AsyncSession, model):
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect."""
    if db.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)


async def increment_usage(
    db: AsyncSession,
    user_id: int,
    usage_date: date,
    scrapes: int = 0,
    notifications: int = 0,
) -> None:
    """Add to a user's daily usage counters, creating the row if needed."""
    stmt = dialect_insert(db, UsageTracking).values(
        user_id=user_id,
        usage_date=usage_date,
        scrapes_performed=scrapes,
        notifications_sent=notifications,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["user_id", "usage_date"],
        set_={
            "scrapes_performed": UsageTracking.scrapes_performed + stmt.excluded.scrapes_performed,
            "notifications_sent": UsageTracking.notifications_sent + stmt.excluded.notifications_sent,
        },
    )
    await db.execute(stmt)
