"""Tests for listing management in the listing repository."""

import pytest
from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql

from price_tracker.db.models import Product
from price_tracker.errors import ProductLimitExceeded
from price_tracker.queue.listings import ListingRepository, lock_user

from conftest import NOW


def test_user_row_locked_before_limit_check():
    sql = str(lock_user(7).compile(dialect=postgresql.dialect()))
    assert "FROM users" in sql
    assert sql.rstrip().endswith("FOR UPDATE")


async def test_limit_enforced_within_one_transaction(session_factory, seed):
    user = await seed.user("free")
    store = await seed.store()
    repo = ListingRepository()

    async with session_factory() as db:
        for i in range(5):
            await repo.add_listing(
                db, user_id=user.id, store_id=store.id, url=f"https://x.example.com/p/{i}", now=NOW
            )
        with pytest.raises(ProductLimitExceeded) as exc_info:
            await repo.add_listing(
                db, user_id=user.id, store_id=store.id, url="https://x.example.com/p/5", now=NOW
            )
        await db.commit()

    assert exc_info.value.limit == 5
    async with session_factory() as db:
        count = await db.scalar(select(func.count(Product.id)).where(Product.user_id == user.id))
    assert count == 5


async def test_unknown_user(session_factory, seed):
    store = await seed.store()
    async with session_factory() as db:
        with pytest.raises(LookupError, match="User 404"):
            await ListingRepository().add_listing(
                db, user_id=404, store_id=store.id, url="https://x.example.com/p/1"
            )
