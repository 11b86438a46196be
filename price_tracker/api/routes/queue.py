"""Queue health and listing administration endpoints."""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from price_tracker.api.deps import get_database, get_task_runner, require_cron_secret
from price_tracker.errors import ListingNotFound, ProductLimitExceeded
from price_tracker.queue.listings import listing_repository
from price_tracker.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/queue",
    tags=["queue"],
    dependencies=[Depends(require_cron_secret)],
)


# Request/Response models
class QueueStatsResponse(BaseModel):
    """Queue depth and health indicators."""
    by_status: dict[str, int]
    oldest_pending_age_hours: Optional[float]
    expired_leases: int
    deactivated_listings: int


class AddListingRequest(BaseModel):
    """Request model for tracking a product page at a store."""
    user_id: int
    store_id: int
    url: str = Field(..., min_length=1, max_length=2048)
    product_id: Optional[int] = None
    product_name: Optional[str] = Field(None, max_length=500)


class ListingResponse(BaseModel):
    """Response model for a listing."""
    id: int
    product_id: int
    store_id: int
    user_id: int
    url: str
    next_check_at: datetime
    check_interval_hours: int
    consecutive_failures: int
    is_active: bool

    class Config:
        from_attributes = True


@router.get("/stats", response_model=QueueStatsResponse)
async def queue_stats(runner: TaskRunner = Depends(get_task_runner)):
    """Queue depth by status, oldest pending age and deactivated listings."""
    return await runner.queue_stats()


@router.post("/listings", response_model=ListingResponse, status_code=201)
async def add_listing(request: AddListingRequest, db: AsyncSession = Depends(get_database)):
    """Start tracking a listing; it is queued on the next populate run."""
    try:
        listing = await listing_repository.add_listing(
            db,
            user_id=request.user_id,
            store_id=request.store_id,
            url=request.url,
            product_id=request.product_id,
            product_name=request.product_name,
        )
    except ProductLimitExceeded as e:
        await db.rollback()
        raise HTTPException(status_code=409, detail=str(e))
    except LookupError as e:
        await db.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="Listing already tracked for this store")

    await db.commit()
    return listing


@router.post("/listings/{listing_id}/reactivate", response_model=ListingResponse)
async def reactivate_listing(listing_id: int, db: AsyncSession = Depends(get_database)):
    """Re-enable a deactivated listing and make it due immediately."""
    try:
        listing = await listing_repository.reactivate(db, listing_id)
    except ListingNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))

    await db.commit()
    return listing
