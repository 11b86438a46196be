"""Cron trigger endpoints.

Each endpoint runs one component once and returns its counts. The caller
is an external scheduler that may fire late, early or concurrently; every
component is safe under repetition.
"""

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from price_tracker.api.deps import get_task_runner, require_cron_secret
from price_tracker.worker.janitor import CleanupAction
from price_tracker.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


def _failure(error: Exception) -> JSONResponse:
    return JSONResponse(status_code=500, content={"success": False, "error": str(error)})


@router.post("/populate")
async def populate(runner: TaskRunner = Depends(get_task_runner)):
    """Queue every listing that is due."""
    try:
        stats = await runner.populate()
    except Exception as e:
        logger.error(f"Populate trigger failed: {e}")
        return _failure(e)
    return {"success": True, **stats}


@router.post("/process-queue")
async def process_queue(
    processor_id: str = Query("cron", max_length=64),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Claim and process one batch of queue entries."""
    try:
        stats = await runner.process_queue(processor_id)
    except Exception as e:
        logger.error(f"Process-queue trigger ({processor_id}) failed: {e}")
        return _failure(e)
    return {"success": True, "processor_id": processor_id, **stats}


@router.post("/cleanup")
async def cleanup(
    action: CleanupAction = Query(CleanupAction.ALL),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Run the janitor (expire, queue, history or all)."""
    try:
        stats = await runner.cleanup(action)
    except Exception as e:
        logger.error(f"Cleanup trigger ({action.value}) failed: {e}")
        return _failure(e)
    return {"success": True, "action": action.value, **stats}


@router.post("/process-alerts")
async def process_alerts(runner: TaskRunner = Depends(get_task_runner)):
    """Evaluate watchlist targets and send notifications."""
    try:
        stats = await runner.process_alerts()
    except Exception as e:
        logger.error(f"Process-alerts trigger failed: {e}")
        return _failure(e)
    return {"success": True, **stats}
