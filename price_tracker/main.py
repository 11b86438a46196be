"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from prometheus_fastapi_instrumentator import Instrumentator

from price_tracker.config import settings
from price_tracker.db.models import Base
from price_tracker.db.session import engine
from price_tracker.worker.scheduler import setup_scheduler
from price_tracker.worker.tasks import task_runner
from price_tracker.api.routes import cron, queue

# Configure structured logging
from price_tracker.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting price tracker...")

    # Production schema comes from alembic; create tables directly for local development
    if settings.debug:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    if settings.internal_scheduler_enabled:
        scheduler = setup_scheduler(task_runner)
        scheduler.start()
        logger.info("Scheduler started")
    else:
        logger.info("Internal scheduler disabled; waiting for cron triggers")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()
        scheduler = None

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="Tiered Price Tracker",
    description="Tier-aware scheduling of recurring price checks",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    excluded_handlers=["/metrics", "/health"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(cron.router)
app.include_router(queue.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "price_tracker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
