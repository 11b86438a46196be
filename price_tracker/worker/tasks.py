"""Component entry points shared by the cron triggers and the in-process scheduler."""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from price_tracker.db.session import AsyncSessionLocal
from price_tracker.errors import StoreUnavailable
from price_tracker.notify.webhook import WebhookNotifier
from price_tracker.queue.repository import queue_repository
from price_tracker.scrape.base import Scraper
from price_tracker.scrape.http_scraper import HttpScraper
from price_tracker.worker.alert_evaluator import AlertEvaluator
from price_tracker.worker.janitor import CleanupAction, Janitor
from price_tracker.worker.populator import QueuePopulator
from price_tracker.worker.processor import QueueProcessor
from price_tracker import metrics

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runs each queue component once per call.

    Every invocation is independent: nothing is carried between calls
    except the collaborators (scraper, notifier). Storage failures are
    re-raised as ``StoreUnavailable`` so the caller can report them.
    """

    def __init__(
        self,
        scraper: Optional[Scraper] = None,
        notifier: Optional[WebhookNotifier] = None,
        session_factory=AsyncSessionLocal,
    ):
        self.scraper = scraper or HttpScraper()
        self.notifier = notifier or WebhookNotifier()
        self.session_factory = session_factory

    async def initialize(self):
        """Initialize task runner."""
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        await self.notifier.close()

    async def _run(self, job_type: str, coro) -> dict:
        try:
            result = await coro
        except SQLAlchemyError as e:
            metrics.record_scheduler_run(job_type, success=False)
            logger.error(f"{job_type} aborted: store error: {e}")
            raise StoreUnavailable(f"{job_type} aborted: {type(e).__name__}") from e
        except Exception:
            metrics.record_scheduler_run(job_type, success=False)
            logger.exception(f"{job_type} failed")
            raise
        metrics.record_scheduler_run(job_type, success=True)
        return result

    async def populate(self) -> dict:
        """Queue every due listing."""
        populator = QueuePopulator(session_factory=self.session_factory)
        return await self._run("populate", populator.run())

    async def process_queue(self, processor_id: str = "default") -> dict:
        """Claim and process one batch."""
        processor = QueueProcessor(self.scraper, session_factory=self.session_factory)
        return await self._run("process_queue", processor.run(processor_id))

    async def cleanup(self, action: CleanupAction | str = CleanupAction.ALL) -> dict:
        """Expire abandoned leases and prune old rows."""
        janitor = Janitor(session_factory=self.session_factory)
        return await self._run("cleanup", janitor.run(action))

    async def process_alerts(self) -> dict:
        """Send price-drop notifications."""
        evaluator = AlertEvaluator(self.notifier, session_factory=self.session_factory)
        return await self._run("alerts", evaluator.run())

    async def queue_stats(self) -> dict:
        """Queue depth and health indicators; also refreshes the depth gauge."""
        async with self.session_factory() as db:
            stats = await queue_repository.stats(db, datetime.utcnow())
        metrics.update_queue_depth(stats["by_status"])
        return stats


# Global task runner instance
task_runner = TaskRunner()
