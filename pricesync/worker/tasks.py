"""Background tasks run by the dispatcher."""

import logging
from datetime import datetime
from typing import Optional

import httpx
from sqlalchemy import select

from pricesync import metrics
from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import ScrapeJob, Store
from pricesync.db.session import AsyncSessionLocal
from pricesync.ingest.budget import BudgetedScraper
from pricesync.ingest.listing_scraper import CompetitorListingScraper
from pricesync.ingest.provider_client import ScrapingProviderClient
from pricesync.matching.matcher import CompetitorMatcher
from pricesync.worker import job_queue
from pricesync.worker.tracking import TrackingScheduler

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for background tasks.

    - Tracking: one pass per store whenever the plan frequency allows it
    - Matching queue: drains due batch matching jobs
    """

    def __init__(
        self,
        config: Settings = default_settings,
        session_factory=AsyncSessionLocal,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.session_factory = session_factory
        self.scraper = BudgetedScraper(
            client=ScrapingProviderClient(config, transport=transport),
            config=config,
        )
        self.listing_scraper = CompetitorListingScraper(self.scraper, config, transport=transport)
        self.tracking = TrackingScheduler(self.scraper, config)
        self.matcher = CompetitorMatcher(self.listing_scraper, config=config)

    async def run_tracking(self, now: Optional[datetime] = None) -> int:
        """
        Run a tracking pass for every store that is due.

        Returns:
            Number of stores tracked
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            stores = [
                (store.id, store.user_id, store.effective_plan(now))
                for store in (await db.execute(select(Store))).scalars().all()
            ]

        tracked = 0
        failures = 0
        for store_id, user_id, plan in stores:
            try:
                async with self.session_factory() as db:
                    allowed, reason = await self.tracking.can_run_tracking(
                        db, user_id, store_id, plan, now
                    )
                    if not allowed:
                        logger.debug(f"Skipping tracking for store {store_id}: {reason}")
                        continue

                    job, result = await self.tracking.run_tracking_job(
                        db, user_id, store_id, plan, now
                    )
                    tracked += 1
                    logger.info(
                        f"Tracking job {job.id} for store {store_id} finished as {job.status}"
                    )
                    if result.config_error:
                        # Every other store would fail the same way
                        break
            except Exception as e:
                logger.error(f"Tracking failed for store {store_id}: {e}", exc_info=True)
                failures += 1

        metrics.record_scheduler_run("tracking", failures == 0)
        return tracked

    async def process_matching_queue(self, now: Optional[datetime] = None) -> int:
        """
        Process due batch matching jobs, oldest first.

        Returns:
            Number of jobs processed
        """
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            job_ids = [job.id for job in await job_queue.get_pending_matching_jobs(db, now)]

        processed = 0
        failures = 0
        for job_id in job_ids:
            try:
                async with self.session_factory() as db:
                    job = await db.get(ScrapeJob, job_id)
                    if job is None or job.status != job_queue.STATUS_PENDING:
                        continue
                    await self.matcher.process_matching_job(db, job, now)
                    processed += 1
            except Exception as e:
                logger.error(f"Matching job {job_id} failed: {e}", exc_info=True)
                failures += 1

        metrics.record_scheduler_run("matching", failures == 0)
        return processed

    async def close(self):
        """Clean up HTTP clients."""
        await self.listing_scraper.close()
        await self.scraper.close()


task_runner = TaskRunner()
