"""Tracking scheduler: refreshes competitor prices for due links."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync import metrics
from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import CompetitorPriceHistory, CompetitorProductLink, ScrapeJob
from pricesync.ingest.budget import BudgetedScraper
from pricesync.ingest.price_extractor import ExtractedPrice, extract_price
from pricesync.plans import get_plan_limits
from pricesync.worker import job_queue
from pricesync.worker.policies import next_allowed_check, next_retry_time, retries_exhausted

logger = logging.getLogger(__name__)

EXTRACTION_FAILED_MESSAGE = "Could not extract price from page"


@dataclass
class LinkTrackingResult:
    """Outcome for one link in a tracking pass."""

    link_id: int
    url: Optional[str]
    success: bool
    price_changed: bool = False
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None
    deferred: bool = False
    error: Optional[str] = None


@dataclass
class TrackingJobResult:
    """Aggregate outcome of one tracking pass."""

    user_id: str
    store_id: Optional[str]
    links_processed: int = 0
    links_deferred: int = 0
    price_changes: int = 0
    errors: int = 0
    budget_exhausted: bool = False
    config_error: bool = False
    tracking_disabled: bool = False
    results: List[LinkTrackingResult] = field(default_factory=list)


@dataclass(frozen=True)
class _DueLink:
    id: int
    url: str
    last_price: Optional[Decimal]


class TrackingScheduler:
    """
    Fetches due competitor links through the budgeted scraper and applies
    smart-skip and retry backoff to each link's next check time.
    """

    def __init__(
        self,
        scraper: BudgetedScraper,
        config: Settings = default_settings,
    ):
        self.scraper = scraper
        self.config = config

    def _due_filter(self, user_id: str, store_id: Optional[str], now: datetime) -> list:
        conditions = [
            CompetitorProductLink.user_id == user_id,
            CompetitorProductLink.is_active.is_(True),
            CompetitorProductLink.competitor_product_url.is_not(None),
            or_(
                CompetitorProductLink.next_allowed_check_at.is_(None),
                CompetitorProductLink.next_allowed_check_at <= now,
            ),
        ]
        if store_id is not None:
            conditions.append(CompetitorProductLink.store_id == store_id)
        return conditions

    async def get_due_links(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: Optional[str],
        now: datetime,
        limit: int,
        exclude_ids: Iterable[int] = (),
    ) -> List[CompetitorProductLink]:
        """
        Select links that may be fetched now.

        Never-checked links come first, then the least recently checked;
        higher priority breaks ties.
        """
        query = (
            select(CompetitorProductLink)
            .where(*self._due_filter(user_id, store_id, now))
            .order_by(
                CompetitorProductLink.last_checked_at.asc().nulls_first(),
                CompetitorProductLink.priority.desc(),
                CompetitorProductLink.id.asc(),
            )
            .limit(limit)
        )
        exclude_ids = list(exclude_ids)
        if exclude_ids:
            query = query.where(CompetitorProductLink.id.not_in(exclude_ids))
        result = await db.execute(query)
        return list(result.scalars().all())

    async def count_trackable_links(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """Number of links currently due for a check."""
        now = now or datetime.utcnow()
        query = select(func.count(CompetitorProductLink.id)).where(
            *self._due_filter(user_id, store_id, now)
        )
        return (await db.execute(query)).scalar_one()

    async def can_run_tracking(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> tuple[bool, Optional[str]]:
        """
        Check the plan's tracking frequency against the last completed pass.

        Returns:
            (allowed, reason)
        """
        now = now or datetime.utcnow()
        limits = get_plan_limits(plan, self.config)
        if not limits.tracking_enabled:
            return False, "Tracking is not included in the current plan"

        last_job = await job_queue.get_last_completed_job(
            db, job_queue.JOB_TRACKING, user_id, store_id
        )
        if last_job is None or last_job.completed_at is None:
            return True, None

        next_run = last_job.completed_at + timedelta(hours=limits.hours_between_runs)
        if now < next_run:
            return False, f"Next tracking run allowed at {next_run.isoformat()}"
        return True, None

    async def _record_failure(
        self,
        db: AsyncSession,
        link: CompetitorProductLink,
        message: str,
        now: datetime,
    ) -> None:
        link.error_streak = (link.error_streak or 0) + 1
        link.last_error_at = now
        link.last_error_message = message
        link.next_allowed_check_at = next_retry_time(link.error_streak, now, self.config)
        if retries_exhausted(link.error_streak, self.config):
            link.needs_attention = True
        link.updated_at = now
        await db.commit()

    async def _record_success(
        self,
        db: AsyncSession,
        link: CompetitorProductLink,
        extracted: ExtractedPrice,
        now: datetime,
    ) -> bool:
        old_price = link.last_price
        changed = old_price is None or Decimal(old_price) != extracted.price

        link.last_price = extracted.price
        link.last_currency = extracted.currency
        link.last_availability = extracted.availability
        link.last_checked_at = now
        link.error_streak = 0
        link.needs_attention = False
        link.last_error_message = None
        link.updated_at = now

        if changed:
            link.last_changed_at = now
            link.no_change_streak = 0
            link.next_allowed_check_at = None
            db.add(
                CompetitorPriceHistory(
                    link_id=link.id,
                    price=extracted.price,
                    currency=extracted.currency,
                    availability=extracted.availability,
                    recorded_at=now,
                )
            )
            metrics.record_price_change(old_price, extracted.price)
        else:
            link.no_change_streak = (link.no_change_streak or 0) + 1
            link.next_allowed_check_at = next_allowed_check(
                link.no_change_streak, now, self.config
            )

        await db.commit()
        return changed

    async def run(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: Optional[str],
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> TrackingJobResult:
        """
        Run one tracking pass for a user (optionally limited to one store).

        Args:
            db: Database session
            user_id: Budget owner whose links are refreshed
            store_id: Restrict to one store, or None for all of the user's links
            plan: Billing plan name
            now: Current time (naive UTC)

        Returns:
            TrackingJobResult with per-link outcomes
        """
        now = now or datetime.utcnow()
        result = TrackingJobResult(user_id=user_id, store_id=store_id)

        if not get_plan_limits(plan, self.config).tracking_enabled:
            result.tracking_disabled = True
            logger.info(f"Tracking disabled for user {user_id} on plan {plan}")
            return result

        seen: set[int] = set()
        batch_size = self.config.tracking_batch_size

        while True:
            links = await self.get_due_links(
                db, user_id, store_id, now, batch_size, exclude_ids=seen
            )
            if not links:
                break
            # Plain values: a rollback later in the pass expires the ORM rows
            due = [_DueLink(link.id, link.competitor_product_url, link.last_price) for link in links]

            for index, item in enumerate(due):
                seen.add(item.id)
                scraped = await self.scraper.scrape(db, user_id, item.url, now=now)

                if scraped.deferred:
                    result.budget_exhausted = True
                    for remaining in due[index:]:
                        result.links_deferred += 1
                        result.results.append(
                            LinkTrackingResult(
                                link_id=remaining.id,
                                url=remaining.url,
                                success=False,
                                old_price=remaining.last_price,
                                deferred=True,
                                error=scraped.error,
                            )
                        )
                    logger.info(
                        f"Tracking for user {user_id} stopped: budget exhausted, "
                        f"{result.links_deferred} link(s) deferred"
                    )
                    return result

                if scraped.is_config_error:
                    result.config_error = True
                    logger.error(f"Tracking for user {user_id} aborted: {scraped.error}")
                    return result

                try:
                    link = await db.get(CompetitorProductLink, item.id)
                    if link is None:
                        continue

                    if not scraped.success:
                        await self._record_failure(db, link, scraped.error or "Unknown error", now)
                        result.errors += 1
                        metrics.record_tracking_error(scraped.error_kind or "unknown")
                        result.results.append(
                            LinkTrackingResult(
                                link_id=item.id,
                                url=item.url,
                                success=False,
                                old_price=item.last_price,
                                error=scraped.error,
                            )
                        )
                        continue

                    extracted = extract_price(scraped.data or "")
                    if extracted.price is None:
                        await self._record_failure(db, link, EXTRACTION_FAILED_MESSAGE, now)
                        result.errors += 1
                        metrics.record_tracking_error("extraction")
                        result.results.append(
                            LinkTrackingResult(
                                link_id=item.id,
                                url=item.url,
                                success=False,
                                old_price=item.last_price,
                                error=EXTRACTION_FAILED_MESSAGE,
                            )
                        )
                        continue

                    changed = await self._record_success(db, link, extracted, now)
                except SQLAlchemyError as e:
                    logger.error(f"Failed to update link {item.id}: {e}", exc_info=True)
                    await db.rollback()
                    result.errors += 1
                    metrics.record_tracking_error("database")
                    result.results.append(
                        LinkTrackingResult(
                            link_id=item.id,
                            url=item.url,
                            success=False,
                            old_price=item.last_price,
                            error=str(e),
                        )
                    )
                    continue

                result.links_processed += 1
                if changed:
                    result.price_changes += 1
                result.results.append(
                    LinkTrackingResult(
                        link_id=item.id,
                        url=item.url,
                        success=True,
                        price_changed=changed,
                        old_price=item.last_price,
                        new_price=extracted.price,
                    )
                )

            if len(due) < batch_size:
                break

        logger.info(
            f"Tracking pass for user {user_id}: {result.links_processed} processed, "
            f"{result.price_changes} changed, {result.errors} errors"
        )
        return result

    async def run_tracking_job(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> tuple[ScrapeJob, TrackingJobResult]:
        """Run a tracking pass recorded as a ScrapeJob row."""
        now = now or datetime.utcnow()
        job = await job_queue.create_job(db, job_queue.JOB_TRACKING, user_id, store_id)
        job.items_total = await self.count_trackable_links(db, user_id, store_id, now)
        await job_queue.update_job_status(db, job, job_queue.STATUS_IN_PROGRESS, now=now)
        job_id = job.id

        try:
            result = await self.run(db, user_id, store_id, plan, now)
        except Exception as e:
            logger.error(f"Tracking job {job_id} failed: {e}", exc_info=True)
            await db.rollback()
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_FAILED, error_message=str(e), now=now
            )
            raise

        processed = result.links_processed + result.errors
        if result.config_error:
            status, message = job_queue.STATUS_FAILED, "Scraping provider not configured"
        elif result.budget_exhausted:
            status, message = job_queue.STATUS_DEFERRED, "Budget exhausted"
        else:
            status, message = job_queue.STATUS_COMPLETED, None
        await job_queue.update_job_status(
            db, job, status, items_processed=processed, error_message=message, now=now
        )
        return job, result
