"""Quick-start and batch matching of local products to a competitor store."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync import metrics
from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import CompetitorProductLink, Product, ScrapeJob
from pricesync.ingest.budget import BudgetLedger
from pricesync.ingest.listing_scraper import CandidateProduct, CompetitorListingScraper
from pricesync.limits.rate_limiter import MatchingRateLimiter
from pricesync.matching.engine import MatchCandidate, find_best_matches
from pricesync.worker import job_queue

logger = logging.getLogger(__name__)


@dataclass
class MatchingResult:
    """Outcome of a quick-start or batch matching run."""

    user_id: str
    store_id: str
    competitor_id: str
    is_quick_start: bool
    products_considered: int = 0
    products_matched: int = 0
    batches_queued: int = 0
    batch_number: Optional[int] = None
    budget_exhausted: bool = False
    rate_limited: bool = False
    error: Optional[str] = None
    job_id: Optional[int] = None
    matches: List[MatchCandidate] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not (self.budget_exhausted or self.rate_limited or self.error)


@dataclass(frozen=True)
class _LocalProduct:
    id: int
    name: Optional[str]
    sku: Optional[str]


class CompetitorMatcher:
    """
    Links a store's catalog to a competitor's products.

    Quick-start matches the first slice of the catalog right away; the rest
    is queued as delayed batch jobs that the dispatcher picks up later.
    """

    def __init__(
        self,
        listing_scraper: CompetitorListingScraper,
        rate_limiter: Optional[MatchingRateLimiter] = None,
        ledger: Optional[BudgetLedger] = None,
        config: Settings = default_settings,
    ):
        self.listing_scraper = listing_scraper
        self.config = config
        self.rate_limiter = rate_limiter or MatchingRateLimiter(config)
        self.ledger = ledger or listing_scraper.scraper.ledger

    # ------------------------------------------------------------------
    # Catalog queries
    # ------------------------------------------------------------------

    async def count_products_for_store(self, db: AsyncSession, store_id: str) -> int:
        query = select(func.count(Product.id)).where(
            Product.store_id == store_id,
            Product.status == "active",
        )
        return (await db.execute(query)).scalar_one()

    async def get_products_for_matching(
        self,
        db: AsyncSession,
        store_id: str,
        competitor_id: str,
        limit: int,
        offset: int = 0,
    ) -> List[Product]:
        """
        Slice of the active catalog, minus products already linked.

        The slice is taken over the whole active catalog so batch offsets
        stay stable while earlier batches add links.
        """
        query = (
            select(Product)
            .where(Product.store_id == store_id, Product.status == "active")
            .order_by(Product.updated_at.desc(), Product.id.asc())
            .offset(offset)
            .limit(limit)
        )
        products = list((await db.execute(query)).scalars().all())
        if not products:
            return []

        linked_query = select(CompetitorProductLink.product_id).where(
            CompetitorProductLink.competitor_id == competitor_id,
            CompetitorProductLink.product_id.in_([p.id for p in products]),
        )
        linked = set((await db.execute(linked_query)).scalars().all())
        return [p for p in products if p.id not in linked]

    # ------------------------------------------------------------------
    # Link persistence
    # ------------------------------------------------------------------

    async def upsert_links(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        competitor_id: str,
        matches: List[MatchCandidate],
        now: Optional[datetime] = None,
    ) -> int:
        """
        Create or refresh links keyed by (product_id, competitor_id).

        Args:
            db: Database session
            user_id: Link owner
            store_id: Store of the local products
            competitor_id: Competitor store
            matches: Engine output; ``candidate`` must be a CandidateProduct
            now: Current time (naive UTC)

        Returns:
            Number of links written
        """
        now = now or datetime.utcnow()
        rows = []
        for match in matches:
            candidate: Optional[CandidateProduct] = match.candidate
            url = candidate.url if candidate is not None else None
            if not url:
                continue
            rows.append(
                {
                    "user_id": user_id,
                    "store_id": store_id,
                    "product_id": match.product_id,
                    "competitor_id": competitor_id,
                    "competitor_product_id": match.competitor_product_id,
                    "competitor_product_url": url,
                    "competitor_product_name": candidate.name,
                    "similarity": match.similarity,
                    "priority": 1 if match.similarity >= self.config.high_confidence_similarity else 0,
                    "is_active": True,
                    "needs_attention": False,
                    "no_change_streak": 0,
                    "error_streak": 0,
                    "created_at": now,
                    "updated_at": now,
                }
            )
        if not rows:
            return 0

        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            insert_fn = postgresql.insert
        elif dialect == "sqlite":
            insert_fn = sqlite.insert
        else:
            return await self._upsert_links_orm(db, rows)

        stmt = insert_fn(CompetitorProductLink).values(rows)
        stmt = stmt.on_conflict_do_update(
            index_elements=["product_id", "competitor_id"],
            set_={
                "competitor_product_id": stmt.excluded.competitor_product_id,
                "competitor_product_url": stmt.excluded.competitor_product_url,
                "competitor_product_name": stmt.excluded.competitor_product_name,
                "similarity": stmt.excluded.similarity,
                "priority": stmt.excluded.priority,
                "is_active": True,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await db.execute(stmt)
        await db.commit()
        return len(rows)

    async def _upsert_links_orm(self, db: AsyncSession, rows: list[dict]) -> int:
        for row in rows:
            existing = (
                await db.execute(
                    select(CompetitorProductLink).where(
                        CompetitorProductLink.product_id == row["product_id"],
                        CompetitorProductLink.competitor_id == row["competitor_id"],
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                db.add(CompetitorProductLink(**row))
                continue
            for key in (
                "competitor_product_id",
                "competitor_product_url",
                "competitor_product_name",
                "similarity",
                "priority",
                "updated_at",
            ):
                setattr(existing, key, row[key])
            existing.is_active = True
        await db.commit()
        return len(rows)

    async def _match_and_link(
        self,
        db: AsyncSession,
        result: MatchingResult,
        products: List[Product],
        competitor_url: str,
        now: datetime,
    ) -> None:
        # Copied before the scrape; a ledger rollback expires the ORM rows
        local = [_LocalProduct(p.id, p.name, p.sku) for p in products]
        listing = await self.listing_scraper.scrape(db, result.user_id, competitor_url, now=now)
        if not listing.candidates:
            if listing.deferred:
                result.budget_exhausted = True
            elif listing.error:
                result.error = listing.error
            return

        matches = find_best_matches(local, listing.candidates, self.config.match_min_score)
        result.matches = matches
        result.products_matched = await self.upsert_links(
            db, result.user_id, result.store_id, result.competitor_id, matches, now
        )
        metrics.record_links_upserted(
            "quick_start" if result.is_quick_start else "batch", result.products_matched
        )

    # ------------------------------------------------------------------
    # Quick-start
    # ------------------------------------------------------------------

    async def queue_batch_matching(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        competitor_id: str,
        competitor_url: str,
        total_products: int,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Enqueue delayed batch jobs for the catalog beyond the quick-start slice.

        Returns:
            Number of batch jobs created
        """
        now = now or datetime.utcnow()
        remaining = total_products - self.config.quick_start_match_count
        if remaining <= 0:
            return 0

        batch_size = self.config.matching_batch_size
        total_batches = math.ceil(remaining / batch_size)
        for batch_number in range(1, total_batches + 1):
            await job_queue.create_job(
                db,
                job_queue.JOB_MATCHING,
                user_id,
                store_id,
                competitor_id=competitor_id,
                competitor_url=competitor_url,
                batch_number=batch_number,
                total_batches=total_batches,
                scheduled_for=now + timedelta(
                    minutes=batch_number * self.config.inter_batch_delay_minutes
                ),
                items_total=min(batch_size, remaining - (batch_number - 1) * batch_size),
                commit=False,
            )
        await db.commit()
        logger.info(
            f"Queued {total_batches} matching batch(es) for competitor {competitor_id}"
        )
        return total_batches

    async def run_quick_start(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        competitor_id: str,
        competitor_url: str,
        now: Optional[datetime] = None,
    ) -> MatchingResult:
        """
        Match the head of the catalog immediately after a competitor is added.

        Args:
            db: Database session
            user_id: Budget owner
            store_id: Local store
            competitor_id: Newly added competitor
            competitor_url: Competitor store or collection URL
            now: Current time (naive UTC)

        Returns:
            MatchingResult; refusals are reported, never raised
        """
        now = now or datetime.utcnow()
        result = MatchingResult(
            user_id=user_id,
            store_id=store_id,
            competitor_id=competitor_id,
            is_quick_start=True,
        )

        decision = await self.rate_limiter.can_add_competitor_store(db, user_id, now)
        if not decision.allowed:
            result.rate_limited = True
            result.error = decision.reason
            return result

        if not await self.ledger.can_scrape(db, user_id, now=now):
            result.budget_exhausted = True
            result.error = "Budget exhausted"
            return result

        products = await self.get_products_for_matching(
            db, store_id, competitor_id, self.config.quick_start_match_count
        )
        result.products_considered = len(products)

        job = await job_queue.create_job(
            db,
            job_queue.JOB_QUICK_START,
            user_id,
            store_id,
            competitor_id=competitor_id,
            competitor_url=competitor_url,
            items_total=len(products),
        )
        result.job_id = job.id
        await job_queue.update_job_status(db, job, job_queue.STATUS_IN_PROGRESS, now=now)

        try:
            if products:
                await self._match_and_link(db, result, products, competitor_url, now)

            if result.budget_exhausted:
                await job_queue.update_job_status(
                    db, job, job_queue.STATUS_DEFERRED,
                    items_processed=0, error_message="Budget exhausted", now=now,
                )
                return result
            if result.error:
                await job_queue.update_job_status(
                    db, job, job_queue.STATUS_FAILED,
                    items_processed=0, error_message=result.error, now=now,
                )
                return result

            total = await self.count_products_for_store(db, store_id)
            open_batches = await job_queue.count_open_matching_jobs(db, user_id, competitor_id)
            if open_batches == 0:
                result.batches_queued = await self.queue_batch_matching(
                    db, user_id, store_id, competitor_id, competitor_url, total, now
                )

            await self.rate_limiter.increment_competitor_stores_added(db, user_id, now)
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_COMPLETED,
                items_processed=len(products), now=now,
            )
        except SQLAlchemyError as e:
            logger.error(f"Quick-start matching failed for competitor {competitor_id}: {e}", exc_info=True)
            await db.rollback()
            result.error = str(e)
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_FAILED, error_message=str(e), now=now
            )

        logger.info(
            f"Quick-start for competitor {competitor_id}: {result.products_matched} "
            f"of {result.products_considered} matched, {result.batches_queued} batch(es) queued"
        )
        return result

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    async def run_batch_matching(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        competitor_id: str,
        competitor_url: str,
        batch_number: int,
        now: Optional[datetime] = None,
    ) -> MatchingResult:
        """Match one queued slice of the catalog."""
        now = now or datetime.utcnow()
        result = MatchingResult(
            user_id=user_id,
            store_id=store_id,
            competitor_id=competitor_id,
            is_quick_start=False,
            batch_number=batch_number,
        )

        if not await self.rate_limiter.can_run_heavy_matching(db, user_id, now):
            result.rate_limited = True
            result.error = "Daily heavy matching limit reached"
            return result

        if not await self.ledger.can_scrape(db, user_id, now=now):
            result.budget_exhausted = True
            result.error = "Budget exhausted"
            return result

        offset = (
            self.config.quick_start_match_count
            + (batch_number - 1) * self.config.matching_batch_size
        )
        products = await self.get_products_for_matching(
            db, store_id, competitor_id, self.config.matching_batch_size, offset
        )
        result.products_considered = len(products)
        if not products:
            return result

        await self._match_and_link(db, result, products, competitor_url, now)
        if result.success:
            await self.rate_limiter.increment_heavy_matching(db, user_id, now)
        return result

    async def process_matching_job(
        self,
        db: AsyncSession,
        job: ScrapeJob,
        now: Optional[datetime] = None,
    ) -> MatchingResult:
        """
        Drive one queued batch job to a terminal status.

        Deferred jobs stay deferred; a later quick-start for the same
        competitor enqueues the remaining work again.
        """
        now = now or datetime.utcnow()
        await job_queue.update_job_status(db, job, job_queue.STATUS_IN_PROGRESS, now=now)
        job_id = job.id

        try:
            result = await self.run_batch_matching(
                db,
                job.user_id,
                job.store_id,
                job.competitor_id,
                job.competitor_url,
                job.batch_number or 1,
                now,
            )
        except SQLAlchemyError as e:
            logger.error(f"Matching job {job_id} failed: {e}", exc_info=True)
            await db.rollback()
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_FAILED, error_message=str(e), now=now
            )
            raise
        result.job_id = job_id

        if result.rate_limited or result.budget_exhausted:
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_DEFERRED, error_message=result.error, now=now
            )
        elif result.error:
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_FAILED,
                items_processed=result.products_considered,
                error_message=result.error, now=now,
            )
        else:
            await job_queue.update_job_status(
                db, job, job_queue.STATUS_COMPLETED,
                items_processed=result.products_considered, now=now,
            )
        return result
