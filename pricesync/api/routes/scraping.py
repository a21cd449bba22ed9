"""Scraping budget, tracking and matching API endpoints."""

import logging
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.api.deps import get_database, get_task_runner, resolve_plan
from pricesync.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/scraping", tags=["scraping"])


# Response models
class BudgetResponse(BaseModel):
    """Response model for a user's scraping budget."""
    user_id: str
    daily_used: int
    daily_limit: int
    daily_remaining: int
    monthly_used: int
    monthly_limit: int
    monthly_remaining: int
    can_scrape: bool
    cost_per_1000_requests: float
    daily_spend_usd: float
    monthly_spend_usd: float
    monthly_percent_used: float


class TrackingRequest(BaseModel):
    """Request model for triggering a tracking pass."""
    user_id: str
    store_id: str
    plan: Optional[str] = None
    force: bool = False  # Ignore the plan's tracking frequency


class TrackingResponse(BaseModel):
    """Response model for a finished tracking pass."""
    job_id: Optional[int]
    status: str
    links_processed: int
    links_deferred: int
    price_changes: int
    errors: int
    budget_exhausted: bool
    config_error: bool
    tracking_disabled: bool


class QuickStartRequest(BaseModel):
    """Request model for quick-start matching."""
    user_id: str
    store_id: str
    competitor_id: str
    competitor_url: str


class MatchResponse(BaseModel):
    product_id: int
    competitor_product_id: str
    similarity: int


class QuickStartResponse(BaseModel):
    """Response model for quick-start matching."""
    job_id: Optional[int]
    success: bool
    products_considered: int
    products_matched: int
    batches_queued: int
    budget_exhausted: bool
    error: Optional[str]
    matches: List[MatchResponse]


class RateLimitResponse(BaseModel):
    """Response model for today's structural limits."""
    user_id: str
    run_date: date
    heavy_matching_count: int
    heavy_matching_remaining: int
    competitor_stores_added: int
    competitor_stores_remaining: int
    urls_added: int
    urls_remaining: int


@router.get("/budget/{user_id}", response_model=BudgetResponse)
async def get_budget(
    user_id: str,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Get a user's scraping budget with estimated spend."""
    status = await runner.scraper.ledger.get_or_create(db, user_id)
    return BudgetResponse(
        user_id=user_id,
        daily_used=status.daily_used,
        daily_limit=status.daily_limit,
        daily_remaining=status.daily_remaining,
        monthly_used=status.monthly_used,
        monthly_limit=status.monthly_limit,
        monthly_remaining=status.monthly_remaining,
        can_scrape=status.can_scrape,
        cost_per_1000_requests=status.cost_per_1000_requests,
        daily_spend_usd=status.daily_spend_usd,
        monthly_spend_usd=status.monthly_spend_usd,
        monthly_percent_used=status.monthly_percent_used,
    )


@router.post("/tracking", response_model=TrackingResponse)
async def trigger_tracking(
    request: TrackingRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Run a tracking pass for one store now."""
    plan = await resolve_plan(db, request.store_id, request.plan)
    now = datetime.utcnow()

    if not request.force:
        allowed, reason = await runner.tracking.can_run_tracking(
            db, request.user_id, request.store_id, plan, now
        )
        if not allowed:
            raise HTTPException(status_code=429, detail=reason)

    job, result = await runner.tracking.run_tracking_job(
        db, request.user_id, request.store_id, plan, now
    )
    return TrackingResponse(
        job_id=job.id,
        status=job.status,
        links_processed=result.links_processed,
        links_deferred=result.links_deferred,
        price_changes=result.price_changes,
        errors=result.errors,
        budget_exhausted=result.budget_exhausted,
        config_error=result.config_error,
        tracking_disabled=result.tracking_disabled,
    )


@router.post("/matching/quick-start", response_model=QuickStartResponse)
async def quick_start_matching(
    request: QuickStartRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Match the head of the catalog against a newly added competitor."""
    result = await runner.matcher.run_quick_start(
        db,
        request.user_id,
        request.store_id,
        request.competitor_id,
        request.competitor_url,
    )
    if result.rate_limited:
        raise HTTPException(status_code=429, detail=result.error)

    return QuickStartResponse(
        job_id=result.job_id,
        success=result.success,
        products_considered=result.products_considered,
        products_matched=result.products_matched,
        batches_queued=result.batches_queued,
        budget_exhausted=result.budget_exhausted,
        error=result.error,
        matches=[
            MatchResponse(
                product_id=m.product_id,
                competitor_product_id=m.competitor_product_id,
                similarity=m.similarity,
            )
            for m in result.matches
        ],
    )


@router.get("/rate-limit/{user_id}", response_model=RateLimitResponse)
async def get_rate_limit(
    user_id: str,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Get today's structural matching limits for a user."""
    status = await runner.matcher.rate_limiter.get_status(db, user_id)
    return RateLimitResponse(
        user_id=user_id,
        run_date=status.run_date,
        heavy_matching_count=status.heavy_matching_count,
        heavy_matching_remaining=status.heavy_matching_remaining,
        competitor_stores_added=status.competitor_stores_added,
        competitor_stores_remaining=status.competitor_stores_remaining,
        urls_added=status.urls_added,
        urls_remaining=status.urls_remaining,
    )
