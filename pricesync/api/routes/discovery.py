"""Discovery quota API endpoints."""

from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.api.deps import get_database, get_task_runner, resolve_plan
from pricesync.ingest.discovery import ListingDiscovery
from pricesync.limits.discovery_quota import DiscoveryQuotaManager
from pricesync.worker.tasks import TaskRunner

router = APIRouter(prefix="/api/discovery", tags=["discovery"])


class QuotaResponse(BaseModel):
    """Response model for a store's monthly discovery quota."""
    store_id: str
    period_start: date
    used: int
    limit_amount: int
    remaining: int


class ConsumeRequest(BaseModel):
    store_id: str
    amount: int = Field(..., ge=0)
    plan: Optional[str] = None


class ConsumeResponse(BaseModel):
    allowed: bool
    used: int
    limit: int
    remaining: int


class DiscoverRequest(BaseModel):
    """Request model for discovering a competitor's products."""
    user_id: str
    store_id: str
    competitor_url: str
    plan: Optional[str] = None


class CandidateResponse(BaseModel):
    id: str
    name: str
    url: str
    price: Optional[float]

    class Config:
        from_attributes = True


class DiscoverResponse(BaseModel):
    candidates: List[CandidateResponse]
    used: int
    limit: int
    remaining: int


@router.get("/quota/{store_id}", response_model=QuotaResponse)
async def get_quota(
    store_id: str,
    plan: Optional[str] = None,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Get this month's discovery quota for a store."""
    manager = DiscoveryQuotaManager(runner.config)
    status = await manager.get_or_create(db, store_id, await resolve_plan(db, store_id, plan))
    return QuotaResponse(
        store_id=store_id,
        period_start=status.period_start,
        used=status.used,
        limit_amount=status.limit_amount,
        remaining=status.remaining,
    )


@router.post("/consume", response_model=ConsumeResponse)
async def consume_quota(
    request: ConsumeRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Consume discovery quota; refused requests leave usage unchanged."""
    manager = DiscoveryQuotaManager(runner.config)
    plan = await resolve_plan(db, request.store_id, request.plan)
    result = await manager.consume(db, request.store_id, request.amount, plan)
    if not result.allowed:
        raise HTTPException(status_code=403, detail=result.reason)
    return ConsumeResponse(
        allowed=result.allowed,
        used=result.used,
        limit=result.limit,
        remaining=result.remaining,
    )


@router.post("/discover", response_model=DiscoverResponse)
async def discover_competitor(
    request: DiscoverRequest,
    db: AsyncSession = Depends(get_database),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Scrape a competitor's product list, charging the discovery quota."""
    discovery = ListingDiscovery(
        runner.listing_scraper, DiscoveryQuotaManager(runner.config)
    )
    plan = await resolve_plan(db, request.store_id, request.plan)
    result = await discovery.discover(
        db, request.user_id, request.store_id, request.competitor_url, plan
    )
    if not result.allowed:
        status_code = 403 if result.quota_exceeded else 400
        raise HTTPException(status_code=status_code, detail=result.error)

    return DiscoverResponse(
        candidates=[CandidateResponse.model_validate(c) for c in result.candidates],
        used=result.quota.used,
        limit=result.quota.limit,
        remaining=result.quota.remaining,
    )
