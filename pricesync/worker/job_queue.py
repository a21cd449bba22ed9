"""ScrapeJob bookkeeping: job creation, status transitions and the delayed queue."""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, inspect, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.db.models import ScrapeJob

logger = logging.getLogger(__name__)

JOB_TRACKING = "tracking"
JOB_QUICK_START = "quick_start_matching"
JOB_MATCHING = "matching"

STATUS_PENDING = "pending"
STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_DEFERRED = "deferred"

TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED, STATUS_DEFERRED)


async def create_job(
    db: AsyncSession,
    job_type: str,
    user_id: str,
    store_id: str,
    *,
    competitor_id: Optional[str] = None,
    competitor_url: Optional[str] = None,
    batch_number: Optional[int] = None,
    total_batches: Optional[int] = None,
    scheduled_for: Optional[datetime] = None,
    items_total: int = 0,
    commit: bool = True,
) -> ScrapeJob:
    """Insert a pending job row."""
    job = ScrapeJob(
        job_type=job_type,
        status=STATUS_PENDING,
        user_id=user_id,
        store_id=store_id,
        competitor_id=competitor_id,
        competitor_url=competitor_url,
        batch_number=batch_number,
        total_batches=total_batches,
        scheduled_for=scheduled_for,
        items_total=items_total,
    )
    db.add(job)
    if commit:
        await db.commit()
        await db.refresh(job)
    return job


async def update_job_status(
    db: AsyncSession,
    job: ScrapeJob,
    status: str,
    *,
    items_processed: Optional[int] = None,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ScrapeJob:
    """
    Move a job to a new status.

    Terminal jobs are never moved again.

    Args:
        db: Database session
        job: Job to update
        status: New status
        items_processed: Progress counter to store
        error_message: Failure or deferral reason
        now: Current time (naive UTC)

    Returns:
        The updated job
    """
    if inspect(job).expired_attributes:
        # Rolled back since it was loaded
        await db.refresh(job)

    if job.status in TERMINAL_STATUSES:
        logger.warning(f"Ignoring transition of terminal job {job.id} from {job.status} to {status}")
        return job

    now = now or datetime.utcnow()
    job.status = status
    if status == STATUS_IN_PROGRESS and job.started_at is None:
        job.started_at = now
    if status in TERMINAL_STATUSES:
        job.completed_at = now
    if items_processed is not None:
        job.items_processed = items_processed
    if error_message is not None:
        job.error_message = error_message

    await db.commit()
    return job


async def get_pending_matching_jobs(
    db: AsyncSession,
    now: Optional[datetime] = None,
    limit: int = 10,
) -> List[ScrapeJob]:
    """Pending batch matching jobs whose scheduled time has passed, oldest first."""
    now = now or datetime.utcnow()
    query = (
        select(ScrapeJob)
        .where(
            ScrapeJob.job_type == JOB_MATCHING,
            ScrapeJob.status == STATUS_PENDING,
            ScrapeJob.scheduled_for <= now,
        )
        .order_by(ScrapeJob.scheduled_for.asc(), ScrapeJob.id.asc())
        .limit(limit)
    )
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_open_matching_jobs(
    db: AsyncSession, user_id: str, competitor_id: str
) -> int:
    """Pending or in-progress batch jobs for one user/competitor pair."""
    query = select(func.count(ScrapeJob.id)).where(
        ScrapeJob.job_type == JOB_MATCHING,
        ScrapeJob.user_id == user_id,
        ScrapeJob.competitor_id == competitor_id,
        ScrapeJob.status.in_((STATUS_PENDING, STATUS_IN_PROGRESS)),
    )
    return (await db.execute(query)).scalar_one()


async def get_last_completed_job(
    db: AsyncSession, job_type: str, user_id: str, store_id: str
) -> Optional[ScrapeJob]:
    query = (
        select(ScrapeJob)
        .where(
            ScrapeJob.job_type == job_type,
            ScrapeJob.user_id == user_id,
            ScrapeJob.store_id == store_id,
            ScrapeJob.status == STATUS_COMPLETED,
        )
        .order_by(ScrapeJob.completed_at.desc())
        .limit(1)
    )
    return (await db.execute(query)).scalar_one_or_none()
