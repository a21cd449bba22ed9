"""Structural per-user daily caps on matching work.

These caps are independent of the money budget: they stop a single user from
adding many competitor stores or running heavy matching repeatedly in one day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import MatchingRateLimit

logger = logging.getLogger(__name__)


@dataclass
class RateLimitStatus:
    """Today's counters and caps for one user."""

    user_id: str
    run_date: date
    heavy_matching_count: int
    competitor_stores_added: int
    urls_added: int
    max_heavy_matching: int
    max_competitor_stores: int
    max_urls: int

    @property
    def heavy_matching_remaining(self) -> int:
        return max(0, self.max_heavy_matching - self.heavy_matching_count)

    @property
    def competitor_stores_remaining(self) -> int:
        return max(0, self.max_competitor_stores - self.competitor_stores_added)

    @property
    def urls_remaining(self) -> int:
        return max(0, self.max_urls - self.urls_added)


@dataclass
class RateLimitDecision:
    """Answer to a structural pre-check."""

    allowed: bool
    reason: Optional[str] = None
    remaining: int = 0


class MatchingRateLimiter:
    """Reads and increments the per-user-per-day matching counters."""

    def __init__(self, config: Settings = default_settings):
        self.config = config

    def _status(self, user_id: str, run_date: date, row: Optional[MatchingRateLimit]) -> RateLimitStatus:
        return RateLimitStatus(
            user_id=user_id,
            run_date=run_date,
            heavy_matching_count=row.heavy_matching_count if row else 0,
            competitor_stores_added=row.competitor_stores_added if row else 0,
            urls_added=row.urls_added if row else 0,
            max_heavy_matching=self.config.heavy_matching_runs_per_day,
            max_competitor_stores=self.config.max_new_competitor_stores_per_day,
            max_urls=self.config.max_url_additions_per_day,
        )

    async def _get_or_create_row(
        self, db: AsyncSession, user_id: str, run_date: date
    ) -> MatchingRateLimit:
        query = (
            select(MatchingRateLimit)
            .where(
                MatchingRateLimit.user_id == user_id,
                MatchingRateLimit.run_date == run_date,
            )
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(query)).scalar_one_or_none()
        if row is not None:
            return row

        row = MatchingRateLimit(
            user_id=user_id,
            run_date=run_date,
            heavy_matching_count=0,
            competitor_stores_added=0,
            urls_added=0,
        )
        db.add(row)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            row = (await db.execute(query)).scalar_one()
        return row

    async def get_status(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> RateLimitStatus:
        """
        Get today's counters for a user, creating the record lazily.

        Args:
            db: Database session
            user_id: User to look up
            now: Current time (naive UTC)

        Returns:
            RateLimitStatus (zeroed if the store is unreadable)
        """
        run_date = (now or datetime.utcnow()).date()
        try:
            row = await self._get_or_create_row(db, user_id, run_date)
            return self._status(user_id, run_date, row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load matching rate limit for user {user_id}: {e}", exc_info=True)
            await db.rollback()
            return self._status(user_id, run_date, None)

    async def can_run_heavy_matching(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> bool:
        status = await self.get_status(db, user_id, now)
        return status.heavy_matching_count < status.max_heavy_matching

    async def can_add_competitor_store(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> RateLimitDecision:
        """Check whether the user may add another competitor store today."""
        status = await self.get_status(db, user_id, now)
        remaining = status.competitor_stores_remaining
        if remaining <= 0:
            return RateLimitDecision(
                allowed=False,
                reason=(
                    f"Daily limit reached: you can add up to "
                    f"{status.max_competitor_stores} new competitor store(s) per day"
                ),
                remaining=0,
            )
        return RateLimitDecision(allowed=True, remaining=remaining)

    async def can_add_urls(
        self,
        db: AsyncSession,
        user_id: str,
        count: int = 1,
        now: Optional[datetime] = None,
    ) -> RateLimitDecision:
        """Check whether ``count`` more competitor URLs may be added today."""
        status = await self.get_status(db, user_id, now)
        remaining = status.urls_remaining
        if count > remaining:
            return RateLimitDecision(
                allowed=False,
                reason=(
                    f"Daily limit reached: {remaining} of {status.max_urls} "
                    f"URL additions remaining today"
                ),
                remaining=remaining,
            )
        return RateLimitDecision(allowed=True, remaining=remaining)

    async def _increment(
        self,
        db: AsyncSession,
        user_id: str,
        column: str,
        amount: int,
        now: Optional[datetime],
    ) -> RateLimitStatus:
        run_date = (now or datetime.utcnow()).date()
        try:
            await self._get_or_create_row(db, user_id, run_date)
            counter = getattr(MatchingRateLimit, column)
            await db.execute(
                update(MatchingRateLimit)
                .where(
                    MatchingRateLimit.user_id == user_id,
                    MatchingRateLimit.run_date == run_date,
                )
                .values({column: counter + amount})
            )
            await db.commit()
            row = await self._get_or_create_row(db, user_id, run_date)
            return self._status(user_id, run_date, row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to increment {column} for user {user_id}: {e}", exc_info=True)
            await db.rollback()
            return self._status(user_id, run_date, None)

    async def increment_heavy_matching(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> RateLimitStatus:
        return await self._increment(db, user_id, "heavy_matching_count", 1, now)

    async def increment_competitor_stores_added(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> RateLimitStatus:
        return await self._increment(db, user_id, "competitor_stores_added", 1, now)

    async def increment_urls_added(
        self,
        db: AsyncSession,
        user_id: str,
        count: int = 1,
        now: Optional[datetime] = None,
    ) -> RateLimitStatus:
        return await self._increment(db, user_id, "urls_added", count, now)


rate_limiter = MatchingRateLimiter()
