"""Monthly per-store quota on discovered competitor candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import DiscoveryQuota
from pricesync.plans import get_plan_limits

logger = logging.getLogger(__name__)


@dataclass
class QuotaStatus:
    """Discovery usage for one store in the current month."""

    store_id: str
    period_start: date
    used: int
    limit_amount: int
    degraded: bool = False  # Store unreachable; reported as exhausted

    @property
    def remaining(self) -> int:
        return max(0, self.limit_amount - self.used)


@dataclass
class ConsumeResult:
    """Outcome of a quota consumption attempt."""

    allowed: bool
    used: int
    limit: int
    remaining: int
    reason: Optional[str] = None


class DiscoveryQuotaManager:
    """Reads and consumes the monthly discovery quota."""

    def __init__(self, config: Settings = default_settings):
        self.config = config

    async def _load(self, db: AsyncSession, store_id: str, period_start: date) -> Optional[DiscoveryQuota]:
        query = (
            select(DiscoveryQuota)
            .where(
                DiscoveryQuota.store_id == store_id,
                DiscoveryQuota.period_start == period_start,
            )
            .execution_options(populate_existing=True)
        )
        return (await db.execute(query)).scalar_one_or_none()

    async def _get_or_create_row(
        self, db: AsyncSession, store_id: str, plan: Optional[str], now: datetime
    ) -> DiscoveryQuota:
        period_start = now.date().replace(day=1)
        limit_amount = get_plan_limits(plan, self.config).discovery_limit

        row = await self._load(db, store_id, period_start)
        if row is None:
            row = DiscoveryQuota(
                store_id=store_id,
                period_start=period_start,
                used=0,
                limit_amount=limit_amount,
                updated_at=now,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                row = await self._load(db, store_id, period_start)

        if row.limit_amount != limit_amount:
            # Plan changed mid-month
            row.limit_amount = limit_amount
            row.updated_at = now
            await db.commit()
        return row

    async def get_or_create(
        self,
        db: AsyncSession,
        store_id: str,
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> QuotaStatus:
        """
        Get this month's quota for a store.

        Args:
            db: Database session
            store_id: Store whose quota to read
            plan: Billing plan name; determines the limit
            now: Current time (naive UTC)

        Returns:
            QuotaStatus for the current calendar month
        """
        now = now or datetime.utcnow()
        try:
            row = await self._get_or_create_row(db, store_id, plan, now)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load discovery quota for store {store_id}: {e}", exc_info=True)
            await db.rollback()
            return QuotaStatus(
                store_id=store_id,
                period_start=now.date().replace(day=1),
                used=0,
                limit_amount=0,
                degraded=True,
            )
        return QuotaStatus(
            store_id=store_id,
            period_start=row.period_start,
            used=row.used,
            limit_amount=row.limit_amount,
        )

    async def consume(
        self,
        db: AsyncSession,
        store_id: str,
        amount: int,
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> ConsumeResult:
        """
        Consume ``amount`` units of quota, all or nothing.

        Args:
            db: Database session
            store_id: Store to charge
            amount: Units to consume (discovered candidates)
            plan: Billing plan name
            now: Current time (naive UTC)

        Returns:
            ConsumeResult; refused requests leave ``used`` untouched
        """
        now = now or datetime.utcnow()
        try:
            row = await self._get_or_create_row(db, store_id, plan, now)

            if amount <= 0:
                return ConsumeResult(
                    allowed=True,
                    used=row.used,
                    limit=row.limit_amount,
                    remaining=max(0, row.limit_amount - row.used),
                )

            if row.used + amount > row.limit_amount:
                return self._refused(row)

            result = await db.execute(
                update(DiscoveryQuota)
                .where(
                    DiscoveryQuota.id == row.id,
                    DiscoveryQuota.used + amount <= DiscoveryQuota.limit_amount,
                )
                .values(used=DiscoveryQuota.used + amount, updated_at=now)
            )
            await db.commit()

            row = await self._load(db, store_id, row.period_start)
            if result.rowcount == 0:
                # Lost a race with a concurrent consumer
                return self._refused(row)

            return ConsumeResult(
                allowed=True,
                used=row.used,
                limit=row.limit_amount,
                remaining=max(0, row.limit_amount - row.used),
            )
        except SQLAlchemyError as e:
            logger.error(f"Failed to consume discovery quota for store {store_id}: {e}", exc_info=True)
            await db.rollback()
            return ConsumeResult(
                allowed=False,
                used=0,
                limit=0,
                remaining=0,
                reason="Discovery quota unavailable",
            )

    @staticmethod
    def _refused(row: DiscoveryQuota) -> ConsumeResult:
        remaining = max(0, row.limit_amount - row.used)
        return ConsumeResult(
            allowed=False,
            used=row.used,
            limit=row.limit_amount,
            remaining=remaining,
            reason=(
                f"Monthly discovery limit reached ({row.used}/{row.limit_amount}); "
                f"{remaining} remaining"
            ),
        )


discovery_quota = DiscoveryQuotaManager()
