"""Per-user scraping budget ledger and the budget-gated fetch wrapper."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync import metrics
from pricesync.config import Settings, settings as default_settings
from pricesync.db.models import ScrapeBudget
from pricesync.ingest.provider_client import (
    ProviderConfigError,
    ProviderRequestError,
    ProviderTimeoutError,
    ScrapingProviderClient,
)

logger = logging.getLogger(__name__)

BUDGET_DEFERRED_MESSAGE = "Budget exhausted, request deferred"


@dataclass
class BudgetStatus:
    """Snapshot of a user's request counters against their limits."""

    user_id: str
    daily_used: int
    daily_limit: int
    monthly_used: int
    monthly_limit: int
    cost_per_1000_requests: float = 0.0
    degraded: bool = False  # Counters could not be read from the store

    @property
    def daily_remaining(self) -> int:
        return max(0, self.daily_limit - self.daily_used)

    @property
    def monthly_remaining(self) -> int:
        return max(0, self.monthly_limit - self.monthly_used)

    @property
    def can_scrape(self) -> bool:
        return self.allows(1)

    def allows(self, cost: int) -> bool:
        """Whether ``cost`` more requests fit under both limits."""
        return (
            self.daily_used + cost <= self.daily_limit
            and self.monthly_used + cost <= self.monthly_limit
        )

    @property
    def daily_spend_usd(self) -> float:
        return round(self.daily_used * self.cost_per_1000_requests / 1000, 4)

    @property
    def monthly_spend_usd(self) -> float:
        return round(self.monthly_used * self.cost_per_1000_requests / 1000, 4)

    @property
    def monthly_percent_used(self) -> float:
        if not self.monthly_limit:
            return 100.0
        return round(self.monthly_used / self.monthly_limit * 100, 2)


def _month_start(day: date) -> date:
    return day.replace(day=1)


class BudgetLedger:
    """
    Persistent per-user request counters.

    Daily counters roll over when the stored date is not today; monthly
    counters roll over when the stored period starts before the current
    calendar month. Increments are applied store-side so concurrent
    workers never lose updates.
    """

    def __init__(self, config: Settings = default_settings):
        self.config = config

    def _status(self, row: ScrapeBudget) -> BudgetStatus:
        return BudgetStatus(
            user_id=row.user_id,
            daily_used=row.daily_used,
            daily_limit=self.config.daily_request_limit,
            monthly_used=row.monthly_used,
            monthly_limit=self.config.monthly_request_limit,
            cost_per_1000_requests=self.config.cost_per_1000_requests,
        )

    def _fallback_status(self, user_id: str) -> BudgetStatus:
        """Status used when the store is unreachable, per the fail-open setting."""
        daily_limit = self.config.daily_request_limit
        monthly_limit = self.config.monthly_request_limit
        if self.config.budget_fail_open:
            daily_used, monthly_used = 0, 0
        else:
            daily_used, monthly_used = daily_limit, monthly_limit
        return BudgetStatus(
            user_id=user_id,
            daily_used=daily_used,
            daily_limit=daily_limit,
            monthly_used=monthly_used,
            monthly_limit=monthly_limit,
            cost_per_1000_requests=self.config.cost_per_1000_requests,
            degraded=True,
        )

    async def _load_or_insert(
        self, db: AsyncSession, user_id: str, now: datetime
    ) -> ScrapeBudget:
        today = now.date()
        query = (
            select(ScrapeBudget)
            .where(ScrapeBudget.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        row = (await db.execute(query)).scalar_one_or_none()
        if row is not None:
            return row

        row = ScrapeBudget(
            user_id=user_id,
            daily_used=0,
            daily_date=today,
            monthly_used=0,
            month_period_start=_month_start(today),
            updated_at=now,
        )
        db.add(row)
        try:
            await db.commit()
        except IntegrityError:
            # Another worker created the row first
            await db.rollback()
            row = (await db.execute(query)).scalar_one()
        return row

    async def get_or_create(
        self, db: AsyncSession, user_id: str, now: Optional[datetime] = None
    ) -> BudgetStatus:
        """
        Load (or create) the user's budget, rolling over stale counters.

        Args:
            db: Database session
            user_id: Budget owner
            now: Current time (naive UTC)

        Returns:
            BudgetStatus after rollover
        """
        now = now or datetime.utcnow()
        today = now.date()
        try:
            row = await self._load_or_insert(db, user_id, now)

            changed = False
            if row.daily_date != today:
                row.daily_used = 0
                row.daily_date = today
                changed = True
            if row.month_period_start < _month_start(today):
                row.monthly_used = 0
                row.month_period_start = _month_start(today)
                changed = True

            if changed:
                row.updated_at = now
                await db.commit()
                logger.debug(f"Rolled over scrape budget for user {user_id}")

            return self._status(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to load scrape budget for user {user_id}: {e}", exc_info=True)
            await db.rollback()
            return self._fallback_status(user_id)

    async def increment(
        self,
        db: AsyncSession,
        user_id: str,
        cost: int = 1,
        now: Optional[datetime] = None,
    ) -> BudgetStatus:
        """
        Charge ``cost`` requests to both counters.

        Args:
            db: Database session
            user_id: Budget owner
            cost: Number of provider requests consumed
            now: Current time (naive UTC)

        Returns:
            Updated BudgetStatus
        """
        now = now or datetime.utcnow()
        status = await self.get_or_create(db, user_id, now)
        if status.degraded:
            return status

        try:
            await db.execute(
                update(ScrapeBudget)
                .where(ScrapeBudget.user_id == user_id)
                .values(
                    daily_used=ScrapeBudget.daily_used + cost,
                    monthly_used=ScrapeBudget.monthly_used + cost,
                    updated_at=now,
                )
            )
            await db.commit()

            row = (
                await db.execute(
                    select(ScrapeBudget)
                    .where(ScrapeBudget.user_id == user_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()
            return self._status(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to increment scrape budget for user {user_id}: {e}", exc_info=True)
            await db.rollback()
            return self._fallback_status(user_id)

    async def can_scrape(
        self,
        db: AsyncSession,
        user_id: str,
        cost: int = 1,
        now: Optional[datetime] = None,
    ) -> bool:
        """Whether ``cost`` more requests fit under the daily and monthly limits."""
        status = await self.get_or_create(db, user_id, now)
        if status.degraded:
            return self.config.budget_fail_open
        return status.allows(cost)


@dataclass
class ScrapeResult:
    """Outcome of one budget-gated provider call."""

    url: str
    success: bool
    data: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None  # config, budget, timeout, request, http
    status_code: Optional[int] = None
    deferred: bool = False
    budget_exceeded: bool = False
    cost: int = 0

    @property
    def is_config_error(self) -> bool:
        return self.error_kind == "config"


@dataclass
class BatchScrapeResult:
    """Outcome of a sequential batch of budget-gated calls."""

    results: list[ScrapeResult] = field(default_factory=list)
    budget_exhausted: bool = False

    @property
    def completed(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def deferred(self) -> int:
        return sum(1 for r in self.results if r.deferred)


class BudgetedScraper:
    """Fetch wrapper that never spends beyond the user's budget."""

    def __init__(
        self,
        ledger: Optional[BudgetLedger] = None,
        client: Optional[ScrapingProviderClient] = None,
        config: Settings = default_settings,
    ):
        self.config = config
        self.ledger = ledger or BudgetLedger(config)
        self.client = client or ScrapingProviderClient(config)

    def _log_attempt(self, user_id: str, url: str, outcome: str, cost: int):
        if self.config.log_scrape_attempts:
            logger.info(
                f"Scrape attempt user={user_id} url={url} outcome={outcome} cost={cost}"
            )

    async def scrape(
        self,
        db: AsyncSession,
        user_id: str,
        url: str,
        *,
        render_js: Optional[bool] = None,
        timeout_ms: Optional[int] = None,
        cost: int = 1,
        skip_budget_check: bool = False,
        now: Optional[datetime] = None,
    ) -> ScrapeResult:
        """
        Fetch ``url`` through the provider if the user's budget allows it.

        Args:
            db: Database session
            user_id: Budget owner
            url: Target page
            render_js: Provider JavaScript rendering flag
            timeout_ms: Hard timeout for the provider call
            cost: Requests charged on success
            skip_budget_check: Neither check nor charge the budget
            now: Current time (naive UTC)

        Returns:
            ScrapeResult; the budget is only charged when ``success`` is True
        """
        if not self.client.is_configured:
            logger.error("Scraping provider API key not configured")
            self._log_attempt(user_id, url, "config_error", 0)
            return ScrapeResult(
                url=url,
                success=False,
                error="Scraping provider API key not configured",
                error_kind="config",
            )

        if not skip_budget_check:
            status = await self.ledger.get_or_create(db, user_id, now)
            admissible = (
                self.config.budget_fail_open if status.degraded else status.allows(cost)
            )
            if not admissible:
                metrics.record_scrape("deferred")
                self._log_attempt(user_id, url, "deferred", 0)
                return ScrapeResult(
                    url=url,
                    success=False,
                    error=(
                        f"Budget exceeded. Daily: {status.daily_used}/{status.daily_limit}, "
                        f"Monthly: {status.monthly_used}/{status.monthly_limit}"
                    ),
                    error_kind="budget",
                    deferred=True,
                    budget_exceeded=True,
                )

        started = time.monotonic()
        try:
            resp = await self.client.fetch(url, render_js=render_js, timeout_ms=timeout_ms)
        except ProviderConfigError as e:
            return ScrapeResult(url=url, success=False, error=str(e), error_kind="config")
        except ProviderTimeoutError as e:
            metrics.record_scrape("timeout", time.monotonic() - started)
            self._log_attempt(user_id, url, "timeout", 0)
            return ScrapeResult(url=url, success=False, error=str(e), error_kind="timeout")
        except ProviderRequestError as e:
            metrics.record_scrape("error", time.monotonic() - started)
            self._log_attempt(user_id, url, "request_error", 0)
            return ScrapeResult(url=url, success=False, error=str(e), error_kind="request")

        duration = time.monotonic() - started
        if not resp.ok:
            metrics.record_scrape("error", duration)
            self._log_attempt(user_id, url, f"http_{resp.status_code}", 0)
            return ScrapeResult(
                url=url,
                success=False,
                error=f"Scraping provider returned status {resp.status_code}",
                error_kind="http",
                status_code=resp.status_code,
            )

        if not skip_budget_check:
            await self.ledger.increment(db, user_id, cost, now)

        metrics.record_scrape("success", duration)
        self._log_attempt(user_id, url, "success", cost)
        return ScrapeResult(
            url=url,
            success=True,
            data=resp.text,
            status_code=resp.status_code,
            cost=0 if skip_budget_check else cost,
        )

    async def batch_scrape(
        self,
        db: AsyncSession,
        user_id: str,
        urls: list[str],
        **options,
    ) -> BatchScrapeResult:
        """
        Scrape ``urls`` in order, stopping at the first budget deferral.

        Every URL after the deferral is reported deferred without any
        further provider call.
        """
        batch = BatchScrapeResult()
        for index, url in enumerate(urls):
            result = await self.scrape(db, user_id, url, **options)
            batch.results.append(result)
            if result.deferred:
                batch.budget_exhausted = True
                batch.results.extend(
                    ScrapeResult(
                        url=remaining,
                        success=False,
                        error=BUDGET_DEFERRED_MESSAGE,
                        error_kind="budget",
                        deferred=True,
                        budget_exceeded=True,
                    )
                    for remaining in urls[index + 1:]
                )
                logger.info(
                    f"Budget exhausted for user {user_id}; deferred "
                    f"{len(urls) - index} of {len(urls)} URLs"
                )
                break
        return batch

    async def close(self):
        await self.client.close()
