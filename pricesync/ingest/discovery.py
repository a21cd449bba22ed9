"""Quota-metered discovery of a competitor store's product list."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from pricesync import metrics
from pricesync.ingest.listing_scraper import CandidateProduct, CompetitorListingScraper
from pricesync.limits.discovery_quota import ConsumeResult, DiscoveryQuotaManager

logger = logging.getLogger(__name__)


@dataclass
class DiscoveryResult:
    allowed: bool
    candidates: List[CandidateProduct] = field(default_factory=list)
    quota: Optional[ConsumeResult] = None
    deferred: bool = False
    quota_exceeded: bool = False
    error: Optional[str] = None


class ListingDiscovery:
    """Scrapes a competitor listing and charges the store's discovery quota."""

    def __init__(
        self,
        listing_scraper: CompetitorListingScraper,
        quota: Optional[DiscoveryQuotaManager] = None,
    ):
        self.listing_scraper = listing_scraper
        self.quota = quota or DiscoveryQuotaManager(listing_scraper.config)

    async def discover(
        self,
        db: AsyncSession,
        user_id: str,
        store_id: str,
        competitor_url: str,
        plan: Optional[str],
        now: Optional[datetime] = None,
    ) -> DiscoveryResult:
        """
        Discover candidates and consume one quota unit per candidate.

        The whole discovery is refused when the candidates do not fit in the
        remaining monthly quota.
        """
        now = now or datetime.utcnow()
        status = await self.quota.get_or_create(db, store_id, plan, now)
        if status.remaining <= 0:
            metrics.discovery_refusals_total.inc()
            return DiscoveryResult(
                allowed=False,
                quota_exceeded=True,
                error=f"Discovery quota exceeded. Remaining: {status.remaining} products",
            )

        listing = await self.listing_scraper.scrape(db, user_id, competitor_url, now=now)
        if not listing.candidates:
            return DiscoveryResult(
                allowed=False,
                deferred=listing.deferred,
                error=listing.error or "No products found on competitor store",
            )

        consumed = await self.quota.consume(db, store_id, len(listing.candidates), plan, now)
        if not consumed.allowed:
            metrics.discovery_refusals_total.inc()
            logger.info(
                f"Discovery for store {store_id} refused: {len(listing.candidates)} "
                f"candidates, {consumed.remaining} remaining"
            )
            return DiscoveryResult(
                allowed=False,
                quota=consumed,
                quota_exceeded=True,
                error=f"Discovery quota exceeded. Remaining: {consumed.remaining} products",
            )

        return DiscoveryResult(allowed=True, candidates=listing.candidates, quota=consumed)
