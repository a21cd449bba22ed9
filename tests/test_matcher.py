"""Tests for quick-start matching, batch queueing and batch job processing."""

from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import func, select

from pricesync.config import Settings
from pricesync.db.models import CompetitorProductLink, Product, ScrapeBudget, ScrapeJob
from pricesync.ingest.budget import BudgetedScraper, BudgetLedger
from pricesync.ingest.listing_scraper import CompetitorListingScraper
from pricesync.ingest.provider_client import ScrapingProviderClient
from pricesync.matching.matcher import CompetitorMatcher
from pricesync.worker import job_queue

NOW = datetime(2026, 3, 15, 12, 0, 0)
SHOP = "https://comp.test/shop"

WORDS = [
    "kettle", "toaster", "blender", "grinder", "mixer", "juicer", "steamer", "fryer",
    "roaster", "cooker", "heater", "fan", "lamp", "clock", "radio", "speaker",
    "router", "camera", "drone", "tripod", "monitor", "keyboard", "mouse", "headset",
    "charger", "cable", "adapter", "battery", "printer", "scanner", "projector", "tablet",
    "stylus", "case", "sleeve", "backpack", "bottle", "flask", "mug", "plate",
    "bowl", "knife", "spoon", "fork", "pan", "pot", "wok", "grill",
    "oven", "scale", "timer", "thermometer", "sieve", "whisk", "ladle", "tongs",
    "peeler", "grater", "mortar", "apron",
]


def product_name(i: int) -> str:
    return f"Acme {WORDS[i - 1]} deluxe"


def listing_html(ids) -> str:
    cards = "".join(
        f"""
        <div class="product-card" data-product-id="{i}">
          <a href="/products/{WORDS[i - 1]}"><h3>{product_name(i)}</h3></a>
          <span class="price">${i}.00</span>
        </div>
        """
        for i in ids
    )
    return f"<html><body>{cards}</body></html>"


async def seed_catalog(db, count: int, store_id: str = "store-1"):
    for i in range(1, count + 1):
        db.add(
            Product(
                id=i,
                store_id=store_id,
                name=product_name(i),
                created_at=NOW,
                updated_at=NOW,
            )
        )
    await db.commit()


def build_matcher(config: Settings, provider) -> CompetitorMatcher:
    scraper = BudgetedScraper(
        ledger=BudgetLedger(config),
        client=ScrapingProviderClient(config, transport=provider.transport),
        config=config,
    )
    return CompetitorMatcher(CompetitorListingScraper(scraper, config), config=config)


def publish_shop(provider, count: int = 60):
    provider.add(SHOP, listing_html(range(1, count + 1)))
    provider.add(f"{SHOP}?page=2", "<html><body></body></html>")


async def count_links(db) -> int:
    return (await db.execute(select(func.count(CompetitorProductLink.id)))).scalar_one()


@pytest.mark.asyncio
async def test_quick_start_links_head_and_queues_batches(db_session, provider, test_settings):
    await seed_catalog(db_session, 60)
    publish_shop(provider)
    matcher = build_matcher(test_settings, provider)

    result = await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)

    assert result.success
    assert result.products_considered == 30
    assert result.products_matched == 30
    assert result.batches_queued == 2

    links = (await db_session.execute(select(CompetitorProductLink))).scalars().all()
    assert sorted(link.product_id for link in links) == list(range(1, 31))
    assert all(link.similarity == 100 and link.priority == 1 for link in links)
    assert links[0].competitor_product_url.startswith("https://comp.test/products/")

    jobs = (
        await db_session.execute(
            select(ScrapeJob).where(ScrapeJob.job_type == job_queue.JOB_MATCHING).order_by(ScrapeJob.batch_number)
        )
    ).scalars().all()
    assert [job.batch_number for job in jobs] == [1, 2]
    assert [job.scheduled_for for job in jobs] == [NOW + timedelta(minutes=5), NOW + timedelta(minutes=10)]
    assert [job.items_total for job in jobs] == [25, 5]
    assert all(job.total_batches == 2 for job in jobs)

    quick = await db_session.get(ScrapeJob, result.job_id)
    assert quick.status == job_queue.STATUS_COMPLETED


@pytest.mark.asyncio
async def test_small_catalog_queues_nothing(db_session, provider, test_settings):
    await seed_catalog(db_session, 12)
    publish_shop(provider, 12)
    matcher = build_matcher(test_settings, provider)

    result = await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)

    assert result.products_matched == 12
    assert result.batches_queued == 0


@pytest.mark.asyncio
async def test_second_competitor_same_day_is_refused(db_session, provider, test_settings):
    await seed_catalog(db_session, 10)
    publish_shop(provider, 10)
    matcher = build_matcher(test_settings, provider)

    await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)
    calls_before = len(provider.calls)

    refused = await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-2", SHOP, NOW)

    assert refused.rate_limited
    assert not refused.success
    assert "competitor store" in refused.error
    assert len(provider.calls) == calls_before

    next_day = await matcher.run_quick_start(
        db_session, "user-1", "store-1", "comp-2", SHOP, NOW + timedelta(days=1)
    )
    assert next_day.success


@pytest.mark.asyncio
async def test_quick_start_rerun_is_idempotent(db_session, provider):
    config = Settings(
        scrapingbee_api_key="test-key",
        scraping_api_base_url="https://provider.test/api/v1",
        max_new_competitor_stores_per_day=5,
    )
    await seed_catalog(db_session, 60)
    publish_shop(provider)
    matcher = build_matcher(config, provider)

    await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)
    again = await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)

    assert again.success
    assert again.products_considered == 0
    assert again.batches_queued == 0
    assert await count_links(db_session) == 30
    open_jobs = await job_queue.count_open_matching_jobs(db_session, "user-1", "comp-1")
    assert open_jobs == 2


@pytest.mark.asyncio
async def test_quick_start_refused_without_budget(db_session, provider, test_settings):
    db_session.add(
        ScrapeBudget(
            user_id="user-1",
            daily_used=666,
            daily_date=date(2026, 3, 15),
            monthly_used=666,
            month_period_start=date(2026, 3, 1),
            updated_at=NOW,
        )
    )
    await db_session.commit()
    await seed_catalog(db_session, 10)
    publish_shop(provider, 10)
    matcher = build_matcher(test_settings, provider)

    result = await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)

    assert result.budget_exhausted
    assert provider.calls == []
    assert await count_links(db_session) == 0


@pytest.mark.asyncio
async def test_batch_jobs_processed_then_deferred_by_heavy_limit(db_session, provider, test_settings):
    await seed_catalog(db_session, 60)
    publish_shop(provider)
    matcher = build_matcher(test_settings, provider)
    await matcher.run_quick_start(db_session, "user-1", "store-1", "comp-1", SHOP, NOW)

    assert await job_queue.get_pending_matching_jobs(db_session, NOW) == []

    first_at = NOW + timedelta(minutes=5)
    pending = await job_queue.get_pending_matching_jobs(db_session, first_at)
    assert [job.batch_number for job in pending] == [1]

    first = await matcher.process_matching_job(db_session, pending[0], first_at)
    assert first.success
    assert first.products_matched == 25
    assert pending[0].status == job_queue.STATUS_COMPLETED
    assert await count_links(db_session) == 55

    second_at = NOW + timedelta(minutes=10)
    pending = await job_queue.get_pending_matching_jobs(db_session, second_at)
    assert [job.batch_number for job in pending] == [2]

    second = await matcher.process_matching_job(db_session, pending[0], second_at)
    assert second.rate_limited
    assert pending[0].status == job_queue.STATUS_DEFERRED
    assert await count_links(db_session) == 55
    assert await job_queue.get_pending_matching_jobs(db_session, second_at) == []


@pytest.mark.asyncio
async def test_terminal_job_status_is_final(db_session):
    job = await job_queue.create_job(db_session, job_queue.JOB_MATCHING, "user-1", "store-1")
    await job_queue.update_job_status(db_session, job, job_queue.STATUS_DEFERRED, now=NOW)

    await job_queue.update_job_status(db_session, job, job_queue.STATUS_IN_PROGRESS, now=NOW)

    assert job.status == job_queue.STATUS_DEFERRED
    assert job.completed_at == NOW
