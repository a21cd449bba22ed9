"""Tests for the dispatcher tasks."""

from datetime import datetime, timedelta

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import select

from pricesync.db.models import CompetitorProductLink, Product, ScrapeJob, Store
from pricesync.worker import job_queue
from pricesync.worker.scheduler import setup_scheduler
from pricesync.worker.tasks import TaskRunner

NOW = datetime(2026, 3, 15, 12, 0, 0)
PAGE = '<html><body><span itemprop="price" content="8.00">8.00</span></body></html>'


@pytest.fixture
def runner(test_settings, session_factory, provider):
    return TaskRunner(test_settings, session_factory=session_factory, transport=provider.transport)


async def seed_store(db, store_id, user_id, plan, trial_ends_at=None):
    db.add(Store(id=store_id, user_id=user_id, plan=plan, trial_ends_at=trial_ends_at))
    product_id = len((await db.execute(select(Product))).scalars().all()) + 1
    db.add(Product(id=product_id, store_id=store_id, name=f"Product {product_id}"))
    db.add(
        CompetitorProductLink(
            user_id=user_id,
            store_id=store_id,
            product_id=product_id,
            competitor_id="comp-1",
            competitor_product_url=f"https://comp.test/{store_id}",
        )
    )
    await db.commit()


@pytest.mark.asyncio
async def test_run_tracking_skips_plans_without_tracking(db_session, runner, provider):
    await seed_store(db_session, "paid", "user-1", "pro")
    await seed_store(db_session, "free", "user-2", "free_demo")
    await seed_store(db_session, "trial", "user-3", "free_demo", trial_ends_at=NOW + timedelta(days=3))
    for store_id in ("paid", "free", "trial"):
        provider.add(f"https://comp.test/{store_id}", PAGE)

    tracked = await runner.run_tracking(NOW)

    assert tracked == 2
    assert sorted(provider.calls) == ["https://comp.test/paid", "https://comp.test/trial"]


@pytest.mark.asyncio
async def test_run_tracking_respects_frequency(db_session, runner, provider):
    await seed_store(db_session, "paid", "user-1", "pro")
    provider.add("https://comp.test/paid", PAGE)

    assert await runner.run_tracking(NOW) == 1
    assert await runner.run_tracking(NOW + timedelta(hours=1)) == 0
    # pro plan runs twice a day
    assert await runner.run_tracking(NOW + timedelta(hours=12)) == 1


@pytest.mark.asyncio
async def test_process_matching_queue_runs_due_jobs(db_session, runner, provider):
    db_session.add(Product(id=1, store_id="store-1", name="Filler"))
    await db_session.commit()
    await job_queue.create_job(
        db_session,
        job_queue.JOB_MATCHING,
        "user-1",
        "store-1",
        competitor_id="comp-1",
        competitor_url="https://comp.test/shop",
        batch_number=1,
        total_batches=1,
        scheduled_for=NOW + timedelta(minutes=5),
    )

    assert await runner.process_matching_queue(NOW) == 0
    assert await runner.process_matching_queue(NOW + timedelta(minutes=5)) == 1

    job = (await db_session.execute(select(ScrapeJob).execution_options(populate_existing=True))).scalar_one()
    assert job.status == job_queue.STATUS_COMPLETED
    assert provider.calls == []


def test_scheduler_registers_jobs(runner):
    scheduler = setup_scheduler(runner)

    assert {job.id for job in scheduler.get_jobs()} == {"competitor_tracking", "matching_queue"}


def scheduler_runs(job_type: str, status: str) -> float:
    value = REGISTRY.get_sample_value(
        "pricesync_scheduler_runs_total", {"job_type": job_type, "status": status}
    )
    return value or 0.0


@pytest.mark.asyncio
async def test_run_tracking_reports_failed_stores(db_session, runner, monkeypatch):
    await seed_store(db_session, "paid", "user-1", "pro")

    async def broken_job(*args, **kwargs):
        raise RuntimeError("worker crashed")

    monkeypatch.setattr(runner.tracking, "run_tracking_job", broken_job)
    errors_before = scheduler_runs("tracking", "error")

    assert await runner.run_tracking(NOW) == 0
    assert scheduler_runs("tracking", "error") == errors_before + 1


@pytest.mark.asyncio
async def test_clean_matching_queue_reports_success(runner):
    successes_before = scheduler_runs("matching", "success")

    assert await runner.process_matching_queue(NOW) == 0
    assert scheduler_runs("matching", "success") == successes_before + 1
