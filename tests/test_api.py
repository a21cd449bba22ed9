"""API tests for the scraping and discovery endpoints."""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from pricesync.api.deps import get_database, get_task_runner
from pricesync.db.models import Base, CompetitorProductLink, Product, Store
from pricesync.main import app
from pricesync.worker.tasks import TaskRunner

SHOP = "https://comp.test/shop"


def listing_html(names) -> str:
    cards = "".join(
        f'<div class="product-card" data-product-id="{i}">'
        f'<a href="/products/p{i}"><h3>{name}</h3></a><span class="price">$9.00</span></div>'
        for i, name in enumerate(names, start=1)
    )
    return f"<html><body>{cards}</body></html>"


CATALOG = ["Acme kettle steel", "Acme toaster slim", "Acme blender pro", "Acme grinder mini"]


@pytest.fixture
async def api_sessions(tmp_path):
    # NullPool: the TestClient runs requests on its own event loop
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
async def seeded(api_sessions):
    async with api_sessions() as db:
        db.add(Store(id="store-1", user_id="user-1", plan="starter"))
        db.add(Store(id="store-pro", user_id="user-2", plan="pro"))
        for i, name in enumerate(CATALOG, start=1):
            db.add(Product(id=i, store_id="store-1", name=name))
        db.add(
            CompetitorProductLink(
                user_id="user-1",
                store_id="store-1",
                product_id=1,
                competitor_id="comp-0",
                competitor_product_url="https://comp.test/p/tracked",
            )
        )
        await db.commit()
    return api_sessions


@pytest.fixture
def client(seeded, test_settings, provider):
    runner = TaskRunner(test_settings, session_factory=seeded, transport=provider.transport)

    async def get_test_database():
        async with seeded() as session:
            yield session

    app.dependency_overrides[get_database] = get_test_database
    app.dependency_overrides[get_task_runner] = lambda: runner

    # No context manager: the lifespan would start the real scheduler
    yield TestClient(app)

    app.dependency_overrides.clear()


class TestHealth:

    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}


class TestBudgetEndpoint:

    def test_fresh_budget(self, client: TestClient):
        response = client.get("/api/scraping/budget/user-1")

        assert response.status_code == 200
        data = response.json()
        assert data["daily_used"] == 0
        assert data["daily_limit"] == 666
        assert data["monthly_limit"] == 20000
        assert data["can_scrape"] is True
        assert data["monthly_spend_usd"] == 0


class TestTrackingEndpoint:

    def test_tracking_pass_then_frequency_limit(self, client: TestClient, provider):
        provider.add(
            "https://comp.test/p/tracked",
            '<html><body><span itemprop="price" content="12.50">12.50</span></body></html>',
        )

        response = client.post("/api/scraping/tracking", json={"user_id": "user-1", "store_id": "store-1"})
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["links_processed"] == 1
        assert data["price_changes"] == 1

        again = client.post("/api/scraping/tracking", json={"user_id": "user-1", "store_id": "store-1"})
        assert again.status_code == 429

        forced = client.post(
            "/api/scraping/tracking",
            json={"user_id": "user-1", "store_id": "store-1", "force": True},
        )
        assert forced.status_code == 200

        budget = client.get("/api/scraping/budget/user-1").json()
        assert budget["daily_used"] == 2

    def test_free_plan_tracking_refused(self, client: TestClient, provider):
        response = client.post(
            "/api/scraping/tracking",
            json={"user_id": "user-1", "store_id": "store-1", "plan": "free_demo"},
        )

        assert response.status_code == 429
        assert provider.calls == []


class TestQuickStartEndpoint:

    def test_quick_start_and_daily_store_cap(self, client: TestClient, provider):
        provider.add(SHOP, listing_html(CATALOG))
        provider.add(f"{SHOP}?page=2", "<html></html>")
        body = {
            "user_id": "user-1",
            "store_id": "store-1",
            "competitor_id": "comp-1",
            "competitor_url": SHOP,
        }

        response = client.post("/api/scraping/matching/quick-start", json=body)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["products_matched"] == 4
        assert data["batches_queued"] == 0
        assert {m["similarity"] for m in data["matches"]} == {100}

        limits = client.get("/api/scraping/rate-limit/user-1").json()
        assert limits["competitor_stores_added"] == 1
        assert limits["competitor_stores_remaining"] == 0

        refused = client.post(
            "/api/scraping/matching/quick-start", json={**body, "competitor_id": "comp-2"}
        )
        assert refused.status_code == 429


class TestDiscoveryEndpoints:

    def test_quota_uses_store_plan(self, client: TestClient):
        response = client.get("/api/discovery/quota/store-pro")

        assert response.status_code == 200
        assert response.json()["limit_amount"] == 6000

    def test_consume_and_refuse(self, client: TestClient):
        ok = client.post("/api/discovery/consume", json={"store_id": "store-1", "amount": 1990})
        assert ok.status_code == 200
        assert ok.json()["remaining"] == 10

        refused = client.post("/api/discovery/consume", json={"store_id": "store-1", "amount": 11})
        assert refused.status_code == 403

        quota = client.get("/api/discovery/quota/store-1").json()
        assert quota["used"] == 1990

    def test_consume_rejects_negative_amount(self, client: TestClient):
        response = client.post("/api/discovery/consume", json={"store_id": "store-1", "amount": -1})

        assert response.status_code == 422

    def test_discover_charges_per_candidate(self, client: TestClient, provider):
        provider.add(SHOP, listing_html(CATALOG))
        provider.add(f"{SHOP}?page=2", "<html></html>")

        response = client.post(
            "/api/discovery/discover",
            json={"user_id": "user-1", "store_id": "store-1", "competitor_url": SHOP},
        )

        assert response.status_code == 200
        data = response.json()
        assert len(data["candidates"]) == 4
        assert data["candidates"][0]["price"] == 9.0
        assert data["used"] == 4

    def test_discover_refused_on_free_plan(self, client: TestClient, provider):
        response = client.post(
            "/api/discovery/discover",
            json={"user_id": "user-1", "store_id": "store-1", "competitor_url": SHOP, "plan": "free_demo"},
        )

        assert response.status_code == 403
        assert provider.calls == []
