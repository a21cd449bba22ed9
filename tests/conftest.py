"""Shared fixtures: per-test SQLite database and a fake scraping provider."""

from datetime import datetime

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pricesync.config import Settings
from pricesync.db.models import Base
from pricesync.ingest.budget import BudgetedScraper, BudgetLedger
from pricesync.ingest.provider_client import ScrapingProviderClient

PROVIDER_URL = "https://provider.test/api/v1"
NOW = datetime(2026, 3, 15, 12, 0, 0)


class FakeProvider:
    """Stands in for the provider API; records every target URL requested."""

    def __init__(self):
        self.pages: dict = {}
        self.calls: list[str] = []
        self.default = (404, "not found")

    def add(self, url: str, body, status: int = 200):
        self.pages[url] = (status, body)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        target = request.url.params.get("url")
        self.calls.append(target)
        status, body = self.pages.get(target, self.default)
        if isinstance(body, type) and issubclass(body, httpx.TransportError):
            raise body("provider failure", request=request)
        return httpx.Response(status, text=body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def test_settings():
    return Settings(
        scrapingbee_api_key="test-key",
        scraping_api_base_url=PROVIDER_URL,
        database_url="sqlite+aiosqlite://",
    )


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def scraper(test_settings, provider):
    return BudgetedScraper(
        ledger=BudgetLedger(test_settings),
        client=ScrapingProviderClient(test_settings, transport=provider.transport),
        config=test_settings,
    )
