"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator

from pricesync.config import settings
from pricesync.db.session import engine
from pricesync.db.models import Base
from pricesync.worker.scheduler import setup_scheduler
from pricesync.worker.tasks import task_runner
from pricesync.api.routes import discovery, scraping

# Configure structured logging
from pricesync.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    logger.info("Starting competitor price sync...")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    if not task_runner.scraper.client.is_configured:
        logger.warning("Scraping provider API key not configured; tracking will not fetch")

    scheduler = setup_scheduler(task_runner)
    scheduler.start()
    logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown()

    await task_runner.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Competitor Price Sync",
    description="Cost-governed competitor price tracking and product matching",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

app.include_router(scraping.router)
app.include_router(discovery.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    uvicorn.run(
        "pricesync.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
