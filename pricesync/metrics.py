"""Prometheus metrics for the competitor price sync worker."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("pricesync", "Competitor price sync application info")
app_info.info({"version": "0.1.0", "name": "competitor-price-sync"})

# Provider metrics
scrape_requests_total = Counter(
    "pricesync_scrape_requests_total",
    "Total number of scraping provider requests",
    ["status"],
)

scrape_duration_seconds = Histogram(
    "pricesync_scrape_duration_seconds",
    "Time spent waiting on the scraping provider",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0],
)

budget_deferrals_total = Counter(
    "pricesync_budget_deferrals_total",
    "Scrapes deferred because the user budget was exhausted",
)

# Tracking metrics
tracking_price_changes_total = Counter(
    "pricesync_tracking_price_changes_total",
    "Competitor price changes detected",
    ["direction"],
)

tracking_errors_total = Counter(
    "pricesync_tracking_errors_total",
    "Tracking failures by kind",
    ["error_type"],
)

# Matching metrics
links_upserted_total = Counter(
    "pricesync_links_upserted_total",
    "Competitor product links created or refreshed",
    ["mode"],
)

discovery_refusals_total = Counter(
    "pricesync_discovery_refusals_total",
    "Discovery requests refused by the monthly quota",
)

# Scheduler metrics
scheduler_runs_total = Counter(
    "pricesync_scheduler_runs_total",
    "Total number of scheduler runs",
    ["job_type", "status"],
)

scheduler_last_run_timestamp = Gauge(
    "pricesync_scheduler_last_run_timestamp",
    "Timestamp of last scheduler run",
    ["job_type"],
)


def record_scrape(status: str, duration: float | None = None):
    """Record one provider call outcome (success, error, timeout, deferred)."""
    scrape_requests_total.labels(status=status).inc()
    if duration is not None:
        scrape_duration_seconds.observe(duration)
    if status == "deferred":
        budget_deferrals_total.inc()


def record_price_change(old_price, new_price):
    """Record a detected competitor price change."""
    if old_price is None:
        direction = "new"
    else:
        direction = "up" if new_price > old_price else "down"
    tracking_price_changes_total.labels(direction=direction).inc()


def record_tracking_error(error_type: str):
    tracking_errors_total.labels(error_type=error_type).inc()


def record_links_upserted(mode: str, count: int):
    if count:
        links_upserted_total.labels(mode=mode).inc(count)


def record_scheduler_run(job_type: str, success: bool):
    """Record a scheduler job run."""
    status = "success" if success else "error"
    scheduler_runs_total.labels(job_type=job_type, status=status).inc()
    scheduler_last_run_timestamp.labels(job_type=job_type).set(time.time())
