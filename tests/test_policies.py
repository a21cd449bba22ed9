"""Tests for smart-skip, retry backoff and plan limits."""

from datetime import datetime, timedelta

import pytest

from pricesync.config import Settings
from pricesync.plans import effective_plan, get_plan_limits
from pricesync.worker.policies import next_allowed_check, next_retry_time, retries_exhausted

NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.mark.parametrize("streak", [0, 1, 5])
def test_smart_skip_not_applied_below_threshold(streak):
    assert next_allowed_check(streak, NOW) is None


@pytest.mark.parametrize("streak", [6, 7, 11])
def test_smart_skip_base_window(streak):
    assert next_allowed_check(streak, NOW) == NOW + timedelta(hours=12)


@pytest.mark.parametrize("streak", [12, 13, 100])
def test_smart_skip_heavy_window(streak):
    assert next_allowed_check(streak, NOW) == NOW + timedelta(hours=36)


def test_retry_backoff_table():
    assert next_retry_time(0, NOW) == NOW
    assert next_retry_time(1, NOW) == NOW + timedelta(seconds=60)
    assert next_retry_time(2, NOW) == NOW + timedelta(seconds=300)
    assert next_retry_time(3, NOW) == NOW + timedelta(hours=24)
    assert next_retry_time(10, NOW) == NOW + timedelta(hours=24)


def test_retry_backoff_clamps_to_last_entry():
    config = Settings(max_retries=5, retry_backoff_seconds="10,20")

    assert next_retry_time(4, NOW, config) == NOW + timedelta(seconds=20)
    assert next_retry_time(6, NOW, config) == NOW + timedelta(seconds=86400)


def test_retries_exhausted():
    assert not retries_exhausted(2)
    assert retries_exhausted(3)


def test_budget_limits_derived_from_cost():
    config = Settings()

    assert config.monthly_request_limit == 20000
    assert config.daily_request_limit == 666


def test_effective_plan_aliases_and_trial():
    assert effective_plan("Professional") == "pro"
    assert effective_plan("basic") == "starter"
    assert effective_plan("enterprise") == "scale"
    assert effective_plan(None) == "free_demo"
    assert effective_plan("free_demo", trial_active=True) == "pro"
    assert effective_plan("starter", trial_active=True) == "starter"


def test_plan_limits():
    starter = get_plan_limits("starter")
    pro = get_plan_limits("pro")
    free = get_plan_limits("free_demo")

    assert starter.tracking_runs_per_day == 1
    assert starter.products_limit == 50
    assert starter.hours_between_runs == 24
    assert pro.hours_between_runs == 12
    assert pro.discovery_limit == 6000
    assert starter.discovery_limit == 2000
    assert not free.tracking_enabled
    assert free.discovery_limit == 0
