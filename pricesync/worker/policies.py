"""Scheduling policies for competitor link tracking.

Both policies are pure: they take the current streak and clock and return
the earliest time a link may be fetched again.
"""

from datetime import datetime, timedelta
from typing import Optional

from pricesync.config import Settings, settings as default_settings


def next_allowed_check(
    no_change_streak: int,
    now: datetime,
    config: Settings = default_settings,
) -> Optional[datetime]:
    """
    Smart-skip: back off links whose price keeps coming back unchanged.

    Args:
        no_change_streak: Consecutive successful checks without a price change
        now: Current time
        config: Settings carrying the thresholds and skip windows

    Returns:
        Earliest next check time, or None if the link is due on every pass
    """
    if no_change_streak >= config.smart_skip_threshold_heavy:
        return now + timedelta(hours=config.smart_skip_hours_heavy)
    if no_change_streak >= config.smart_skip_threshold_base:
        return now + timedelta(hours=config.smart_skip_hours_base)
    return None


def next_retry_time(
    error_streak: int,
    now: datetime,
    config: Settings = default_settings,
) -> datetime:
    """
    Retry backoff after a failed fetch.

    Args:
        error_streak: Consecutive failures including the one just recorded
        now: Current time
        config: Settings carrying the backoff table and retry cap

    Returns:
        Earliest time the link may be retried
    """
    if error_streak <= 0:
        return now
    if retries_exhausted(error_streak, config):
        return now + timedelta(seconds=config.retry_exhausted_backoff_seconds)

    table = config.retry_backoff_table
    if not table:
        return now
    index = min(error_streak - 1, len(table) - 1)
    return now + timedelta(seconds=table[index])


def retries_exhausted(error_streak: int, config: Settings = default_settings) -> bool:
    """True once a link has failed more times than the retry cap allows."""
    return error_streak > config.max_retries
