"""Subscription plan entitlements and per-plan scraping limits."""

from dataclasses import dataclass
from typing import Optional

from pricesync.config import Settings, settings as default_settings

FREE_DEMO = "free_demo"
STARTER = "starter"
PRO = "pro"
SCALE = "scale"

# Billing names that map onto a tier
_PLAN_ALIASES = {
    "free": FREE_DEMO,
    "free_demo": FREE_DEMO,
    "demo": FREE_DEMO,
    "starter": STARTER,
    "basic": STARTER,
    "pro": PRO,
    "professional": PRO,
    "scale": SCALE,
    "ultra": SCALE,
    "enterprise": SCALE,
}


@dataclass(frozen=True)
class PlanLimits:
    """Limits that apply to one subscription tier."""

    plan: str
    tracking_runs_per_day: int
    products_limit: int
    competitors_per_product: int
    discovery_limit: int

    @property
    def tracking_enabled(self) -> bool:
        return self.tracking_runs_per_day > 0

    @property
    def hours_between_runs(self) -> int:
        """Minimum hours between two tracking passes (0 when disabled)."""
        if self.tracking_runs_per_day <= 0:
            return 0
        return 24 // self.tracking_runs_per_day


def effective_plan(plan: Optional[str], trial_active: bool = False) -> str:
    """
    Resolve a billing plan name to the tier whose limits apply.

    Args:
        plan: Plan name as stored by billing (case-insensitive)
        trial_active: Whether the store is inside an active trial

    Returns:
        One of free_demo, starter, pro, scale
    """
    normalized = _PLAN_ALIASES.get((plan or "").strip().lower(), FREE_DEMO)
    if normalized == FREE_DEMO and trial_active:
        return PRO
    return normalized


def get_plan_limits(plan: Optional[str], config: Settings = default_settings) -> PlanLimits:
    """Return the limits for a plan name; unknown plans get free_demo limits."""
    tier = effective_plan(plan)
    if tier == STARTER:
        return PlanLimits(
            plan=tier,
            tracking_runs_per_day=config.starter_tracking_runs_per_day,
            products_limit=config.starter_products_limit,
            competitors_per_product=config.starter_competitors_per_product,
            discovery_limit=config.starter_discovery_limit,
        )
    if tier == PRO:
        return PlanLimits(
            plan=tier,
            tracking_runs_per_day=config.pro_tracking_runs_per_day,
            products_limit=config.pro_products_limit,
            competitors_per_product=config.pro_competitors_per_product,
            discovery_limit=config.pro_discovery_limit,
        )
    if tier == SCALE:
        return PlanLimits(
            plan=tier,
            tracking_runs_per_day=config.scale_tracking_runs_per_day,
            products_limit=config.scale_products_limit,
            competitors_per_product=config.scale_competitors_per_product,
            discovery_limit=config.scale_discovery_limit,
        )
    return PlanLimits(
        plan=FREE_DEMO,
        tracking_runs_per_day=0,
        products_limit=0,
        competitors_per_product=0,
        discovery_limit=0,
    )
