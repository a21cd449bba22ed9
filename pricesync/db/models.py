"""SQLAlchemy database models."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Store(Base):
    """Merchant store and its billing plan (owned by billing, read-only here)."""

    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    plan: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    trial_ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    def effective_plan(self, now: datetime) -> str:
        from pricesync.plans import effective_plan

        trial_active = self.trial_ends_at is not None and self.trial_ends_at > now
        return effective_plan(self.plan, trial_active)


class Product(Base):
    """Merchant catalog entry (owned by the catalog sync, read-only here)."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)  # active, draft, archived
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    competitor_links: Mapped[list["CompetitorProductLink"]] = relationship(
        "CompetitorProductLink", back_populates="product"
    )


class ScrapeBudget(Base):
    """Per-user request counters for the metered scraping provider."""

    __tablename__ = "scrape_budget"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    daily_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_date: Mapped[date] = mapped_column(Date, nullable=False)
    monthly_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    month_period_start: Mapped[date] = mapped_column(Date, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class CompetitorProductLink(Base):
    """A local product matched to one product page of a competitor store."""

    __tablename__ = "competitor_product_links"
    __table_args__ = (
        UniqueConstraint("product_id", "competitor_id", name="uq_link_product_competitor"),
        Index("ix_links_due", "is_active", "next_allowed_check_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    product_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("products.id"), nullable=False
    )
    competitor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    competitor_product_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    competitor_product_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    competitor_product_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    similarity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 0-100

    # Tracking state
    last_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    last_currency: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    last_availability: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_changed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    no_change_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_allowed_check_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    needs_attention: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Diagnostics
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )

    product: Mapped["Product"] = relationship("Product", back_populates="competitor_links")
    price_history: Mapped[list["CompetitorPriceHistory"]] = relationship(
        "CompetitorPriceHistory", back_populates="link", cascade="all, delete-orphan"
    )


class CompetitorPriceHistory(Base):
    """Append-only record of observed competitor price changes."""

    __tablename__ = "competitor_price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    link_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("competitor_product_links.id"), nullable=False, index=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(8), default="USD", nullable=False)
    availability: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    link: Mapped["CompetitorProductLink"] = relationship(
        "CompetitorProductLink", back_populates="price_history"
    )


class MatchingRateLimit(Base):
    """Per-user-per-day structural counters for matching work."""

    __tablename__ = "matching_rate_limit"
    __table_args__ = (
        UniqueConstraint("user_id", "run_date", name="uq_rate_limit_user_day"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    run_date: Mapped[date] = mapped_column(Date, nullable=False)
    heavy_matching_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    competitor_stores_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    urls_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


class ScrapeJob(Base):
    """Tracking or matching work item; also serves as the delayed batch queue."""

    __tablename__ = "scrape_jobs"
    __table_args__ = (
        Index("ix_scrape_jobs_queue", "job_type", "status", "scheduled_for"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False)  # tracking, quick_start_matching, matching
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)  # pending, in_progress, completed, failed, deferred
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    competitor_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    competitor_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    batch_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    total_batches: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Progress tracking
    items_total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if not self.items_total:
            return 0.0
        return (self.items_processed / self.items_total) * 100

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed", "deferred")


class DiscoveryQuota(Base):
    """Monthly cap on competitor candidates discovered per store."""

    __tablename__ = "discovery_quota"
    __table_args__ = (
        UniqueConstraint("store_id", "period_start", name="uq_discovery_store_period"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    limit_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
