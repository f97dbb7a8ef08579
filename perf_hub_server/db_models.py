"""
SQLAlchemy database models for persistent storage.

All timestamps are naive UTC.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer,
    String, Text, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UsageCategory:
    """Values stored in UsageRecord.category."""
    AI = "ai"
    PERFORMANCE_TEST = "performance-test"
    OTHER = "other"


class Tenant(Base):
    """A registered client installation bound to one site URL."""
    __tablename__ = "tenants"

    id = Column(Integer, primary_key=True, index=True)
    site_url = Column(String(500), nullable=False, unique=True)
    site_name = Column(String(255), nullable=False, default="")
    api_key_hash = Column(String(255), nullable=False)
    api_key_prefix = Column(String(32), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    ai_enabled = Column(Boolean, default=True, nullable=False)
    performance_enabled = Column(Boolean, default=True, nullable=False)
    ai_monthly_limit = Column(Integer, default=1000, nullable=False)  # thousands of tokens
    test_daily_limit = Column(Integer, default=100, nullable=False)
    notes = Column(Text, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)  # None = never expires
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_tenant_prefix_active", "api_key_prefix", "is_active"),
    )

    def __repr__(self):
        return f"<Tenant(id={self.id}, site_url={self.site_url})>"


class RateWindow(Base):
    """Request counter for one (identifier, endpoint, bucket start)."""
    __tablename__ = "rate_windows"

    id = Column(Integer, primary_key=True, index=True)
    identifier = Column(String(255), nullable=False)
    endpoint = Column(String(100), nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)
    request_count = Column(Integer, default=1, nullable=False)

    __table_args__ = (
        UniqueConstraint("identifier", "endpoint", "window_start", name="uq_rate_window"),
    )


class UsageRecord(Base):
    """Append-only log of billable or limited requests."""
    __tablename__ = "usage_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    endpoint = Column(String(100), nullable=False, index=True)
    category = Column(String(32), nullable=False, default=UsageCategory.OTHER)
    tokens_used = Column(Integer, default=0, nullable=False)
    input_tokens = Column(Integer, default=0, nullable=False)
    output_tokens = Column(Integer, default=0, nullable=False)
    cost_usd = Column(Float, default=0.0, nullable=False)
    status_code = Column(Integer, nullable=True)
    response_time_ms = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    request_ip = Column(String(45), nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_usage_tenant_category_date", "tenant_id", "category", "created_at"),
    )


class AppSetting(Base):
    """Key/value runtime setting, optionally encrypted at rest."""
    __tablename__ = "app_settings"

    id = Column(Integer, primary_key=True, index=True)
    setting_key = Column(String(100), nullable=False, unique=True)
    setting_value = Column(Text, nullable=True)
    is_encrypted = Column(Boolean, default=False, nullable=False)
    category = Column(String(50), default="general", nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PerformanceResult(Base):
    """One stored performance test; doubles as the result cache."""
    __tablename__ = "performance_results"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    test_url = Column(String(2000), nullable=False)
    strategy = Column(String(16), nullable=False, default="mobile")
    performance_score = Column(Integer, nullable=True)
    accessibility_score = Column(Integer, nullable=True)
    best_practices_score = Column(Integer, nullable=True)
    seo_score = Column(Integer, nullable=True)
    fcp_ms = Column(Integer, nullable=True)
    lcp_ms = Column(Integer, nullable=True)
    cls = Column(Float, nullable=True)
    tbt_ms = Column(Integer, nullable=True)
    si_ms = Column(Integer, nullable=True)
    tti_ms = Column(Integer, nullable=True)
    opportunities = Column(JSON, nullable=True)
    diagnostics = Column(JSON, nullable=True)
    ai_analysis = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    __table_args__ = (
        Index("idx_result_lookup", "tenant_id", "strategy", "created_at"),
    )


class OptimizationSession(Base):
    """Persistent row behind one run of the optimize loop."""
    __tablename__ = "optimization_sessions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(Integer, ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    session_type = Column(String(32), nullable=False, default="full_audit")
    status = Column(String(16), nullable=False, default="running", index=True)
    initial_scores = Column(JSON, nullable=True)
    final_scores = Column(JSON, nullable=True)
    recommendations = Column(JSON, nullable=True)
    actions_taken = Column(JSON, nullable=True)
    total_tokens_used = Column(Integer, default=0, nullable=False)
    total_cost_usd = Column(Float, default=0.0, nullable=False)
    iterations = Column(Integer, default=0, nullable=False)
    error_log = Column(Text, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
