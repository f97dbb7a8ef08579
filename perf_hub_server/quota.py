"""
Per-tenant usage quotas, evaluated before any expensive upstream call.

- AI tokens: sum of tokens_used in category "ai" since the first moment of
  the current calendar month, against ``ai_monthly_limit * 1000``.
- Performance tests: count of "performance-test" rows since midnight,
  against ``test_daily_limit``.

Both checks read then decide without locking. Two concurrent requests can
both observe "just under quota", so a tenant may overshoot by one request
per check. That is accepted for an abuse-prevention gate.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import func
from sqlalchemy.orm import Session

from perf_hub_server.db_models import Tenant, UsageCategory, UsageRecord, utcnow
from perf_hub_server.errors import QuotaExceededError
from perf_hub_server.logging_config import log_quota_exceeded

TOKEN_LIMIT_UNIT = 1000


@dataclass(frozen=True)
class QuotaSnapshot:
    used: int
    limit: int

    @property
    def exhausted(self) -> bool:
        return self.used >= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


def month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


class QuotaEnforcer:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        # Injectable clock for deterministic month/day rollover tests.
        self._clock = clock

    def ai_usage(self, db: Session, tenant: Tenant) -> QuotaSnapshot:
        used = db.query(func.coalesce(func.sum(UsageRecord.tokens_used), 0)).filter(
            UsageRecord.tenant_id == tenant.id,
            UsageRecord.category == UsageCategory.AI,
            UsageRecord.created_at >= month_start(self._clock()),
        ).scalar()
        return QuotaSnapshot(int(used or 0), tenant.ai_monthly_limit * TOKEN_LIMIT_UNIT)

    def test_usage(self, db: Session, tenant: Tenant) -> QuotaSnapshot:
        used = db.query(func.count(UsageRecord.id)).filter(
            UsageRecord.tenant_id == tenant.id,
            UsageRecord.category == UsageCategory.PERFORMANCE_TEST,
            UsageRecord.created_at >= day_start(self._clock()),
        ).scalar()
        return QuotaSnapshot(int(used or 0), tenant.test_daily_limit)

    def check_ai_quota(self, db: Session, tenant: Tenant) -> QuotaSnapshot:
        snapshot = self.ai_usage(db, tenant)
        if snapshot.exhausted:
            log_quota_exceeded(tenant.id, "ai_monthly_tokens", snapshot.used, snapshot.limit)
            raise QuotaExceededError("Monthly AI token limit exceeded", snapshot.used, snapshot.limit)
        return snapshot

    def check_test_quota(self, db: Session, tenant: Tenant) -> QuotaSnapshot:
        snapshot = self.test_usage(db, tenant)
        if snapshot.exhausted:
            log_quota_exceeded(tenant.id, "daily_performance_tests", snapshot.used, snapshot.limit)
            raise QuotaExceededError("Daily performance test limit exceeded", snapshot.used, snapshot.limit)
        return snapshot
