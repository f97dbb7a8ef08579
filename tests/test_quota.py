"""
Tests for monthly AI token and daily performance test quotas.
"""
from datetime import datetime

import pytest

from perf_hub_server.db_models import UsageCategory, UsageRecord
from perf_hub_server.errors import QuotaExceededError
from perf_hub_server.quota import QuotaEnforcer, day_start, month_start
from perf_hub_server.usage import finish_usage, record_usage


@pytest.fixture
def quota(clock):
    return QuotaEnforcer(clock=clock)


def add_usage(db, tenant, category, tokens=0, created_at=None):
    record = UsageRecord(
        tenant_id=tenant.id,
        endpoint="ai/analyze" if category == UsageCategory.AI else "pagespeed/test",
        category=category,
        tokens_used=tokens,
        created_at=created_at,
    )
    db.add(record)
    db.commit()
    return record


class TestPeriodBoundaries:
    def test_month_start(self):
        assert month_start(datetime(2026, 3, 15, 12, 30)) == datetime(2026, 3, 1)

    def test_day_start(self):
        assert day_start(datetime(2026, 3, 15, 12, 30)) == datetime(2026, 3, 15)


class TestAiQuota:
    """Test monthly token quota"""

    def test_under_limit(self, db, quota, tenant_factory, clock):
        tenant, _ = tenant_factory(ai_monthly_limit=2)
        add_usage(db, tenant, UsageCategory.AI, tokens=1999, created_at=clock.now)

        snapshot = quota.check_ai_quota(db, tenant)

        assert snapshot.used == 1999
        assert snapshot.limit == 2000
        assert snapshot.remaining == 1

    def test_at_limit_is_rejected(self, db, quota, tenant_factory, clock):
        tenant, _ = tenant_factory(ai_monthly_limit=2)
        add_usage(db, tenant, UsageCategory.AI, tokens=2000, created_at=clock.now)

        with pytest.raises(QuotaExceededError) as exc_info:
            quota.check_ai_quota(db, tenant)

        assert exc_info.value.status_code == 429
        assert exc_info.value.extra == {"used": 2000, "limit": 2000}

    def test_previous_month_ignored(self, db, quota, tenant_factory):
        tenant, _ = tenant_factory(ai_monthly_limit=1)
        add_usage(db, tenant, UsageCategory.AI, tokens=5000, created_at=datetime(2026, 2, 28, 23, 59))

        assert quota.check_ai_quota(db, tenant).used == 0

    def test_other_categories_ignored(self, db, quota, tenant_factory, clock):
        tenant, _ = tenant_factory(ai_monthly_limit=1)
        add_usage(db, tenant, UsageCategory.OTHER, tokens=5000, created_at=clock.now)

        assert quota.check_ai_quota(db, tenant).used == 0

    def test_other_tenants_ignored(self, db, quota, tenant_factory, clock):
        tenant, _ = tenant_factory(ai_monthly_limit=1)
        other, _ = tenant_factory("https://other.test")
        add_usage(db, other, UsageCategory.AI, tokens=5000, created_at=clock.now)

        assert quota.check_ai_quota(db, tenant).used == 0


class TestTestQuota:
    """Test daily performance test quota"""

    def test_counts_rows_today(self, db, quota, tenant_factory, clock):
        tenant, _ = tenant_factory(test_daily_limit=2)
        add_usage(db, tenant, UsageCategory.PERFORMANCE_TEST, created_at=clock.now)

        assert quota.check_test_quota(db, tenant).used == 1

        add_usage(db, tenant, UsageCategory.PERFORMANCE_TEST, created_at=clock.now)
        with pytest.raises(QuotaExceededError) as exc_info:
            quota.check_test_quota(db, tenant)
        assert exc_info.value.message == "Daily performance test limit exceeded"

    def test_yesterday_ignored(self, db, quota, tenant_factory):
        tenant, _ = tenant_factory(test_daily_limit=1)
        add_usage(db, tenant, UsageCategory.PERFORMANCE_TEST, created_at=datetime(2026, 3, 14, 23, 59))

        assert quota.check_test_quota(db, tenant).used == 0


class TestUsageLog:
    """Test usage rows written around upstream calls"""

    def test_finish_usage_fills_outcome(self, db, tenant):
        record = record_usage(db, tenant, "ai/analyze", UsageCategory.AI, "203.0.113.7", metadata={"result_id": 4})
        finish_usage(db, record, 200, input_tokens=100, output_tokens=50, cost_usd=0.001, metadata={"model": "m"})

        db.refresh(record)
        assert record.tokens_used == 150
        assert record.status_code == 200
        assert record.request_ip == "203.0.113.7"
        assert record.response_time_ms is not None
        assert record.metadata_json == {"result_id": 4, "model": "m"}

    def test_failed_attempt_is_recorded(self, db, tenant):
        record = record_usage(db, tenant, "pagespeed/test", UsageCategory.PERFORMANCE_TEST)
        finish_usage(db, record, 502, error="PageSpeed API error: quota")

        db.refresh(record)
        assert record.status_code == 502
        assert record.error_message == "PageSpeed API error: quota"
        assert record.tokens_used == 0
