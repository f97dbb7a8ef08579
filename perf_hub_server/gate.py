"""
Request gate: the checks every authenticated call passes before any
upstream work is done.

Order is fixed: maintenance mode, authentication, feature flag, per-tenant
rate limit, quota. The first failing check decides the response.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from perf_hub_server.auth import TenantKeyManager, check_feature_access
from perf_hub_server.config import Settings
from perf_hub_server.database import get_db
from perf_hub_server.db_models import Tenant, UsageCategory
from perf_hub_server.errors import MaintenanceError
from perf_hub_server.quota import QuotaEnforcer
from perf_hub_server.rate_limiting import TenantRateLimiter, get_client_ip
from perf_hub_server.settings_store import SettingsStore


@dataclass(frozen=True)
class RateRule:
    """Per-tenant limit read from a runtime setting."""
    setting_key: str
    default: int
    window_seconds: int


RATE_RULES: Dict[str, RateRule] = {
    "pagespeed/test": RateRule("rate_limit_per_minute", 30, 60),
    "ai/analyze": RateRule("rate_limit_ai_per_hour", 50, 3600),
    "ai/optimize": RateRule("rate_limit_optimize_per_hour", 10, 3600),
}


class RequestGate:
    def __init__(
        self,
        config: Settings,
        settings_store: SettingsStore,
        key_manager: TenantKeyManager,
        rate_limiter: TenantRateLimiter,
        quota: QuotaEnforcer,
    ):
        self.config = config
        self.settings_store = settings_store
        self.key_manager = key_manager
        self.rate_limiter = rate_limiter
        self.quota = quota

    def authenticate(self, db: Session, request: Request) -> Tenant:
        """Maintenance check, then resolve the caller's headers to a tenant."""
        if self.settings_store.get_bool("maintenance_mode"):
            raise MaintenanceError()

        return self.key_manager.authenticate(
            db,
            request.headers.get(self.config.api_key_header),
            request.headers.get(self.config.site_url_header),
            client_ip=get_client_ip(request),
        )

    def authorize(
        self,
        db: Session,
        tenant: Tenant,
        feature: Optional[str] = None,
        endpoint: Optional[str] = None,
        quota: Optional[str] = None,
    ) -> None:
        """
        Per-endpoint checks for an authenticated tenant.

        Args:
            feature: Feature flag the endpoint requires
            endpoint: Key into RATE_RULES; counts the request when allowed
            quota: Usage category whose quota must not be exhausted
        """
        if feature:
            check_feature_access(tenant, feature)

        if endpoint:
            rule = RATE_RULES[endpoint]
            self.rate_limiter.enforce(
                db,
                tenant.id,
                endpoint,
                self.settings_store.get_int(rule.setting_key, rule.default),
                rule.window_seconds,
            )

        if quota == UsageCategory.AI:
            self.quota.check_ai_quota(db, tenant)
        elif quota == UsageCategory.PERFORMANCE_TEST:
            self.quota.check_test_quota(db, tenant)


def get_gate(request: Request) -> RequestGate:
    return request.app.state.gate


def current_tenant(
    request: Request,
    db: Session = Depends(get_db),
    gate: RequestGate = Depends(get_gate),
) -> Tenant:
    """FastAPI dependency resolving the authenticated tenant."""
    return gate.authenticate(db, request)
