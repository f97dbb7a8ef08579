"""
Performance scoring adapter (PageSpeed Insights) and stored results.

run() performs one blocking test with a long timeout; there are no retries.
Fresh results are persisted in performance_results, which also serves as
the cache for repeat tests of the same URL and strategy.
"""
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from perf_hub_server.db_models import PerformanceResult, Tenant, utcnow
from perf_hub_server.errors import ConfigurationError, UpstreamError
from perf_hub_server.logging_config import log_configuration_error, log_upstream_call
from perf_hub_server.settings_store import SettingsStore

SERVICE_NAME = "pagespeed"

CATEGORY_KEYS = {
    "performance": "performance",
    "accessibility": "accessibility",
    "best_practices": "best-practices",
    "seo": "seo",
}

METRIC_AUDITS = {
    "fcp_ms": "first-contentful-paint",
    "lcp_ms": "largest-contentful-paint",
    "cls": "cumulative-layout-shift",
    "tbt_ms": "total-blocking-time",
    "si_ms": "speed-index",
    "tti_ms": "interactive",
}

DIAGNOSTIC_AUDITS = [
    "dom-size", "render-blocking-resources", "uses-long-cache-ttl",
    "total-byte-weight", "mainthread-work-breakdown", "bootup-time",
    "font-display", "uses-passive-event-listeners", "third-party-summary",
]


class Strategy(str, Enum):
    """Device profile for a test."""
    MOBILE = "mobile"
    DESKTOP = "desktop"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "Strategy":
        """Unrecognized values fall back to mobile."""
        try:
            return cls(value)
        except ValueError:
            return cls.MOBILE


@dataclass(frozen=True)
class ScoreSnapshot:
    """Four 0-100 category scores and the Core Web Vitals of one test."""
    scores: Dict[str, Optional[int]]
    metrics: Dict[str, Any]

    def delta_from(self, initial_scores: Optional[Dict[str, Any]]) -> Dict[str, int]:
        """Per-category difference; a missing or null value counts as 0."""
        initial_scores = initial_scores or {}
        return {
            key: int(self.scores.get(key) or 0) - int(initial_scores.get(key) or 0)
            for key in self.scores
        }


@dataclass
class PerformanceReport:
    url: str
    strategy: Strategy
    scores: Dict[str, Optional[int]]
    metrics: Dict[str, Any]
    opportunities: List[Dict[str, Any]] = field(default_factory=list)
    diagnostics: List[Dict[str, Any]] = field(default_factory=list)
    result_id: Optional[int] = None

    @property
    def snapshot(self) -> ScoreSnapshot:
        return ScoreSnapshot(dict(self.scores), dict(self.metrics))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


def _score(categories: Dict[str, Any], key: str) -> Optional[int]:
    category = categories.get(key)
    if not category or category.get("score") is None:
        return None
    return int(round(float(category["score"]) * 100))


def parse_report(url: str, strategy: Strategy, data: Dict[str, Any]) -> PerformanceReport:
    """Extract scores, metrics, opportunities and diagnostics from a raw response."""
    lighthouse = data.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    scores = {name: _score(categories, key) for name, key in CATEGORY_KEYS.items()}

    metrics: Dict[str, Any] = {}
    for name, audit_id in METRIC_AUDITS.items():
        value = (audits.get(audit_id) or {}).get("numericValue") or 0
        metrics[name] = round(float(value), 3) if name == "cls" else int(value)

    opportunities = []
    for audit_id, audit in audits.items():
        savings = ((audit or {}).get("details") or {}).get("overallSavingsMs") or 0
        if savings > 0:
            opportunities.append({
                "id": audit_id,
                "title": audit.get("title", audit_id),
                "description": audit.get("description", ""),
                "savings_ms": int(savings),
                "savings_bytes": int(audit["details"].get("overallSavingsBytes") or 0),
                "score": round(float(audit.get("score") or 0), 2),
            })
    opportunities.sort(key=lambda o: o["savings_ms"], reverse=True)

    diagnostics = [
        {
            "id": audit_id,
            "title": audits[audit_id].get("title", audit_id),
            "score": round(float(audits[audit_id].get("score") or 0), 2),
            "value": audits[audit_id].get("displayValue", ""),
        }
        for audit_id in DIAGNOSTIC_AUDITS
        if audit_id in audits
    ]

    return PerformanceReport(url, strategy, scores, metrics, opportunities, diagnostics)


def upstream_error_message(response: httpx.Response) -> str:
    """Prefer the upstream's own error message, else 'HTTP <code>'."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code}"


class PageSpeedClient:
    """Blocking client for the performance scoring API."""

    def __init__(
        self,
        settings_store: SettingsStore,
        api_url: str = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed",
        timeout: float = 120.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings_store = settings_store
        self.api_url = api_url
        self.timeout = timeout
        self._transport = transport

    def run(self, url: str, strategy: Any = Strategy.MOBILE) -> PerformanceReport:
        """
        Run one performance test.

        Raises:
            ConfigurationError: No scoring API key configured
            UpstreamError: Transport failure or non-200 response
        """
        strategy = Strategy.coerce(strategy)
        api_key = self.settings_store.get("pagespeed_api_key")
        if not api_key:
            log_configuration_error("pagespeed_api_key")
            raise ConfigurationError("PageSpeed API key not configured on hub", setting="pagespeed_api_key")

        params = [
            ("url", url),
            ("strategy", strategy.value),
            ("key", api_key),
        ] + [("category", key) for key in CATEGORY_KEYS.values()]

        start = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                response = client.get(self.api_url, params=params, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            duration_ms = (time.monotonic() - start) * 1000
            log_upstream_call(SERVICE_NAME, duration_ms, success=False, error=str(e))
            raise UpstreamError(SERVICE_NAME, f"Failed to contact PageSpeed API: {e}") from e

        duration_ms = (time.monotonic() - start) * 1000
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code != 200 or not isinstance(data, dict):
            message = upstream_error_message(response)
            log_upstream_call(SERVICE_NAME, duration_ms, response.status_code, success=False, error=message)
            raise UpstreamError(SERVICE_NAME, f"PageSpeed API error: {message}", response.status_code)

        log_upstream_call(SERVICE_NAME, duration_ms, response.status_code, url=url, strategy=strategy.value)
        return parse_report(url, strategy, data)


def save_result(
    db: Session,
    tenant: Tenant,
    report: PerformanceReport,
    now: Optional[datetime] = None,
) -> PerformanceResult:
    """Persist a fresh report and set its result_id."""
    row = PerformanceResult(
        tenant_id=tenant.id,
        created_at=now or utcnow(),
        test_url=report.url,
        strategy=report.strategy.value,
        performance_score=report.scores.get("performance"),
        accessibility_score=report.scores.get("accessibility"),
        best_practices_score=report.scores.get("best_practices"),
        seo_score=report.scores.get("seo"),
        opportunities=report.opportunities,
        diagnostics=report.diagnostics,
        **report.metrics,
    )
    db.add(row)
    db.commit()
    report.result_id = row.id
    return row


def result_to_report(row: PerformanceResult) -> PerformanceReport:
    return PerformanceReport(
        url=row.test_url,
        strategy=Strategy.coerce(row.strategy),
        scores={
            "performance": row.performance_score,
            "accessibility": row.accessibility_score,
            "best_practices": row.best_practices_score,
            "seo": row.seo_score,
        },
        metrics={name: getattr(row, name) for name in METRIC_AUDITS},
        opportunities=row.opportunities or [],
        diagnostics=row.diagnostics or [],
        result_id=row.id,
    )


def serialize_result(row: PerformanceResult) -> Dict[str, Any]:
    report = result_to_report(row)
    return {
        "result_id": row.id,
        "url": row.test_url,
        "strategy": row.strategy,
        "scores": report.scores,
        "metrics": report.metrics,
        "opportunities": report.opportunities,
        "diagnostics": report.diagnostics,
        "ai_analysis": row.ai_analysis,
        "tested_at": row.created_at.isoformat(),
    }


def find_cached_result(
    db: Session,
    tenant: Tenant,
    url: str,
    strategy: Strategy,
    max_age_hours: int,
    now: Optional[datetime] = None,
) -> Optional[PerformanceResult]:
    cutoff = (now or utcnow()) - timedelta(hours=max_age_hours)
    return (
        db.query(PerformanceResult)
        .filter(
            PerformanceResult.tenant_id == tenant.id,
            PerformanceResult.test_url == url,
            PerformanceResult.strategy == strategy.value,
            PerformanceResult.created_at >= cutoff,
        )
        .order_by(PerformanceResult.created_at.desc(), PerformanceResult.id.desc())
        .first()
    )


def get_result(db: Session, tenant: Tenant, result_id: int) -> Optional[PerformanceResult]:
    return (
        db.query(PerformanceResult)
        .filter(PerformanceResult.id == result_id, PerformanceResult.tenant_id == tenant.id)
        .one_or_none()
    )


def list_results(
    db: Session,
    tenant: Tenant,
    strategy: Strategy,
    limit: int = 10,
    url: Optional[str] = None,
) -> List[PerformanceResult]:
    limit = min(max(limit, 1), 50)
    query = db.query(PerformanceResult).filter(
        PerformanceResult.tenant_id == tenant.id,
        PerformanceResult.strategy == strategy.value,
    )
    if url:
        query = query.filter(PerformanceResult.test_url == url)
    return query.order_by(PerformanceResult.created_at.desc(), PerformanceResult.id.desc()).limit(limit).all()
