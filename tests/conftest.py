"""Shared test fixtures"""
import json
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from perf_hub_server.auth import TenantKeyManager, create_tenant
from perf_hub_server.config import Settings
from perf_hub_server.database import build_session_factory, init_db
from perf_hub_server.settings_store import SettingsStore
from perf_hub_server.vault import CredentialVault


class FrozenClock:
    """Callable clock returning a fixed naive-UTC time until advanced."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def lighthouse_payload(
    performance: Optional[float] = 0.8,
    accessibility: Optional[float] = 0.92,
    best_practices: Optional[float] = 1.0,
    seo: Optional[float] = 0.9,
) -> Dict[str, Any]:
    """Minimal scoring API response body."""
    return {
        "lighthouseResult": {
            "categories": {
                "performance": {"score": performance},
                "accessibility": {"score": accessibility},
                "best-practices": {"score": best_practices},
                "seo": {"score": seo},
            },
            "audits": {
                "first-contentful-paint": {"numericValue": 1234.6},
                "largest-contentful-paint": {"numericValue": 2500.2},
                "cumulative-layout-shift": {"numericValue": 0.04567},
                "total-blocking-time": {"numericValue": 150},
                "speed-index": {"numericValue": 3100},
                "interactive": {"numericValue": 4200},
                "render-blocking-resources": {
                    "title": "Eliminate render-blocking resources",
                    "description": "Resources are blocking the first paint.",
                    "score": 0.45,
                    "displayValue": "Potential savings of 480 ms",
                    "details": {"overallSavingsMs": 480, "overallSavingsBytes": 12000},
                },
                "unused-javascript": {
                    "title": "Reduce unused JavaScript",
                    "description": "Remove dead code.",
                    "score": 0.3,
                    "details": {"overallSavingsMs": 900, "overallSavingsBytes": 95000},
                },
                "dom-size": {
                    "title": "Avoid an excessive DOM size",
                    "score": 0.7,
                    "displayValue": "1,024 elements",
                },
                "uses-http2": {"title": "Use HTTP/2", "score": 1, "details": {"overallSavingsMs": 0}},
            },
        }
    }


def claude_payload(text: str, input_tokens: int = 1200, output_tokens: int = 300) -> Dict[str, Any]:
    """Minimal AI messages API response body."""
    return {
        "id": "msg_test",
        "type": "message",
        "content": [{"type": "text", "text": text}],
        "usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
    }


RECOMMENDATION = {
    "summary": "Defer scripts and lazy-load images",
    "priority": "high",
    "recommendations": [
        {
            "setting_key": "defer_js",
            "recommended_value": True,
            "reason": "Render-blocking scripts",
            "estimated_impact": "high",
        }
    ],
    "additional_notes": "",
}


class RecordingTransport(httpx.MockTransport):
    """MockTransport that replays queued responses and records requests."""

    def __init__(self, responses: Optional[List[httpx.Response]] = None):
        self.responses: List[httpx.Response] = list(responses or [])
        self.requests: List[httpx.Request] = []
        super().__init__(self._handle)

    def queue(self, status_code: int = 200, json_body: Any = None) -> None:
        self.responses.append(httpx.Response(status_code, json=json_body))

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.responses:
            raise AssertionError(f"Unexpected upstream call: {request.method} {request.url}")
        return self.responses.pop(0)


@pytest.fixture
def test_secret() -> str:
    return os.environ["ENCRYPTION_KEY"]


@pytest.fixture
def config(test_secret) -> Settings:
    """Process settings for an isolated application."""
    return Settings(
        encryption_key=test_secret,
        database_url="sqlite:///:memory:",
        environment="test",
        ip_rate_limit_enabled=False,
        log_format="console",
    )


@pytest.fixture
def engine():
    """In-memory SQLite engine shared by every session of one test"""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def vault(test_secret) -> CredentialVault:
    return CredentialVault(test_secret)


@pytest.fixture
def settings_store(session_factory, vault) -> SettingsStore:
    """Loaded store with default rows seeded"""
    store = SettingsStore(session_factory, vault)
    store.load()
    store.seed_defaults()
    return store


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 15, 12, 0, 30))


@pytest.fixture
def key_manager(clock) -> TenantKeyManager:
    return TenantKeyManager(clock=clock)


@pytest.fixture
def tenant_factory(db, key_manager) -> Callable:
    """Create tenants; returns (tenant, raw_key)."""
    def factory(site_url: str = "https://example.com", **kwargs):
        return create_tenant(db, key_manager, site_url, site_name="Example", **kwargs)
    return factory


@pytest.fixture
def tenant_with_key(tenant_factory):
    return tenant_factory()


@pytest.fixture
def tenant(tenant_with_key):
    return tenant_with_key[0]


@pytest.fixture
def pagespeed_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def claude_transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def recommendation_text() -> str:
    return json.dumps(RECOMMENDATION)
