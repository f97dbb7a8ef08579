"""
Unit tests for the optimization session orchestrator
Tests state transitions, failure handling, iteration cap and convergence
"""
import json
from unittest.mock import Mock

import pytest

from perf_hub_server.ai_analyzer import ClaudeAnalyzer
from perf_hub_server.db_models import OptimizationSession, UsageCategory, UsageRecord
from perf_hub_server.errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError, QuotaExceededError, UpstreamError,
)
from perf_hub_server.optimizer import (
    TRANSITIONS, OptimizationOrchestrator, SessionState, SessionType, can_transition,
    serialize_session,
)
from perf_hub_server.pagespeed import PageSpeedClient, ScoreSnapshot, Strategy, parse_report
from perf_hub_server.quota import QuotaEnforcer
from tests.conftest import RECOMMENDATION, claude_payload, lighthouse_payload


@pytest.fixture
def orchestrator(settings_store, pagespeed_transport, claude_transport, clock):
    settings_store.save_many([
        {"key": "pagespeed_api_key", "value": "AIza-test", "encrypt": True, "category": "pagespeed"},
        {"key": "claude_api_key", "value": "sk-ant-test", "encrypt": True, "category": "ai"},
    ])
    return OptimizationOrchestrator(
        settings_store,
        QuotaEnforcer(clock=clock),
        PageSpeedClient(settings_store, transport=pagespeed_transport),
        ClaudeAnalyzer(settings_store, transport=claude_transport),
        clock=clock,
    )


@pytest.fixture
def started(db, tenant, orchestrator, pagespeed_transport, claude_transport):
    """A session that completed start() with performance 80"""
    pagespeed_transport.queue(200, lighthouse_payload(performance=0.8))
    claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION)))
    data = orchestrator.start(db, tenant)
    return db.get(OptimizationSession, data["session_id"])


class TestTransitionTable:
    """Test the typed transition table"""

    def test_every_state_has_an_entry(self):
        assert set(TRANSITIONS) == set(SessionState)

    def test_terminal_states_are_final(self):
        for target in SessionState:
            assert not can_transition(SessionState.COMPLETED, target)
            assert not can_transition(SessionState.FAILED, target)

    def test_failed_reachable_from_every_active_state(self):
        for state in (SessionState.RUNNING, SessionState.ANALYZING, SessionState.APPLYING, SessionState.TESTING):
            assert can_transition(state, SessionState.FAILED)

    def test_happy_path(self):
        path = [
            SessionState.RUNNING, SessionState.ANALYZING, SessionState.APPLYING,
            SessionState.TESTING, SessionState.APPLYING, SessionState.TESTING, SessionState.COMPLETED,
        ]
        for current, target in zip(path, path[1:]):
            assert can_transition(current, target)

    def test_no_skipping_analysis(self):
        assert not can_transition(SessionState.RUNNING, SessionState.APPLYING)

    def test_session_type_coerce(self):
        assert SessionType.coerce("quick_fix") is SessionType.QUICK_FIX
        assert SessionType.coerce("bogus") is SessionType.FULL_AUDIT


class TestScoreDelta:
    def test_per_category(self):
        snapshot = ScoreSnapshot({"performance": 85, "seo": 90}, {})
        assert snapshot.delta_from({"performance": 80, "seo": 95}) == {"performance": 5, "seo": -5}

    def test_missing_or_null_counts_as_zero(self):
        assert ScoreSnapshot({"performance": 70, "seo": None}, {}).delta_from({"seo": 60}) == {
            "performance": 70, "seo": -60,
        }
        assert ScoreSnapshot({"performance": 70}, {}).delta_from(None) == {"performance": 70}

    def test_report_snapshot_is_a_copy(self):
        report = parse_report("https://example.com", Strategy.MOBILE, lighthouse_payload(performance=0.8))
        snapshot = report.snapshot
        report.scores["performance"] = 1
        assert snapshot.scores["performance"] == 80
        assert snapshot.metrics == report.metrics


class TestStart:
    """Test the start action"""

    def test_start_success(self, db, tenant, orchestrator, pagespeed_transport, claude_transport):
        pagespeed_transport.queue(200, lighthouse_payload(performance=0.8))
        claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION), 1200, 300))

        data = orchestrator.start(db, tenant, current_settings={"defer_js": False})

        assert data["status"] == "applying"
        assert data["iteration"] == 1
        assert data["initial_scores"]["performance"] == 80
        assert data["analysis"]["summary"] == RECOMMENDATION["summary"]

        session = db.get(OptimizationSession, data["session_id"])
        assert session.status == SessionState.APPLYING.value
        assert session.total_tokens_used == 1500
        assert session.total_cost_usd > 0
        assert session.recommendations == RECOMMENDATION

        usage = db.query(UsageRecord).filter(UsageRecord.category == UsageCategory.AI).one()
        assert usage.tokens_used == 1500
        assert usage.status_code == 200

    def test_failed_test_marks_session_failed(self, db, tenant, orchestrator, pagespeed_transport, claude_transport):
        """Adapter failure leaves a failed row and surfaces as 502"""
        pagespeed_transport.queue(500, {"error": {"message": "Lighthouse returned error: NO_FCP"}})

        with pytest.raises(UpstreamError) as exc_info:
            orchestrator.start(db, tenant)

        assert exc_info.value.status_code == 502
        session_id = exc_info.value.extra["session_id"]
        session = db.get(OptimizationSession, session_id)
        assert session.status == "failed"
        assert session.error_log == "PageSpeed test failed: PageSpeed API error: Lighthouse returned error: NO_FCP"
        assert claude_transport.requests == []

        usage = db.query(UsageRecord).one()
        assert usage.status_code == 502

    def test_failed_analysis_marks_session_failed(self, db, tenant, orchestrator, pagespeed_transport, claude_transport):
        pagespeed_transport.queue(200, lighthouse_payload())
        claude_transport.queue(500, {"error": {"message": "Internal error"}})

        with pytest.raises(UpstreamError) as exc_info:
            orchestrator.start(db, tenant)

        session = db.get(OptimizationSession, exc_info.value.extra["session_id"])
        assert session.status == "failed"
        assert session.initial_scores["performance"] == 80
        assert session.error_log.startswith("AI analysis failed:")

    def test_foreign_url_rejected(self, db, tenant, orchestrator, pagespeed_transport):
        with pytest.raises(AuthorizationError):
            orchestrator.start(db, tenant, url="https://example.com.evil.test/")
        assert db.query(OptimizationSession).count() == 0
        assert pagespeed_transport.requests == []

    def test_quota_checked_before_session(self, db, tenant_factory, orchestrator):
        tenant, _ = tenant_factory("https://broke.test", ai_monthly_limit=0)
        with pytest.raises(QuotaExceededError):
            orchestrator.start(db, tenant)
        assert db.query(OptimizationSession).count() == 0


class TestRetest:
    """Test the retest action"""

    def test_converged_completes_without_ai(self, db, tenant, orchestrator, started, pagespeed_transport, claude_transport):
        """80 -> 95 is an improvement above the threshold: finalize"""
        pagespeed_transport.queue(200, lighthouse_payload(performance=0.95))
        ai_calls = len(claude_transport.requests)

        data = orchestrator.retest(db, tenant, started.id, applied_settings={"defer_js": True})

        assert data["status"] == "completed"
        assert data["improvement"]["performance"] == 15
        assert len(claude_transport.requests) == ai_calls
        db.refresh(started)
        assert started.status == "completed"
        assert started.iterations == 2
        assert started.final_scores["performance"] == 95
        assert started.actions_taken == {"defer_js": True}
        assert started.completed_at is not None

    def test_below_threshold_iterates(self, db, tenant, orchestrator, started, pagespeed_transport, claude_transport):
        """80 -> 85 improves but stays below 90: ask for more"""
        pagespeed_transport.queue(200, lighthouse_payload(performance=0.85))
        claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION), 1000, 200))

        data = orchestrator.retest(db, tenant, started.id, applied_settings={"defer_js": True})

        assert data["status"] == "applying"
        assert data["iteration"] == 2
        assert data["improvement"]["performance"] == 5
        db.refresh(started)
        assert started.status == "applying"
        assert started.total_tokens_used == 1500 + 1200

        body = json.loads(claude_transport.requests[-1].content)
        message = body["messages"][0]["content"]
        assert "This is iteration 2." in message
        assert '"defer_js": true' in message
        assert '"performance": 5' in message

    def test_high_score_without_improvement_iterates(self, db, tenant_factory, orchestrator, pagespeed_transport, claude_transport):
        tenant, _ = tenant_factory("https://fast.test")
        pagespeed_transport.queue(200, lighthouse_payload(performance=0.95))
        claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION)))
        session_id = orchestrator.start(db, tenant)["session_id"]

        pagespeed_transport.queue(200, lighthouse_payload(performance=0.95))
        claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION)))

        assert orchestrator.retest(db, tenant, session_id)["status"] == "applying"

    def test_iteration_cap_completes_without_calls(self, db, tenant, orchestrator, started, pagespeed_transport, claude_transport):
        started.iterations = 5
        db.commit()
        calls = (len(pagespeed_transport.requests), len(claude_transport.requests))

        data = orchestrator.retest(db, tenant, started.id)

        assert data["status"] == "completed"
        assert (len(pagespeed_transport.requests), len(claude_transport.requests)) == calls
        db.refresh(started)
        assert started.status == "completed"

    def test_iteration_cap_from_settings(self, db, tenant, orchestrator, started, settings_store, pagespeed_transport):
        settings_store.save("max_optimization_iterations", "1", category="ai")
        assert orchestrator.retest(db, tenant, started.id)["status"] == "completed"

    def test_failed_retest_appends_error(self, db, tenant, orchestrator, started, pagespeed_transport):
        started.error_log = "earlier warning"
        db.commit()
        pagespeed_transport.queue(503, {"error": {"message": "Backend unavailable"}})

        with pytest.raises(UpstreamError):
            orchestrator.retest(db, tenant, started.id)

        db.refresh(started)
        assert started.status == "failed"
        assert started.error_log == "earlier warning\nRetest PageSpeed failed: PageSpeed API error: Backend unavailable"

    def test_ai_failure_still_finalizes(self, db, tenant, orchestrator, started, pagespeed_transport, claude_transport):
        pagespeed_transport.queue(200, lighthouse_payload(performance=0.82))
        claude_transport.queue(500, {"error": {"message": "Overloaded"}})

        data = orchestrator.retest(db, tenant, started.id)

        assert data["status"] == "completed"
        db.refresh(started)
        assert started.status == "completed"
        assert "Retest AI analysis failed" in started.error_log

    def test_unknown_session(self, db, tenant, orchestrator):
        with pytest.raises(NotFoundError):
            orchestrator.retest(db, tenant, 9999)

    def test_other_tenants_session(self, db, tenant_factory, orchestrator, started):
        other, _ = tenant_factory("https://other.test")
        with pytest.raises(AuthorizationError):
            orchestrator.retest(db, other, started.id)

    def test_completed_session_rejected(self, db, tenant, orchestrator, started):
        orchestrator.complete(db, tenant, started.id)
        with pytest.raises(InvalidTransitionError) as exc_info:
            orchestrator.retest(db, tenant, started.id)
        assert exc_info.value.status_code == 400
        assert exc_info.value.extra == {"status": "completed"}


class TestComplete:
    """Test the complete action"""

    def test_complete_from_applying(self, db, tenant, orchestrator, started):
        data = orchestrator.complete(
            db, tenant, started.id,
            final_scores={"performance": 88},
            applied_settings={"defer_js": True},
        )

        assert data["status"] == "completed"
        db.refresh(started)
        assert started.final_scores == {"performance": 88}
        assert started.actions_taken == {"defer_js": True}

    def test_complete_is_forced_from_failed(self, db, tenant, orchestrator, started):
        started.status = SessionState.FAILED.value
        db.commit()
        assert orchestrator.complete(db, tenant, started.id)["status"] == "completed"

    def test_serialize_session(self, started):
        data = serialize_session(started)
        assert data["session_id"] == started.id
        assert data["status"] == "applying"
        assert data["initial_scores"]["performance"] == 80


class TestTransitionLogging:
    def test_transitions_are_logged(self, db, tenant, orchestrator, pagespeed_transport, claude_transport, monkeypatch):
        log = Mock()
        monkeypatch.setattr("perf_hub_server.optimizer.log_session_transition", log)
        pagespeed_transport.queue(200, lighthouse_payload())
        claude_transport.queue(200, claude_payload(json.dumps(RECOMMENDATION)))

        orchestrator.start(db, tenant)

        moves = [(c.args[1], c.args[2]) for c in log.call_args_list]
        assert moves == [("running", "analyzing"), ("analyzing", "applying")]
