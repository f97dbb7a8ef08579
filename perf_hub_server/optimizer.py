"""
Optimization session orchestrator.

One session is one run of the measure -> analyze -> apply -> re-measure loop:

    running -> analyzing -> applying -> testing -> (applying | completed)

with ``failed`` reachable from every non-terminal state. The caller applies
recommended settings itself and drives the loop with ``retest`` calls;
``complete`` closes a session from any state.

State lives only in the optimization_sessions table. Each transition is
committed immediately, so a session that fails half-way stays inspectable.
No step is retried here; a retry is a new request from the caller.
"""
import json
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from perf_hub_server.ai_analyzer import AnalysisPrompt, AnalysisResult, ClaudeAnalyzer
from perf_hub_server.auth import url_matches_site
from perf_hub_server.db_models import OptimizationSession, Tenant, UsageCategory, utcnow
from perf_hub_server.errors import (
    AuthorizationError, ConfigurationError, InvalidTransitionError, NotFoundError,
    UpstreamError,
)
from perf_hub_server.logging_config import get_logger, log_session_transition
from perf_hub_server.pagespeed import PageSpeedClient, ScoreSnapshot, Strategy, save_result
from perf_hub_server.quota import QuotaEnforcer
from perf_hub_server.settings_store import SettingsStore
from perf_hub_server.usage import finish_usage, record_usage

logger = get_logger(__name__)

ENDPOINT = "ai/optimize"


class SessionState(str, Enum):
    """Optimization session status"""
    RUNNING = "running"
    ANALYZING = "analyzing"
    APPLYING = "applying"
    TESTING = "testing"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionType(str, Enum):
    FULL_AUDIT = "full_audit"
    QUICK_FIX = "quick_fix"
    TARGETED = "targeted"

    @classmethod
    def coerce(cls, value: Optional[str]) -> "SessionType":
        try:
            return cls(value)
        except ValueError:
            return cls.FULL_AUDIT


TERMINAL_STATES = frozenset({SessionState.COMPLETED, SessionState.FAILED})
RETESTABLE_STATES = frozenset({SessionState.APPLYING, SessionState.TESTING})

TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.RUNNING: frozenset({SessionState.ANALYZING, SessionState.FAILED}),
    SessionState.ANALYZING: frozenset({SessionState.APPLYING, SessionState.FAILED}),
    SessionState.APPLYING: frozenset({SessionState.TESTING, SessionState.COMPLETED, SessionState.FAILED}),
    # testing -> testing covers a retest after an interrupted one
    SessionState.TESTING: frozenset({
        SessionState.TESTING, SessionState.APPLYING, SessionState.COMPLETED, SessionState.FAILED,
    }),
    SessionState.COMPLETED: frozenset(),
    SessionState.FAILED: frozenset(),
}


def can_transition(current: SessionState, target: SessionState) -> bool:
    return target in TRANSITIONS[current]


def serialize_session(session: OptimizationSession) -> Dict[str, Any]:
    return {
        "session_id": session.id,
        "status": session.status,
        "session_type": session.session_type,
        "iterations": session.iterations,
        "initial_scores": session.initial_scores,
        "final_scores": session.final_scores,
        "recommendations": session.recommendations,
        "actions_taken": session.actions_taken,
        "total_tokens_used": session.total_tokens_used,
        "total_cost_usd": round(session.total_cost_usd or 0.0, 6),
        "error": session.error_log,
        "started_at": session.started_at.isoformat() if session.started_at else None,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
    }


class OptimizationOrchestrator:
    """Drives optimization sessions through their states."""

    def __init__(
        self,
        settings_store: SettingsStore,
        quota: QuotaEnforcer,
        pagespeed: PageSpeedClient,
        analyzer: ClaudeAnalyzer,
        max_iterations: int = 5,
        convergence_score: int = 90,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings_store = settings_store
        self.quota = quota
        self.pagespeed = pagespeed
        self.analyzer = analyzer
        self.default_max_iterations = max_iterations
        self.convergence_score = convergence_score
        self._clock = clock

    @property
    def max_iterations(self) -> int:
        return self.settings_store.get_int("max_optimization_iterations", self.default_max_iterations)

    # Lookup

    def get_session(self, db: Session, tenant: Tenant, session_id: int) -> OptimizationSession:
        session = db.get(OptimizationSession, session_id)
        if session is None:
            raise NotFoundError("Session not found")
        if session.tenant_id != tenant.id:
            raise AuthorizationError("Session belongs to another site")
        return session

    # Actions

    def start(
        self,
        db: Session,
        tenant: Tenant,
        url: Optional[str] = None,
        strategy: Any = Strategy.MOBILE,
        session_type: Any = SessionType.FULL_AUDIT,
        current_settings: Optional[Dict[str, Any]] = None,
        context: str = "",
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create a session, run the initial test and the first analysis.

        Leaves the session in ``applying`` with iteration 1 and returns the
        recommendation for the caller to apply.
        """
        url = url or tenant.site_url
        if not url_matches_site(url, tenant.site_url):
            raise AuthorizationError("URL does not belong to the authenticated site")
        self.quota.check_ai_quota(db, tenant)

        session = OptimizationSession(
            tenant_id=tenant.id,
            session_type=SessionType.coerce(session_type).value,
            status=SessionState.RUNNING.value,
            started_at=self._clock(),
        )
        db.add(session)
        db.commit()
        logger.info("session_started", session_id=session.id, tenant_id=tenant.id, url=url)

        usage = record_usage(
            db, tenant, ENDPOINT, UsageCategory.AI, client_ip,
            metadata={"session_id": session.id, "phase": "start"},
        )

        try:
            report = self.pagespeed.run(url, Strategy.coerce(strategy))
        except (UpstreamError, ConfigurationError) as exc:
            self._fail(db, session, f"PageSpeed test failed: {exc.message}")
            finish_usage(db, usage, exc.status_code, error=exc.message)
            exc.extra["session_id"] = session.id
            raise
        save_result(db, tenant, report, now=self._clock())

        snapshot = report.snapshot
        self._transition(db, session, SessionState.ANALYZING, initial_scores=snapshot.scores)

        try:
            result = self.analyzer.analyze(
                AnalysisPrompt(tenant.site_url, report, current_settings or {}, context)
            )
        except (UpstreamError, ConfigurationError) as exc:
            self._fail(db, session, f"AI analysis failed: {exc.message}")
            finish_usage(db, usage, exc.status_code, error=exc.message)
            exc.extra["session_id"] = session.id
            raise

        recommendation = result.analysis.to_dict()
        self._transition(
            db, session, SessionState.APPLYING,
            recommendations=recommendation,
            total_tokens_used=(session.total_tokens_used or 0) + result.total_tokens,
            total_cost_usd=(session.total_cost_usd or 0.0) + result.cost_usd,
            iterations=1,
        )
        self._finish_ai_usage(db, usage, result)

        return {
            "session_id": session.id,
            "status": session.status,
            "iteration": session.iterations,
            "initial_scores": snapshot.scores,
            "metrics": snapshot.metrics,
            "analysis": recommendation,
            "result_id": report.result_id,
            "message": "Apply the recommended settings, then call back with action=retest",
        }

    def retest(
        self,
        db: Session,
        tenant: Tenant,
        session_id: int,
        url: Optional[str] = None,
        strategy: Any = Strategy.MOBILE,
        applied_settings: Optional[Dict[str, Any]] = None,
        client_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Re-measure after the caller applied settings and decide whether to
        iterate again or finish.

        The loop finishes without another AI call when the iteration cap is
        reached, or when the performance score improved and reached the
        convergence score. Otherwise a new recommendation is requested; if
        that request fails the session is finalized instead of left open.
        """
        session = self.get_session(db, tenant, session_id)
        state = SessionState(session.status)
        if state not in RETESTABLE_STATES:
            raise InvalidTransitionError(state.value, SessionState.TESTING.value)

        if session.iterations >= self.max_iterations:
            self._transition(db, session, SessionState.COMPLETED)
            return {
                "session_id": session.id,
                "status": session.status,
                "iterations": session.iterations,
                "message": "Maximum optimization iterations reached.",
            }

        url = url or tenant.site_url
        if not url_matches_site(url, tenant.site_url):
            raise AuthorizationError("URL does not belong to the authenticated site")
        self.quota.check_ai_quota(db, tenant)
        applied_settings = applied_settings or {}

        self._transition(db, session, SessionState.TESTING)
        usage = record_usage(
            db, tenant, ENDPOINT, UsageCategory.AI, client_ip,
            metadata={"session_id": session.id, "phase": "retest"},
        )

        try:
            report = self.pagespeed.run(url, Strategy.coerce(strategy))
        except (UpstreamError, ConfigurationError) as exc:
            self._fail(db, session, f"Retest PageSpeed failed: {exc.message}", append=True)
            finish_usage(db, usage, exc.status_code, error=exc.message)
            exc.extra["session_id"] = session.id
            raise
        save_result(db, tenant, report, now=self._clock())

        initial_scores = session.initial_scores or {}
        snapshot = report.snapshot
        improvement = snapshot.delta_from(initial_scores)
        iteration = session.iterations + 1

        if not self._converged(snapshot, improvement):
            context = (
                f"This is iteration {iteration}. "
                f"Previously applied settings: {json.dumps(applied_settings, sort_keys=True)}. "
                f"Score change: {json.dumps(improvement, sort_keys=True)}."
            )
            try:
                result = self.analyzer.analyze(
                    AnalysisPrompt(tenant.site_url, report, applied_settings, context)
                )
            except (UpstreamError, ConfigurationError) as exc:
                logger.warning("retest_analysis_failed", session_id=session.id, error=exc.message)
                session.error_log = self._append_error(session.error_log, f"Retest AI analysis failed: {exc.message}")
                finish_usage(db, usage, 200, error=exc.message)
            else:
                recommendation = result.analysis.to_dict()
                self._transition(
                    db, session, SessionState.APPLYING,
                    final_scores=snapshot.scores,
                    actions_taken=applied_settings,
                    recommendations=recommendation,
                    total_tokens_used=(session.total_tokens_used or 0) + result.total_tokens,
                    total_cost_usd=(session.total_cost_usd or 0.0) + result.cost_usd,
                    iterations=iteration,
                )
                self._finish_ai_usage(db, usage, result)
                return {
                    "session_id": session.id,
                    "status": session.status,
                    "iteration": session.iterations,
                    "initial_scores": initial_scores,
                    "current_scores": snapshot.scores,
                    "improvement": improvement,
                    "analysis": recommendation,
                    "message": "Apply updated settings, then call retest again or complete.",
                }
        else:
            finish_usage(db, usage, 200, metadata={"converged": True})

        self._finalize(db, session, snapshot.scores, applied_settings)
        return {
            "session_id": session.id,
            "status": session.status,
            "iteration": session.iterations,
            "initial_scores": initial_scores,
            "final_scores": snapshot.scores,
            "improvement": improvement,
            "message": "Optimization complete!",
        }

    def complete(
        self,
        db: Session,
        tenant: Tenant,
        session_id: int,
        final_scores: Optional[Dict[str, Any]] = None,
        applied_settings: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Close a session from any state with whatever the caller supplies."""
        session = self.get_session(db, tenant, session_id)
        self._transition(
            db, session, SessionState.COMPLETED, force=True,
            final_scores=final_scores,
            actions_taken=applied_settings,
        )
        return {
            "session_id": session.id,
            "status": session.status,
            "message": "Session closed.",
        }

    # Internals

    def _converged(self, snapshot: ScoreSnapshot, improvement: Dict[str, int]) -> bool:
        performance = snapshot.scores.get("performance") or 0
        return improvement.get("performance", 0) > 0 and performance >= self.convergence_score

    def _finalize(
        self,
        db: Session,
        session: OptimizationSession,
        final_scores: Dict[str, Any],
        applied_settings: Dict[str, Any],
    ) -> None:
        self._transition(
            db, session, SessionState.COMPLETED,
            final_scores=final_scores,
            actions_taken=applied_settings,
            iterations=session.iterations + 1,
        )

    def _transition(
        self,
        db: Session,
        session: OptimizationSession,
        target: SessionState,
        force: bool = False,
        **changes: Any,
    ) -> None:
        current = SessionState(session.status)
        if not force and not can_transition(current, target):
            raise InvalidTransitionError(current.value, target.value)

        for name, value in changes.items():
            setattr(session, name, value)
        session.status = target.value
        if target == SessionState.COMPLETED:
            session.completed_at = self._clock()
        db.commit()
        log_session_transition(session.id, current.value, target.value, iterations=session.iterations)

    def _fail(self, db: Session, session: OptimizationSession, message: str, append: bool = False) -> None:
        error_log = self._append_error(session.error_log, message) if append else message
        self._transition(db, session, SessionState.FAILED, error_log=error_log)

    @staticmethod
    def _append_error(existing: Optional[str], message: str) -> str:
        return f"{existing}\n{message}" if existing else message

    @staticmethod
    def _finish_ai_usage(db: Session, usage, result: AnalysisResult) -> None:
        finish_usage(
            db, usage, 200,
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            cost_usd=result.cost_usd,
            metadata={"model": result.model},
        )
