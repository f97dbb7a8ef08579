"""
HTTP surface of the performance hub.

create_app() wires every component onto ``app.state`` so tests can build
isolated applications; the module-level ``app`` is what uvicorn serves.
"""
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Callable, Optional

import httpx
import pydantic
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from perf_hub_server.ai_analyzer import AnalysisPrompt, ClaudeAnalyzer
from perf_hub_server.auth import (
    FEATURE_AI, FEATURE_PERFORMANCE, TenantKeyManager, check_feature_access, url_matches_site,
)
from perf_hub_server.config import Settings, get_settings
from perf_hub_server.database import build_engine, build_session_factory, get_db, init_db
from perf_hub_server.db_models import Tenant, UsageCategory, utcnow
from perf_hub_server.errors import (
    AuthorizationError, HubError, NotFoundError, ValidationError, error_body,
    register_exception_handlers, success_body,
)
from perf_hub_server.gate import RequestGate, current_tenant, get_gate
from perf_hub_server.health import router as health_router
from perf_hub_server.logging_config import (
    get_logger, log_exception, log_request_end, log_request_start, setup_logging,
)
from perf_hub_server.models import (
    AnalyzeRequest, OptimizeAction, OptimizeRequest, PerformanceTestRequest, ResultsQuery,
)
from perf_hub_server.optimizer import OptimizationOrchestrator, serialize_session
from perf_hub_server.pagespeed import (
    PageSpeedClient, find_cached_result, get_result, list_results, result_to_report,
    save_result, serialize_result,
)
from perf_hub_server.quota import QuotaEnforcer
from perf_hub_server.rate_limiting import TenantRateLimiter, apply_rate_limits, get_client_ip
from perf_hub_server.settings_store import SettingsStore
from perf_hub_server.usage import finish_usage, record_usage
from perf_hub_server.vault import CredentialVault

logger = get_logger(__name__)

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

router = APIRouter(prefix="/api/v1", tags=["hub"])


def get_orchestrator(request: Request) -> OptimizationOrchestrator:
    return request.app.state.orchestrator


# Performance tests

@router.post("/pagespeed/test")
def run_performance_test(
    request: Request,
    payload: Optional[PerformanceTestRequest] = None,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
    gate: RequestGate = Depends(get_gate),
):
    """
    Run (or serve from cache) a performance test for a URL of the caller's site.

    Every call that passes the gate is logged as a performance-test usage row,
    cached or not, so cached results still count against the daily quota.
    """
    payload = payload or PerformanceTestRequest()
    gate.authorize(
        db, tenant,
        feature=FEATURE_PERFORMANCE,
        endpoint="pagespeed/test",
        quota=UsageCategory.PERFORMANCE_TEST,
    )

    url = payload.url or tenant.site_url
    if not url_matches_site(url, tenant.site_url):
        raise AuthorizationError("URL does not belong to the authenticated site")

    store = request.app.state.settings_store
    now = request.app.state.clock()
    usage = record_usage(
        db, tenant, "pagespeed/test", UsageCategory.PERFORMANCE_TEST, get_client_ip(request),
        metadata={"url": url, "strategy": payload.strategy.value},
    )

    if not payload.force:
        cached = find_cached_result(
            db, tenant, url, payload.strategy, store.get_int("pagespeed_cache_hours", 24),
            now=now,
        )
        if cached is not None:
            finish_usage(db, usage, 200, metadata={"cached": True, "result_id": cached.id})
            return success_body({"cached": True, **serialize_result(cached)})

    try:
        report = request.app.state.pagespeed.run(url, payload.strategy)
    except HubError as e:
        finish_usage(db, usage, e.status_code, error=e.message)
        raise

    row = save_result(db, tenant, report, now=now)
    finish_usage(db, usage, 200, metadata={"cached": False, "result_id": row.id})
    return success_body({"cached": False, **serialize_result(row)})


def _results_response(db: Session, tenant: Tenant, query: ResultsQuery):
    check_feature_access(tenant, FEATURE_PERFORMANCE)
    rows = list_results(db, tenant, query.strategy, query.limit, query.url)
    return success_body({
        "strategy": query.strategy.value,
        "count": len(rows),
        "results": [serialize_result(row) for row in rows],
    })


@router.get("/pagespeed/results")
def list_performance_results(
    strategy: Optional[str] = None,
    limit: Optional[str] = None,
    url: Optional[str] = None,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    try:
        query = ResultsQuery(strategy=strategy, limit=limit if limit is not None else 10, url=url)
    except pydantic.ValidationError as e:
        raise ValidationError("Invalid query parameters", extra={"fields": [
            ".".join(str(part) for part in err["loc"]) for err in e.errors()
        ]}) from e
    return _results_response(db, tenant, query)


@router.post("/pagespeed/results")
def search_performance_results(
    payload: Optional[ResultsQuery] = None,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
):
    return _results_response(db, tenant, payload or ResultsQuery())


# AI

@router.post("/ai/analyze")
def analyze_result(
    request: Request,
    payload: AnalyzeRequest,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
    gate: RequestGate = Depends(get_gate),
):
    """Ask the AI service for recommendations on a stored performance result."""
    gate.authorize(db, tenant, feature=FEATURE_AI, endpoint="ai/analyze", quota=UsageCategory.AI)

    row = get_result(db, tenant, payload.result_id)
    if row is None:
        raise NotFoundError("Performance result not found")

    usage = record_usage(
        db, tenant, "ai/analyze", UsageCategory.AI, get_client_ip(request),
        metadata={"result_id": row.id},
    )
    prompt = AnalysisPrompt(tenant.site_url, result_to_report(row), payload.current_settings, payload.context)
    try:
        result = request.app.state.analyzer.analyze(prompt)
    except HubError as e:
        finish_usage(db, usage, e.status_code, error=e.message)
        raise

    analysis = result.analysis.to_dict()
    row.ai_analysis = analysis
    db.commit()
    finish_usage(
        db, usage, 200,
        input_tokens=result.input_tokens,
        output_tokens=result.output_tokens,
        cost_usd=result.cost_usd,
        metadata={"model": result.model},
    )

    return success_body({
        "result_id": row.id,
        "analysis": analysis,
        "model": result.model,
        "tokens": {
            "input": result.input_tokens,
            "output": result.output_tokens,
            "total": result.total_tokens,
        },
        "cost_usd": round(result.cost_usd, 6),
    })


@router.post("/ai/optimize")
def optimize(
    request: Request,
    payload: Optional[OptimizeRequest] = None,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
    gate: RequestGate = Depends(get_gate),
    orchestrator: OptimizationOrchestrator = Depends(get_orchestrator),
):
    """Drive an optimization session: start, retest or complete."""
    payload = payload or OptimizeRequest()
    client_ip = get_client_ip(request)

    # every action needs the AI feature; only start is rate limited
    if payload.action == OptimizeAction.START:
        gate.authorize(db, tenant, feature=FEATURE_AI, endpoint="ai/optimize")
        data = orchestrator.start(
            db, tenant,
            url=payload.url,
            strategy=payload.strategy,
            session_type=payload.session_type,
            current_settings=payload.current_settings,
            context=payload.context,
            client_ip=client_ip,
        )
    elif payload.action == OptimizeAction.RETEST:
        gate.authorize(db, tenant, feature=FEATURE_AI)
        data = orchestrator.retest(
            db, tenant, payload.session_id,
            url=payload.url,
            strategy=payload.strategy,
            applied_settings=payload.applied_settings,
            client_ip=client_ip,
        )
    else:
        gate.authorize(db, tenant, feature=FEATURE_AI)
        data = orchestrator.complete(
            db, tenant, payload.session_id,
            final_scores=payload.final_scores,
            applied_settings=payload.applied_settings,
        )

    return success_body(data)


@router.get("/ai/sessions/{session_id}")
def get_session(
    session_id: int,
    tenant: Tenant = Depends(current_tenant),
    db: Session = Depends(get_db),
    orchestrator: OptimizationOrchestrator = Depends(get_orchestrator),
):
    session = orchestrator.get_session(db, tenant, session_id)
    return success_body({"session": serialize_session(session)})


# Application factory

def create_app(
    config: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    pagespeed_transport: Optional[httpx.BaseTransport] = None,
    claude_transport: Optional[httpx.BaseTransport] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """
    Build the application and its components.

    Args:
        config: Process settings (defaults to get_settings())
        engine: Existing engine to use instead of one built from DATABASE_URL
        pagespeed_transport: httpx transport for the scoring API (tests)
        claude_transport: httpx transport for the AI API (tests)
        clock: Source of naive-UTC "now" shared by time-based components
    """
    config = config or get_settings()
    owns_engine = engine is None
    engine = engine or build_engine(config)

    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file_path if config.log_file_enabled else None,
        log_max_bytes=config.log_file_max_size,
        log_backup_count=config.log_file_backup_count,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(app.state.engine)
        app.state.settings_store.load()
        app.state.settings_store.seed_defaults()
        logger.info("hub_started", environment=config.environment, version=config.app_version)
        yield
        if owns_engine:
            app.state.engine.dispose()
        logger.info("hub_stopped")

    app = FastAPI(
        title="Performance Hub API",
        description="Multi-tenant gateway for performance testing and AI optimization.",
        version=config.app_version,
        lifespan=lifespan,
    )

    session_factory = build_session_factory(engine)
    vault = CredentialVault(config.encryption_key, transit_max_age=config.transit_max_age_seconds)
    settings_store = SettingsStore(session_factory, vault)
    quota = QuotaEnforcer(clock=clock)
    pagespeed = PageSpeedClient(
        settings_store,
        api_url=config.pagespeed_api_url,
        timeout=config.pagespeed_timeout_seconds,
        transport=pagespeed_transport,
    )
    analyzer = ClaudeAnalyzer(
        settings_store,
        api_url=config.claude_api_url,
        api_version=config.claude_api_version,
        timeout=config.claude_timeout_seconds,
        default_model=config.default_claude_model,
        default_max_tokens=config.default_claude_max_tokens,
        transport=claude_transport,
    )

    app.state.config = config
    app.state.clock = clock
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.vault = vault
    app.state.settings_store = settings_store
    app.state.pagespeed = pagespeed
    app.state.analyzer = analyzer
    app.state.gate = RequestGate(
        config,
        settings_store,
        TenantKeyManager(prefix_length=config.api_key_prefix_length, clock=clock),
        TenantRateLimiter(bucket_seconds=config.rate_limit_bucket_seconds, clock=clock),
        quota,
    )
    app.state.orchestrator = OptimizationOrchestrator(
        settings_store,
        quota,
        pagespeed,
        analyzer,
        max_iterations=config.max_optimization_iterations,
        convergence_score=config.convergence_score,
        clock=clock,
    )

    # Configure CORS if enabled
    if config.cors_enabled:
        from fastapi.middleware.cors import CORSMiddleware

        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
            expose_headers=["X-Request-ID", "Retry-After", "X-RateLimit-Limit"],
        )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security headers to all responses"""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Cache-Control"] = "no-store"
        return response

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Log all incoming requests and responses with timing"""
        request_id = str(uuid.uuid4())
        request_id_var.set(request_id)
        request.state.request_id = request_id
        client_ip = get_client_ip(request)

        start_time = time.monotonic()
        log_request_start(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            client_ip=client_ip,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            log_exception(
                e,
                context={
                    "method": request.method,
                    "path": request.url.path,
                    "request_id": request_id,
                    "duration_ms": (time.monotonic() - start_time) * 1000,
                },
            )
            raise

        log_request_end(
            method=request.method,
            path=request.url.path,
            request_id=request_id,
            status_code=response.status_code,
            duration_ms=(time.monotonic() - start_time) * 1000,
        )
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle all unhandled exceptions"""
        request_id = request_id_var.get("")
        return JSONResponse(
            status_code=500,
            content=error_body("Internal server error", request_id=request_id),
            headers={"X-Request-ID": request_id},
        )

    register_exception_handlers(app)
    apply_rate_limits(app, config.ip_rate_limit, enabled=config.ip_rate_limit_enabled)

    app.include_router(health_router)
    app.include_router(router)
    return app


app = create_app()
