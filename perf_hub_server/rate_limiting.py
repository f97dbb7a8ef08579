"""
Rate limiting.

Two layers:
- Per-tenant limits: fixed-window counters in the rate_windows table,
  keyed by (tenant, endpoint, bucket start). Used by every authenticated
  endpoint through the request gate.
- Per-IP limits: slowapi limiter guarding the unauthenticated probes.

The tenant limiter buckets requests into fixed slots (one minute by default)
and sums every slot newer than ``now - window_seconds``. That is a coarse
approximation of a sliding window: bursts straddling a bucket boundary can
admit slightly more than ``max_requests`` over a true rolling window.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from perf_hub_server.db_models import RateWindow, utcnow
from perf_hub_server.errors import RateLimitedError, error_body
from perf_hub_server.logging_config import log_rate_limit_exceeded


def get_client_ip(request: Request) -> str:
    """
    Resolve the caller's IP.

    Checks:
    1. CF-Connecting-IP header
    2. First hop of X-Forwarded-For
    3. Socket peer address
    """
    cf_ip = request.headers.get("CF-Connecting-IP")
    if cf_ip:
        return cf_ip.strip()

    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()

    return get_remote_address(request)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    retry_after: int = 0


class TenantRateLimiter:
    """Fixed-window request counter stored in the relational store."""

    def __init__(
        self,
        bucket_seconds: int = 60,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.bucket_seconds = bucket_seconds
        self._clock = clock

    def bucket_start(self, now: datetime, window_seconds: int) -> datetime:
        """Truncate ``now`` to the bucket granularity (never coarser than the window)."""
        granularity = max(1, min(self.bucket_seconds, window_seconds))
        epoch = datetime(1970, 1, 1)
        elapsed = int((now - epoch).total_seconds())
        return epoch + timedelta(seconds=elapsed - elapsed % granularity)

    def check_and_record(
        self,
        db: Session,
        tenant_id: int,
        endpoint: str,
        max_requests: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """
        Count the request against the tenant's window or reject it.

        Steps: purge this endpoint's buckets older than the window, sum the
        tenant's remaining buckets, reject when the sum has reached
        ``max_requests``, otherwise increment-or-insert the current bucket.
        """
        identifier = f"tenant_{tenant_id}"
        now = self._clock()
        horizon = now - timedelta(seconds=window_seconds)

        db.query(RateWindow).filter(
            RateWindow.endpoint == endpoint,
            RateWindow.window_start < horizon,
        ).delete(synchronize_session=False)

        count = db.query(func.coalesce(func.sum(RateWindow.request_count), 0)).filter(
            RateWindow.identifier == identifier,
            RateWindow.endpoint == endpoint,
            RateWindow.window_start >= horizon,
        ).scalar() or 0
        count = int(count)

        if count >= max_requests:
            db.commit()
            return RateLimitDecision(False, count, max_requests, retry_after=window_seconds)

        self._increment(db, identifier, endpoint, self.bucket_start(now, window_seconds))
        return RateLimitDecision(True, count + 1, max_requests)

    def enforce(
        self,
        db: Session,
        tenant_id: int,
        endpoint: str,
        max_requests: int,
        window_seconds: int,
    ) -> RateLimitDecision:
        """check_and_record() that raises RateLimitedError on rejection."""
        decision = self.check_and_record(db, tenant_id, endpoint, max_requests, window_seconds)
        if not decision.allowed:
            log_rate_limit_exceeded(
                tenant_id=tenant_id,
                endpoint=endpoint,
                limit_value=max_requests,
                current_count=decision.count,
                window_seconds=window_seconds,
            )
            raise RateLimitedError(decision.retry_after, max_requests, window_seconds)
        return decision

    @staticmethod
    def _increment(db: Session, identifier: str, endpoint: str, window_start: datetime) -> None:
        for _ in range(2):
            row = db.query(RateWindow).filter(
                RateWindow.identifier == identifier,
                RateWindow.endpoint == endpoint,
                RateWindow.window_start == window_start,
            ).one_or_none()
            if row is not None:
                row.request_count = RateWindow.request_count + 1
                db.commit()
                return
            db.add(RateWindow(
                identifier=identifier,
                endpoint=endpoint,
                window_start=window_start,
                request_count=1,
            ))
            try:
                db.commit()
                return
            except IntegrityError:
                # Another request created the bucket first; retry as an update.
                db.rollback()


def create_ip_limiter(enabled: bool = True) -> Limiter:
    return Limiter(key_func=get_client_ip, enabled=enabled)


# Shared by routers that decorate endpoints at import time.
ip_limiter = create_ip_limiter()
_ip_limit = {"value": "60/minute"}


def ip_limit_value() -> str:
    """Current per-IP limit string, set by apply_rate_limits()."""
    return _ip_limit["value"]


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the gateway's error format."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content=error_body("Rate limit exceeded", limit=str(exc.detail)),
        headers={"Retry-After": "60"},
    )


def apply_rate_limits(app: FastAPI, limit_value: str = "60/minute", enabled: bool = True) -> Limiter:
    """
    Attach the per-IP limiter to the application.

    Individual endpoints opt in with ``@ip_limiter.limit(ip_limit_value)``.
    """
    _ip_limit["value"] = limit_value
    ip_limiter.enabled = enabled
    app.state.limiter = ip_limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    return ip_limiter
