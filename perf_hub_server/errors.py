"""
Gateway error taxonomy and its mapping to JSON error responses.

Every error a tenant can see is a HubError subclass carrying its HTTP status.
Handlers registered by register_exception_handlers() render them as
{"success": false, "error": "...", ...extra}.
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException


class HubError(Exception):
    """Base class for errors returned to API callers."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.extra = extra or {}
        self.headers = headers or {}


class ValidationError(HubError):
    """Missing or malformed request fields."""
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidTransitionError(ValidationError):
    """An optimization session cannot move to the requested state."""

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Session cannot move from '{current}' to '{target}'",
            extra={"status": current},
        )
        self.current = current
        self.target = target


class AuthenticationError(HubError):
    """Missing or unknown API key. Never says which part was wrong."""
    status_code = status.HTTP_401_UNAUTHORIZED


class AuthorizationError(HubError):
    """URL mismatch, expired license, disabled feature or foreign session."""
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(HubError):
    status_code = status.HTTP_404_NOT_FOUND


class RateLimitedError(HubError):
    """Too many requests for one tenant/endpoint in the current window."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: int, limit: int, window: int):
        super().__init__(
            "Rate limit exceeded",
            extra={"retry_after": retry_after, "limit": limit, "window": window},
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
            },
        )
        self.retry_after = retry_after
        self.limit = limit
        self.window = window


class QuotaExceededError(HubError):
    """Monthly AI tokens or daily test count exhausted."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, message: str, used: int, limit: int):
        super().__init__(message, extra={"used": used, "limit": limit})
        self.used = used
        self.limit = limit


class UpstreamError(HubError):
    """The scoring or AI service failed or could not be reached."""
    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, service: str, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.service = service
        self.upstream_status = upstream_status


class ConfigurationError(HubError):
    """A secret the gateway needs (an upstream API key) is not configured."""
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(message)
        self.setting = setting


class MaintenanceError(HubError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str = "Service temporarily unavailable"):
        super().__init__(message)


def error_body(message: str, **extra: Any) -> Dict[str, Any]:
    return {"success": False, "error": message, **extra}


def success_body(data: Optional[Dict[str, Any]] = None, message: str = "OK") -> Dict[str, Any]:
    return {"success": True, "message": message, **(data or {})}


async def hub_error_handler(request: Request, exc: HubError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(exc.message, **exc.extra),
        headers=exc.headers,
    )


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report malformed bodies as 400 with the offending fields."""
    fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body("Invalid request", fields=fields),
    )


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Routing errors (unknown path, wrong verb) in the same body format."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HubError, hub_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
