"""
Structured logging configuration with request tracking and rotation.
"""
import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from structlog.types import EventDict, Processor


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Add application context to all log entries."""
    event_dict["app"] = "perf-hub"
    return event_dict


def setup_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_file: Optional[str] = None,
    log_max_bytes: int = 10485760,  # 10MB
    log_backup_count: int = 5,
) -> None:
    """
    Configure structured logging with rotation.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ('json' or 'console')
        log_file: Optional log file path
        log_max_bytes: Max log file size before rotation
        log_backup_count: Number of backup files to keep
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_app_context,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]

    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=True)
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_file,
            maxBytes=log_max_bytes,
            backupCount=log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(numeric_level)
        logging.getLogger().addHandler(file_handler)


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured logger instance
    """
    return structlog.get_logger(name)


def mask_api_key(api_key: str, visible: int = 12) -> str:
    """Return the lookup prefix of a key followed by an ellipsis."""
    if not api_key:
        return "***"
    return f"{api_key[:visible]}..." if len(api_key) > visible else "***"


def log_request_start(
    method: str,
    path: str,
    request_id: str,
    client_ip: Optional[str] = None,
    **kwargs
) -> None:
    """Log incoming API request."""
    get_logger("api").info(
        "request_start",
        method=method,
        path=path,
        request_id=request_id,
        client_ip=client_ip,
        **kwargs
    )


def log_request_end(
    method: str,
    path: str,
    request_id: str,
    status_code: int,
    duration_ms: float,
    **kwargs
) -> None:
    """Log completed API request."""
    get_logger("api").info(
        "request_end",
        method=method,
        path=path,
        request_id=request_id,
        status_code=status_code,
        duration_ms=duration_ms,
        **kwargs
    )


def log_auth_failure(
    reason: str,
    api_key: str,
    client_ip: Optional[str],
    visible: int = 12,
    **kwargs
) -> None:
    """
    Log a failed tenant lookup for abuse tracking.

    Only the lookup prefix of the key is ever written, never the full key.
    """
    get_logger("auth").warning(
        "auth_failed",
        reason=reason,
        key_prefix=mask_api_key(api_key, visible),
        client_ip=client_ip,
        **kwargs
    )


def log_rate_limit_exceeded(
    tenant_id: int,
    endpoint: str,
    limit_value: int,
    current_count: int,
    window_seconds: int,
    **kwargs
) -> None:
    """Log rate limit exceeded event."""
    get_logger("rate_limiter").warning(
        "rate_limit_exceeded",
        tenant_id=tenant_id,
        endpoint=endpoint,
        limit_value=limit_value,
        current_count=current_count,
        window_seconds=window_seconds,
        **kwargs
    )


def log_quota_exceeded(
    tenant_id: int,
    quota: str,
    used: int,
    limit: int,
    **kwargs
) -> None:
    """Log a rejected request that hit a usage quota."""
    get_logger("quota").warning(
        "quota_exceeded",
        tenant_id=tenant_id,
        quota=quota,
        used=used,
        limit=limit,
        **kwargs
    )


def log_session_transition(
    session_id: int,
    from_state: str,
    to_state: str,
    **kwargs
) -> None:
    """Log an optimization session state change."""
    get_logger("optimizer").info(
        "session_transition",
        session_id=session_id,
        from_state=from_state,
        to_state=to_state,
        **kwargs
    )


def log_upstream_call(
    service: str,
    duration_ms: float,
    status_code: Optional[int] = None,
    success: bool = True,
    error: Optional[str] = None,
    **kwargs
) -> None:
    """Log a call to the scoring or AI service."""
    logger = get_logger("upstream")
    if success:
        logger.info(
            "upstream_call",
            service=service,
            status_code=status_code,
            duration_ms=duration_ms,
            **kwargs
        )
    else:
        logger.error(
            "upstream_call_failed",
            service=service,
            status_code=status_code,
            duration_ms=duration_ms,
            error=error,
            **kwargs
        )


def log_configuration_error(setting: str, **kwargs) -> None:
    """Log a missing gateway secret; this always needs operator attention."""
    get_logger("config").critical("configuration_error", setting=setting, **kwargs)


def log_exception(
    exception: Exception,
    context: Optional[Dict[str, Any]] = None,
    **kwargs
) -> None:
    """
    Log exception with full context.

    Args:
        exception: Exception instance
        context: Additional context dictionary
        **kwargs: Additional context
    """
    log_data = {
        "exception_type": type(exception).__name__,
        "exception_message": str(exception),
        **(context or {}),
        **kwargs
    }
    get_logger("exception").exception("exception_occurred", **log_data)
