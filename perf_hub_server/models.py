"""
Pydantic models for request validation.

Validation rules:
- URLs are at most 2000 chars and must be http(s)
- Strategy and session type fall back to their defaults when unrecognized
- Result list size is clamped to 1-50
- retest/complete require a session id
"""

from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

from perf_hub_server.optimizer import SessionType
from perf_hub_server.pagespeed import Strategy


def _check_url(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    v = v.strip()
    if not v:
        return None
    if not v.lower().startswith(("http://", "https://")):
        raise ValueError("URL must use http or https")
    return v


class OptimizeAction(str, Enum):
    """Optimization loop actions."""
    START = "start"
    RETEST = "retest"
    COMPLETE = "complete"


class PerformanceTestRequest(BaseModel):
    """Body of POST /api/v1/pagespeed/test. An omitted URL means the site URL."""

    url: Optional[str] = Field(default=None, max_length=2000)
    strategy: Strategy = Field(default=Strategy.MOBILE)
    force: bool = Field(default=False, description="Bypass cached results")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v)

    @field_validator("strategy", mode="before")
    @classmethod
    def coerce_strategy(cls, v):
        return Strategy.coerce(v)


class ResultsQuery(BaseModel):
    """Filters for stored results."""

    strategy: Strategy = Field(default=Strategy.MOBILE)
    limit: int = Field(default=10)
    url: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("strategy", mode="before")
    @classmethod
    def coerce_strategy(cls, v):
        return Strategy.coerce(v)

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v):
        try:
            v = int(v)
        except (TypeError, ValueError):
            return 10
        return min(max(v, 1), 50)


class AnalyzeRequest(BaseModel):
    """Body of POST /api/v1/ai/analyze."""

    result_id: int = Field(..., ge=1, description="Stored performance result to analyze")
    current_settings: Dict[str, Any] = Field(default_factory=dict)
    context: str = Field(default="", max_length=4000)


class OptimizeRequest(BaseModel):
    """
    Body of POST /api/v1/ai/optimize.

    start uses url/strategy/session_type/current_settings/context,
    retest uses session_id/url/strategy/applied_settings,
    complete uses session_id/final_scores/applied_settings.
    """

    action: OptimizeAction = Field(default=OptimizeAction.START)
    session_id: Optional[int] = Field(default=None, ge=1)
    url: Optional[str] = Field(default=None, max_length=2000)
    strategy: Strategy = Field(default=Strategy.MOBILE)
    session_type: SessionType = Field(default=SessionType.FULL_AUDIT)
    current_settings: Dict[str, Any] = Field(default_factory=dict)
    applied_settings: Dict[str, Any] = Field(default_factory=dict)
    final_scores: Optional[Dict[str, Any]] = None
    context: str = Field(default="", max_length=4000)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v):
        return _check_url(v)

    @field_validator("strategy", mode="before")
    @classmethod
    def coerce_strategy(cls, v):
        return Strategy.coerce(v)

    @field_validator("session_type", mode="before")
    @classmethod
    def coerce_session_type(cls, v):
        return SessionType.coerce(v)

    @model_validator(mode="after")
    def require_session_id(self):
        if self.action != OptimizeAction.START and self.session_id is None:
            raise ValueError(f"session_id is required for action '{self.action.value}'")
        return self
