"""
AI analysis adapter for the language-model messages API.

Builds the prompt from a performance report, calls the API once (no
retries), estimates cost from a fixed price table and turns the model's
text into either a structured recommendation payload or an unstructured
wrapper around the raw text.
"""
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

import httpx

from perf_hub_server.errors import ConfigurationError, UpstreamError
from perf_hub_server.logging_config import log_configuration_error, log_upstream_call
from perf_hub_server.pagespeed import PerformanceReport, upstream_error_message
from perf_hub_server.settings_store import SettingsStore

SERVICE_NAME = "claude"

DEFAULT_MODEL = "claude-sonnet-4-20250514"

# USD per million tokens: (input, output)
MODEL_PRICES: Dict[str, Tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-3-7-sonnet-20250219": (3.0, 15.0),
    "claude-3-5-haiku-20241022": (0.8, 4.0),
    "claude-opus-4-20250514": (15.0, 75.0),
}

SYSTEM_PROMPT = (
    "You are a website performance optimization expert. Analyze the performance "
    "test results and recommend specific plugin settings that will improve the "
    "scores. Respond ONLY with valid JSON matching this schema: "
    '{"summary": string, "priority": "high|medium|low", '
    '"recommendations": [{"setting_key": string, "recommended_value": any, '
    '"reason": string, "estimated_impact": "high|medium|low"}], '
    '"additional_notes": string}'
)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


@dataclass(frozen=True)
class Structured:
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.payload)


@dataclass(frozen=True)
class Unstructured:
    raw_text: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": "AI analysis completed (unstructured response).",
            "raw_response": self.raw_text,
            "recommendations": [],
        }


ParsedAnalysis = Union[Structured, Unstructured]


def _load_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) and value else None


def parse_model_output(text: str) -> ParsedAnalysis:
    """
    Best-effort extraction of the JSON payload from model output.

    Tried in order: the whole text as JSON, the first fenced JSON block,
    then the raw text wrapped as an unstructured result.
    """
    payload = _load_object(text.strip())
    if payload is None:
        match = _FENCED_JSON.search(text)
        if match:
            payload = _load_object(match.group(1))
    if payload is None:
        return Unstructured(text)
    return Structured(payload)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    price_in, price_out = MODEL_PRICES.get(model, MODEL_PRICES[DEFAULT_MODEL])
    return (input_tokens * price_in + output_tokens * price_out) / 1_000_000


@dataclass
class AnalysisPrompt:
    site_url: str
    report: PerformanceReport
    current_settings: Dict[str, Any] = field(default_factory=dict)
    context: str = ""


@dataclass
class AnalysisResult:
    analysis: ParsedAnalysis
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


def build_user_message(prompt: AnalysisPrompt) -> str:
    report = prompt.report
    scores, metrics = report.scores, report.metrics
    lines = [
        "Analyze this performance test result and recommend plugin settings.",
        "",
        f"Site: {prompt.site_url}",
        f"URL Tested: {report.url}",
        f"Strategy: {report.strategy.value}",
        "",
        "Scores:",
        f"- Performance: {scores.get('performance')}/100",
        f"- Accessibility: {scores.get('accessibility')}/100",
        f"- Best Practices: {scores.get('best_practices')}/100",
        f"- SEO: {scores.get('seo')}/100",
        "",
        "Core Web Vitals:",
        f"- LCP: {metrics.get('lcp_ms')}ms, FCP: {metrics.get('fcp_ms')}ms, "
        f"TBT: {metrics.get('tbt_ms')}ms, CLS: {metrics.get('cls')}, "
        f"SI: {metrics.get('si_ms')}ms, TTI: {metrics.get('tti_ms')}ms",
    ]

    if report.opportunities:
        lines += ["", "Top opportunities:"]
        lines += [
            f"- [{opp['id']}] {opp['title']}: {opp['savings_ms']}ms"
            for opp in report.opportunities[:10]
        ]

    if report.diagnostics:
        lines += ["", "Diagnostics:"]
        lines += [f"- [{d['id']}] {d['title']}: {d['value']}" for d in report.diagnostics]

    if prompt.current_settings:
        lines += ["", "Current settings:", json.dumps(prompt.current_settings, indent=2, sort_keys=True)]

    if prompt.context:
        lines += ["", f"Context: {prompt.context}"]

    return "\n".join(lines) + "\n"


class ClaudeAnalyzer:
    """Blocking client for the AI messages API."""

    def __init__(
        self,
        settings_store: SettingsStore,
        api_url: str = "https://api.anthropic.com/v1/messages",
        api_version: str = "2023-06-01",
        timeout: float = 60.0,
        default_model: str = DEFAULT_MODEL,
        default_max_tokens: int = 4096,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.settings_store = settings_store
        self.api_url = api_url
        self.api_version = api_version
        self.timeout = timeout
        self.default_model = default_model
        self.default_max_tokens = default_max_tokens
        self._transport = transport

    def analyze(self, prompt: AnalysisPrompt) -> AnalysisResult:
        """
        Ask the model for recommendations.

        Raises:
            ConfigurationError: No AI API key configured
            UpstreamError: Transport failure or non-200 response
        """
        api_key = self.settings_store.get("claude_api_key")
        if not api_key:
            log_configuration_error("claude_api_key")
            raise ConfigurationError("Claude API key not configured on hub", setting="claude_api_key")

        model = self.settings_store.get("claude_model", self.default_model) or self.default_model
        max_tokens = self.settings_store.get_int("claude_max_tokens", self.default_max_tokens)

        body = {
            "model": model,
            "max_tokens": max_tokens,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": build_user_message(prompt)}],
        }
        headers = {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self.api_version,
        }

        start = time.monotonic()
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(self.api_url, json=body, headers=headers)
        except httpx.HTTPError as e:
            duration_ms = (time.monotonic() - start) * 1000
            log_upstream_call(SERVICE_NAME, duration_ms, success=False, error=str(e))
            raise UpstreamError(SERVICE_NAME, f"Failed to contact Claude API: {e}") from e

        duration_ms = (time.monotonic() - start) * 1000
        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code != 200 or not isinstance(data, dict):
            message = upstream_error_message(response)
            log_upstream_call(SERVICE_NAME, duration_ms, response.status_code, success=False, error=message)
            raise UpstreamError(SERVICE_NAME, f"Claude API error: {message}", response.status_code)

        usage = data.get("usage") or {}
        input_tokens = int(usage.get("input_tokens") or 0)
        output_tokens = int(usage.get("output_tokens") or 0)
        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if block.get("type") == "text"
        )

        log_upstream_call(
            SERVICE_NAME,
            duration_ms,
            response.status_code,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
        return AnalysisResult(
            analysis=parse_model_output(text),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=estimate_cost(model, input_tokens, output_tokens),
        )
