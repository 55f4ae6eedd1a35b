"""Scorer adapter: turns raw audit data into a validated analysis.

The adapter builds a request for the scoring service, retries it through the
retry executor, parses the free-form response leniently and validates the
result. It never propagates scoring failures: when the service is
unavailable or keeps returning garbage, a deterministic fallback analysis is
returned instead.
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from anthropic import AsyncAnthropic

from ..orchestrator.exceptions import AnalysisParseError, AnalysisValidationError, ScoringError
from ..orchestrator.models import AuditType
from ..orchestrator.retry import RetryOptions, with_retry
from .prompts import get_prompt


logger = logging.getLogger(__name__)

FALLBACK_ISSUE_TITLE = "AI Analysis Unavailable"
FALLBACK_SCORE = 50

ISSUE_SEVERITIES = {"critical", "warning", "info"}
RECOMMENDATION_PRIORITIES = {"high", "medium", "low"}

_FENCE_RE = re.compile(r"```(?:json)?\s*\n?|\n?```")


class ScoringClient(ABC):
    """Capability that sends one prompt pair to the scoring service."""

    @abstractmethod
    async def complete(self, system_prompt: str, user_message: str) -> str:
        """Return the service's raw text response."""


class AnthropicScoringClient(ScoringClient):
    """Scoring client backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = "claude-3-5-sonnet-20241022",
        max_tokens: int = 4096,
        client: Optional[AsyncAnthropic] = None,
    ) -> None:
        self.model = model
        self.max_tokens = max_tokens
        # SDK-level retries are disabled; the retry executor owns retries.
        self._client = client or AsyncAnthropic(api_key=api_key, max_retries=0)

    async def complete(self, system_prompt: str, user_message: str) -> str:
        response = await self._client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            system=system_prompt,
            messages=[{"role": "user", "content": user_message}],
        )
        text = "".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        if not text:
            raise ScoringError("Scoring service returned no text content")
        return text


class UnconfiguredScoringClient(ScoringClient):
    """Stands in when no scoring API key is configured; every call fails."""

    async def complete(self, system_prompt: str, user_message: str) -> str:
        raise ScoringError("No scoring API key configured")


def build_user_message(
    audit_type: AuditType,
    raw_data: Dict[str, Any],
    previous_raw_data: Optional[Dict[str, Any]],
    analysis_date: Optional[datetime] = None,
) -> str:
    payload = json.dumps(
        {
            "currentAudit": raw_data,
            "previousAudit": previous_raw_data,
            "analysisDate": (analysis_date or datetime.now(timezone.utc)).isoformat(),
            "auditType": audit_type.value,
        },
        indent=2,
        default=str,
    )
    if previous_raw_data:
        instruction = "Compare with previous audit data to identify trends and regressions."
    else:
        instruction = "This is the first audit run for this client."
    return (
        "Analyze the following audit data and return a JSON response matching "
        f"the analysis structure. {instruction}\n\n{payload}"
    )


def parse_analysis(text: str) -> Dict[str, Any]:
    """Extract the first JSON object from a scorer response.

    Raises:
        AnalysisParseError: No decodable object, or no ``overallScore`` field
    """
    cleaned = _FENCE_RE.sub("", text).strip()
    start = cleaned.find("{")
    if start == -1:
        raise AnalysisParseError("No JSON object found in scoring response")
    try:
        parsed, _ = json.JSONDecoder().raw_decode(cleaned, start)
    except json.JSONDecodeError as exc:
        raise AnalysisParseError(f"Failed to parse scoring response: {exc}") from exc
    if not isinstance(parsed, dict):
        raise AnalysisParseError("Scoring response JSON is not an object")
    if parsed.get("overallScore") is None:
        raise AnalysisParseError("Missing overallScore in scoring response")
    return parsed


def _is_score(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and 0 <= value <= 100
    )


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def find_violations(analysis: Dict[str, Any]) -> List[str]:
    """Collect every contract violation in a parsed analysis."""
    violations: List[str] = []

    if not _is_score(analysis.get("overallScore")):
        violations.append("overallScore must be a number between 0 and 100")

    scores = analysis.get("scores")
    if not isinstance(scores, dict):
        violations.append("scores must be an object")
    else:
        for key, value in scores.items():
            if not _is_score(value):
                violations.append(f"scores.{key} must be a number between 0 and 100")

    issues = analysis.get("issues")
    if not isinstance(issues, list):
        violations.append("issues must be an array")
    else:
        for index, issue in enumerate(issues):
            if not isinstance(issue, dict):
                violations.append(f"issues[{index}] must be an object")
                continue
            if issue.get("severity") not in ISSUE_SEVERITIES:
                violations.append(f"issues[{index}].severity must be critical, warning or info")
            if not _non_empty_str(issue.get("title")):
                violations.append(f"issues[{index}].title is required")

    recommendations = analysis.get("recommendations")
    if not isinstance(recommendations, list):
        violations.append("recommendations must be an array")
    else:
        for index, rec in enumerate(recommendations):
            if not isinstance(rec, dict):
                violations.append(f"recommendations[{index}] must be an object")
                continue
            if rec.get("priority") not in RECOMMENDATION_PRIORITIES:
                violations.append(
                    f"recommendations[{index}].priority must be high, medium or low"
                )
            if not _non_empty_str(rec.get("title")):
                violations.append(f"recommendations[{index}].title is required")

    if not _non_empty_str(analysis.get("summary")):
        violations.append("summary must be a non-empty string")

    return violations


def validate_analysis(analysis: Dict[str, Any]) -> Dict[str, Any]:
    violations = find_violations(analysis)
    if violations:
        raise AnalysisValidationError(violations)
    return analysis


def fallback_analysis(audit_type: AuditType) -> Dict[str, Any]:
    """Deterministic analysis used when scoring is unavailable."""
    return {
        "overallScore": FALLBACK_SCORE,
        "scores": {"general": FALLBACK_SCORE},
        "issues": [
            {
                "severity": "warning",
                "category": "Analysis",
                "title": FALLBACK_ISSUE_TITLE,
                "description": "The AI analysis service was unavailable or returned invalid results.",
                "recommendation": "Review the raw audit data manually or retry the analysis later.",
                "impact": "Limited insights available for this audit run.",
            }
        ],
        "recommendations": [
            {
                "priority": "medium",
                "title": "Retry Analysis",
                "description": "Retry this audit when the AI analysis service is available.",
                "estimatedImpact": "Full analysis and recommendations",
                "effort": "Low",
            }
        ],
        "summary": (
            f"Audit completed for {audit_type.value} but AI analysis was unavailable. "
            "Raw data collection was successful."
        ),
    }


def is_fallback(analysis: Dict[str, Any]) -> bool:
    return any(
        isinstance(issue, dict) and issue.get("title") == FALLBACK_ISSUE_TITLE
        for issue in analysis.get("issues") or []
    )


class ScorerAdapter:
    """Produces a validated analysis, or the fallback, for one run.

    Args:
        client: Scoring service capability
        retry_options: Policy for the retried scoring call
        timeout: Per-attempt timeout in seconds
    """

    def __init__(
        self,
        client: ScoringClient,
        *,
        retry_options: Optional[RetryOptions] = None,
        timeout: Optional[float] = 120.0,
    ) -> None:
        self._client = client
        self._retry_options = retry_options or RetryOptions(max_attempts=3, base_delay=1.0)
        self._timeout = timeout

    async def analyze(
        self,
        audit_type: AuditType,
        raw_data: Dict[str, Any],
        previous_raw_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        context = {
            "audit_type": audit_type.value,
            "has_previous_data": previous_raw_data is not None,
        }
        logger.info("Starting AI analysis", extra=context)
        system_prompt = get_prompt(audit_type)
        user_message = build_user_message(audit_type, raw_data, previous_raw_data)

        async def _score() -> Dict[str, Any]:
            text = await self._client.complete(system_prompt, user_message)
            return parse_analysis(text)

        try:
            analysis = await with_retry(
                _score,
                self._retry_options,
                {**context, "operation": "ai_analysis"},
                attempt_timeout=self._timeout,
            )
            validate_analysis(analysis)
        except Exception as exc:  # noqa: BLE001 - scoring failures degrade to the fallback
            logger.error(
                "AI analysis failed, using fallback",
                extra={**context, "error": str(exc) or type(exc).__name__},
            )
            return fallback_analysis(audit_type)

        logger.info(
            "AI analysis completed",
            extra={
                **context,
                "overall_score": analysis["overallScore"],
                "issue_count": len(analysis["issues"]),
                "recommendation_count": len(analysis["recommendations"]),
            },
        )
        return analysis
