"""Shared fixtures and fakes for audit worker tests."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytest

from asymaudit.analysis.scorer import ScoringClient
from asymaudit.collectors.base import CollectionRequest, CollectionResult, Collector
from asymaudit.collectors.registry import CollectorRegistry
from asymaudit.notifications.channels import Notification, NotificationChannel
from asymaudit.orchestrator.models import AuditType
from asymaudit.orchestrator.queue import JobQueue
from asymaudit.storage.store import AuditStore


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Deterministic UTC clock; every call returns the current instant."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class StaticCollector(Collector):
    """Returns queued results in order; exceptions in the list are raised."""

    audit_type = AuditType.SEO_TECHNICAL

    def __init__(self, results: Sequence[Any]) -> None:
        self._results = list(results)
        self.calls: List[CollectionRequest] = []

    async def collect(self, request: CollectionRequest) -> CollectionResult:
        self.calls.append(request)
        outcome = self._results.pop(0) if len(self._results) > 1 else self._results[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeScoringClient(ScoringClient):
    """Replays canned responses; exceptions in the list are raised."""

    def __init__(self, responses: Sequence[Any]) -> None:
        self._responses = list(responses)
        self.calls: List[Dict[str, str]] = []

    async def complete(self, system_prompt: str, user_message: str) -> str:
        self.calls.append({"system": system_prompt, "user": user_message})
        response = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class RecordingChannel(NotificationChannel):
    name = "recording"

    def __init__(self, fail: bool = False) -> None:
        self.delivered: List[Notification] = []
        self.fail = fail

    def is_available(self) -> bool:
        return True

    async def deliver(self, notification: Notification) -> None:
        if self.fail:
            raise RuntimeError("channel down")
        self.delivered.append(notification)


def analysis_payload(score: int = 80, **overrides: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "overallScore": score,
        "scores": {"technical": score},
        "issues": [
            {
                "severity": "warning",
                "category": "technical",
                "title": "Missing meta description",
                "description": "The homepage has no meta description.",
                "impact": "Lower click-through rate",
            }
        ],
        "recommendations": [
            {
                "priority": "medium",
                "title": "Add a meta description",
                "description": "Write a concise summary for the homepage.",
                "effort": "low",
                "expectedImpact": "Better search snippets",
            }
        ],
        "summary": "Site is in reasonable shape.",
        "trendAnalysis": None,
    }
    payload.update(overrides)
    return payload


def analysis_text(score: int = 80, **overrides: Any) -> str:
    return json.dumps(analysis_payload(score, **overrides))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> AuditStore:
    audit_store = AuditStore(tmp_path / "audits.db", clock=clock)
    yield audit_store
    audit_store.close()


@pytest.fixture
def queue(tmp_path: Path, clock: FakeClock) -> JobQueue:
    job_queue = JobQueue(tmp_path / "queue.db", clock=clock)
    yield job_queue
    job_queue.close()


@pytest.fixture
def client(store: AuditStore):
    return store.add_client(
        "Acme Corp",
        website_url="https://acme.example",
        slug="acme",
        client_id="client-1",
    )


def registry_with(collector: Collector) -> CollectorRegistry:
    registry = CollectorRegistry()
    registry.register(collector.audit_type, lambda: collector)
    return registry


# ---------------------------------------------------------------------------
# Mock aiohttp Components
# ---------------------------------------------------------------------------


class MockRequest:
    """Mock aiohttp.web.Request for handler tests."""

    def __init__(
        self,
        headers: Optional[Dict[str, str]] = None,
        body: bytes = b"",
        json_data: Optional[Any] = None,
        match_info: Optional[Dict[str, str]] = None,
        method: str = "GET",
        path: str = "/",
    ) -> None:
        self.headers = headers or {}
        self._body = body
        self._json_data = json_data
        self.match_info = match_info or {}
        self.method = method
        self.path = path

    async def json(self) -> Any:
        if self._json_data is not None:
            return self._json_data
        return json.loads(self._body.decode("utf-8"))


def response_json(response) -> Dict[str, Any]:
    return json.loads(response.text)
