"""Collector capability and structured sub-fetch results."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Generic, List, Optional, TypeVar

from ..orchestrator.models import AuditType, Client


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class CollectionRequest:
    """Everything a collector needs to gather data for one run."""

    client: Client
    run_id: str
    integrations: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def client_id(self) -> str:
        return self.client.id

    def integration(self, platform: str) -> Optional[Dict[str, Any]]:
        for integration in self.integrations:
            if integration.get("platform") == platform:
                return integration
        return None


@dataclass(slots=True)
class CollectionResult:
    """Raw data document plus flat numeric metrics for snapshots."""

    raw_data: Dict[str, Any]
    metrics: Dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class SubFetchResult(Generic[T]):
    """Outcome of one concurrent sub-fetch: a value, or absent with a reason."""

    name: str
    value: Optional[T] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    def value_or(self, default: T) -> T:
        return self.value if self.ok and self.value is not None else default


async def gather_sub_fetches(
    fetches: Dict[str, Awaitable[Any]],
) -> Dict[str, SubFetchResult[Any]]:
    """Run named sub-fetches concurrently, capturing each outcome.

    A failing sub-fetch is recorded as absent with its error message; it
    never aborts the others.
    """
    names = list(fetches)
    outcomes = await asyncio.gather(*fetches.values(), return_exceptions=True)
    results: Dict[str, SubFetchResult[Any]] = {}
    for name, outcome in zip(names, outcomes):
        if isinstance(outcome, asyncio.CancelledError):
            raise outcome
        if isinstance(outcome, BaseException):
            reason = str(outcome) or type(outcome).__name__
            logger.warning("Sub-fetch failed", extra={"sub_fetch": name, "reason": reason})
            results[name] = SubFetchResult(name=name, reason=reason)
        else:
            results[name] = SubFetchResult(name=name, value=outcome)
    return results


class Collector(ABC):
    """Gathers raw structured data for a single audit type.

    Implementations must be read-only against external systems so that
    the retry executor can call them repeatedly.
    """

    audit_type: AuditType

    def get_audit_type(self) -> AuditType:
        return self.audit_type

    @abstractmethod
    async def collect(self, request: CollectionRequest) -> CollectionResult:
        """Collect raw data and snapshot metrics.

        Raises:
            CollectionError: The backend is unreachable or returned invalid data
        """
