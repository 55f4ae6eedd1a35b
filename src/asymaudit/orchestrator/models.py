"""Domain models for the audit orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


class AuditType(str, Enum):
    WORDPRESS_HEALTH = "wordpress_health"
    WORDPRESS_SEO = "wordpress_seo"
    WORDPRESS_PERFORMANCE = "wordpress_performance"
    WORDPRESS_SECURITY = "wordpress_security"
    WORDPRESS_FORMS = "wordpress_forms"
    GA4_CONFIG = "ga4_config"
    GA4_DATA_QUALITY = "ga4_data_quality"
    GOOGLE_ADS_ACCOUNT = "google_ads_account"
    GOOGLE_ADS_CAMPAIGNS = "google_ads_campaigns"
    GTM_CONTAINER = "gtm_container"
    GSC_COVERAGE = "gsc_coverage"
    CLOUDFLARE_CONFIG = "cloudflare_config"
    SEO_TECHNICAL = "seo_technical"
    SEO_BACKLINKS = "seo_backlinks"

    @classmethod
    def parse(cls, value: str) -> "AuditType":
        """Return the member for ``value`` or raise UnknownAuditTypeError."""
        from .exceptions import UnknownAuditTypeError

        try:
            return cls(value)
        except ValueError as exc:
            raise UnknownAuditTypeError(str(value)) from exc


class RunStatus(str, Enum):
    """Audit run lifecycle states."""

    PENDING = "pending"  # Created, awaiting a worker
    COLLECTING = "collecting"  # Collector running
    ANALYZING = "analyzing"  # Scoring and diffing
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETE, RunStatus.FAILED)


class JobState(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class JobPriority(IntEnum):
    """Queue priorities; higher values are claimed first."""

    SCHEDULED = 5
    TRIGGER_ALL = 8
    MANUAL = 10


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.INFO: 0, Severity.WARNING: 1, Severity.CRITICAL: 2}


def job_key(client_id: str, audit_type: AuditType | str, run_id: str) -> str:
    """Build the idempotency key for a run's job."""
    audit_value = audit_type.value if isinstance(audit_type, AuditType) else audit_type
    return f"{client_id}-{audit_value}-{run_id}"


@dataclass(slots=True)
class AuditRun:
    """One execution of one audit type for one client."""

    id: str
    client_id: str
    audit_type: AuditType
    status: RunStatus = RunStatus.PENDING
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    raw_data: Optional[Dict[str, Any]] = None
    ai_analysis: Optional[Dict[str, Any]] = None
    overall_score: Optional[float] = None
    scores: Optional[Dict[str, Any]] = None
    issues: Optional[List[Dict[str, Any]]] = None
    recommendations: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "audit_type": self.audit_type.value,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "overall_score": self.overall_score,
            "scores": self.scores,
            "issues": self.issues,
            "recommendations": self.recommendations,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass(slots=True)
class AuditSchedule:
    id: str
    client_id: str
    audit_type: str
    cron_expression: str
    is_active: bool = True
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass(slots=True)
class Client:
    id: str
    name: str
    website_url: Optional[str] = None
    slug: Optional[str] = None
    is_active: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "website_url": self.website_url,
        }


@dataclass(slots=True)
class QueuedJob:
    """A job record as held by the job queue."""

    job_id: str
    client_id: str
    audit_type: AuditType
    run_id: str
    priority: int = JobPriority.MANUAL
    metadata: Dict[str, Any] = field(default_factory=dict)
    status: JobState = JobState.WAITING
    attempts: int = 0
    max_attempts: int = 3
    progress: int = 0
    failed_reason: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def attempts_remaining(self) -> int:
        return max(0, self.max_attempts - self.attempts)


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"


@dataclass(slots=True)
class JobOutcome:
    """Result of one job execution, consumed by the outcome dispatcher."""

    job: QueuedJob
    status: OutcomeStatus
    duration: float
    error: Optional[BaseException] = None
    retry_delay: Optional[float] = None

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
