"""Audit orchestrator package."""

from .exceptions import (
    AnalysisParseError,
    AnalysisValidationError,
    ClientNotFoundError,
    CollectionError,
    ConfigurationError,
    DiffComputationError,
    InvalidScheduleError,
    InvalidStateTransitionError,
    JobNotFoundError,
    NonRetryableError,
    PersistenceError,
    RetryableError,
    RunNotFoundError,
    ScoringError,
    UnknownAuditTypeError,
)
from .models import (
    AuditRun,
    AuditSchedule,
    AuditType,
    JobOutcome,
    JobPriority,
    JobState,
    OutcomeStatus,
    QueuedJob,
    RunStatus,
    Severity,
    job_key,
)
from .queue import JobQueue
from .retry import RetryOptions, with_retry
from .state_machine import VALID_TRANSITIONS, RunStateMachine

__all__ = [
    "AnalysisParseError",
    "AnalysisValidationError",
    "AuditRun",
    "AuditSchedule",
    "AuditType",
    "ClientNotFoundError",
    "CollectionError",
    "ConfigurationError",
    "DiffComputationError",
    "InvalidScheduleError",
    "InvalidStateTransitionError",
    "JobNotFoundError",
    "JobOutcome",
    "JobPriority",
    "JobQueue",
    "JobState",
    "NonRetryableError",
    "OutcomeStatus",
    "PersistenceError",
    "QueuedJob",
    "RetryOptions",
    "RetryableError",
    "RunNotFoundError",
    "RunStateMachine",
    "RunStatus",
    "ScoringError",
    "Severity",
    "UnknownAuditTypeError",
    "VALID_TRANSITIONS",
    "job_key",
    "with_retry",
]
