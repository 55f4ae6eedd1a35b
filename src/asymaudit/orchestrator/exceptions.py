"""Custom exceptions for audit orchestration."""

from __future__ import annotations

from typing import List, Optional


class RetryableError(Exception):
    """Raised for failures that may succeed on a later attempt.

    Example:
        A collector timing out against a slow remote API raises a
        subclass of this error.
    """

    pass


class NonRetryableError(Exception):
    """Raised for failures the job queue must not retry.

    The retry executor ignores error kinds and retries everything within
    its attempt budget; only the job queue consults this marker when
    deciding whether to spend its own retry budget.
    """

    pass


class CollectionError(RetryableError):
    """Raised when a collector cannot produce raw data for a run."""

    pass


class ScoringError(RetryableError):
    """Raised when the scoring service call fails or returns garbage."""

    pass


class AnalysisParseError(ScoringError):
    """Raised when a scorer response contains no usable JSON analysis.

    Example:
        A response of plain prose with no brace-delimited object, or an
        object without ``overallScore``.
    """

    pass


class AnalysisValidationError(ScoringError):
    """Raised when a parsed analysis violates the analysis contract.

    All violations are collected before raising so the log line shows
    every problem at once.
    """

    def __init__(self, violations: List[str]) -> None:
        self.violations = list(violations)
        super().__init__(f"Invalid AI analysis: {', '.join(self.violations)}")


class PersistenceError(RuntimeError):
    """Raised when the audit store or job queue database is unavailable.

    Fatal to the current job attempt; the job queue's retry budget
    decides whether the job runs again.
    """

    pass


class InvalidScheduleError(ValueError):
    """Raised when a schedule carries an unparseable cron expression."""

    def __init__(self, schedule_id: str, cron_expression: str) -> None:
        self.schedule_id = schedule_id
        self.cron_expression = cron_expression
        super().__init__(
            f"Invalid cron expression for schedule {schedule_id}: {cron_expression!r}"
        )


class DiffComputationError(ValueError):
    """Raised inside the diff engine when snapshots cannot be compared."""

    pass


class InvalidStateTransitionError(ValueError):
    """Raised when an invalid audit run state transition is attempted.

    This exception indicates a violation of the transition rules defined
    in VALID_TRANSITIONS.

    Example:
        Attempting to move a run from COMPLETE back to COLLECTING would
        raise this exception since run status never reverts.
    """

    pass


class JobNotFoundError(KeyError):
    """Raised when a job doesn't exist in the queue.

    Example:
        Marking a non-existent job as completed raises this exception.
    """

    pass


class RunNotFoundError(KeyError):
    """Raised when an audit run id is unknown to the store."""

    pass


class UnknownAuditTypeError(ValueError):
    """Raised when an audit type is unknown or has no collector bound."""

    def __init__(self, audit_type: str, reason: Optional[str] = None) -> None:
        self.audit_type = audit_type
        message = f"Unknown audit type: {audit_type}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ConfigurationError(Exception):
    """Raised when the service configuration fails validation."""

    pass


class ClientNotFoundError(KeyError):
    """Raised when a client is unknown or inactive."""

    pass
