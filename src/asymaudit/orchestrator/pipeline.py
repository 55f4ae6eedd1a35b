"""Execution pipeline driving one audit run through its lifecycle.

``pending -> collecting -> analyzing -> complete``; ``failed`` is recorded
from ``collecting`` or ``analyzing`` when the job has no queue attempts left.
Earlier attempts leave the run where it stopped so the next attempt resumes
from the persisted state instead of rewinding it.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..analysis.definitions import MetricDefinitions, get_metric_definitions
from ..analysis.differ import compute_diff
from ..analysis.scorer import ScorerAdapter
from ..collectors.base import CollectionRequest
from ..collectors.registry import CollectorRegistry
from ..notifications.service import RegressionNotifier
from ..storage.store import AuditStore
from .exceptions import (
    CollectionError,
    InvalidStateTransitionError,
    NonRetryableError,
    PersistenceError,
)
from .models import AuditRun, AuditType, QueuedJob, RunStatus
from .retry import RetryOptions, with_retry


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class AuditPipeline:
    """Runs collection, scoring, diffing and persistence for a queued job.

    Args:
        store: Audit record store
        registry: Collector bindings per audit type
        scorer: Scorer adapter; never raises for scoring failures
        regression_notifier: Alerting for score drops
        collector_retry: Retry policy around the collector call
        collector_timeout: Per-attempt collector timeout in seconds
        definitions_provider: Metric definitions for an audit type
    """

    def __init__(
        self,
        store: AuditStore,
        registry: CollectorRegistry,
        scorer: ScorerAdapter,
        regression_notifier: RegressionNotifier,
        *,
        collector_retry: Optional[RetryOptions] = None,
        collector_timeout: Optional[float] = 300.0,
        definitions_provider: Callable[[AuditType], MetricDefinitions] = get_metric_definitions,
    ) -> None:
        self._store = store
        self._registry = registry
        self._scorer = scorer
        self._regression = regression_notifier
        self._collector_retry = collector_retry or RetryOptions(max_attempts=3, base_delay=2.0)
        self._collector_timeout = collector_timeout
        self._definitions = definitions_provider

    async def execute(
        self,
        job: QueuedJob,
        progress: Optional[ProgressCallback] = None,
    ) -> AuditRun:
        """Execute the run referenced by ``job``.

        Raises:
            Exception: Whatever stopped the run; the queue decides on retry
        """
        report = progress or (lambda _value: None)
        context = {
            "job_id": job.job_id,
            "run_id": job.run_id,
            "client_id": job.client_id,
            "audit_type": job.audit_type.value,
            "attempt": job.attempts,
        }
        run = self._store.require_run(job.run_id)
        if run.status.is_terminal:
            logger.warning(
                "Run already finished, skipping",
                extra={**context, "status": run.status.value},
            )
            return run

        logger.info("Processing audit job", extra=context)
        try:
            run = await self._drive(run, report, context)
        except Exception as exc:
            final = job.attempts >= job.max_attempts or isinstance(exc, NonRetryableError)
            logger.error(
                "Audit run attempt failed",
                extra={**context, "final_attempt": final, "error": str(exc) or type(exc).__name__},
            )
            if final:
                self._record_failure(job.run_id, exc, context)
            raise

        logger.info(
            "Audit job completed",
            extra={**context, "overall_score": run.overall_score},
        )
        return run

    async def _drive(
        self,
        run: AuditRun,
        report: ProgressCallback,
        context: Dict[str, Any],
    ) -> AuditRun:
        report(10)
        if run.status is RunStatus.PENDING:
            run = self._store.transition_run(run.id, RunStatus.COLLECTING)

        raw_data = run.raw_data
        if run.status is RunStatus.COLLECTING:
            if raw_data is None:
                raw_data = await self._collect(run, context)
                report(20)
            else:
                logger.info("Resuming run with stored raw data", extra=context)
            report(50)
            run = self._store.transition_run(run.id, RunStatus.ANALYZING)

        if raw_data is None:
            raise InvalidStateTransitionError(
                f"Run {run.id} reached {run.status.value} without raw data"
            )

        previous = self._store.latest_complete_run(
            run.client_id, run.audit_type, exclude_run_id=run.id
        )
        report(60)

        analysis = await self._scorer.analyze(
            run.audit_type,
            raw_data,
            previous.raw_data if previous else None,
        )
        report(70)

        if previous is not None and previous.raw_data is not None:
            self._record_diff(run, previous, raw_data, analysis)
        report(80)

        run = self._store.complete_run(run.id, analysis)
        report(90)

        if previous is not None:
            await self._regression.check(
                client_id=run.client_id,
                audit_type=run.audit_type.value,
                run_id=run.id,
                previous_score=previous.overall_score,
                current_score=run.overall_score,
            )
        report(100)
        return run

    async def _collect(self, run: AuditRun, context: Dict[str, Any]) -> Dict[str, Any]:
        client = self._store.get_client(run.client_id)
        if client is None:
            raise CollectionError(f"Client {run.client_id} not found")
        request = CollectionRequest(
            client=client,
            run_id=run.id,
            integrations=self._store.active_integrations(run.client_id),
        )
        collector = self._registry.create(run.audit_type)

        result = await with_retry(
            lambda: collector.collect(request),
            self._collector_retry,
            {**context, "operation": f"{run.audit_type.value} collection"},
            attempt_timeout=self._collector_timeout,
        )
        logger.info(
            "Audit data collected",
            extra={**context, "metrics_count": len(result.metrics)},
        )
        count = self._store.store_collection(run, result.raw_data, result.metrics)
        logger.debug("Audit snapshots stored", extra={**context, "snapshot_count": count})
        return result.raw_data

    def _record_diff(
        self,
        run: AuditRun,
        previous: AuditRun,
        raw_data: Dict[str, Any],
        analysis: Dict[str, Any],
    ) -> None:
        diff = compute_diff(raw_data, previous.raw_data or {}, self._definitions(run.audit_type))
        self._store.insert_diff(
            client_id=run.client_id,
            audit_type=run.audit_type,
            current_run_id=run.id,
            previous_run_id=previous.id,
            changes=diff.changes_dict(),
            severity=diff.severity.value,
            summary=analysis.get("trendAnalysis") or diff.summary,
        )
        logger.info(
            "Audit diff recorded",
            extra={
                "run_id": run.id,
                "previous_run_id": previous.id,
                "severity": diff.severity.value,
                "total_changes": diff.total_changes,
            },
        )

    def _record_failure(self, run_id: str, exc: BaseException, context: Dict[str, Any]) -> None:
        message = str(exc) or type(exc).__name__
        try:
            self._store.transition_run(run_id, RunStatus.FAILED, error_message=message)
        except (PersistenceError, InvalidStateTransitionError) as record_exc:
            logger.error(
                "Unable to record run failure",
                extra={**context, "error": str(record_exc)},
            )
