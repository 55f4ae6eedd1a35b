"""Manual admission of audit runs into the job queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from ..collectors.registry import CollectorRegistry, audit_types_for_platforms
from ..orchestrator.exceptions import ClientNotFoundError, PersistenceError, UnknownAuditTypeError
from ..orchestrator.models import AuditRun, Client, JobPriority, QueuedJob
from ..orchestrator.queue import JobQueue
from ..storage.store import AuditStore


logger = logging.getLogger(__name__)


class NoActiveIntegrationsError(LookupError):
    """Raised when trigger-all targets a client without active integrations."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class TriggerResult:
    client: Client
    run: AuditRun
    job: QueuedJob

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run.id,
            "jobId": self.job.job_id,
            "client": self.client.name,
            "auditType": self.run.audit_type.value,
            "status": "queued",
        }


@dataclass(slots=True)
class SuiteResult:
    client: Client
    results: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result["status"] == "queued")

    @property
    def failed_count(self) -> int:
        return sum(1 for result in self.results if result["status"] == "failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client": self.client.name,
            "totalAudits": len(self.results),
            "successCount": self.success_count,
            "failedCount": self.failed_count,
            "results": list(self.results),
        }


class AuditTrigger:
    """Creates runs and enqueues their jobs on operator request.

    Args:
        store: Audit record store
        queue: Durable job queue
        registry: Collector bindings; audit types without one are rejected
        trigger_priority: Default priority for a single audit
        trigger_all_priority: Default priority for a full suite
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: AuditStore,
        queue: JobQueue,
        registry: CollectorRegistry,
        *,
        trigger_priority: int = JobPriority.MANUAL,
        trigger_all_priority: int = JobPriority.TRIGGER_ALL,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._registry = registry
        self._trigger_priority = int(trigger_priority)
        self._trigger_all_priority = int(trigger_all_priority)
        self._clock = clock

    def active_client(self, client_id: str) -> Client:
        client = self._store.get_client(client_id)
        if client is None or not client.is_active:
            raise ClientNotFoundError(client_id)
        return client

    def trigger(
        self,
        client_id: str,
        audit_type: str,
        *,
        priority: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> TriggerResult:
        """Queue one audit for an active client.

        Raises:
            ClientNotFoundError: Client missing or inactive
            UnknownAuditTypeError: Audit type unknown or without a collector
            PersistenceError: Run or job could not be stored
        """
        client = self.active_client(client_id)
        resolved = self._registry.resolve(audit_type)
        extra = dict(metadata or {})
        run = self._store.create_run(
            client.id,
            resolved,
            {
                **extra,
                "triggered_by": "manual",
                "triggered_at": self._clock().isoformat(),
            },
        )
        job = self._enqueue(
            run,
            self._trigger_priority if priority is None else priority,
            {**extra, "manual": True},
        )
        logger.info(
            "Manual audit triggered",
            extra={
                "client_id": client.id,
                "audit_type": resolved.value,
                "run_id": run.id,
                "job_id": job.job_id,
            },
        )
        return TriggerResult(client=client, run=run, job=job)

    def trigger_all(self, client_id: str, *, priority: Optional[int] = None) -> SuiteResult:
        """Queue every audit implied by the client's active integrations.

        Individual audit types that cannot be queued are reported as failed
        entries rather than aborting the suite.

        Raises:
            ClientNotFoundError: Client missing or inactive
            NoActiveIntegrationsError: Client has no active integrations
        """
        client = self.active_client(client_id)
        integrations = self._store.active_integrations(client.id)
        if not integrations:
            raise NoActiveIntegrationsError(client.id)

        suite = SuiteResult(client=client)
        triggered_at = self._clock().isoformat()
        for audit_type in audit_types_for_platforms(i["platform"] for i in integrations):
            entry = {"auditType": audit_type.value, "runId": "", "jobId": "", "status": "failed"}
            if not self._registry.supports(audit_type):
                logger.warning(
                    "No collector configured, skipping audit type",
                    extra={"client_id": client.id, "audit_type": audit_type.value},
                )
                suite.results.append(entry)
                continue
            try:
                run = self._store.create_run(
                    client.id,
                    audit_type,
                    {"triggered_by": "manual_full_suite", "triggered_at": triggered_at},
                )
                job = self._enqueue(
                    run,
                    self._trigger_all_priority if priority is None else priority,
                    {"manual": True, "fullSuite": True},
                )
            except (PersistenceError, UnknownAuditTypeError):
                logger.exception(
                    "Failed to create audit job",
                    extra={"client_id": client.id, "audit_type": audit_type.value},
                )
                suite.results.append(entry)
                continue
            entry.update(runId=run.id, jobId=job.job_id, status="queued")
            suite.results.append(entry)

        logger.info(
            "Full audit suite triggered",
            extra={
                "client_id": client.id,
                "total_audits": len(suite.results),
                "success_count": suite.success_count,
                "failed_count": suite.failed_count,
            },
        )
        return suite

    def _enqueue(self, run: AuditRun, priority: int, metadata: Dict[str, Any]) -> QueuedJob:
        """Enqueue the job for ``run``; a run whose job cannot be stored is discarded."""
        try:
            return self._queue.enqueue(
                run.client_id,
                run.audit_type,
                run.id,
                priority=priority,
                metadata=metadata,
            )
        except PersistenceError:
            try:
                self._store.delete_pending_run(run.id)
            except PersistenceError:
                logger.exception("Unable to discard unqueued run", extra={"run_id": run.id})
            raise
