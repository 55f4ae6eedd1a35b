"""Bounded worker pool that executes queued audit jobs.

Each job execution produces a :class:`JobOutcome` that is sent over an
asyncio queue to a single :class:`OutcomeDispatcher`, which owns logging,
telemetry and failure notifications for finished jobs.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Optional, Set

from ..notifications.service import NotificationService
from .exceptions import NonRetryableError, PersistenceError
from .metrics import TelemetryRecorder
from .models import JobOutcome, JobState, OutcomeStatus, QueuedJob
from .pipeline import AuditPipeline
from .queue import JobQueue
from .rate_limit import JobRateLimiter


logger = logging.getLogger(__name__)


class OutcomeDispatcher:
    """Consumes job outcomes: logs, telemetry and terminal-failure alerts."""

    def __init__(
        self,
        notifications: Optional[NotificationService] = None,
        telemetry: Optional[TelemetryRecorder] = None,
    ) -> None:
        self._notifications = notifications
        self._telemetry = telemetry

    async def dispatch(self, outcome: JobOutcome) -> None:
        job = outcome.job
        context = {
            "job_id": job.job_id,
            "run_id": job.run_id,
            "audit_type": job.audit_type.value,
            "attempt": job.attempts,
            "duration": round(outcome.duration, 3),
        }
        if outcome.status is OutcomeStatus.COMPLETED:
            logger.info("Job completed", extra=context)
        elif outcome.status is OutcomeStatus.RETRYING:
            logger.warning(
                "Job failed, retry scheduled",
                extra={**context, "delay_seconds": outcome.retry_delay, "error": outcome.error_message},
            )
        else:
            logger.error("Job failed permanently", extra={**context, "error": outcome.error_message})

        if self._telemetry is not None:
            metadata = {"client_id": job.client_id}
            if outcome.retry_delay is not None:
                metadata["delay_seconds"] = outcome.retry_delay
            if outcome.error_message:
                metadata["error"] = outcome.error_message
            self._telemetry.record(
                job.job_id,
                outcome.duration,
                outcome.status.value,
                audit_type=job.audit_type.value,
                attempt=job.attempts,
                metadata=metadata,
            )

        if (
            outcome.status is OutcomeStatus.FAILED
            and outcome.error is not None
            and self._notifications is not None
        ):
            await self._notifications.notify_audit_failure(
                job.client_id, job.audit_type.value, job.run_id, outcome.error
            )

    async def run(self, outcomes: "asyncio.Queue[Optional[JobOutcome]]") -> None:
        """Dispatch outcomes until a ``None`` sentinel arrives."""
        while True:
            outcome = await outcomes.get()
            try:
                if outcome is None:
                    return
                await self.dispatch(outcome)
            except Exception:  # noqa: BLE001 - one bad outcome must not stop dispatching
                logger.exception("Outcome dispatch failed")
            finally:
                outcomes.task_done()


class AuditWorker:
    """Claims ready jobs and runs the pipeline with bounded concurrency.

    Args:
        queue: Durable job queue
        pipeline: Pipeline executed once per job attempt
        dispatcher: Consumer of job outcomes
        concurrency: Maximum jobs executing at once
        rate_limiter: Cap on job starts per rolling window
        poll_interval: Sleep between polls when nothing is ready
        purge_interval: Seconds between retention purges
    """

    def __init__(
        self,
        queue: JobQueue,
        pipeline: AuditPipeline,
        dispatcher: OutcomeDispatcher,
        *,
        concurrency: int = 5,
        rate_limiter: Optional[JobRateLimiter] = None,
        poll_interval: float = 1.0,
        purge_interval: float = 3600.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._queue = queue
        self._pipeline = pipeline
        self._dispatcher = dispatcher
        self.concurrency = concurrency
        self._rate_limiter = rate_limiter or JobRateLimiter()
        self._poll_interval = poll_interval
        self._purge_interval = purge_interval
        self._semaphore = asyncio.Semaphore(concurrency)
        self._outcomes: "asyncio.Queue[Optional[JobOutcome]]" = asyncio.Queue()
        self._active: Set[asyncio.Task] = set()
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._purge_task: Optional[asyncio.Task] = None
        self._dispatch_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        if self._running:
            return
        self._queue.recover_stalled()
        self._queue.purge_expired()
        self._running = True
        self._dispatch_task = asyncio.create_task(self._dispatcher.run(self._outcomes))
        self._loop_task = asyncio.create_task(self._worker_loop())
        self._purge_task = asyncio.create_task(self._purge_loop())
        logger.info(
            "Audit worker started",
            extra={
                "concurrency": self.concurrency,
                "rate_limit": self._rate_limiter.max_starts,
                "rate_window_seconds": self._rate_limiter.window_seconds,
            },
        )

    async def shutdown(self, grace_period: float = 30.0) -> None:
        """Stop claiming, give in-flight jobs ``grace_period`` seconds, then cancel."""
        if not self._running:
            return
        self._running = False
        for task in (self._loop_task, self._purge_task):
            if task is not None:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._purge_task = None

        if self._active:
            logger.info(
                "Waiting for in-flight jobs",
                extra={"active_jobs": len(self._active), "grace_period": grace_period},
            )
            _, pending = await asyncio.wait(set(self._active), timeout=grace_period)
            if pending:
                logger.warning("Force-stopping in-flight jobs", extra={"count": len(pending)})
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self._outcomes.put(None)
        if self._dispatch_task is not None:
            await self._dispatch_task
            self._dispatch_task = None
        logger.info("Audit worker stopped")

    async def run_once(self) -> Optional[JobOutcome]:
        """Claim and execute a single ready job inline."""
        jobs = self._queue.claim_ready(1)
        if not jobs:
            return None
        return await self._execute(jobs[0])

    async def _worker_loop(self) -> None:
        while self._running:
            await self._semaphore.acquire()
            wait = self._rate_limiter.time_until_available()
            if wait > 0:
                self._semaphore.release()
                await asyncio.sleep(min(wait, self._poll_interval))
                continue
            try:
                jobs = self._queue.claim_ready(1)
            except PersistenceError:
                self._semaphore.release()
                logger.exception("Unable to claim jobs")
                await asyncio.sleep(self._poll_interval)
                continue
            if not jobs:
                self._semaphore.release()
                await asyncio.sleep(self._poll_interval)
                continue
            self._rate_limiter.try_acquire()
            task = asyncio.create_task(self._run_job(jobs[0]))
            self._active.add(task)
            task.add_done_callback(self._active.discard)

    async def _run_job(self, job: QueuedJob) -> None:
        try:
            await self._execute(job)
        finally:
            self._semaphore.release()

    async def _execute(self, job: QueuedJob) -> Optional[JobOutcome]:
        started = time.monotonic()
        try:
            await self._pipeline.execute(
                job, progress=lambda value: self._queue.update_progress(job.job_id, value)
            )
        except asyncio.CancelledError:
            self._queue.release(job.job_id)
            logger.warning("Job cancelled and released", extra={"job_id": job.job_id})
            raise
        except Exception as exc:
            return await self._handle_failure(job, exc, time.monotonic() - started)

        outcome = JobOutcome(
            job=job,
            status=OutcomeStatus.COMPLETED,
            duration=time.monotonic() - started,
        )
        try:
            self._queue.mark_completed(job.job_id)
        except PersistenceError:
            logger.exception("Unable to mark job completed", extra={"job_id": job.job_id})
            return None
        await self._emit(outcome)
        return outcome

    async def _handle_failure(
        self,
        job: QueuedJob,
        exc: Exception,
        duration: float,
    ) -> Optional[JobOutcome]:
        reason = str(exc) or type(exc).__name__
        try:
            state, delay = self._queue.mark_failed(
                job.job_id,
                reason,
                retryable=not isinstance(exc, NonRetryableError),
            )
        except PersistenceError:
            logger.exception("Unable to record job failure", extra={"job_id": job.job_id})
            return None
        outcome = JobOutcome(
            job=job,
            status=OutcomeStatus.RETRYING if state is JobState.DELAYED else OutcomeStatus.FAILED,
            duration=duration,
            error=exc,
            retry_delay=delay,
        )
        await self._emit(outcome)
        return outcome

    async def _emit(self, outcome: JobOutcome) -> None:
        if self._dispatch_task is None:
            await self._dispatcher.dispatch(outcome)
        else:
            await self._outcomes.put(outcome)

    async def _purge_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._purge_interval)
            try:
                self._queue.purge_expired()
            except PersistenceError:
                logger.exception("Retention purge failed")
