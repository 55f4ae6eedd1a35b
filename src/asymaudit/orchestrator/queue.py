"""Persistent job queue for audit runs.

Jobs are keyed by an idempotency key derived from (client, audit type, run),
so re-submitting the same run while its job is still waiting, delayed or
active is a no-op. Failed attempts are re-queued with exponential backoff
until the job's attempt budget is spent.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .exceptions import JobNotFoundError, PersistenceError
from .models import AuditType, JobState, QueuedJob, job_key


logger = logging.getLogger(__name__)

NON_TERMINAL_STATES = (JobState.WAITING, JobState.DELAYED, JobState.ACTIVE)

SCHEMA = """
CREATE TABLE IF NOT EXISTS audit_jobs (
    job_id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    audit_type TEXT NOT NULL,
    run_id TEXT NOT NULL,
    priority INTEGER NOT NULL,
    metadata TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'waiting',
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    failed_reason TEXT,
    scheduled_for TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    finished_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_audit_jobs_ready
    ON audit_jobs(status, scheduled_for, priority);
"""

_COLUMNS = (
    "job_id, client_id, audit_type, run_id, priority, metadata, status, attempts, "
    "max_attempts, progress, failed_reason, scheduled_for, created_at"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    # Fixed width so lexicographic order matches chronological order.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


class JobQueue:
    """SQLite-backed persistent queue for audit jobs.

    Args:
        path: Database file
        max_attempts: Attempt budget given to newly admitted jobs
        backoff_seconds: Base delay of the queue's own exponential backoff
        completed_retention: How long completed jobs are kept
        failed_retention: How long terminally failed jobs are kept
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        path: Path,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
        completed_retention: timedelta = timedelta(hours=24),
        failed_retention: timedelta = timedelta(days=7),
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.completed_retention = completed_retention
        self.failed_retention = failed_retention
        self._clock = clock
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to open job queue at {path}: {exc}") from exc
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def retry_delay(self, attempt: int) -> float:
        """Queue backoff after ``attempt`` (1-indexed) failed."""
        return self.backoff_seconds * (2 ** max(0, attempt - 1))

    def enqueue(
        self,
        client_id: str,
        audit_type: AuditType,
        run_id: str,
        *,
        priority: int,
        delay: Optional[float] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> QueuedJob:
        """Admit a job for a run.

        Returns the existing job untouched when a non-terminal job with the
        same idempotency key is already queued. A terminal job under the
        same key is replaced with a fresh attempt budget.
        """
        key = job_key(client_id, audit_type, run_id)
        now = self._clock()
        scheduled_for = now + timedelta(seconds=delay) if delay else now
        status = JobState.DELAYED if delay else JobState.WAITING
        try:
            with self._lock:
                with self._conn:
                    row = self._conn.execute(
                        f"SELECT {_COLUMNS} FROM audit_jobs WHERE job_id = ?", (key,)
                    ).fetchone()
                    if row is not None and row[6] in {s.value for s in NON_TERMINAL_STATES}:
                        logger.info(
                            "Job already queued",
                            extra={"job_id": key, "status": row[6]},
                        )
                        return self._row_to_job(row)
                    self._conn.execute(
                        """
                        INSERT OR REPLACE INTO audit_jobs(
                            job_id, client_id, audit_type, run_id, priority, metadata,
                            status, attempts, max_attempts, progress, failed_reason,
                            scheduled_for, created_at, updated_at, finished_at
                        )
                        VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, 0, NULL, ?, ?, ?, NULL)
                        """,
                        (
                            key,
                            client_id,
                            audit_type.value,
                            run_id,
                            int(priority),
                            json.dumps(metadata or {}),
                            status.value,
                            self.max_attempts,
                            _ts(scheduled_for),
                            _ts(now),
                            _ts(now),
                        ),
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to enqueue job {key}: {exc}") from exc

        logger.info(
            "Job enqueued",
            extra={
                "job_id": key,
                "run_id": run_id,
                "audit_type": audit_type.value,
                "priority": int(priority),
            },
        )
        return QueuedJob(
            job_id=key,
            client_id=client_id,
            audit_type=audit_type,
            run_id=run_id,
            priority=int(priority),
            metadata=dict(metadata or {}),
            status=status,
            max_attempts=self.max_attempts,
            scheduled_for=scheduled_for,
            created_at=now,
        )

    def claim_ready(self, limit: int = 1) -> List[QueuedJob]:
        """Atomically move up to ``limit`` ready jobs to ``active``.

        Ready jobs are waiting jobs and delayed jobs whose time has come,
        ordered by priority (highest first) then enqueue time.
        """
        if limit < 1:
            return []
        now = _ts(self._clock())
        try:
            with self._lock:
                with self._conn:
                    rows = self._conn.execute(
                        f"""
                        SELECT {_COLUMNS} FROM audit_jobs
                        WHERE status IN ('waiting', 'delayed') AND scheduled_for <= ?
                        ORDER BY priority DESC, created_at ASC
                        LIMIT ?
                        """,
                        (now, limit),
                    ).fetchall()
                    for row in rows:
                        self._conn.execute(
                            """
                            UPDATE audit_jobs
                            SET status = 'active', attempts = attempts + 1, updated_at = ?
                            WHERE job_id = ?
                            """,
                            (now, row[0]),
                        )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to claim jobs: {exc}") from exc

        jobs = []
        for row in rows:
            job = self._row_to_job(row)
            job.status = JobState.ACTIVE
            job.attempts += 1
            jobs.append(job)
        return jobs

    def mark_completed(self, job_id: str) -> None:
        now = _ts(self._clock())
        self._update(
            job_id,
            "UPDATE audit_jobs SET status = 'completed', progress = 100, failed_reason = NULL, "
            "updated_at = ?, finished_at = ? WHERE job_id = ?",
            (now, now, job_id),
        )

    def mark_failed(
        self,
        job_id: str,
        reason: str,
        *,
        retryable: bool = True,
    ) -> Tuple[JobState, Optional[float]]:
        """Record a failed attempt.

        Returns:
            The job's new state and, when re-queued, the backoff delay
        """
        job = self.get(job_id)
        now = self._clock()
        if retryable and job.attempts < job.max_attempts:
            delay = self.retry_delay(job.attempts)
            self._update(
                job_id,
                "UPDATE audit_jobs SET status = 'delayed', failed_reason = ?, "
                "scheduled_for = ?, updated_at = ? WHERE job_id = ?",
                (reason, _ts(now + timedelta(seconds=delay)), _ts(now), job_id),
            )
            return JobState.DELAYED, delay

        self._update(
            job_id,
            "UPDATE audit_jobs SET status = 'failed', failed_reason = ?, "
            "updated_at = ?, finished_at = ? WHERE job_id = ?",
            (reason, _ts(now), _ts(now), job_id),
        )
        return JobState.FAILED, None

    def release(self, job_id: str) -> None:
        """Return an active job to ``waiting`` after a forced stop."""
        now = _ts(self._clock())
        self._update(
            job_id,
            "UPDATE audit_jobs SET status = 'waiting', scheduled_for = ?, updated_at = ? "
            "WHERE job_id = ? AND status = 'active'",
            (now, now, job_id),
            require_match=False,
        )

    def update_progress(self, job_id: str, progress: int) -> None:
        progress = max(0, min(100, int(progress)))
        self._update(
            job_id,
            "UPDATE audit_jobs SET progress = ?, updated_at = ? WHERE job_id = ?",
            (progress, _ts(self._clock()), job_id),
        )

    def recover_stalled(self) -> int:
        """Move jobs left ``active`` by a previous process back to ``waiting``."""
        now = _ts(self._clock())
        try:
            with self._lock:
                with self._conn:
                    cur = self._conn.execute(
                        "UPDATE audit_jobs SET status = 'waiting', scheduled_for = ?, updated_at = ? "
                        "WHERE status = 'active'",
                        (now, now),
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to recover stalled jobs: {exc}") from exc
        if cur.rowcount:
            logger.warning("Recovered stalled jobs", extra={"count": cur.rowcount})
        return cur.rowcount

    def purge_expired(self) -> int:
        """Delete terminal jobs older than their retention window."""
        now = self._clock()
        completed_cutoff = _ts(now - self.completed_retention)
        failed_cutoff = _ts(now - self.failed_retention)
        try:
            with self._lock:
                with self._conn:
                    cur = self._conn.execute(
                        """
                        DELETE FROM audit_jobs
                        WHERE (status = 'completed' AND finished_at < ?)
                           OR (status = 'failed' AND finished_at < ?)
                        """,
                        (completed_cutoff, failed_cutoff),
                    )
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to purge jobs: {exc}") from exc
        if cur.rowcount:
            logger.info("Purged expired jobs", extra={"count": cur.rowcount})
        return cur.rowcount

    def counts(self) -> Dict[str, int]:
        """Job counts per state; delayed jobs whose time has come count as waiting."""
        now = _ts(self._clock())
        counts = {state.value: 0 for state in JobState}
        try:
            with self._lock:
                rows = self._conn.execute(
                    """
                    SELECT
                        CASE WHEN status = 'delayed' AND scheduled_for <= ? THEN 'waiting'
                             ELSE status END AS state,
                        COUNT(*)
                    FROM audit_jobs
                    GROUP BY state
                    """,
                    (now,),
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to count jobs: {exc}") from exc
        for state, count in rows:
            counts[state] = int(count)
        return counts

    def get(self, job_id: str) -> QueuedJob:
        job = self.find(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find(self, job_id: str) -> Optional[QueuedJob]:
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT {_COLUMNS} FROM audit_jobs WHERE job_id = ?", (job_id,)
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to read job {job_id}: {exc}") from exc
        return self._row_to_job(row) if row else None

    def get_job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Point lookup returning ``{status, progress, data, error}`` or None."""
        job = self.find(job_id)
        if job is None:
            return None
        return {
            "status": job.status.value,
            "progress": job.progress,
            "attempts": job.attempts,
            "data": {
                "clientId": job.client_id,
                "auditType": job.audit_type.value,
                "runId": job.run_id,
                "priority": job.priority,
                "metadata": job.metadata,
            },
            "error": job.failed_reason,
        }

    def _update(
        self,
        job_id: str,
        sql: str,
        params: Tuple[Any, ...],
        *,
        require_match: bool = True,
    ) -> None:
        try:
            with self._lock:
                with self._conn:
                    cur = self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to update job {job_id}: {exc}") from exc
        if cur.rowcount == 0 and require_match:
            raise JobNotFoundError(job_id)

    @staticmethod
    def _row_to_job(row: Tuple[Any, ...]) -> QueuedJob:
        (
            job_id,
            client_id,
            audit_type,
            run_id,
            priority,
            metadata,
            status,
            attempts,
            max_attempts,
            progress,
            failed_reason,
            scheduled_for,
            created_at,
        ) = row
        return QueuedJob(
            job_id=job_id,
            client_id=client_id,
            audit_type=AuditType(audit_type),
            run_id=run_id,
            priority=int(priority),
            metadata=json.loads(metadata),
            status=JobState(status),
            attempts=int(attempts),
            max_attempts=int(max_attempts),
            progress=int(progress),
            failed_reason=failed_reason,
            scheduled_for=datetime.fromisoformat(scheduled_for),
            created_at=datetime.fromisoformat(created_at),
        )
