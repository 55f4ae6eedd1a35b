"""SQLite persistence for clients, schedules, audit runs, snapshots and diffs."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from ..orchestrator.exceptions import PersistenceError, RunNotFoundError
from ..orchestrator.models import AuditRun, AuditSchedule, AuditType, Client, RunStatus
from ..orchestrator.state_machine import RunStateMachine


logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    slug TEXT,
    website_url TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS client_integrations (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL REFERENCES clients(id),
    platform TEXT NOT NULL,
    credentials TEXT NOT NULL DEFAULT '{}',
    config TEXT NOT NULL DEFAULT '{}',
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_schedules (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    audit_type TEXT NOT NULL,
    cron_expression TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    last_run_at TEXT,
    next_run_at TEXT,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS audit_runs (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    audit_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT,
    raw_data TEXT,
    ai_analysis TEXT,
    overall_score REAL,
    scores TEXT,
    issues TEXT,
    recommendations TEXT,
    error_message TEXT,
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_audit_runs_latest
    ON audit_runs(client_id, audit_type, status, completed_at);
CREATE TABLE IF NOT EXISTS audit_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    audit_run_id TEXT NOT NULL,
    client_id TEXT NOT NULL,
    audit_type TEXT NOT NULL,
    metric_key TEXT NOT NULL,
    metric_value REAL,
    captured_at TEXT NOT NULL,
    UNIQUE(audit_run_id, metric_key)
);
CREATE TABLE IF NOT EXISTS audit_diffs (
    id TEXT PRIMARY KEY,
    client_id TEXT NOT NULL,
    audit_type TEXT NOT NULL,
    current_run_id TEXT NOT NULL UNIQUE,
    previous_run_id TEXT NOT NULL,
    changes TEXT NOT NULL,
    severity TEXT NOT NULL,
    summary TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_RUN_COLUMNS = (
    "id, client_id, audit_type, status, created_at, started_at, completed_at, raw_data, "
    "ai_analysis, overall_score, scores, issues, recommendations, error_message, metadata"
)
_SCHEDULE_COLUMNS = (
    "id, client_id, audit_type, cron_expression, is_active, last_run_at, next_run_at, created_at"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    # Fixed width so ORDER BY on the text column is chronological.
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _loads(value: Optional[str]) -> Any:
    return json.loads(value) if value is not None else None


class AuditStore:
    """Single shared store for the worker.

    Every sqlite failure surfaces as :class:`PersistenceError`. Run status
    changes are validated against the run state machine before they are
    written.
    """

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], datetime] = _utcnow,
        state_machine: Optional[RunStateMachine] = None,
    ) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._state_machine = state_machine or RunStateMachine()
        try:
            self._conn = sqlite3.connect(self._path, check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to open audit store at {path}: {exc}") from exc
        self._lock = threading.Lock()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        try:
            with self._lock:
                with self._conn:
                    yield self._conn
        except sqlite3.Error as exc:
            raise PersistenceError(f"Unable to {action}: {exc}") from exc

    # Clients -----------------------------------------------------------------

    def add_client(
        self,
        name: str,
        *,
        website_url: Optional[str] = None,
        slug: Optional[str] = None,
        is_active: bool = True,
        client_id: Optional[str] = None,
    ) -> Client:
        client = Client(
            id=client_id or str(uuid.uuid4()),
            name=name,
            website_url=website_url,
            slug=slug,
            is_active=is_active,
        )
        with self._transaction("add client") as conn:
            conn.execute(
                "INSERT INTO clients(id, name, slug, website_url, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (client.id, name, slug, website_url, int(is_active), _iso(self._clock())),
            )
        return client

    def get_client(self, client_id: str) -> Optional[Client]:
        with self._transaction("read client") as conn:
            row = conn.execute(
                "SELECT id, name, website_url, slug, is_active FROM clients WHERE id = ?",
                (client_id,),
            ).fetchone()
        if row is None:
            return None
        return Client(id=row[0], name=row[1], website_url=row[2], slug=row[3], is_active=bool(row[4]))

    def add_integration(
        self,
        client_id: str,
        platform: str,
        *,
        credentials: Optional[Dict[str, Any]] = None,
        config: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> str:
        integration_id = str(uuid.uuid4())
        with self._transaction("add integration") as conn:
            conn.execute(
                "INSERT INTO client_integrations(id, client_id, platform, credentials, config, "
                "is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    integration_id,
                    client_id,
                    platform,
                    json.dumps(credentials or {}),
                    json.dumps(config or {}),
                    int(is_active),
                    _iso(self._clock()),
                ),
            )
        return integration_id

    def active_integrations(self, client_id: str) -> List[Dict[str, Any]]:
        with self._transaction("read integrations") as conn:
            rows = conn.execute(
                "SELECT id, platform, credentials, config FROM client_integrations "
                "WHERE client_id = ? AND is_active = 1 ORDER BY created_at",
                (client_id,),
            ).fetchall()
        return [
            {
                "id": row[0],
                "client_id": client_id,
                "platform": row[1],
                "credentials": _loads(row[2]) or {},
                "config": _loads(row[3]) or {},
            }
            for row in rows
        ]

    # Schedules ---------------------------------------------------------------

    def add_schedule(
        self,
        client_id: str,
        audit_type: str,
        cron_expression: str,
        *,
        is_active: bool = True,
        schedule_id: Optional[str] = None,
    ) -> AuditSchedule:
        schedule = AuditSchedule(
            id=schedule_id or str(uuid.uuid4()),
            client_id=client_id,
            audit_type=audit_type,
            cron_expression=cron_expression,
            is_active=is_active,
            created_at=self._clock(),
        )
        with self._transaction("add schedule") as conn:
            conn.execute(
                f"INSERT INTO audit_schedules({_SCHEDULE_COLUMNS}) VALUES (?, ?, ?, ?, ?, NULL, NULL, ?)",
                (
                    schedule.id,
                    client_id,
                    audit_type,
                    cron_expression,
                    int(is_active),
                    _iso(schedule.created_at),
                ),
            )
        return schedule

    def list_schedules(self, *, active_only: bool = False) -> List[AuditSchedule]:
        sql = f"SELECT {_SCHEDULE_COLUMNS} FROM audit_schedules"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY created_at"
        with self._transaction("read schedules") as conn:
            rows = conn.execute(sql).fetchall()
        return [self._row_to_schedule(row) for row in rows]

    def get_schedule(self, schedule_id: str) -> Optional[AuditSchedule]:
        with self._transaction("read schedule") as conn:
            row = conn.execute(
                f"SELECT {_SCHEDULE_COLUMNS} FROM audit_schedules WHERE id = ?",
                (schedule_id,),
            ).fetchone()
        return self._row_to_schedule(row) if row else None

    def set_schedule_active(self, schedule_id: str, is_active: bool) -> None:
        with self._transaction("update schedule") as conn:
            conn.execute(
                "UPDATE audit_schedules SET is_active = ? WHERE id = ?",
                (int(is_active), schedule_id),
            )

    def update_schedule_cron(self, schedule_id: str, cron_expression: str) -> None:
        with self._transaction("update schedule") as conn:
            conn.execute(
                "UPDATE audit_schedules SET cron_expression = ? WHERE id = ?",
                (cron_expression, schedule_id),
            )

    def record_schedule_run(
        self,
        schedule_id: str,
        last_run_at: datetime,
        next_run_at: Optional[datetime] = None,
    ) -> None:
        with self._transaction("update schedule run") as conn:
            conn.execute(
                "UPDATE audit_schedules SET last_run_at = ?, next_run_at = ? WHERE id = ?",
                (_iso(last_run_at), _iso(next_run_at), schedule_id),
            )

    # Runs --------------------------------------------------------------------

    def create_run(
        self,
        client_id: str,
        audit_type: AuditType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> AuditRun:
        run = AuditRun(
            id=str(uuid.uuid4()),
            client_id=client_id,
            audit_type=audit_type,
            status=RunStatus.PENDING,
            created_at=self._clock(),
            metadata=dict(metadata or {}),
        )
        with self._transaction("create run") as conn:
            conn.execute(
                "INSERT INTO audit_runs(id, client_id, audit_type, status, created_at, metadata) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    client_id,
                    audit_type.value,
                    run.status.value,
                    _iso(run.created_at),
                    json.dumps(run.metadata),
                ),
            )
        return run

    def delete_pending_run(self, run_id: str) -> bool:
        """Remove a run that never left ``pending``; other runs are kept."""
        with self._transaction("delete run") as conn:
            cur = conn.execute(
                "DELETE FROM audit_runs WHERE id = ? AND status = 'pending'", (run_id,)
            )
        return cur.rowcount > 0

    def get_run(self, run_id: str) -> Optional[AuditRun]:
        with self._transaction("read run") as conn:
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM audit_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return self._row_to_run(row) if row else None

    def require_run(self, run_id: str) -> AuditRun:
        run = self.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    def transition_run(
        self,
        run_id: str,
        status: RunStatus,
        *,
        error_message: Optional[str] = None,
    ) -> AuditRun:
        """Move a run to ``status`` after validating the transition.

        ``started_at`` is stamped when collection starts; ``completed_at``
        when the run reaches a terminal status.
        """
        now = _iso(self._clock())
        with self._transaction("update run status") as conn:
            row = conn.execute(
                f"SELECT {_RUN_COLUMNS} FROM audit_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if row is None:
                raise RunNotFoundError(run_id)
            run = self._row_to_run(row)
            self._state_machine.validate_transition(run_id, run.status, status)
            conn.execute(
                """
                UPDATE audit_runs
                SET status = ?,
                    started_at = CASE WHEN ? = 'collecting' THEN COALESCE(started_at, ?) ELSE started_at END,
                    completed_at = CASE WHEN ? IN ('complete', 'failed') THEN ? ELSE completed_at END,
                    error_message = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    status.value,
                    now,
                    status.value,
                    now,
                    error_message if status is RunStatus.FAILED else None,
                    run_id,
                ),
            )
        return self.require_run(run_id)

    def store_raw_data(self, run_id: str, raw_data: Dict[str, Any]) -> None:
        """Persist collected raw data; a run's raw data is written only once."""
        with self._transaction("store raw data") as conn:
            self._write_raw_data(conn, run_id, raw_data)

    def store_collection(
        self,
        run: AuditRun,
        raw_data: Dict[str, Any],
        metrics: Dict[str, float],
    ) -> int:
        """Persist raw data and its metric snapshots in one transaction.

        Returns:
            Number of snapshot rows inserted
        """
        captured = _iso(self._clock())
        with self._transaction("store collection") as conn:
            self._write_raw_data(conn, run.id, raw_data)
            return self._write_snapshots(conn, run, metrics, captured)

    @staticmethod
    def _write_raw_data(conn: sqlite3.Connection, run_id: str, raw_data: Dict[str, Any]) -> None:
        cur = conn.execute(
            "UPDATE audit_runs SET raw_data = ? WHERE id = ? AND raw_data IS NULL",
            (json.dumps(raw_data, default=str), run_id),
        )
        if cur.rowcount == 0:
            exists = conn.execute("SELECT 1 FROM audit_runs WHERE id = ?", (run_id,)).fetchone()
            if exists is None:
                raise RunNotFoundError(run_id)
            raise ValueError(f"Raw data already stored for run {run_id}")

    def complete_run(self, run_id: str, analysis: Dict[str, Any]) -> AuditRun:
        """Store the analysis and mark the run complete in one transaction."""
        now = _iso(self._clock())
        with self._transaction("complete run") as conn:
            row = conn.execute("SELECT status FROM audit_runs WHERE id = ?", (run_id,)).fetchone()
            if row is None:
                raise RunNotFoundError(run_id)
            self._state_machine.validate_transition(run_id, RunStatus(row[0]), RunStatus.COMPLETE)
            conn.execute(
                """
                UPDATE audit_runs
                SET status = 'complete', completed_at = ?, ai_analysis = ?, overall_score = ?,
                    scores = ?, issues = ?, recommendations = ?, error_message = NULL
                WHERE id = ?
                """,
                (
                    now,
                    json.dumps(analysis),
                    analysis.get("overallScore"),
                    json.dumps(analysis.get("scores")),
                    json.dumps(analysis.get("issues")),
                    json.dumps(analysis.get("recommendations")),
                    run_id,
                ),
            )
        return self.require_run(run_id)

    def latest_complete_run(
        self,
        client_id: str,
        audit_type: AuditType,
        *,
        exclude_run_id: Optional[str] = None,
    ) -> Optional[AuditRun]:
        with self._transaction("read previous run") as conn:
            row = conn.execute(
                f"""
                SELECT {_RUN_COLUMNS} FROM audit_runs
                WHERE client_id = ? AND audit_type = ? AND status = 'complete' AND id != ?
                ORDER BY completed_at DESC
                LIMIT 1
                """,
                (client_id, audit_type.value, exclude_run_id or ""),
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, client_id: Optional[str] = None, limit: int = 50) -> List[AuditRun]:
        sql = f"SELECT {_RUN_COLUMNS} FROM audit_runs"
        params: Tuple[Any, ...] = ()
        if client_id:
            sql += " WHERE client_id = ?"
            params = (client_id,)
        sql += " ORDER BY created_at DESC LIMIT ?"
        with self._transaction("list runs") as conn:
            rows = conn.execute(sql, params + (limit,)).fetchall()
        return [self._row_to_run(row) for row in rows]

    # Snapshots and diffs -----------------------------------------------------

    def insert_snapshots(
        self,
        run: AuditRun,
        metrics: Dict[str, float],
        captured_at: Optional[datetime] = None,
    ) -> int:
        """Insert one snapshot per metric; existing (run, metric) rows are kept."""
        if not metrics:
            return 0
        captured = _iso(captured_at or self._clock())
        with self._transaction("insert snapshots") as conn:
            return self._write_snapshots(conn, run, metrics, captured)

    @staticmethod
    def _write_snapshots(
        conn: sqlite3.Connection,
        run: AuditRun,
        metrics: Dict[str, float],
        captured: Optional[str],
    ) -> int:
        if not metrics:
            return 0
        cur = conn.executemany(
            "INSERT OR IGNORE INTO audit_snapshots(audit_run_id, client_id, audit_type, "
            "metric_key, metric_value, captured_at) VALUES (?, ?, ?, ?, ?, ?)",
            [
                (run.id, run.client_id, run.audit_type.value, key, value, captured)
                for key, value in metrics.items()
            ],
        )
        return cur.rowcount

    def get_snapshots(self, run_id: str) -> Dict[str, Optional[float]]:
        with self._transaction("read snapshots") as conn:
            rows = conn.execute(
                "SELECT metric_key, metric_value FROM audit_snapshots WHERE audit_run_id = ? "
                "ORDER BY metric_key",
                (run_id,),
            ).fetchall()
        return {key: value for key, value in rows}

    def insert_diff(
        self,
        *,
        client_id: str,
        audit_type: AuditType,
        current_run_id: str,
        previous_run_id: str,
        changes: Dict[str, Any],
        severity: str,
        summary: str,
    ) -> Optional[str]:
        """Insert the diff for a run; returns None if one already exists."""
        diff_id = str(uuid.uuid4())
        try:
            with self._transaction("insert diff") as conn:
                conn.execute(
                    "INSERT INTO audit_diffs(id, client_id, audit_type, current_run_id, "
                    "previous_run_id, changes, severity, summary, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        diff_id,
                        client_id,
                        audit_type.value,
                        current_run_id,
                        previous_run_id,
                        json.dumps(changes, default=str),
                        severity,
                        summary,
                        _iso(self._clock()),
                    ),
                )
        except PersistenceError as exc:
            if isinstance(exc.__cause__, sqlite3.IntegrityError):
                logger.info("Diff already recorded", extra={"current_run_id": current_run_id})
                return None
            raise
        return diff_id

    def get_diff(self, current_run_id: str) -> Optional[Dict[str, Any]]:
        with self._transaction("read diff") as conn:
            row = conn.execute(
                "SELECT id, client_id, audit_type, current_run_id, previous_run_id, changes, "
                "severity, summary, created_at FROM audit_diffs WHERE current_run_id = ?",
                (current_run_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "id": row[0],
            "client_id": row[1],
            "audit_type": row[2],
            "current_run_id": row[3],
            "previous_run_id": row[4],
            "changes": _loads(row[5]),
            "severity": row[6],
            "summary": row[7],
            "created_at": row[8],
        }

    @staticmethod
    def _row_to_run(row: Tuple[Any, ...]) -> AuditRun:
        return AuditRun(
            id=row[0],
            client_id=row[1],
            audit_type=AuditType(row[2]),
            status=RunStatus(row[3]),
            created_at=_parse_dt(row[4]),
            started_at=_parse_dt(row[5]),
            completed_at=_parse_dt(row[6]),
            raw_data=_loads(row[7]),
            ai_analysis=_loads(row[8]),
            overall_score=row[9],
            scores=_loads(row[10]),
            issues=_loads(row[11]),
            recommendations=_loads(row[12]),
            error_message=row[13],
            metadata=_loads(row[14]) or {},
        )

    @staticmethod
    def _row_to_schedule(row: Tuple[Any, ...]) -> AuditSchedule:
        return AuditSchedule(
            id=row[0],
            client_id=row[1],
            audit_type=row[2],
            cron_expression=row[3],
            is_active=bool(row[4]),
            last_run_at=_parse_dt(row[5]),
            next_run_at=_parse_dt(row[6]),
            created_at=_parse_dt(row[7]),
        )
