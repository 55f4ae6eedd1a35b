"""Simple telemetry recorder for audit jobs.

Appends one JSON line per job outcome and rewrites an aggregated summary that
operators can inspect locally or through the CLI.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass
class TelemetryRecorder:
    output_dir: Path
    metrics_file: str = "telemetry.log"
    summary_file: str = "telemetry_summary.json"
    _stats: Dict[str, Dict[str, float]] = field(default_factory=dict)
    _by_audit_type: Dict[str, Dict[str, int]] = field(default_factory=dict)
    _retry_stats: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        job_id: str,
        duration: float,
        status: str,
        *,
        audit_type: Optional[str] = None,
        attempt: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry: Dict[str, Any] = {
            "job_id": job_id,
            "duration": duration,
            "status": status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if audit_type is not None:
            entry["audit_type"] = audit_type
        if attempt is not None:
            entry["attempt"] = attempt
        if metadata:
            entry["metadata"] = dict(metadata)

        status_stats = self._stats.setdefault(status, {"count": 0, "duration": 0.0})
        status_stats["count"] += 1
        status_stats["duration"] += duration

        if audit_type is not None:
            type_stats = self._by_audit_type.setdefault(audit_type, {})
            type_stats[status] = type_stats.get(status, 0) + 1

        if status == "retrying" and audit_type is not None:
            retry = self._retry_stats.setdefault(
                audit_type, {"total_retries": 0, "total_delay_seconds": 0.0}
            )
            retry["total_retries"] += 1
            retry["total_delay_seconds"] += float((metadata or {}).get("delay_seconds", 0.0))

        path = self.output_dir / self.metrics_file
        with path.open("a", encoding="utf-8") as fp:
            fp.write(json.dumps(entry, default=str) + "\n")

        summary_path = self.output_dir / self.summary_file
        summary_path.write_text(json.dumps(self.summary(), indent=2))

    def summary(self) -> Dict[str, Any]:
        statuses: Dict[str, Any] = {}
        total_jobs = 0
        total_duration = 0.0
        for status, stats in self._stats.items():
            count = int(stats.get("count", 0))
            duration = float(stats.get("duration", 0.0))
            statuses[status] = {
                "count": count,
                "avg_duration": duration / count if count else 0.0,
            }
            total_jobs += count
            total_duration += duration

        summary: Dict[str, Any] = {
            "overall": {
                "jobs": total_jobs,
                "avg_duration": total_duration / total_jobs if total_jobs else 0.0,
            },
            "statuses": statuses,
            "audit_types": {name: dict(counts) for name, counts in self._by_audit_type.items()},
        }
        if self._retry_stats:
            summary["retries"] = {
                name: {
                    "total_retries": int(stats["total_retries"]),
                    "avg_delay_seconds": (
                        stats["total_delay_seconds"] / stats["total_retries"]
                        if stats["total_retries"]
                        else 0.0
                    ),
                }
                for name, stats in self._retry_stats.items()
            }
        return summary
