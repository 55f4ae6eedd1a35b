import json

from asymaudit.orchestrator.metrics import TelemetryRecorder


def test_records_append_lines_and_rewrite_summary(tmp_path):
    recorder = TelemetryRecorder(tmp_path / "telemetry")

    recorder.record("job-1", 2.0, "completed", audit_type="seo_technical", attempt=1)
    recorder.record("job-2", 4.0, "completed", audit_type="seo_technical", attempt=1)
    recorder.record(
        "job-3",
        1.0,
        "retrying",
        audit_type="seo_technical",
        attempt=1,
        metadata={"delay_seconds": 5.0, "error": "timeout"},
    )

    lines = (tmp_path / "telemetry" / "telemetry.log").read_text().splitlines()
    assert len(lines) == 3
    assert json.loads(lines[2])["metadata"] == {"delay_seconds": 5.0, "error": "timeout"}

    summary = json.loads((tmp_path / "telemetry" / "telemetry_summary.json").read_text())
    assert summary["overall"]["jobs"] == 3
    assert summary["statuses"]["completed"] == {"count": 2, "avg_duration": 3.0}
    assert summary["audit_types"]["seo_technical"] == {"completed": 2, "retrying": 1}
    assert summary["retries"]["seo_technical"] == {"total_retries": 1, "avg_delay_seconds": 5.0}


def test_empty_summary_has_no_retry_section(tmp_path):
    recorder = TelemetryRecorder(tmp_path)

    assert recorder.summary() == {
        "overall": {"jobs": 0, "avg_duration": 0.0},
        "statuses": {},
        "audit_types": {},
    }
