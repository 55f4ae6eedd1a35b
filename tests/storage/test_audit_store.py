"""Tests for the SQLite audit store."""

import sqlite3

import pytest

from conftest import analysis_payload
from asymaudit.orchestrator.exceptions import (
    InvalidStateTransitionError,
    PersistenceError,
    RunNotFoundError,
)
from asymaudit.orchestrator.models import AuditType, RunStatus
from asymaudit.storage.store import AuditStore


def run_to_analyzing(store, client, raw_data=None):
    run = store.create_run(client.id, AuditType.SEO_TECHNICAL, {"triggered_by": "manual"})
    store.transition_run(run.id, RunStatus.COLLECTING)
    store.store_raw_data(run.id, raw_data or {"a": 1})
    return store.transition_run(run.id, RunStatus.ANALYZING)


def test_run_lifecycle_stamps_timestamps(store, client, clock):
    run = store.create_run(client.id, AuditType.SEO_TECHNICAL, {"triggered_by": "manual"})
    assert run.status is RunStatus.PENDING

    clock.advance(5)
    collecting = store.transition_run(run.id, RunStatus.COLLECTING)
    assert collecting.started_at == clock.now
    assert collecting.completed_at is None

    store.store_raw_data(run.id, {"a": 1})
    store.transition_run(run.id, RunStatus.ANALYZING)
    clock.advance(5)
    complete = store.complete_run(run.id, analysis_payload(88))

    assert complete.status is RunStatus.COMPLETE
    assert complete.completed_at == clock.now
    assert complete.overall_score == 88
    assert complete.scores == {"technical": 88}
    assert complete.issues[0]["severity"] == "warning"
    assert complete.recommendations[0]["priority"] == "medium"
    assert complete.ai_analysis["summary"] == "Site is in reasonable shape."
    assert complete.metadata == {"triggered_by": "manual"}


def test_invalid_transition_is_rejected(store, client):
    run = store.create_run(client.id, AuditType.SEO_TECHNICAL)

    with pytest.raises(InvalidStateTransitionError):
        store.transition_run(run.id, RunStatus.ANALYZING)
    with pytest.raises(InvalidStateTransitionError):
        store.complete_run(run.id, analysis_payload())

    assert store.get_run(run.id).status is RunStatus.PENDING


def test_failed_run_records_error(store, client):
    run = store.create_run(client.id, AuditType.SEO_TECHNICAL)
    store.transition_run(run.id, RunStatus.COLLECTING)

    failed = store.transition_run(run.id, RunStatus.FAILED, error_message="site down")

    assert failed.error_message == "site down"
    assert failed.completed_at is not None


def test_raw_data_is_written_once(store, client):
    run = run_to_analyzing(store, client, {"a": 1})

    with pytest.raises(ValueError):
        store.store_raw_data(run.id, {"a": 2})
    assert store.get_run(run.id).raw_data == {"a": 1}


def test_collection_stores_raw_data_and_snapshots_together(store, client):
    run = store.create_run(client.id, AuditType.SEO_TECHNICAL)
    store.transition_run(run.id, RunStatus.COLLECTING)

    assert store.store_collection(run, {"a": 1}, {"score": 80.0, "pages": 12.0}) == 2

    assert store.get_run(run.id).raw_data == {"a": 1}
    assert store.get_snapshots(run.id) == {"pages": 12.0, "score": 80.0}
    with pytest.raises(ValueError):
        store.store_collection(run, {"a": 2}, {"extra": 1.0})
    assert store.get_snapshots(run.id) == {"pages": 12.0, "score": 80.0}


def test_unknown_run(store):
    assert store.get_run("missing") is None
    with pytest.raises(RunNotFoundError):
        store.require_run("missing")
    with pytest.raises(RunNotFoundError):
        store.store_raw_data("missing", {})


def test_latest_complete_run_excludes_current_and_incomplete(store, client, clock):
    first = run_to_analyzing(store, client)
    store.complete_run(first.id, analysis_payload(70))
    clock.advance(60)
    second = run_to_analyzing(store, client)
    store.complete_run(second.id, analysis_payload(75))
    clock.advance(60)
    third = run_to_analyzing(store, client)

    latest = store.latest_complete_run(client.id, AuditType.SEO_TECHNICAL, exclude_run_id=third.id)
    assert latest.id == second.id

    before_second = store.latest_complete_run(
        client.id, AuditType.SEO_TECHNICAL, exclude_run_id=second.id
    )
    assert before_second.id == first.id
    assert store.latest_complete_run(client.id, AuditType.GA4_CONFIG) is None


def test_snapshots_are_unique_per_run_and_metric(store, client):
    run = run_to_analyzing(store, client)

    assert store.insert_snapshots(run, {"score": 80.0, "pages": 12.0}) == 2
    assert store.insert_snapshots(run, {"score": 10.0}) == 0
    assert store.insert_snapshots(run, {}) == 0

    assert store.get_snapshots(run.id) == {"pages": 12.0, "score": 80.0}


def test_one_diff_per_run(store, client):
    previous = run_to_analyzing(store, client)
    current = run_to_analyzing(store, client)
    kwargs = dict(
        client_id=client.id,
        audit_type=AuditType.SEO_TECHNICAL,
        current_run_id=current.id,
        previous_run_id=previous.id,
        changes={"added": [], "removed": [], "changed": []},
        severity="info",
        summary="No changes detected since last audit",
    )

    assert store.insert_diff(**kwargs) is not None
    assert store.insert_diff(**kwargs) is None

    diff = store.get_diff(current.id)
    assert diff["previous_run_id"] == previous.id
    assert diff["changes"] == {"added": [], "removed": [], "changed": []}


def test_clients_integrations_and_schedules(store, client):
    store.add_integration(client.id, "wordpress", config={"url": "https://acme.example"})
    store.add_integration(client.id, "moz", is_active=False)
    store.add_schedule(client.id, "seo_technical", "0 6 * * *", schedule_id="sched-1")
    store.add_schedule(client.id, "ga4_config", "0 7 * * *", is_active=False)

    assert store.get_client(client.id).slug == "acme"
    assert [i["platform"] for i in store.active_integrations(client.id)] == ["wordpress"]
    assert store.active_integrations(client.id)[0]["config"] == {"url": "https://acme.example"}
    assert [s.id for s in store.list_schedules(active_only=True)] == ["sched-1"]
    assert len(store.list_schedules()) == 2

    store.update_schedule_cron("sched-1", "30 6 * * *")
    assert store.get_schedule("sched-1").cron_expression == "30 6 * * *"


def test_list_runs_newest_first(store, client, clock):
    first = store.create_run(client.id, AuditType.SEO_TECHNICAL)
    clock.advance(1)
    second = store.create_run(client.id, AuditType.SEO_TECHNICAL)

    assert [run.id for run in store.list_runs(client.id)] == [second.id, first.id]
    assert store.list_runs("someone-else") == []


def test_database_errors_become_persistence_errors(tmp_path, clock):
    audit_store = AuditStore(tmp_path / "audits.db", clock=clock)
    audit_store.close()

    with pytest.raises(PersistenceError) as excinfo:
        audit_store.get_run("anything")
    assert isinstance(excinfo.value.__cause__, sqlite3.Error)
