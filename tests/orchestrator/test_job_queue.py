"""Tests for the persistent audit job queue."""

from datetime import timedelta
from pathlib import Path

import pytest

from asymaudit.orchestrator.exceptions import JobNotFoundError
from asymaudit.orchestrator.models import AuditType, JobPriority, JobState
from asymaudit.orchestrator.queue import JobQueue


def enqueue(queue: JobQueue, run_id: str, priority: int = JobPriority.SCHEDULED, **kwargs):
    return queue.enqueue("client-1", AuditType.SEO_TECHNICAL, run_id, priority=priority, **kwargs)


def test_job_id_is_derived_from_client_type_and_run(queue):
    job = enqueue(queue, "run-1")

    assert job.job_id == "client-1-seo_technical-run-1"
    assert job.status is JobState.WAITING
    assert job.max_attempts == 3


def test_enqueue_is_idempotent_while_job_is_live(queue):
    first = enqueue(queue, "run-1", priority=JobPriority.SCHEDULED)
    second = enqueue(queue, "run-1", priority=JobPriority.MANUAL)

    assert second.job_id == first.job_id
    assert second.priority == JobPriority.SCHEDULED
    assert queue.counts()["waiting"] == 1


def test_enqueue_replaces_terminal_job(queue):
    enqueue(queue, "run-1")
    [job] = queue.claim_ready()
    queue.mark_completed(job.job_id)

    again = enqueue(queue, "run-1")

    assert again.status is JobState.WAITING
    assert queue.get(again.job_id).attempts == 0


def test_claim_orders_by_priority_then_age(queue, clock):
    enqueue(queue, "low-old", priority=JobPriority.SCHEDULED)
    clock.advance(1)
    enqueue(queue, "high", priority=JobPriority.MANUAL)
    clock.advance(1)
    enqueue(queue, "low-new", priority=JobPriority.SCHEDULED)

    claimed = queue.claim_ready(3)

    assert [job.run_id for job in claimed] == ["high", "low-old", "low-new"]
    assert all(job.status is JobState.ACTIVE and job.attempts == 1 for job in claimed)


def test_claimed_jobs_are_not_claimed_twice(queue):
    enqueue(queue, "run-1")

    assert len(queue.claim_ready(5)) == 1
    assert queue.claim_ready(5) == []


def test_delayed_job_becomes_ready_after_delay(queue, clock):
    enqueue(queue, "run-1", delay=30)

    assert queue.claim_ready() == []
    assert queue.counts()["delayed"] == 1

    clock.advance(31)

    assert queue.counts()["waiting"] == 1
    assert [job.run_id for job in queue.claim_ready()] == ["run-1"]


def test_failed_attempts_back_off_exponentially(queue, clock):
    enqueue(queue, "run-1")

    [job] = queue.claim_ready()
    state, delay = queue.mark_failed(job.job_id, "timeout")
    assert (state, delay) == (JobState.DELAYED, 5.0)

    clock.advance(5)
    [job] = queue.claim_ready()
    state, delay = queue.mark_failed(job.job_id, "timeout")
    assert (state, delay) == (JobState.DELAYED, 10.0)

    clock.advance(10)
    [job] = queue.claim_ready()
    assert job.attempts == 3
    state, delay = queue.mark_failed(job.job_id, "timeout")
    assert (state, delay) == (JobState.FAILED, None)

    status = queue.get_job_status(job.job_id)
    assert status["status"] == "failed"
    assert status["error"] == "timeout"


def test_non_retryable_failure_is_terminal(queue):
    enqueue(queue, "run-1")
    [job] = queue.claim_ready()

    state, delay = queue.mark_failed(job.job_id, "bad credentials", retryable=False)

    assert state is JobState.FAILED
    assert delay is None


def test_release_returns_active_job_to_waiting(queue):
    enqueue(queue, "run-1")
    [job] = queue.claim_ready()

    queue.release(job.job_id)

    assert queue.get(job.job_id).status is JobState.WAITING
    # Releasing a job that is no longer active is a no-op.
    queue.release(job.job_id)


def test_recover_stalled_requeues_active_jobs(tmp_path: Path, clock):
    path = tmp_path / "queue.db"
    first = JobQueue(path, clock=clock)
    enqueue(first, "run-1")
    first.claim_ready()
    first.close()

    second = JobQueue(path, clock=clock)
    try:
        assert second.recover_stalled() == 1
        assert second.counts()["waiting"] == 1
    finally:
        second.close()


def test_progress_is_clamped(queue):
    job = enqueue(queue, "run-1")

    queue.update_progress(job.job_id, 150)
    assert queue.get_job_status(job.job_id)["progress"] == 100

    queue.update_progress(job.job_id, -5)
    assert queue.get_job_status(job.job_id)["progress"] == 0


def test_purge_respects_retention_windows(queue, clock):
    enqueue(queue, "done")
    enqueue(queue, "broken")
    claimed = {job.run_id: job for job in queue.claim_ready(2)}
    queue.mark_completed(claimed["done"].job_id)
    queue.mark_failed(claimed["broken"].job_id, "boom", retryable=False)

    clock.advance(hours=25)
    assert queue.purge_expired() == 1
    assert queue.find(claimed["done"].job_id) is None
    assert queue.find(claimed["broken"].job_id) is not None

    clock.advance(days=7)
    assert queue.purge_expired() == 1
    assert queue.find(claimed["broken"].job_id) is None


def test_job_status_shape(queue):
    job = enqueue(queue, "run-1", metadata={"manual": True})

    status = queue.get_job_status(job.job_id)

    assert status == {
        "status": "waiting",
        "progress": 0,
        "attempts": 0,
        "data": {
            "clientId": "client-1",
            "auditType": "seo_technical",
            "runId": "run-1",
            "priority": int(JobPriority.SCHEDULED),
            "metadata": {"manual": True},
        },
        "error": None,
    }
    assert queue.get_job_status("missing") is None


def test_unknown_job_raises(queue):
    with pytest.raises(JobNotFoundError):
        queue.get("missing")
    with pytest.raises(JobNotFoundError):
        queue.mark_completed("missing")


def test_retention_defaults(queue):
    assert queue.completed_retention == timedelta(hours=24)
    assert queue.failed_retention == timedelta(days=7)
