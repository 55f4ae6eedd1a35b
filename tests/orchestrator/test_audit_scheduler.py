"""Tests for the cron scheduler and its reconciliation."""

from datetime import datetime, timezone

import pytest

from conftest import StaticCollector, registry_with
from asymaudit.orchestrator.exceptions import InvalidScheduleError
from asymaudit.orchestrator.models import JobPriority, RunStatus
from asymaudit.orchestrator import scheduler as scheduler_module
from asymaudit.orchestrator.scheduler import (
    AuditScheduler,
    CrontabTrigger,
    next_tick,
    tick_for,
    validate_cron,
)


def build_scheduler(store, queue, clock):
    return AuditScheduler(
        store,
        queue,
        registry=registry_with(StaticCollector([None])),
        clock=clock,
    )


@pytest.mark.parametrize(
    "expression",
    ["0 * * * *", "*/15 9-17 * * 1-5", "30 2 1 * *", "0 0 * * 7", "0 0 L * *", "0 0 1W * *"],
)
def test_valid_five_field_expressions(expression):
    validate_cron("sched-1", expression)


@pytest.mark.parametrize("expression", ["", "0 * * *", "0 0 * * * *", "not a cron", "61 * * * *"])
def test_invalid_expressions_are_rejected(expression):
    with pytest.raises(InvalidScheduleError):
        validate_cron("sched-1", expression)


def test_tick_is_the_scheduled_instant_not_the_firing_time():
    late = datetime(2026, 1, 5, 10, 0, 42, 250000, tzinfo=timezone.utc)

    assert tick_for("0 * * * *", late) == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert next_tick("0 * * * *", late) == datetime(2026, 1, 5, 11, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reconcile_registers_valid_and_skips_invalid(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "0 * * * *", schedule_id="good")
    store.add_schedule(client.id, "seo_technical", "every hour", schedule_id="bad-cron")
    store.add_schedule(client.id, "ga4_config", "0 * * * *", schedule_id="no-collector")
    store.add_schedule(client.id, "seo_technical", "0 0 * * *", schedule_id="off", is_active=False)
    store.add_schedule(client.id, "seo_technical", "0 0 * * 7", schedule_id="sunday")
    store.add_schedule(client.id, "seo_technical", "0 0 L * *", schedule_id="month-end")
    store.add_schedule(client.id, "seo_technical", "0 0 1W * *", schedule_id="first-weekday")
    scheduler = build_scheduler(store, queue, clock)

    await scheduler.reconcile()

    assert scheduler.registered_ids() == {"good", "sunday", "month-end", "first-weekday"}


@pytest.mark.asyncio
async def test_trigger_error_skips_only_that_schedule(store, queue, client, clock, monkeypatch):
    class PickyTrigger(CrontabTrigger):
        def __init__(self, cron_expression):
            if cron_expression == "0 0 * * 1":
                raise ValueError("unsupported expression")
            super().__init__(cron_expression)

    monkeypatch.setattr(scheduler_module, "CrontabTrigger", PickyTrigger)
    store.add_schedule(client.id, "seo_technical", "0 0 * * 1", schedule_id="a-rejected")
    store.add_schedule(client.id, "seo_technical", "0 * * * *", schedule_id="z-good")
    scheduler = build_scheduler(store, queue, clock)

    await scheduler.start()
    try:
        assert scheduler.registered_ids() == {"z-good"}
    finally:
        scheduler.stop()


def test_weekday_trigger_counts_sunday_as_zero():
    trigger = CrontabTrigger("0 9 * * 1")
    sunday_noon = datetime(2026, 1, 4, 12, 0, tzinfo=timezone.utc)
    monday = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    assert trigger.get_next_fire_time(None, sunday_noon) == monday
    assert trigger.get_next_fire_time(monday, sunday_noon) == datetime(
        2026, 1, 12, 9, 0, tzinfo=timezone.utc
    )
    assert CrontabTrigger("0 0 * * 7").get_next_fire_time(None, monday) == datetime(
        2026, 1, 11, 0, 0, tzinfo=timezone.utc
    )
    assert CrontabTrigger("0 0 L * *").get_next_fire_time(None, monday) == datetime(
        2026, 1, 31, 0, 0, tzinfo=timezone.utc
    )


def test_trigger_fires_on_a_matching_instant():
    on_the_hour = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)

    assert CrontabTrigger("0 * * * *").get_next_fire_time(None, on_the_hour) == on_the_hour


@pytest.mark.asyncio
async def test_weekday_schedule_records_the_monday_tick(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "0 9 * * 1", schedule_id="weekly")
    scheduler = build_scheduler(store, queue, clock)
    await scheduler.reconcile()
    monday = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
    fired_at = CrontabTrigger("0 9 * * 1").get_next_fire_time(
        None, datetime(2026, 1, 4, 12, 0, tzinfo=timezone.utc)
    )

    await scheduler.fire("weekly", fired_at)

    schedule = store.get_schedule("weekly")
    assert schedule.last_run_at == monday
    assert schedule.next_run_at == datetime(2026, 1, 12, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_reconcile_drops_deactivated_schedule(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "0 * * * *", schedule_id="sched-1")
    scheduler = build_scheduler(store, queue, clock)
    await scheduler.reconcile()

    store.set_schedule_active("sched-1", False)
    await scheduler.reconcile()

    assert scheduler.registered_ids() == set()
    assert await scheduler.fire("sched-1") is None
    assert queue.counts()["waiting"] == 0


@pytest.mark.asyncio
async def test_fire_enqueues_scheduled_run_and_records_tick(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "0 * * * *", schedule_id="sched-1")
    scheduler = build_scheduler(store, queue, clock)
    await scheduler.reconcile()
    fired_at = datetime(2026, 1, 5, 10, 0, 0, 800000, tzinfo=timezone.utc)

    run = await scheduler.fire("sched-1", fired_at)

    tick = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert run.status is RunStatus.PENDING
    assert run.metadata == {"triggered_by": "scheduler", "schedule_id": "sched-1"}
    job = queue.get(f"{client.id}-seo_technical-{run.id}")
    assert job.priority == JobPriority.SCHEDULED
    schedule = store.get_schedule("sched-1")
    assert schedule.last_run_at == tick
    assert schedule.next_run_at == datetime(2026, 1, 5, 11, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fire_uses_clock_when_no_time_given(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "*/30 * * * *", schedule_id="sched-1")
    scheduler = build_scheduler(store, queue, clock)
    await scheduler.reconcile()
    clock.advance(minutes=31)

    await scheduler.fire("sched-1")

    assert store.get_schedule("sched-1").last_run_at == datetime(
        2026, 1, 5, 9, 30, tzinfo=timezone.utc
    )


@pytest.mark.asyncio
async def test_start_and_stop(store, queue, client, clock):
    store.add_schedule(client.id, "seo_technical", "0 * * * *", schedule_id="sched-1")
    scheduler = build_scheduler(store, queue, clock)

    await scheduler.start()
    try:
        assert scheduler.running
        assert scheduler.next_fire_time("sched-1") is not None
    finally:
        scheduler.stop()

    assert not scheduler.running
    assert scheduler.registered_ids() == set()
    scheduler.stop()
