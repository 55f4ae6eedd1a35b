"""Cron scheduler that turns persisted audit schedules into queued runs."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.interval import IntervalTrigger
from croniter import croniter

from ..collectors.registry import CollectorRegistry
from ..storage.store import AuditStore
from .exceptions import InvalidScheduleError, PersistenceError, UnknownAuditTypeError
from .models import AuditRun, AuditSchedule, AuditType, JobPriority
from .queue import JobQueue


logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "reconcile-schedules"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_cron(schedule_id: str, cron_expression: str) -> None:
    """Raise InvalidScheduleError unless the expression is a 5-field crontab."""
    build_trigger(schedule_id, cron_expression)


def build_trigger(schedule_id: str, cron_expression: str) -> CrontabTrigger:
    fields = cron_expression.split()
    if len(fields) != 5 or not croniter.is_valid(cron_expression):
        raise InvalidScheduleError(schedule_id, cron_expression)
    try:
        return CrontabTrigger(cron_expression)
    except (ValueError, KeyError) as exc:
        raise InvalidScheduleError(schedule_id, cron_expression) from exc


def tick_for(cron_expression: str, fired_at: datetime) -> datetime:
    """The scheduled tick a firing at ``fired_at`` belongs to."""
    base = fired_at.astimezone(timezone.utc).replace(microsecond=0) + timedelta(seconds=1)
    return croniter(cron_expression, base).get_prev(datetime)


def next_tick(cron_expression: str, after: datetime) -> datetime:
    return croniter(cron_expression, after.astimezone(timezone.utc)).get_next(datetime)


class CrontabTrigger(BaseTrigger):
    """APScheduler trigger that fires on croniter's UTC ticks.

    Day-of-week follows crontab numbering (0 and 7 are Sunday) and a
    restricted day-of-month and day-of-week match when either does, so
    firings line up with ``tick_for`` and ``next_tick``.
    """

    def __init__(self, cron_expression: str) -> None:
        croniter(cron_expression)
        self.cron_expression = cron_expression

    def get_next_fire_time(
        self,
        previous_fire_time: Optional[datetime],
        now: datetime,
    ) -> datetime:
        if previous_fire_time is not None:
            return next_tick(self.cron_expression, previous_fire_time)
        return next_tick(self.cron_expression, now - timedelta(seconds=1))

    def __str__(self) -> str:
        return f"crontab[{self.cron_expression}]"

    def __repr__(self) -> str:
        return f"<CrontabTrigger ({self.cron_expression!r}, timezone='UTC')>"


class AuditScheduler:
    """Keeps one UTC cron trigger per active schedule and reconciles periodically.

    Args:
        store: Source of schedule records; receives ``last_run_at`` updates
        queue: Where scheduled runs are enqueued
        registry: When given, schedules for audit types without a collector
            are skipped at registration
        reconcile_interval: Seconds between reconciliations
        priority: Queue priority for scheduled runs
        clock: Returns the current UTC time
    """

    def __init__(
        self,
        store: AuditStore,
        queue: JobQueue,
        *,
        registry: Optional[CollectorRegistry] = None,
        reconcile_interval: float = 300.0,
        priority: int = JobPriority.SCHEDULED,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._queue = queue
        self._registry = registry
        self._reconcile_interval = reconcile_interval
        self._priority = priority
        self._clock = clock
        self._scheduler = AsyncIOScheduler(timezone=timezone.utc)
        self._schedules: Dict[str, AuditSchedule] = {}
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def registered_ids(self) -> Set[str]:
        return set(self._schedules)

    def next_fire_time(self, schedule_id: str) -> Optional[datetime]:
        job = self._scheduler.get_job(self._job_id(schedule_id))
        return getattr(job, "next_run_time", None) if job else None

    async def start(self) -> None:
        if self._running:
            return
        await self.reconcile()
        self._scheduler.add_job(
            self.reconcile,
            trigger=IntervalTrigger(seconds=self._reconcile_interval, timezone=timezone.utc),
            id=RECONCILE_JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        self._running = True
        logger.info(
            "Audit scheduler started",
            extra={
                "schedules": len(self._schedules),
                "reconcile_interval": self._reconcile_interval,
            },
        )

    def stop(self) -> None:
        """Unregister every trigger; safe to call more than once."""
        for schedule_id in list(self._schedules):
            self._unregister(schedule_id)
        if self._scheduler.get_job(RECONCILE_JOB_ID):
            self._scheduler.remove_job(RECONCILE_JOB_ID)
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if self._running:
            logger.info("Audit scheduler stopped")
        self._running = False

    async def reconcile(self) -> None:
        """Align live triggers with the active schedules in the store."""
        try:
            schedules = self._store.list_schedules(active_only=True)
        except PersistenceError:
            logger.exception("Unable to load audit schedules")
            return

        active_ids = {schedule.id for schedule in schedules}
        for schedule_id in list(self._schedules):
            if schedule_id not in active_ids:
                self._unregister(schedule_id)
                logger.info("Schedule deactivated", extra={"schedule_id": schedule_id})

        for schedule in schedules:
            try:
                self._register(schedule)
            except ValueError as exc:
                self._unregister(schedule.id)
                logger.error(
                    "Skipping invalid schedule",
                    extra={"schedule_id": schedule.id, "error": str(exc)},
                )
        logger.debug("Schedules reconciled", extra={"active": len(self._schedules)})

    async def fire(
        self,
        schedule_id: str,
        fired_at: Optional[datetime] = None,
    ) -> Optional[AuditRun]:
        """Create and enqueue the run for one schedule firing."""
        schedule = self._schedules.get(schedule_id)
        if schedule is None:
            logger.warning("Fired schedule is no longer registered", extra={"schedule_id": schedule_id})
            return None
        tick = tick_for(schedule.cron_expression, fired_at or self._clock())
        metadata = {"triggered_by": "scheduler", "schedule_id": schedule.id}
        context = {
            "schedule_id": schedule.id,
            "client_id": schedule.client_id,
            "audit_type": schedule.audit_type,
            "tick": tick.isoformat(),
        }
        try:
            audit_type = AuditType.parse(schedule.audit_type)
            run = self._store.create_run(schedule.client_id, audit_type, metadata)
            self._queue.enqueue(
                schedule.client_id,
                audit_type,
                run.id,
                priority=self._priority,
                metadata=metadata,
            )
        except Exception:  # noqa: BLE001 - a failed firing must not stop the scheduler
            logger.exception("Scheduled audit trigger failed", extra=context)
            return None

        logger.info("Scheduled audit queued", extra={**context, "run_id": run.id})
        try:
            self._store.record_schedule_run(
                schedule.id, tick, next_tick(schedule.cron_expression, tick)
            )
            schedule.last_run_at = tick
        except PersistenceError:
            logger.exception("Unable to update schedule last_run_at", extra=context)
        return run

    def _register(self, schedule: AuditSchedule) -> None:
        trigger = build_trigger(schedule.id, schedule.cron_expression)
        audit_type = AuditType.parse(schedule.audit_type)
        if self._registry is not None and not self._registry.supports(audit_type):
            raise UnknownAuditTypeError(schedule.audit_type, "no collector configured")

        self._scheduler.add_job(
            self.fire,
            trigger=trigger,
            args=[schedule.id],
            id=self._job_id(schedule.id),
            replace_existing=True,
            coalesce=True,
            misfire_grace_time=60,
        )
        if schedule.id not in self._schedules:
            logger.info(
                "Registered schedule",
                extra={
                    "schedule_id": schedule.id,
                    "audit_type": schedule.audit_type,
                    "cron_expression": schedule.cron_expression,
                },
            )
        self._schedules[schedule.id] = schedule

    def _unregister(self, schedule_id: str) -> None:
        self._schedules.pop(schedule_id, None)
        job_id = self._job_id(schedule_id)
        if self._scheduler.get_job(job_id):
            self._scheduler.remove_job(job_id)

    @staticmethod
    def _job_id(schedule_id: str) -> str:
        return f"schedule-{schedule_id}"
