"""Composition root wiring the audit worker's components together."""

from __future__ import annotations

import asyncio
import logging
import signal
from datetime import timedelta
from typing import List, Optional, Sequence

from .analysis.scorer import (
    AnthropicScoringClient,
    ScorerAdapter,
    ScoringClient,
    UnconfiguredScoringClient,
)
from .api.server import TriggerServer
from .api.triggers import AuditTrigger
from .collectors import CollectorRegistry, build_default_registry
from .configuration.settings import AuditSettings, secret_value
from .notifications.channels import LogChannel, NotificationChannel, SlackChannel
from .notifications.service import NotificationService, RegressionNotifier
from .orchestrator.metrics import TelemetryRecorder
from .orchestrator.pipeline import AuditPipeline
from .orchestrator.queue import JobQueue
from .orchestrator.rate_limit import JobRateLimiter
from .orchestrator.scheduler import AuditScheduler
from .orchestrator.worker import AuditWorker, OutcomeDispatcher
from .storage.store import AuditStore


logger = logging.getLogger(__name__)


def build_channels(settings: AuditSettings) -> List[NotificationChannel]:
    channels: List[NotificationChannel] = [LogChannel()]
    webhook_url = secret_value(settings.notifications.slack_webhook_url)
    if webhook_url:
        channels.append(
            SlackChannel(webhook_url, timeout=settings.notifications.slack_timeout_seconds)
        )
    return channels


def build_scoring_client(settings: AuditSettings) -> ScoringClient:
    api_key = secret_value(settings.scorer.api_key)
    if not api_key:
        logger.warning("No scoring API key configured; analyses will use the fallback")
        return UnconfiguredScoringClient()
    return AnthropicScoringClient(
        api_key,
        model=settings.scorer.model,
        max_tokens=settings.scorer.max_tokens,
    )


class AuditService:
    """Owns the store, queue, worker, scheduler and trigger API.

    Nothing here is process-global: every component receives explicit
    handles, and ``start``/``stop`` order their lifecycles.

    Args:
        settings: Validated service configuration
        registry: Collector bindings (default: every shipped collector)
        scoring_client: Override for the scoring service client
        channels: Override for notification channels
    """

    def __init__(
        self,
        settings: AuditSettings,
        *,
        registry: Optional[CollectorRegistry] = None,
        scoring_client: Optional[ScoringClient] = None,
        channels: Optional[Sequence[NotificationChannel]] = None,
    ) -> None:
        self.settings = settings
        settings.ensure_directories()

        self.store = AuditStore(settings.store.database_path.expanduser())
        self.queue = JobQueue(
            settings.queue.database_path.expanduser(),
            max_attempts=settings.queue.max_attempts,
            backoff_seconds=settings.queue.backoff_seconds,
            completed_retention=timedelta(hours=settings.queue.completed_retention_hours),
            failed_retention=timedelta(days=settings.queue.failed_retention_days),
        )
        self.registry = registry or build_default_registry(
            http_timeout=settings.retry.http_timeout_seconds
        )
        self.notifications = NotificationService(
            list(channels) if channels is not None else build_channels(settings)
        )
        scorer = ScorerAdapter(
            scoring_client or build_scoring_client(settings),
            retry_options=settings.retry.scorer,
            timeout=settings.retry.scorer_timeout_seconds,
        )
        self.pipeline = AuditPipeline(
            self.store,
            self.registry,
            scorer,
            RegressionNotifier(
                self.notifications,
                threshold=settings.notifications.regression_threshold,
                critical_drop=settings.notifications.critical_drop,
            ),
            collector_retry=settings.retry.collector,
            collector_timeout=settings.retry.collector_timeout_seconds,
        )
        telemetry = (
            TelemetryRecorder(settings.telemetry.output_dir.expanduser())
            if settings.telemetry.enabled
            else None
        )
        self.worker = AuditWorker(
            self.queue,
            self.pipeline,
            OutcomeDispatcher(self.notifications, telemetry),
            concurrency=settings.worker.concurrency,
            rate_limiter=JobRateLimiter(
                settings.worker.rate_limit_max,
                settings.worker.rate_limit_window_seconds,
            ),
            poll_interval=settings.worker.poll_interval_seconds,
            purge_interval=settings.worker.purge_interval_seconds,
        )
        self.scheduler = AuditScheduler(
            self.store,
            self.queue,
            registry=self.registry,
            reconcile_interval=settings.scheduler.reconcile_interval_seconds,
            priority=settings.scheduler.priority,
        )
        self.triggers = AuditTrigger(
            self.store,
            self.queue,
            self.registry,
            trigger_priority=settings.api.trigger_priority,
            trigger_all_priority=settings.api.trigger_all_priority,
        )
        self.server = TriggerServer(
            self.store,
            self.queue,
            self.triggers,
            api_key=secret_value(settings.api.api_key),
            host=settings.api.host,
            port=settings.api.port,
        )
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        logger.info("Starting audit worker service")
        await self.worker.start()
        if self.settings.scheduler.enabled:
            await self.scheduler.start()
        if self.settings.api.enabled:
            await self.server.start()
        self._started = True

    async def stop(self) -> None:
        """Stop the API, then the scheduler, then drain the worker."""
        if not self._started:
            return
        logger.info("Stopping audit worker service")
        await self.server.stop()
        self.scheduler.stop()
        await self.worker.shutdown(self.settings.worker.shutdown_grace_seconds)
        self.queue.close()
        self.store.close()
        self._started = False
        logger.info("Audit worker service stopped")

    async def run_forever(self) -> None:
        """Run until SIGINT or SIGTERM, then shut down gracefully."""
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:  # pragma: no cover - Windows event loop
                pass
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
