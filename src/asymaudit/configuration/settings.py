"""Typed configuration for the audit worker service.

Settings are pydantic models loaded from a YAML file and then overlaid with
``ASYMAUDIT_*`` environment variables for secrets and deploy-time knobs.
Unknown keys are rejected so typos surface at startup instead of silently
falling back to defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError, field_validator

from ..orchestrator.exceptions import ConfigurationError
from ..orchestrator.models import JobPriority
from ..orchestrator.retry import RetryOptions


DEFAULT_HOME = Path.home() / ".asymaudit"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / "config.yaml"

# (section, key, environment variable, cast)
ENV_OVERRIDES = (
    ("api", "api_key", "ASYMAUDIT_API_KEY", str),
    ("api", "port", "ASYMAUDIT_PORT", int),
    ("scorer", "api_key", "ASYMAUDIT_ANTHROPIC_API_KEY", str),
    ("notifications", "slack_webhook_url", "ASYMAUDIT_SLACK_WEBHOOK_URL", str),
    ("store", "database_path", "ASYMAUDIT_DATABASE_PATH", str),
    ("queue", "database_path", "ASYMAUDIT_QUEUE_PATH", str),
    ("logging", "level", "ASYMAUDIT_LOG_LEVEL", str),
)

SECRET_FIELDS = {
    "api": {"api_key"},
    "scorer": {"api_key"},
    "notifications": {"slack_webhook_url"},
}


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class WorkerSettings(_Section):
    """Worker pool configuration.

    Attributes:
        concurrency: Maximum jobs executing at once
        rate_limit_max: Job starts allowed per rate window
        rate_limit_window_seconds: Length of the rate window
        shutdown_grace_seconds: Time in-flight jobs get on shutdown
        poll_interval_seconds: Sleep between polls of an empty queue
        purge_interval_seconds: Time between retention purges
    """

    concurrency: int = Field(default=5, ge=1, le=64)
    rate_limit_max: int = Field(default=10, ge=1)
    rate_limit_window_seconds: float = Field(default=60.0, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    purge_interval_seconds: float = Field(default=3600.0, gt=0)


class QueueSettings(_Section):
    """Durable job queue configuration."""

    database_path: Path = Field(default=DEFAULT_HOME / "queue.db")
    max_attempts: int = Field(default=3, ge=1, le=10)
    backoff_seconds: float = Field(default=5.0, ge=0)
    completed_retention_hours: float = Field(default=24.0, gt=0)
    failed_retention_days: float = Field(default=7.0, gt=0)


class RetrySettings(_Section):
    """Retry policies and per-attempt timeouts for external calls."""

    collector: RetryOptions = Field(
        default_factory=lambda: RetryOptions(max_attempts=3, base_delay=2.0)
    )
    scorer: RetryOptions = Field(
        default_factory=lambda: RetryOptions(max_attempts=3, base_delay=1.0)
    )
    collector_timeout_seconds: float = Field(default=300.0, gt=0)
    scorer_timeout_seconds: float = Field(default=120.0, gt=0)
    http_timeout_seconds: float = Field(default=15.0, gt=0)


class SchedulerSettings(_Section):
    enabled: bool = True
    reconcile_interval_seconds: float = Field(default=300.0, gt=0)
    priority: int = Field(default=int(JobPriority.SCHEDULED), ge=0)


class ScorerSettings(_Section):
    model: str = "claude-3-5-sonnet-20241022"
    max_tokens: int = Field(default=4096, ge=1)
    api_key: Optional[SecretStr] = None


class NotificationSettings(_Section):
    """Alert channels and regression thresholds."""

    slack_webhook_url: Optional[SecretStr] = None
    slack_timeout_seconds: float = Field(default=5.0, gt=0)
    regression_threshold: float = Field(default=10.0, ge=0)
    critical_drop: float = Field(default=20.0, ge=0)


class ApiSettings(_Section):
    """Trigger API configuration.

    Attributes:
        host: Bind address
        port: Bind port
        api_key: Shared secret expected in ``X-API-Key``; the API refuses
            every authenticated request while unset
        trigger_priority: Default priority for single-audit triggers
        trigger_all_priority: Default priority for trigger-all
    """

    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = Field(default=3001, ge=1, le=65535)
    api_key: Optional[SecretStr] = None
    trigger_priority: int = Field(default=int(JobPriority.MANUAL), ge=0)
    trigger_all_priority: int = Field(default=int(JobPriority.TRIGGER_ALL), ge=0)


class StoreSettings(_Section):
    database_path: Path = Field(default=DEFAULT_HOME / "audits.db")


class LoggingSettings(_Section):
    level: str = "INFO"
    file: Optional[Path] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level


class TelemetrySettings(_Section):
    enabled: bool = True
    output_dir: Path = Field(default=DEFAULT_HOME / "telemetry")


class AuditSettings(_Section):
    """Root configuration for the audit worker service."""

    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    scheduler: SchedulerSettings = Field(default_factory=SchedulerSettings)
    scorer: ScorerSettings = Field(default_factory=ScorerSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    store: StoreSettings = Field(default_factory=StoreSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)

    def ensure_directories(self) -> None:
        for path in (self.queue.database_path, self.store.database_path):
            path.expanduser().parent.mkdir(parents=True, exist_ok=True)
        if self.telemetry.enabled:
            self.telemetry.output_dir.expanduser().mkdir(parents=True, exist_ok=True)
        if self.logging.file is not None:
            self.logging.file.expanduser().parent.mkdir(parents=True, exist_ok=True)


def format_validation_errors(exc: ValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
        for err in exc.errors()
    ]


def apply_env_overrides(
    data: Dict[str, Any],
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Overlay ``ASYMAUDIT_*`` variables on raw configuration data."""
    env = os.environ if environ is None else environ
    for section, key, env_name, cast in ENV_OVERRIDES:
        raw = env.get(env_name)
        if raw is None or raw == "":
            continue
        target = data.setdefault(section, {})
        if not isinstance(target, dict):
            continue
        try:
            target[key] = cast(raw)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid configuration: {env_name}: {exc}") from exc
    return data


class ConfigurationManager:
    """Loads, validates and saves :class:`AuditSettings`.

    Args:
        config_path: YAML file (default: ~/.asymaudit/config.yaml)
        environ: Environment mapping used for overrides (default: ``os.environ``)
    """

    def __init__(
        self,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self._config_path = config_path or DEFAULT_CONFIG_PATH
        self._environ = environ
        self._settings: Optional[AuditSettings] = None

    @property
    def config_path(self) -> Path:
        return self._config_path

    @property
    def settings(self) -> Optional[AuditSettings]:
        return self._settings

    def load(self) -> AuditSettings:
        """Load the file (if present), apply env overrides and validate.

        Returns:
            Validated settings

        Raises:
            ConfigurationError: If the file or the overrides are invalid
        """
        data = self._read(self._config_path) if self._config_path.exists() else {}
        data = apply_env_overrides(data, self._environ)
        try:
            self._settings = AuditSettings.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration: {'; '.join(format_validation_errors(exc))}"
            ) from exc
        return self._settings

    def save(self, settings: AuditSettings) -> None:
        """Write settings to the config file; secrets stay in the environment."""
        self._config_path.parent.mkdir(parents=True, exist_ok=True)
        data = settings.model_dump(mode="json", exclude_none=True, exclude=SECRET_FIELDS)
        with open(self._config_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)

    def validate(self, config_path: Optional[Path] = None) -> List[str]:
        """Validate a configuration file without loading it.

        Returns:
            List of ``loc: msg`` errors (empty if valid)
        """
        path = config_path or self._config_path
        if not path.exists():
            return [f"Configuration file not found: {path}"]
        try:
            data = apply_env_overrides(self._read(path), self._environ)
            AuditSettings.model_validate(data)
        except ValidationError as exc:
            return format_validation_errors(exc)
        except ConfigurationError as exc:
            return [str(exc)]
        return []

    @staticmethod
    def _read(path: Path) -> Dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid configuration: {path}: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Invalid configuration: {path}: expected a mapping")
        return data


def describe(settings: AuditSettings) -> Dict[str, Any]:
    """Settings as JSON-friendly data with secrets masked."""
    return settings.model_dump(mode="json")


def secret_value(secret: Optional[SecretStr]) -> Optional[str]:
    if secret is None:
        return None
    value = secret.get_secret_value()
    return value or None
