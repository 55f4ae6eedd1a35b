"""Logging configuration for the audit worker."""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from .configuration.settings import LoggingSettings


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_RESERVED = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

_logger = logging.getLogger(__name__)


def record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Fields attached to a record through ``extra={...}``."""
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED and not key.startswith("_")
    }


class ContextFormatter(logging.Formatter):
    """Appends ``extra`` fields as ``key=value`` pairs after the message."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = record_extras(record)
        if not extras:
            return line
        context = " ".join(f"{key}={value}" for key, value in sorted(extras.items()))
        head, sep, tail = line.partition("\n")
        return f"{head} | {context}{sep}{tail}"


def configure_logging(settings: Optional[LoggingSettings] = None) -> None:
    """Install stderr (and optional file) handlers on the root logger."""
    settings = settings or LoggingSettings()
    level = getattr(logging, settings.level.upper(), logging.INFO)
    formatter = ContextFormatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: List[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    if settings.file:
        path = Path(settings.file).expanduser()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path, encoding="utf-8")
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", path, exc)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    # Keep the scheduler and HTTP access logs at warning unless debugging.
    if level > logging.DEBUG:
        for name in ("apscheduler", "aiohttp.access", "httpx"):
            logging.getLogger(name).setLevel(logging.WARNING)
