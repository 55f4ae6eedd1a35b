"""Configuration loading utilities for the audit worker."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    AuditSettings,
    ConfigurationManager,
    describe,
    secret_value,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "AuditSettings",
    "ConfigurationManager",
    "describe",
    "secret_value",
]
