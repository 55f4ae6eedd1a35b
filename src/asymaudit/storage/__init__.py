"""Persistence layer for audit records."""

from .store import AuditStore

__all__ = ["AuditStore"]
