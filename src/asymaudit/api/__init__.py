"""HTTP trigger surface and manual admission."""

from .server import TriggerServer
from .triggers import AuditTrigger, NoActiveIntegrationsError, SuiteResult, TriggerResult

__all__ = [
    "AuditTrigger",
    "NoActiveIntegrationsError",
    "SuiteResult",
    "TriggerResult",
    "TriggerServer",
]
