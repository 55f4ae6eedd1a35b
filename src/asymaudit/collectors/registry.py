"""Binding from audit types to collector implementations."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List

from ..orchestrator.exceptions import UnknownAuditTypeError
from ..orchestrator.models import AuditType
from .base import Collector


logger = logging.getLogger(__name__)

CollectorFactory = Callable[[], Collector]

# Audit types implied by an active integration on each platform.
PLATFORM_AUDITS: Dict[str, List[AuditType]] = {
    "wordpress": [
        AuditType.WORDPRESS_HEALTH,
        AuditType.WORDPRESS_SEO,
        AuditType.WORDPRESS_PERFORMANCE,
        AuditType.WORDPRESS_SECURITY,
    ],
    "google_analytics": [AuditType.GA4_CONFIG, AuditType.GA4_DATA_QUALITY],
    "google_ads": [AuditType.GOOGLE_ADS_ACCOUNT, AuditType.GOOGLE_ADS_CAMPAIGNS],
    "google_tag_manager": [AuditType.GTM_CONTAINER],
    "google_search_console": [AuditType.GSC_COVERAGE],
    "moz": [AuditType.SEO_BACKLINKS],
    "spyfu": [AuditType.SEO_BACKLINKS],
    "semrush": [AuditType.SEO_BACKLINKS],
}

ALWAYS_INCLUDED: List[AuditType] = [AuditType.SEO_TECHNICAL]


def audit_types_for_platforms(platforms: Iterable[str]) -> List[AuditType]:
    """Ordered, de-duplicated audit types for a client's active platforms."""
    selected: List[AuditType] = []
    for platform in platforms:
        for audit_type in PLATFORM_AUDITS.get(platform, []):
            if audit_type not in selected:
                selected.append(audit_type)
    for audit_type in ALWAYS_INCLUDED:
        if audit_type not in selected:
            selected.append(audit_type)
    return selected


class CollectorRegistry:
    """Maps each AuditType to the factory producing its collector."""

    def __init__(self) -> None:
        self._factories: Dict[AuditType, CollectorFactory] = {}

    def register(self, audit_type: AuditType, factory: CollectorFactory) -> None:
        if audit_type in self._factories:
            logger.debug("Replacing collector binding", extra={"audit_type": audit_type.value})
        self._factories[audit_type] = factory

    def supports(self, audit_type: AuditType) -> bool:
        return audit_type in self._factories

    def supported_types(self) -> List[AuditType]:
        return [audit_type for audit_type in AuditType if audit_type in self._factories]

    def resolve(self, value: str) -> AuditType:
        """Parse ``value`` and check a collector is bound to it.

        Raises:
            UnknownAuditTypeError: Unknown identifier or no collector bound
        """
        audit_type = AuditType.parse(value)
        if audit_type not in self._factories:
            raise UnknownAuditTypeError(value, "no collector configured")
        return audit_type

    def create(self, audit_type: AuditType) -> Collector:
        factory = self._factories.get(audit_type)
        if factory is None:
            raise UnknownAuditTypeError(audit_type.value, "no collector configured")
        return factory()
