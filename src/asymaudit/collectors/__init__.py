"""Collectors gather raw data for each audit type."""

from .base import (
    CollectionRequest,
    CollectionResult,
    Collector,
    SubFetchResult,
    gather_sub_fetches,
)
from .registry import (
    ALWAYS_INCLUDED,
    PLATFORM_AUDITS,
    CollectorRegistry,
    audit_types_for_platforms,
)
from .seo_technical import TechnicalSEOCollector


def build_default_registry(*, http_timeout: float = 15.0) -> CollectorRegistry:
    """Registry with every collector shipped in this package bound."""
    registry = CollectorRegistry()
    registry.register(
        TechnicalSEOCollector.audit_type,
        lambda: TechnicalSEOCollector(timeout=http_timeout),
    )
    return registry


__all__ = [
    "ALWAYS_INCLUDED",
    "PLATFORM_AUDITS",
    "CollectionRequest",
    "CollectionResult",
    "Collector",
    "CollectorRegistry",
    "SubFetchResult",
    "TechnicalSEOCollector",
    "audit_types_for_platforms",
    "build_default_registry",
    "gather_sub_fetches",
]
