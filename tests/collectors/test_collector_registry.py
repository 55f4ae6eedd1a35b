import asyncio

import pytest

from asymaudit.collectors import build_default_registry
from asymaudit.collectors.base import gather_sub_fetches
from asymaudit.collectors.registry import CollectorRegistry, audit_types_for_platforms
from asymaudit.collectors.seo_technical import TechnicalSEOCollector
from asymaudit.orchestrator.exceptions import UnknownAuditTypeError
from asymaudit.orchestrator.models import AuditType


def test_platforms_expand_to_ordered_unique_audit_types():
    selected = audit_types_for_platforms(["google_analytics", "moz", "semrush", "unknown"])

    assert selected == [
        AuditType.GA4_CONFIG,
        AuditType.GA4_DATA_QUALITY,
        AuditType.SEO_BACKLINKS,
        AuditType.SEO_TECHNICAL,
    ]


def test_technical_seo_is_always_included():
    assert audit_types_for_platforms([]) == [AuditType.SEO_TECHNICAL]


def test_default_registry_binds_technical_seo():
    registry = build_default_registry(http_timeout=3)

    assert registry.supported_types() == [AuditType.SEO_TECHNICAL]
    first = registry.create(AuditType.SEO_TECHNICAL)
    second = registry.create(AuditType.SEO_TECHNICAL)
    assert isinstance(first, TechnicalSEOCollector)
    assert first is not second
    assert first.timeout == 3


def test_resolve_rejects_unknown_and_unbound_types():
    registry = CollectorRegistry()

    with pytest.raises(UnknownAuditTypeError, match="Unknown audit type: nonsense"):
        registry.resolve("nonsense")
    with pytest.raises(UnknownAuditTypeError, match="no collector configured"):
        registry.resolve("ga4_config")
    with pytest.raises(UnknownAuditTypeError):
        registry.create(AuditType.GA4_CONFIG)


@pytest.mark.asyncio
async def test_sub_fetch_failures_are_isolated():
    async def ok():
        return {"found": True}

    async def broken():
        raise ValueError("bad gateway")

    results = await gather_sub_fetches({"robots": ok(), "sitemap": broken()})

    assert results["robots"].ok
    assert results["robots"].value == {"found": True}
    assert not results["sitemap"].ok
    assert results["sitemap"].reason == "bad gateway"
    assert results["sitemap"].value_or({"found": False}) == {"found": False}


@pytest.mark.asyncio
async def test_sub_fetch_cancellation_propagates():
    async def cancelled():
        raise asyncio.CancelledError()

    with pytest.raises(asyncio.CancelledError):
        await gather_sub_fetches({"homepage": cancelled()})
