"""Metric definitions used to classify changes between audit runs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from ..orchestrator.models import AuditType


@dataclass(frozen=True, slots=True)
class MetricDefinition:
    """Direction and thresholds for one flattened metric path.

    Thresholds are absolute deltas in the metric's own unit.
    """

    higher_is_better: bool
    critical_threshold: Optional[float] = None
    warning_threshold: Optional[float] = None
    display_name: Optional[str] = None
    unit: Optional[str] = None


MetricDefinitions = Dict[str, MetricDefinition]


COMMON_DEFINITIONS: MetricDefinitions = {
    "overall_score": MetricDefinition(True, 20, 10, "Overall Score"),
    "page_speed_score": MetricDefinition(True, 20, 10, "Page Speed Score"),
    "security_score": MetricDefinition(True, 15, 8, "Security Score"),
    "seo_score": MetricDefinition(True, 15, 8, "SEO Score"),
}

_TYPE_DEFINITIONS: Dict[AuditType, MetricDefinitions] = {
    AuditType.WORDPRESS_HEALTH: {
        "plugins_count": MetricDefinition(False, warning_threshold=5, display_name="Plugins"),
        "outdated_plugins": MetricDefinition(False, 3, 1, "Outdated Plugins"),
        "security_issues": MetricDefinition(False, critical_threshold=1, display_name="Security Issues"),
        "backup_age_days": MetricDefinition(False, 7, 3, "Backup Age", " days"),
    },
    AuditType.WORDPRESS_PERFORMANCE: {
        "lcp_score": MetricDefinition(True, 1000, 500, "LCP Score"),
        "fid_score": MetricDefinition(True, 200, 100, "FID Score"),
        "cls_score": MetricDefinition(False, 0.25, 0.1, "CLS Score"),
        "load_time_ms": MetricDefinition(False, 2000, 1000, "Load Time", "ms"),
    },
    AuditType.GA4_CONFIG: {
        "events_configured": MetricDefinition(True, display_name="Events Configured"),
        "conversions_setup": MetricDefinition(True, display_name="Conversions Setup"),
        "audiences_count": MetricDefinition(True, display_name="Audiences"),
    },
    AuditType.GOOGLE_ADS_ACCOUNT: {
        "quality_score": MetricDefinition(True, 2, 1, "Quality Score"),
        "ctr": MetricDefinition(True, 0.02, 0.01, "CTR"),
        "conversion_rate": MetricDefinition(True, 0.02, 0.01, "Conversion Rate"),
        "cpa": MetricDefinition(False, 50, 20, "CPA"),
    },
}


def get_metric_definitions(audit_type: AuditType) -> MetricDefinitions:
    """Common score metrics plus any audit-type specific definitions."""
    definitions = dict(COMMON_DEFINITIONS)
    definitions.update(_TYPE_DEFINITIONS.get(audit_type, {}))
    return definitions
