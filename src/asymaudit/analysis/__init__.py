"""Scoring and change detection for audit runs."""

from .definitions import MetricDefinition, get_metric_definitions
from .differ import ChangeDirection, DiffResult, MetricChange, MetricEntry, compute_diff
from .scorer import (
    AnthropicScoringClient,
    ScorerAdapter,
    ScoringClient,
    UnconfiguredScoringClient,
    fallback_analysis,
)

__all__ = [
    "AnthropicScoringClient",
    "ChangeDirection",
    "DiffResult",
    "MetricChange",
    "MetricDefinition",
    "MetricEntry",
    "ScorerAdapter",
    "ScoringClient",
    "UnconfiguredScoringClient",
    "compute_diff",
    "fallback_analysis",
    "get_metric_definitions",
]
