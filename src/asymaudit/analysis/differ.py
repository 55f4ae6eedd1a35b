"""Structural diff between two audit raw-data documents.

Documents are flattened to dot-joined paths, compared leaf by leaf and
classified using optional per-path metric definitions. The engine never
raises: any internal failure degrades to an empty change set with ``info``
severity so the calling pipeline keeps going.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..orchestrator.exceptions import DiffComputationError
from ..orchestrator.models import Severity
from .definitions import MetricDefinition


logger = logging.getLogger(__name__)

NO_CHANGES_SUMMARY = "No changes detected since last audit"
DIFF_ERROR_SUMMARY = "Unable to compute changes due to data comparison error"


class ChangeDirection(str, Enum):
    IMPROVED = "improved"
    DEGRADED = "degraded"
    NEUTRAL = "neutral"


_ARROWS = {
    ChangeDirection.IMPROVED: "↗",
    ChangeDirection.DEGRADED: "↘",
    ChangeDirection.NEUTRAL: "→",
}


@dataclass(slots=True)
class MetricEntry:
    """A path present in only one of the two documents."""

    path: str
    value: Any
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "value": self.value, "description": self.description}


@dataclass(slots=True)
class MetricChange:
    path: str
    previous_value: Any
    current_value: Any
    direction: ChangeDirection
    severity: Severity
    description: str
    change: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "previous_value": self.previous_value,
            "current_value": self.current_value,
            "change": self.change,
            "direction": self.direction.value,
            "severity": self.severity.value,
            "description": self.description,
        }


@dataclass(slots=True)
class DiffResult:
    added: List[MetricEntry] = field(default_factory=list)
    removed: List[MetricEntry] = field(default_factory=list)
    changed: List[MetricChange] = field(default_factory=list)
    severity: Severity = Severity.INFO
    summary: str = NO_CHANGES_SUMMARY

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.removed) + len(self.changed)

    def is_empty(self) -> bool:
        return self.total_changes == 0

    def changes_dict(self) -> Dict[str, List[Dict[str, Any]]]:
        return {
            "added": [entry.to_dict() for entry in self.added],
            "removed": [entry.to_dict() for entry in self.removed],
            "changed": [change.to_dict() for change in self.changed],
        }


def compute_diff(
    current: Mapping[str, Any],
    previous: Mapping[str, Any],
    metric_definitions: Optional[Mapping[str, MetricDefinition]] = None,
) -> DiffResult:
    """Classify every difference between ``previous`` and ``current``.

    Args:
        current: Raw data of the run being completed
        previous: Raw data of the latest prior complete run
        metric_definitions: Optional definitions keyed by flattened path

    Returns:
        DiffResult with added, removed and changed entries, the overall
        severity and a summary sentence
    """
    definitions = metric_definitions or {}
    try:
        current_flat = flatten(current)
        previous_flat = flatten(previous)

        result = DiffResult()
        for path, value in current_flat.items():
            definition = definitions.get(path)
            if path not in previous_flat:
                name = _display_name(path, definition)
                result.added.append(
                    MetricEntry(
                        path=path,
                        value=value,
                        description=f"New metric: {name} = {format_value(value, _unit(definition))}",
                    )
                )
                continue
            old = previous_flat[path]
            if not deep_equal(value, old):
                result.changed.append(_classify_change(path, old, value, definition))

        for path, value in previous_flat.items():
            if path in current_flat:
                continue
            definition = definitions.get(path)
            name = _display_name(path, definition)
            result.removed.append(
                MetricEntry(
                    path=path,
                    value=value,
                    description=f"Removed metric: {name} was {format_value(value, _unit(definition))}",
                )
            )

        for change in result.changed:
            if change.severity.rank > result.severity.rank:
                result.severity = change.severity
        result.summary = _summarize(result)
        return result
    except Exception:  # noqa: BLE001 - diffing must never fail the run
        logger.exception("Diff computation failed")
        return DiffResult(severity=Severity.INFO, summary=DIFF_ERROR_SUMMARY)


def flatten(document: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten nested mappings to dot-joined paths.

    Lists, dates and scalars are leaves; an empty nested mapping yields no
    leaves at all.
    """
    if not isinstance(document, Mapping):
        raise DiffComputationError(
            f"Expected a mapping at {prefix or '<root>'}, got {type(document).__name__}"
        )
    flat: Dict[str, Any] = {}
    for key, value in document.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def deep_equal(left: Any, right: Any) -> bool:
    """Structural equality; booleans never equal numbers."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if is_number(left) and is_number(right):
        # NaN compares equal to NaN here so identical documents never diff.
        return left == right or (left != left and right != right)
    if isinstance(left, date) and isinstance(right, date):
        return left == right
    if isinstance(left, (list, tuple)) and isinstance(right, (list, tuple)):
        return len(left) == len(right) and all(
            deep_equal(a, b) for a, b in zip(left, right)
        )
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left.keys()) != set(right.keys()):
            return False
        return all(deep_equal(left[key], right[key]) for key in left)
    if type(left) is not type(right):
        return False
    return left == right


def determine_direction(
    previous: Any,
    current: Any,
    definition: Optional[MetricDefinition],
) -> ChangeDirection:
    if definition is None or not (is_number(previous) and is_number(current)):
        return ChangeDirection.NEUTRAL
    if current == previous:
        return ChangeDirection.NEUTRAL
    increased = current > previous
    if increased == definition.higher_is_better:
        return ChangeDirection.IMPROVED
    return ChangeDirection.DEGRADED


def assess_severity(
    direction: ChangeDirection,
    delta: Optional[float],
    definition: Optional[MetricDefinition],
) -> Severity:
    if direction is not ChangeDirection.DEGRADED or definition is None or delta is None:
        return Severity.INFO
    magnitude = abs(delta)
    if definition.critical_threshold is not None and magnitude >= definition.critical_threshold:
        return Severity.CRITICAL
    if definition.warning_threshold is not None and magnitude >= definition.warning_threshold:
        return Severity.WARNING
    return Severity.INFO


def format_value(value: Any, unit: str = "") -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if is_number(value):
        return f"{_format_number(value)}{unit}"
    if isinstance(value, (list, tuple)):
        return f"[{len(value)} items]"
    if isinstance(value, Mapping):
        return "[Object]"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def humanize_key(path: str) -> str:
    """``metrics.loadTime_ms`` -> ``Load Time Ms``."""
    segment = path.split(".")[-1].replace("_", " ")
    segment = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", segment)
    return " ".join(word[:1].upper() + word[1:] for word in segment.split())


def _format_number(value: float) -> str:
    if float(value).is_integer():
        return str(int(value))
    return f"{value:.2f}"


def _unit(definition: Optional[MetricDefinition]) -> str:
    return (definition.unit or "") if definition else ""


def _display_name(path: str, definition: Optional[MetricDefinition]) -> str:
    if definition and definition.display_name:
        return definition.display_name
    return humanize_key(path)


def _classify_change(
    path: str,
    previous: Any,
    current: Any,
    definition: Optional[MetricDefinition],
) -> MetricChange:
    name = _display_name(path, definition)
    unit = _unit(definition)
    direction = determine_direction(previous, current, definition)
    delta: Optional[float] = None
    if is_number(previous) and is_number(current):
        delta = current - previous
        sign = "+" if delta > 0 else ""
        description = (
            f"{name}: {format_value(previous, unit)} → {format_value(current, unit)} "
            f"({sign}{_format_number(delta)}{unit}) {_ARROWS[direction]}"
        )
    else:
        description = f"{name}: {format_value(previous, unit)} → {format_value(current, unit)}"
    return MetricChange(
        path=path,
        previous_value=previous,
        current_value=current,
        direction=direction,
        severity=assess_severity(direction, delta, definition),
        description=description,
        change=delta,
    )


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def _summarize(result: DiffResult) -> str:
    if result.is_empty():
        return NO_CHANGES_SUMMARY
    parts = []
    if result.added:
        parts.append(_plural(len(result.added), "new metric"))
    if result.removed:
        parts.append(_plural(len(result.removed), "removed metric"))
    if result.changed:
        counts = {direction: 0 for direction in ChangeDirection}
        for change in result.changed:
            counts[change.direction] += 1
        parts.append(
            f"{_plural(len(result.changed), 'metric')} changed "
            f"({counts[ChangeDirection.IMPROVED]} improved, "
            f"{counts[ChangeDirection.DEGRADED]} degraded, "
            f"{counts[ChangeDirection.NEUTRAL]} neutral)"
        )
    return f"{_plural(result.total_changes, 'total change')}: {', '.join(parts)}"
