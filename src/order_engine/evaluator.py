"""Condition evaluation against market-data snapshots.

Evaluation is pure and fail-closed: a missing field, a ``None`` value, or a
type mismatch makes the leaf false. Nothing here raises on bad data and
nothing defaults to firing.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from order_engine.conditions import Condition, ConditionGroup, parse_condition_group

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class ConditionDetail:
    """Outcome of a single leaf comparison."""

    condition: Condition
    met: bool
    actual_value: Any
    expected_value: Any


@dataclass
class EvaluationResult:
    """Outcome of evaluating a full condition tree."""

    met: bool
    details: list[ConditionDetail] = field(default_factory=list)
    evaluated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def met_conditions(self) -> list[Condition]:
        """Leaves that evaluated true."""
        return [detail.condition for detail in self.details if detail.met]


def resolve_field(snapshot: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot-path in *snapshot*.

    Nested mappings are walked first; a flat key equal to the whole path
    (``"trailing.drawdownPercent"``) is the fallback. Returns ``None`` when
    the path does not resolve.
    """
    current: Any = snapshot
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            current = _MISSING
            break
    if current is _MISSING:
        current = snapshot.get(path)
    return current


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def compare(operator: str, actual: Any, expected: Any) -> bool:
    """Apply a comparison operator; type mismatches are false."""
    if actual is None:
        return False

    if operator in ("eq", "ne"):
        if _is_number(actual) and _is_number(expected):
            equal = float(actual) == float(expected)
        elif isinstance(actual, str) and isinstance(expected, str):
            equal = actual == expected
        else:
            logger.debug("Type mismatch for %s: %r vs %r", operator, actual, expected)
            return False
        return equal if operator == "eq" else not equal

    if not _is_number(actual):
        logger.debug("Non-numeric value %r for numeric operator %s", actual, operator)
        return False

    if operator == "between":
        low, high = expected
        return low <= actual <= high
    if operator == "lt":
        return actual < expected
    if operator == "lte":
        return actual <= expected
    if operator == "gt":
        return actual > expected
    if operator == "gte":
        return actual >= expected

    logger.debug("Unknown operator %r", operator)
    return False


class ConditionEvaluator:
    """Evaluate condition trees against snapshots.

    :meth:`evaluate` short-circuits and returns a bool; it is the hot path
    used on every tick. :meth:`evaluate_detailed` visits every leaf and
    reports each comparison, which is what notifications and diagnostics use.
    """

    def __init__(self, *, collect_details: bool = True) -> None:
        self._collect_details = collect_details

    def evaluate(self, group: ConditionGroup | Condition | Mapping[str, Any], snapshot: Mapping[str, Any]) -> bool:
        """Return True iff *group* holds for *snapshot*."""
        return self._evaluate_node(_as_node(group), snapshot)

    def evaluate_detailed(
        self,
        group: ConditionGroup | Condition | Mapping[str, Any],
        snapshot: Mapping[str, Any],
    ) -> EvaluationResult:
        """Evaluate every leaf and return the combined result with per-leaf details."""
        details: list[ConditionDetail] = []
        met = self._evaluate_exhaustive(_as_node(group), snapshot, details)
        return EvaluationResult(met=met, details=details if self._collect_details else [])

    def _evaluate_node(self, node: ConditionGroup | Condition, snapshot: Mapping[str, Any]) -> bool:
        if isinstance(node, ConditionGroup):
            if node.operator == "AND":
                for child in node.conditions:
                    if not self._evaluate_node(child, snapshot):
                        return False
                return True
            for child in node.conditions:
                if self._evaluate_node(child, snapshot):
                    return True
            return False
        return self._evaluate_leaf(node, snapshot)

    def _evaluate_exhaustive(
        self,
        node: ConditionGroup | Condition,
        snapshot: Mapping[str, Any],
        details: list[ConditionDetail],
    ) -> bool:
        if isinstance(node, ConditionGroup):
            results = [self._evaluate_exhaustive(child, snapshot, details) for child in node.conditions]
            return all(results) if node.operator == "AND" else any(results)
        actual = resolve_field(snapshot, node.field)
        met = self._evaluate_leaf(node, snapshot, actual=actual)
        details.append(ConditionDetail(condition=node, met=met, actual_value=actual, expected_value=node.value))
        return met

    @staticmethod
    def _evaluate_leaf(leaf: Condition, snapshot: Mapping[str, Any], *, actual: Any = _MISSING) -> bool:
        if actual is _MISSING:
            actual = resolve_field(snapshot, leaf.field)
        if actual is None:
            logger.debug("Field %r missing from snapshot; condition is false", leaf.field)
            return False
        return compare(leaf.operator, actual, leaf.value)


def _as_node(group: ConditionGroup | Condition | Mapping[str, Any]) -> ConditionGroup | Condition:
    if isinstance(group, (ConditionGroup, Condition)):
        return group
    return parse_condition_group(dict(group))


_default_evaluator = ConditionEvaluator()


def evaluate(group: ConditionGroup | Condition | Mapping[str, Any], snapshot: Mapping[str, Any]) -> bool:
    """Evaluate *group* with a shared default evaluator."""
    return _default_evaluator.evaluate(group, snapshot)
