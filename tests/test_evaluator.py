"""Tests for condition evaluation against snapshots."""

import copy

import pytest

from order_engine.conditions import and_, condition, or_
from order_engine.evaluator import ConditionEvaluator, compare, evaluate, resolve_field


@pytest.fixture
def evaluator() -> ConditionEvaluator:
    return ConditionEvaluator()


class TestResolveField:
    def test_nested_path(self) -> None:
        assert resolve_field({"token": {"price": 5.0}}, "token.price") == 5.0

    def test_flat_dotted_key_fallback(self) -> None:
        assert resolve_field({"trailing.drawdownPercent": 12.0}, "trailing.drawdownPercent") == 12.0

    def test_missing_returns_none(self) -> None:
        assert resolve_field({"token": {}}, "token.price") is None
        assert resolve_field({}, "price") is None


class TestCompare:
    def test_numeric_operators(self) -> None:
        assert compare("lt", 1, 2.0)
        assert compare("lte", 2, 2.0)
        assert compare("gt", 3, 2.0)
        assert compare("gte", 2, 2.0)
        assert not compare("gt", 2, 2.0)

    def test_between_is_inclusive(self) -> None:
        assert compare("between", 30, (30.0, 70.0))
        assert compare("between", 70, (30.0, 70.0))
        assert not compare("between", 70.01, (30.0, 70.0))

    def test_string_vs_number_is_false(self) -> None:
        assert not compare("lt", "10", 20.0)
        assert not compare("eq", "10", 10.0)

    def test_boolean_is_not_a_number(self) -> None:
        assert not compare("gte", True, 1.0)

    def test_eq_and_ne(self) -> None:
        assert compare("eq", 10, 10.0)
        assert compare("eq", "up", "up")
        assert compare("ne", "up", "down")
        assert not compare("ne", 5, 5.0)

    def test_none_is_false(self) -> None:
        assert not compare("ne", None, 5.0)


class TestConditionEvaluator:
    def test_empty_and_is_true(self, evaluator: ConditionEvaluator) -> None:
        assert evaluator.evaluate(and_(), {"anything": 1}) is True

    def test_empty_or_is_false(self, evaluator: ConditionEvaluator) -> None:
        assert evaluator.evaluate(or_(), {"anything": 1}) is False

    def test_missing_field_is_false(self, evaluator: ConditionEvaluator) -> None:
        assert evaluator.evaluate(and_(condition("price", "lt", 100)), {}) is False

    def test_none_value_is_false_even_for_ne(self, evaluator: ConditionEvaluator) -> None:
        assert evaluator.evaluate(and_(condition("price", "ne", 5)), {"price": None}) is False

    def test_and_equals_all_of_leaves(self, evaluator: ConditionEvaluator) -> None:
        leaves = [condition("a", "gt", 1), condition("b", "lt", 5), condition("c", "eq", "x")]
        snapshots = [
            {"a": 2, "b": 3, "c": "x"},
            {"a": 0, "b": 3, "c": "x"},
            {"a": 2, "b": 9, "c": "x"},
            {"a": 2, "b": 3},
        ]
        for snapshot in snapshots:
            expected = all(evaluator.evaluate(and_(leaf), snapshot) for leaf in leaves)
            assert evaluator.evaluate(and_(*leaves), snapshot) is expected

    def test_or_equals_any_of_leaves(self, evaluator: ConditionEvaluator) -> None:
        leaves = [condition("a", "gt", 1), condition("b", "lt", 5)]
        for snapshot in ({"a": 0, "b": 9}, {"a": 2, "b": 9}, {"a": 0, "b": 1}, {}):
            expected = any(evaluator.evaluate(and_(leaf), snapshot) for leaf in leaves)
            assert evaluator.evaluate(or_(*leaves), snapshot) is expected

    def test_nested_groups(self, evaluator: ConditionEvaluator) -> None:
        group = and_(
            condition("price", "lt", 3000),
            or_(condition("rsi", "lt", 30), condition("volume", "gt", 1_000_000)),
        )
        assert evaluator.evaluate(group, {"price": 2900, "rsi": 45, "volume": 2_000_000})
        assert not evaluator.evaluate(group, {"price": 2900, "rsi": 45, "volume": 10})
        assert not evaluator.evaluate(group, {"price": 3100, "rsi": 20})

    def test_accepts_raw_mapping(self, evaluator: ConditionEvaluator) -> None:
        raw = {"operator": "and", "conditions": [{"field": "price", "operator": "lte", "value": "10"}]}
        assert evaluator.evaluate(raw, {"price": 10})

    def test_deterministic_and_does_not_mutate(self, evaluator: ConditionEvaluator) -> None:
        group = and_(condition("token.price", "gt", 1), or_(condition("rsi", "lt", 30)))
        snapshot = {"token": {"price": 2}, "rsi": 25}
        group_before = group.model_copy(deep=True)
        snapshot_before = copy.deepcopy(snapshot)
        first = evaluator.evaluate(group, snapshot)
        second = evaluator.evaluate(group, snapshot)
        assert first is second is True
        assert snapshot == snapshot_before
        assert group == group_before

    def test_module_level_evaluate(self) -> None:
        assert evaluate(and_(condition("price", "gt", 1)), {"price": 2})


class TestEvaluateDetailed:
    def test_reports_every_leaf(self, evaluator: ConditionEvaluator) -> None:
        group = or_(condition("price", "lt", 100), condition("rsi", "lt", 30))
        result = evaluator.evaluate_detailed(group, {"price": 50, "rsi": 40})
        assert result.met is True
        assert len(result.details) == 2
        assert [detail.met for detail in result.details] == [True, False]
        assert result.details[1].actual_value == 40
        assert result.details[1].expected_value == 30.0
        assert [leaf.field for leaf in result.met_conditions] == ["price"]

    def test_missing_field_detail(self, evaluator: ConditionEvaluator) -> None:
        result = evaluator.evaluate_detailed(and_(condition("price", "lt", 100)), {})
        assert result.met is False
        assert result.details[0].actual_value is None

    def test_agrees_with_evaluate(self, evaluator: ConditionEvaluator) -> None:
        group = and_(condition("a", "gt", 1), or_(condition("b", "eq", "x"), condition("c", "lt", 0)))
        for snapshot in ({"a": 2, "b": "x"}, {"a": 2, "c": 5}, {"a": 0, "b": "x"}):
            assert evaluator.evaluate_detailed(group, snapshot).met is evaluator.evaluate(group, snapshot)

    def test_details_suppressed_when_disabled(self) -> None:
        result = ConditionEvaluator(collect_details=False).evaluate_detailed(and_(condition("a", "gt", 1)), {"a": 2})
        assert result.met is True
        assert result.details == []
