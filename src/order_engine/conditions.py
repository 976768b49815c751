"""Condition and condition-group models for order triggers.

Conditions are authored once (CLI, action layer, config) and evaluated on
every tick, so all coercion happens here: numeric operators receive floats,
``between`` receives an ordered ``(min, max)`` pair, and operator spellings are
normalised.
"""

from __future__ import annotations

import math
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from order_engine.errors import from_pydantic

ComparisonOperator = Literal["eq", "ne", "lt", "lte", "gt", "gte", "between"]
LogicalOperator = Literal["AND", "OR"]

NUMERIC_OPERATORS = frozenset({"lt", "lte", "gt", "gte"})

_OPERATOR_ALIASES = {
    "neq": "ne",
    "==": "eq",
    "!=": "ne",
    "<": "lt",
    "<=": "lte",
    ">": "gt",
    ">=": "gte",
}


def _coerce_number(value: Any) -> float:
    """Coerce an authored comparison value to a finite float."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a numeric comparison value")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise ValueError(f"{value!r} is not numeric") from None
    else:
        raise ValueError(f"expected a number, got {type(value).__name__}")
    if math.isnan(number):
        raise ValueError("NaN is not a valid comparison value")
    return number


class Condition(BaseModel):
    """A single comparison of a snapshot field against a constant."""

    model_config = ConfigDict(frozen=True)

    field: str = Field(min_length=1)
    operator: ComparisonOperator
    value: Union[float, str, tuple[float, float]]

    @field_validator("operator", mode="before")
    @classmethod
    def _normalise_operator(cls, value: Any) -> Any:
        if isinstance(value, str):
            lowered = value.strip().lower()
            return _OPERATOR_ALIASES.get(lowered, lowered)
        return value

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, value: Any, info: ValidationInfo) -> Any:
        operator = info.data.get("operator")
        if operator in NUMERIC_OPERATORS:
            return _coerce_number(value)
        if operator == "between":
            if not isinstance(value, (list, tuple)) or len(value) != 2:
                raise ValueError("between expects a [min, max] pair")
            low, high = _coerce_number(value[0]), _coerce_number(value[1])
            if low > high:
                raise ValueError(f"between range is inverted ({low} > {high})")
            return (low, high)
        if operator in ("eq", "ne"):
            if isinstance(value, bool) or not isinstance(value, (int, float, str)):
                raise ValueError(f"{operator} expects a number or a string")
            return float(value) if isinstance(value, int) else value
        return value


def _condition_kind(value: Any) -> str:
    if isinstance(value, ConditionGroup):
        return "group"
    if isinstance(value, dict) and "conditions" in value:
        return "group"
    return "condition"


ConditionNode = Annotated[
    Union[Annotated[Condition, Tag("condition")], Annotated["ConditionGroup", Tag("group")]],
    Discriminator(_condition_kind),
]


class ConditionGroup(BaseModel):
    """A boolean AND/OR combination of conditions and nested groups."""

    model_config = ConfigDict(frozen=True)

    operator: LogicalOperator
    conditions: list[ConditionNode] = Field(default_factory=list)

    @field_validator("operator", mode="before")
    @classmethod
    def _normalise_operator(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape (``between`` pairs become lists)."""
        return self.model_dump(mode="json")

    def leaves(self) -> list[Condition]:
        """Return every leaf condition in depth-first order."""
        found: list[Condition] = []
        for child in self.conditions:
            if isinstance(child, ConditionGroup):
                found.extend(child.leaves())
            else:
                found.append(child)
        return found


ConditionGroup.model_rebuild()


def parse_condition_group(raw: Any, *, field: str = "conditions") -> ConditionGroup:
    """Build a :class:`ConditionGroup` from user input.

    A bare single condition is wrapped in an AND group. Raises
    :class:`order_engine.errors.ValidationError` naming the offending field.
    """
    if isinstance(raw, ConditionGroup):
        return raw
    if isinstance(raw, Condition):
        return ConditionGroup(operator="AND", conditions=[raw])
    try:
        if isinstance(raw, dict) and "conditions" not in raw and "field" in raw:
            return ConditionGroup(operator="AND", conditions=[Condition.model_validate(raw)])
        return ConditionGroup.model_validate(raw)
    except PydanticValidationError as exc:
        raise from_pydantic(exc, prefix=field) from exc


# ------------------------------------------------------------------
# Builders
# ------------------------------------------------------------------


def condition(field: str, operator: str, value: Any) -> Condition:
    """Create a single condition, e.g. ``condition("price", "lt", 3000)``."""
    return Condition.model_validate({"field": field, "operator": operator, "value": value})


def and_(*conditions: Condition | ConditionGroup) -> ConditionGroup:
    """Create an AND group."""
    return ConditionGroup(operator="AND", conditions=list(conditions))


def or_(*conditions: Condition | ConditionGroup) -> ConditionGroup:
    """Create an OR group."""
    return ConditionGroup(operator="OR", conditions=list(conditions))
