"""Exception types raised by the order engine."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pydantic import ValidationError as PydanticValidationError


# Discriminator tags pydantic inserts into error locations for condition trees.
_UNION_TAGS = frozenset({"condition", "group"})


class OrderEngineError(Exception):
    """Base class for order engine errors."""


class ValidationError(OrderEngineError, ValueError):
    """Order params or condition syntax are missing or invalid.

    ``field`` names the offending parameter (dot-separated for nested fields).
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")


class FlowStructureError(OrderEngineError):
    """A generated flow graph violates a structural invariant."""


def from_pydantic(exc: PydanticValidationError, *, prefix: str = "") -> ValidationError:
    """Convert the first pydantic error into a :class:`ValidationError` naming its field."""
    first = exc.errors()[0]
    parts = [str(part) for part in first.get("loc", ()) if part not in _UNION_TAGS]
    if prefix:
        parts.insert(0, prefix)
    field = ".".join(parts) or "params"
    if first.get("type") == "missing":
        return ValidationError(field, "required field is missing")
    return ValidationError(field, first.get("msg", "invalid value"))
