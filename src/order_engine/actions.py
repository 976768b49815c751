"""Inbound order actions returning uniform ``{success, data?, error?}`` results.

These are the operations chat agents and other hosts call. Validation errors
and lifecycle refusals come back as ``success=False`` with a message; no
exception escapes an action.
"""

from __future__ import annotations

import builtins
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from order_engine.errors import OrderEngineError
from order_engine.orders import Order, OrderStatus, OrderType
from order_engine.templates import OrderFilter, OrderTemplates

logger = logging.getLogger(__name__)


@dataclass
class ActionResult:
    success: bool
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            result["data"] = self.data
        if self.error is not None:
            result["error"] = self.error
        return result


def _as_list(value: str | list[str] | None) -> list[str] | None:
    if value is None or value == "" or value == []:
        return None
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return list(value)


def _summary(order: Order) -> dict[str, Any]:
    data = order.to_dict()
    keys = ("id", "type", "status", "createdAt", "updatedAt", "triggeredAt", "completedAt")
    return {key: data[key] for key in keys if key in data}


class OrderActions:
    """Order operations for hosts that need plain result dicts."""

    def __init__(self, templates: OrderTemplates) -> None:
        self._templates = templates
        self._actions: dict[str, Callable[..., ActionResult]] = {
            "order:create": self.create,
            "order:list": self.list,
            "order:get": self.get,
            "order:activate": self.activate,
            "order:pause": self.pause,
            "order:resume": self.resume,
            "order:cancel": self.cancel,
            "order:stats": self.stats,
        }

    @property
    def names(self) -> builtins.list[str]:
        return sorted(self._actions)

    def execute(self, name: str, payload: Mapping[str, Any] | None = None) -> ActionResult:
        """Run the action registered as *name* (e.g. ``"order:create"``) with *payload* as keyword input."""
        action = self._actions.get(name)
        if action is None:
            return ActionResult(success=False, error=f"Unknown action: {name}")
        try:
            return action(**dict(payload or {}))
        except TypeError as exc:
            return ActionResult(success=False, error=f"Invalid input for {name}: {exc}")

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def create(self, type: str | None = None, params: Mapping[str, Any] | None = None) -> ActionResult:
        if not type:
            return ActionResult(success=False, error="Order type is required")
        if params is None:
            return ActionResult(success=False, error="Order params are required")

        def run() -> ActionResult:
            created = self._templates.create(type, params)
            return ActionResult(
                success=True,
                data={
                    "orderId": created.order.id,
                    "flowId": created.flow.id,
                    "type": created.order.type.value,
                    "status": created.order.status.value,
                    "createdAt": created.order.created_at.isoformat(),
                },
            )

        return self._safe(run, "Failed to create order")

    def list(
        self,
        status: str | builtins.list[str] | None = None,
        type: str | builtins.list[str] | None = None,
        token: str | builtins.list[str] | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> ActionResult:
        def run() -> ActionResult:
            statuses = _as_list(status)
            types = _as_list(type)
            order_filter = OrderFilter(
                status=[OrderStatus(value) for value in statuses] if statuses else None,
                type=[OrderType(value) for value in types] if types else None,
                token=_as_list(token),
                limit=limit,
                offset=offset,
            )
            orders = self._templates.list(order_filter)
            summaries = [_summary(order) for order in orders]
            return ActionResult(success=True, data={"orders": summaries, "total": len(summaries)})

        return self._safe(run, "Failed to list orders")

    def get(self, order_id: str | None = None) -> ActionResult:
        if not order_id:
            return ActionResult(success=False, error="Order ID is required")

        def run() -> ActionResult:
            order = self._templates.get(order_id)
            if order is None:
                return ActionResult(success=False, error=f"Order not found: {order_id}")
            return ActionResult(success=True, data=order.to_dict())

        return self._safe(run, "Failed to get order")

    def activate(self, order_id: str | None = None) -> ActionResult:
        return self._lifecycle(order_id, self._templates.activate, "activate")

    def pause(self, order_id: str | None = None) -> ActionResult:
        return self._lifecycle(order_id, self._templates.pause, "pause")

    def resume(self, order_id: str | None = None) -> ActionResult:
        return self._lifecycle(order_id, self._templates.resume, "resume")

    def cancel(self, order_id: str | None = None) -> ActionResult:
        return self._lifecycle(order_id, self._templates.cancel, "cancel")

    def stats(self) -> ActionResult:
        return self._safe(
            lambda: ActionResult(success=True, data=self._templates.get_stats().to_dict()), "Failed to get stats"
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lifecycle(self, order_id: str | None, operation: Callable[[str], bool], verb: str) -> ActionResult:
        if not order_id:
            return ActionResult(success=False, error="Order ID is required")
        if not self._safe_bool(lambda: operation(order_id), verb):
            return ActionResult(success=False, error=f"Failed to {verb} order: {order_id}")

        def run() -> ActionResult:
            order = self._templates.get(order_id)
            status = order.status.value if order is not None else None
            return ActionResult(success=True, data={"orderId": order_id, "status": status})

        return self._safe(run, f"Failed to read order {order_id} after {verb}")

    @staticmethod
    def _safe(call: Callable[[], ActionResult], fallback: str) -> ActionResult:
        try:
            return call()
        except (OrderEngineError, ValueError) as exc:
            return ActionResult(success=False, error=str(exc) or fallback)
        except Exception:
            logger.exception(fallback)
            return ActionResult(success=False, error=fallback)

    @staticmethod
    def _safe_bool(call: Callable[[], bool], verb: str) -> bool:
        try:
            return call()
        except Exception:
            logger.exception("Failed to %s order", verb)
            return False
