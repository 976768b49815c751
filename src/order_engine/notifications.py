"""Order event notifications.

Templates are plain ``str.format`` strings. Placeholders a caller does not
supply render as empty text, so a template never fails to render.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from order_engine.conditions import Condition, ConditionGroup
from order_engine.orders import (
    ConditionalBuyParams,
    ConditionalSellParams,
    DCAParams,
    DualProtectionParams,
    Order,
    OrderStatus,
    OrderType,
    SmartEntryParams,
    StopLossParams,
    TakeProfitParams,
    TrailingStopParams,
    TWAPParams,
)


@dataclass(frozen=True)
class NotificationTemplate:
    title: str
    body: str


@dataclass(frozen=True)
class Notification:
    """A rendered order event, ready for alert sinks."""

    event: str
    title: str
    body: str
    order_id: str = ""
    channels: tuple[str, ...] = ()
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return f"{self.title}\n\n{self.body}"


def _template(title: str, *lines: str) -> NotificationTemplate:
    return NotificationTemplate(title=title, body="\n".join(lines))


ORDER_NOTIFICATION_TEMPLATES: dict[str, NotificationTemplate] = {
    "stop-loss-created": _template(
        "Stop-Loss Created",
        "Stop-loss armed for {token}.",
        "",
        "Trigger: price drops to ${trigger_value}",
        "Action: sell {sell_percent}% -> {receive_token}",
    ),
    "stop-loss-triggered": _template(
        "Stop-Loss Triggered",
        "Stop-loss executed for {token}.",
        "",
        "Condition: {condition_summary}",
        "Trigger price: ${trigger_value}",
        "Sold: {sold_amount} {token}",
        "Received: {received_amount} {receive_token}",
        "TX: {tx_hash}",
    ),
    "take-profit-created": _template(
        "Take-Profit Created",
        "Take-profit armed for {token}.",
        "",
        "Trigger: price rises to ${trigger_value}",
        "Action: sell {sell_percent}% -> {receive_token}",
    ),
    "take-profit-triggered": _template(
        "Take-Profit Triggered",
        "Take-profit executed for {token}.",
        "",
        "Condition: {condition_summary}",
        "Trigger price: ${trigger_value}",
        "Sold: {sold_amount} {token}",
        "Received: {received_amount} {receive_token}",
        "TX: {tx_hash}",
    ),
    "conditional-sell-triggered": _template(
        "Conditional Sell Triggered",
        "Conditional sell executed for {token}.",
        "",
        "Met conditions:",
        "{met_conditions}",
        "",
        "Sold: {sold_amount} {token}",
        "Received: {received_amount} {receive_token}",
        "TX: {tx_hash}",
    ),
    "conditional-buy-triggered": _template(
        "Conditional Buy Triggered",
        "Conditional buy executed.",
        "",
        "Met conditions:",
        "{met_conditions}",
        "",
        "Bought: {bought_amount} {token}",
        "Spent: {spend_amount} {sell_token}",
        "TX: {tx_hash}",
    ),
    "smart-entry-created": _template(
        "Smart Entry Active",
        "Monitoring smart entry for {token}.",
        "",
        "Conditions: {condition_summary}",
        "Purchase amount: {spend_amount} {sell_token}",
        "Max total: {max_spend_total}",
    ),
    "smart-entry-executed": _template(
        "Smart Entry Purchase",
        "Conditions met, purchase executed.",
        "",
        "Token: {token}",
        "Met conditions:",
        "{met_conditions}",
        "",
        "Bought: {bought_amount} ({spend_amount} {sell_token})",
    ),
    "dca-created": _template(
        "DCA Started",
        "DCA strategy active for {token}.",
        "",
        "Amount: {spend_amount} {sell_token} / {interval}",
    ),
    "dca-executed": _template(
        "DCA Purchase Completed",
        "Periodic DCA purchase executed.",
        "",
        "This time: {bought_amount} {token} ({spend_amount} {sell_token})",
        "Executions done: {executions_done}",
        "Next: {next_execution}",
    ),
    "twap-slice-executed": _template(
        "TWAP Slice Sold",
        "TWAP strategy in progress.",
        "",
        "This slice: {sold_amount} {token}",
        "Received: {received_amount} {receive_token}",
        "Slices remaining: {remaining_executions}",
    ),
    "twap-completed": _template(
        "TWAP Completed",
        "TWAP strategy completed.",
        "",
        "Total sold: {sold_amount} {token}",
        "Total received: {received_amount} {receive_token}",
    ),
    "trailing-stop-triggered": _template(
        "Trailing Stop Triggered",
        "Trailing stop executed for {token}.",
        "",
        "Highest price: ${high_price}",
        "Trigger price: ${trigger_value} ({trail_percent}% drop)",
        "Sold: {sold_amount} {token}",
        "TX: {tx_hash}",
    ),
    "trailing-stop-updated": _template(
        "Trailing Stop Updated",
        "{token} reached a new high.",
        "",
        "New high: ${high_price}",
        "New trigger: ${trigger_value}",
        "Trail: {trail_percent}%",
    ),
    "dual-protection-triggered": _template(
        "Dual Protection Triggered",
        "Protection executed for {token}.",
        "",
        "Price: ${current_price}",
        "Sold: {sold_amount} {token}",
        "TX: {tx_hash}",
    ),
    "dual-protection-sl-triggered": _template(
        "Dual Protection - Stop-Loss",
        "Stop-loss triggered for {token}.",
        "",
        "Price: ${current_price}",
        "Sold: {sold_amount} {token}",
        "TX: {tx_hash}",
    ),
    "dual-protection-tp-triggered": _template(
        "Dual Protection - Take-Profit",
        "Take-profit triggered for {token}.",
        "",
        "Price: ${current_price}",
        "Sold: {sold_amount} {token}",
        "TX: {tx_hash}",
    ),
    "order-created": _template(
        "Order Created", "New order.", "", "Type: {order_type}", "Token: {token}", "Status: {status}"
    ),
    "order-activated": _template("Order Active", "Order is now monitored.", "", "Type: {order_type}", "Token: {token}"),
    "order-triggered": _template(
        "Order Triggered", "Order conditions met, executing.", "", "Type: {order_type}", "Token: {token}"
    ),
    "order-cancelled": _template("Order Cancelled", "Order cancelled.", "", "Type: {order_type}", "Token: {token}"),
    "order-paused": _template(
        "Order Paused", "Order paused.", "", "Type: {order_type}", "Token: {token}", "To resume: resume {order_id}"
    ),
    "order-resumed": _template("Order Resumed", "Order is active again.", "", "Type: {order_type}", "Token: {token}"),
    "order-failed": _template(
        "Order Failed", "Order could not be executed.", "", "Type: {order_type}", "Token: {token}", "Error: {error}"
    ),
    "order-completed": _template(
        "Order Completed", "Order completed successfully.", "", "Type: {order_type}", "Token: {token}"
    ),
}

_OPERATOR_SYMBOLS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
    "between": "between",
}


class _BlankDict(dict):
    def __missing__(self, key: str) -> str:
        return ""


def format_number(value: float) -> str:
    """Compact display form: ``1.5K``, ``2.0M``, ``3.1B``."""
    magnitude = abs(value)
    if magnitude >= 1_000_000_000:
        return f"{value / 1_000_000_000:.1f}B"
    if magnitude >= 1_000_000:
        return f"{value / 1_000_000:.1f}M"
    if magnitude >= 1_000:
        return f"{value / 1_000:.1f}K"
    return f"{value:g}"


def format_condition(leaf: Condition) -> str:
    op = _OPERATOR_SYMBOLS.get(leaf.operator, leaf.operator)
    if isinstance(leaf.value, tuple):
        value = f"{format_number(leaf.value[0])} - {format_number(leaf.value[1])}"
    elif isinstance(leaf.value, float):
        value = format_number(leaf.value)
    else:
        value = str(leaf.value)
    return f"{leaf.field} {op} {value}"


def format_condition_summary(group: ConditionGroup | Condition | None) -> str:
    """Render a condition tree as one line, e.g. ``price <= 3.0K AND rsi < 30``.

    Nested groups are parenthesized.
    """
    if group is None:
        return ""
    if isinstance(group, Condition):
        return format_condition(group)
    parts = []
    for child in group.conditions:
        if isinstance(child, ConditionGroup):
            parts.append(f"({format_condition_summary(child)})")
        else:
            parts.append(format_condition(child))
    return f" {group.operator} ".join(parts)


def event_for_status(
    order: Order,
    status: OrderStatus,
    *,
    previous: OrderStatus | None = None,
    branch: str | None = None,
) -> str:
    """Map a status change to a notification event name.

    *branch* selects the stop-loss (``"stop-loss"``) or take-profit
    (``"take-profit"``) message of a dual-protection order.
    """
    if status == OrderStatus.TRIGGERED:
        if order.type == OrderType.DUAL_PROTECTION and branch:
            return "dual-protection-sl-triggered" if branch == "stop-loss" else "dual-protection-tp-triggered"
        specific = f"{order.type.value}-triggered"
        return specific if specific in ORDER_NOTIFICATION_TEMPLATES else "order-triggered"
    if status == OrderStatus.CREATED:
        specific = f"{order.type.value}-created"
        return specific if specific in ORDER_NOTIFICATION_TEMPLATES else "order-created"
    if status == OrderStatus.ACTIVE:
        return "order-resumed" if previous == OrderStatus.PAUSED else "order-activated"
    if order.type == OrderType.TWAP and status == OrderStatus.COMPLETED:
        return "twap-completed"
    return f"order-{status.value}"


def _order_context(order: Order) -> dict[str, Any]:
    params = order.params
    context: dict[str, Any] = {
        "order_id": order.id,
        "order_type": order.type.value,
        "status": order.status.value,
        "token": params.token,
        "error": order.error or "",
    }
    if isinstance(params, (StopLossParams, TakeProfitParams)):
        context["trigger_value"] = f"{params.trigger_price:g}"
    if isinstance(params, (StopLossParams, TakeProfitParams, ConditionalSellParams, TrailingStopParams)):
        context["sell_percent"] = f"{params.sell_percent:g}"
        context["receive_token"] = params.receive_token or "USDC"
    if isinstance(params, (ConditionalSellParams, ConditionalBuyParams, SmartEntryParams)):
        context["condition_summary"] = format_condition_summary(params.conditions)
    if isinstance(params, (ConditionalBuyParams, SmartEntryParams)):
        context["sell_token"] = params.sell_token
        context["spend_amount"] = format_number(params.spend_amount)
    if isinstance(params, SmartEntryParams) and params.max_spend_total is not None:
        context["max_spend_total"] = format_number(params.max_spend_total)
    if isinstance(params, DCAParams):
        context["sell_token"] = params.sell_token
        context["spend_amount"] = format_number(params.amount_per_execution)
        context["interval"] = params.interval if isinstance(params.interval, str) else f"{params.interval:g}s"
        context["condition_summary"] = format_condition_summary(params.conditions)
    if isinstance(params, TWAPParams):
        context["receive_token"] = params.buy_token
        context["sold_amount"] = format_number(params.slice_amount)
    if isinstance(params, TrailingStopParams):
        context["trail_percent"] = f"{params.trail_percent:g}"
        if order.trailing is not None and order.trailing.high_water_mark is not None:
            high = order.trailing.high_water_mark
            context["high_price"] = f"{high:g}"
            context["trigger_value"] = f"{high * (1 - params.trail_percent / 100):g}"
    if isinstance(params, DualProtectionParams):
        context["receive_token"] = params.receive_token or "USDC"
    if order.schedule is not None:
        context["executions_done"] = order.schedule.executions_done
        if order.schedule.remaining_executions is not None:
            context["remaining_executions"] = order.schedule.remaining_executions
        if order.schedule.next_due_at is not None:
            context["next_execution"] = order.schedule.next_due_at.isoformat()
    return context


def render_order_notification(event: str, order: Order, **context: Any) -> Notification | None:
    """Render *event* for *order*; returns None for an unknown event.

    Keyword *context* overrides values derived from the order. A
    ``met_conditions`` list is rendered one per line.
    """
    template = ORDER_NOTIFICATION_TEMPLATES.get(event)
    if template is None:
        return None

    values = _BlankDict(_order_context(order))
    for key, value in context.items():
        if key == "met_conditions" and not isinstance(value, str):
            value = "\n".join(
                f"  - {format_condition(item) if isinstance(item, Condition) else item}" for item in value
            )
        values[key] = value

    return Notification(
        event=event,
        title=template.title.format_map(values),
        body=template.body.format_map(values).strip(),
        order_id=order.id,
        channels=tuple(order.params.notify_channels),
        data=dict(context),
    )
