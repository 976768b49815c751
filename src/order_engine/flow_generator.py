"""Flow generation: order template -> execution graph.

Each order type maps to a small graph template. Node ids are
``"{order_id}:{key}"`` and edge ids ``"{source}->{target}"``, so generating
twice from the same order yields the same graph; only
``metadata["generatedAt"]`` differs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from order_engine.conditions import Condition, ConditionGroup, and_, condition
from order_engine.config import FlowGeneratorConfig
from order_engine.flow import EdgeCondition, Flow, FlowEdge, FlowNode, NodeRole
from order_engine.orders import (
    BaseOrderParams,
    ConditionalBuyParams,
    ConditionalSellParams,
    DCAParams,
    DualProtectionParams,
    Order,
    OrderType,
    SmartEntryParams,
    StopLossParams,
    TakeProfitParams,
    TrailingStopParams,
    TWAPParams,
    parse_params,
    utcnow,
)
from order_engine.state import schedule_interval

logger = logging.getLogger(__name__)


def _fmt(value: float) -> str:
    return f"{value:g}"


class _GraphBuilder:
    """Accumulate nodes and edges for one order."""

    def __init__(self, order_id: str) -> None:
        self._order_id = order_id
        self.nodes: list[FlowNode] = []
        self.edges: list[FlowEdge] = []

    def add(self, role: NodeRole, name: str, *, key: str | None = None, **data: Any) -> str:
        node_id = f"{self._order_id}:{key or role.value}"
        self.nodes.append(FlowNode(id=node_id, role=role, name=name, data=data))
        return node_id

    def connect(self, source: str, target: str, condition: EdgeCondition = "always") -> None:
        self.edges.append(FlowEdge(id=f"{source}->{target}", source=source, target=target, condition=condition))


class FlowGenerator:
    """Generate flows from orders.

    The generator only embeds conditions in check nodes; it never evaluates
    them. Params are re-validated before any graph is built.
    """

    def __init__(
        self,
        config: FlowGeneratorConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config or FlowGeneratorConfig()
        self._clock = clock
        self._templates: dict[OrderType, Callable[[Order, Any], Flow]] = {
            OrderType.STOP_LOSS: self._stop_loss,
            OrderType.TAKE_PROFIT: self._take_profit,
            OrderType.CONDITIONAL_SELL: self._conditional_sell,
            OrderType.CONDITIONAL_BUY: self._conditional_buy,
            OrderType.SMART_ENTRY: self._smart_entry,
            OrderType.DCA: self._dca,
            OrderType.TWAP: self._twap,
            OrderType.TRAILING_STOP: self._trailing_stop,
            OrderType.DUAL_PROTECTION: self._dual_protection,
        }

    def generate(self, order: Order) -> Flow:
        """Build and structurally check the flow for *order*.

        Raises :class:`order_engine.errors.ValidationError` when params are
        missing or invalid for the order type.
        """
        params = parse_params(order.type, order.params)
        flow = self._templates[order.type](order, params)
        flow.check_structure()
        logger.debug("Generated flow %s with %d nodes for order %s", flow.id, len(flow.nodes), order.id)
        return flow

    # ------------------------------------------------------------------
    # Shared pieces
    # ------------------------------------------------------------------

    def _chain_id(self, params: BaseOrderParams) -> str:
        return params.chain_id or self._config.default_chain_id

    def _sell_action(self, params: BaseOrderParams, sell_percent: float, receive_token: str | None) -> dict[str, Any]:
        return {
            "side": "sell",
            "token": params.token,
            "sellPercent": sell_percent,
            "receiveToken": receive_token or self._config.default_receive_token,
            "chainId": self._chain_id(params),
            "guard": "once",
        }

    def _notify(self, builder: _GraphBuilder, params: BaseOrderParams, template: str) -> str:
        channels = list(params.notify_channels)
        return builder.add(NodeRole.NOTIFY, "Send Notification", template=template, channels=channels)

    def _wait(self, builder: _GraphBuilder, interval: float | None = None) -> str:
        seconds = interval or self._config.check_interval
        return builder.add(NodeRole.WAIT_TICK, "Wait For Next Tick", intervalSeconds=seconds)

    def _flow(self, order: Order, builder: _GraphBuilder, *, entry: str, name: str, description: str) -> Flow:
        return Flow(
            id=f"{order.id}:flow",
            name=name,
            description=description,
            version=self._config.flow_version,
            nodes=builder.nodes,
            edges=builder.edges,
            metadata={
                "orderId": order.id,
                "orderType": order.type.value,
                "entry": entry,
                "checkIntervalSeconds": self._config.check_interval,
                "generatedAt": self._clock().isoformat(),
            },
        )

    def _single_shot(
        self,
        order: Order,
        params: BaseOrderParams,
        *,
        conditions: ConditionGroup,
        action: dict[str, Any],
        template: str,
        name: str,
        description: str,
    ) -> Flow:
        """check -> execute -> notify -> terminal, with a wait-tick loop on false."""
        builder = _GraphBuilder(order.id)
        check = builder.add(NodeRole.CHECK_CONDITION, "Check Conditions", conditions=conditions.to_dict())
        execute = builder.add(NodeRole.EXECUTE_TRADE, "Execute Trade", **action)
        notify = self._notify(builder, params, template)
        terminal = builder.add(NodeRole.TERMINAL, "Done", status="completed")
        wait = self._wait(builder)

        builder.connect(check, execute, "true")
        builder.connect(check, wait, "false")
        builder.connect(execute, notify)
        builder.connect(notify, terminal)
        builder.connect(wait, check)
        return self._flow(order, builder, entry=check, name=name, description=description)

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def _stop_loss(self, order: Order, params: StopLossParams) -> Flow:
        return self._single_shot(
            order,
            params,
            conditions=and_(condition("price", "lte", params.trigger_price)),
            action=self._sell_action(params, params.sell_percent, params.receive_token),
            template="stop-loss-triggered",
            name=f"Stop-Loss - {params.token}",
            description=(
                f"Sell {_fmt(params.sell_percent)}% of {params.token} "
                f"when price drops to ${_fmt(params.trigger_price)}"
            ),
        )

    def _take_profit(self, order: Order, params: TakeProfitParams) -> Flow:
        return self._single_shot(
            order,
            params,
            conditions=and_(condition("price", "gte", params.trigger_price)),
            action=self._sell_action(params, params.sell_percent, params.receive_token),
            template="take-profit-triggered",
            name=f"Take-Profit - {params.token}",
            description=(
                f"Sell {_fmt(params.sell_percent)}% of {params.token} "
                f"when price reaches ${_fmt(params.trigger_price)}"
            ),
        )

    def _conditional_sell(self, order: Order, params: ConditionalSellParams) -> Flow:
        return self._single_shot(
            order,
            params,
            conditions=params.conditions,
            action=self._sell_action(params, params.sell_percent, params.receive_token),
            template="conditional-sell-triggered",
            name=f"Conditional Sell - {params.token}",
            description=f"Sell {_fmt(params.sell_percent)}% of {params.token} when conditions are met",
        )

    def _conditional_buy(self, order: Order, params: ConditionalBuyParams) -> Flow:
        action = {
            "side": "buy",
            "token": params.token,
            "sellToken": params.sell_token,
            "spendAmount": params.spend_amount,
            "chainId": self._chain_id(params),
            "guard": "once",
        }
        return self._single_shot(
            order,
            params,
            conditions=params.conditions,
            action=action,
            template="conditional-buy-triggered",
            name=f"Conditional Buy - {params.token}",
            description=(
                f"Buy {params.token} with {_fmt(params.spend_amount)} {params.sell_token} when conditions are met"
            ),
        )

    def _smart_entry(self, order: Order, params: SmartEntryParams) -> Flow:
        action = {
            "side": "buy",
            "token": params.token,
            "sellToken": params.sell_token,
            "spendAmount": params.spend_amount,
            "maxSpendTotal": params.max_spend_total,
            "cooldownSeconds": params.cooldown_minutes * 60,
            "chainId": self._chain_id(params),
            "guard": "once",
        }
        return self._single_shot(
            order,
            params,
            conditions=params.conditions,
            action=action,
            template="smart-entry-executed",
            name=f"Smart Entry - {params.token}",
            description=f"Buy {params.token} when entry conditions are met",
        )

    def _scheduled(
        self,
        order: Order,
        params: DCAParams | TWAPParams,
        *,
        action: dict[str, Any],
        template: str,
        name: str,
        description: str,
    ) -> Flow:
        """check-schedule -> execute-partial -> update-state -> notify -> check-remaining.

        ``check-remaining`` loops back to ``check-schedule`` while executions
        remain and ends at the terminal otherwise; an undue schedule waits a
        tick and re-checks what remains.
        """
        due: list[Condition | ConditionGroup] = [condition("schedule.secondsUntilDue", "lte", 0)]
        if params.conditions is not None:
            due.append(params.conditions)

        builder = _GraphBuilder(order.id)
        check_schedule = builder.add(
            NodeRole.CHECK_CONDITION, "Check Schedule", key="check-schedule", conditions=and_(*due).to_dict()
        )
        execute = builder.add(NodeRole.EXECUTE_TRADE, "Execute Partial", key="execute-partial", **action)
        update = builder.add(NodeRole.UPDATE_STATE, "Decrement Remaining", operation="record-execution")
        notify = self._notify(builder, params, template)
        check_remaining = builder.add(
            NodeRole.CHECK_CONDITION,
            "Executions Remaining?",
            key="check-remaining",
            conditions=and_(condition("schedule.remainingExecutions", "ne", 0)).to_dict(),
        )
        terminal = builder.add(NodeRole.TERMINAL, "Done", status="completed")
        wait = self._wait(builder, min(self._config.check_interval, schedule_interval(params)))

        builder.connect(check_schedule, execute, "true")
        builder.connect(check_schedule, wait, "false")
        builder.connect(execute, update)
        builder.connect(update, notify)
        builder.connect(notify, check_remaining)
        builder.connect(check_remaining, check_schedule, "true")
        builder.connect(check_remaining, terminal, "false")
        builder.connect(wait, check_remaining)
        return self._flow(order, builder, entry=check_schedule, name=name, description=description)

    def _dca(self, order: Order, params: DCAParams) -> Flow:
        action = {
            "side": "buy",
            "token": params.token,
            "sellToken": params.sell_token,
            "spendAmount": params.amount_per_execution,
            "chainId": self._chain_id(params),
            "guard": "per-slice",
        }
        interval = params.interval if isinstance(params.interval, str) else f"every {_fmt(params.interval)}s"
        return self._scheduled(
            order,
            params,
            action=action,
            template="dca-executed",
            name=f"DCA - {params.token}",
            description=(
                f"Buy {_fmt(params.amount_per_execution)} {params.sell_token} worth of {params.token} {interval}"
            ),
        )

    def _twap(self, order: Order, params: TWAPParams) -> Flow:
        action = {
            "side": "sell",
            "token": params.token,
            "amount": params.slice_amount,
            "receiveToken": params.buy_token,
            "chainId": self._chain_id(params),
            "guard": "per-slice",
        }
        return self._scheduled(
            order,
            params,
            action=action,
            template="twap-slice-executed",
            name=f"TWAP - {params.token}",
            description=(
                f"Sell {_fmt(params.total_amount)} {params.token} for {params.buy_token} "
                f"in {params.slices} slices over {_fmt(params.duration)}s"
            ),
        )

    def _trailing_stop(self, order: Order, params: TrailingStopParams) -> Flow:
        """update-state -> check stop price -> execute -> notify -> terminal."""
        trigger: list[Condition | ConditionGroup] = [condition("trailing.triggered", "eq", 1)]
        if params.activation_conditions is not None:
            trigger.append(params.activation_conditions)

        builder = _GraphBuilder(order.id)
        update = builder.add(
            NodeRole.UPDATE_STATE,
            "Refresh High-Water Mark",
            operation="refresh-high-water-mark",
            priceField=params.price_field,
        )
        check = builder.add(NodeRole.CHECK_CONDITION, "Trailing Stop Triggered?", conditions=and_(*trigger).to_dict())
        action = self._sell_action(params, params.sell_percent, params.receive_token)
        execute = builder.add(NodeRole.EXECUTE_TRADE, "Execute Trade", **action)
        notify = self._notify(builder, params, "trailing-stop-triggered")
        terminal = builder.add(NodeRole.TERMINAL, "Done", status="completed")
        wait = self._wait(builder)

        builder.connect(update, check)
        builder.connect(check, execute, "true")
        builder.connect(check, wait, "false")
        builder.connect(execute, notify)
        builder.connect(notify, terminal)
        builder.connect(wait, update)
        return self._flow(
            order,
            builder,
            entry=update,
            name=f"Trailing Stop - {params.token}",
            description=(
                f"Sell {_fmt(params.sell_percent)}% of {params.token} with {_fmt(params.trail_percent)}% trailing stop"
            ),
        )

    def _dual_protection(self, order: Order, params: DualProtectionParams) -> Flow:
        """Stop-loss and take-profit checks feeding one shared, once-only execute node."""
        builder = _GraphBuilder(order.id)
        check_sl = builder.add(
            NodeRole.CHECK_CONDITION,
            "Stop-Loss Check",
            key="check-stop-loss",
            branch="stop-loss",
            conditions=params.stop_loss.conditions.to_dict(),
        )
        check_tp = builder.add(
            NodeRole.CHECK_CONDITION,
            "Take-Profit Check",
            key="check-take-profit",
            branch="take-profit",
            conditions=params.take_profit.conditions.to_dict(),
        )
        action = self._sell_action(params, params.stop_loss.sell_percent, params.receive_token)
        del action["sellPercent"]
        execute = builder.add(
            NodeRole.EXECUTE_TRADE,
            "Execute Protection",
            sellPercentByBranch={
                "stop-loss": params.stop_loss.sell_percent,
                "take-profit": params.take_profit.sell_percent,
            },
            **action,
        )
        notify = self._notify(builder, params, "dual-protection-triggered")
        terminal = builder.add(NodeRole.TERMINAL, "Done", status="completed")
        wait = self._wait(builder)

        builder.connect(check_sl, execute, "true")
        builder.connect(check_sl, check_tp, "false")
        builder.connect(check_tp, execute, "true")
        builder.connect(check_tp, wait, "false")
        builder.connect(execute, notify)
        builder.connect(notify, terminal)
        builder.connect(wait, check_sl)
        return self._flow(
            order,
            builder,
            entry=check_sl,
            name=f"Dual Protection - {params.token}",
            description=f"Protect {params.token} with stop-loss and take-profit",
        )
