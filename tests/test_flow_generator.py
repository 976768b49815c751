"""Tests for flow generation and flow structure checks."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from order_engine.config import FlowGeneratorConfig
from order_engine.errors import FlowStructureError, ValidationError
from order_engine.flow import Flow, FlowEdge, FlowNode, NodeRole
from order_engine.flow_generator import FlowGenerator
from order_engine.orders import Order, OrderType, parse_params

CONDITIONS = {"operator": "AND", "conditions": [{"field": "rsi", "operator": "lt", "value": 30}]}

PARAMS: dict[OrderType, dict[str, Any]] = {
    OrderType.STOP_LOSS: {"token": "ETH", "triggerPrice": 2500},
    OrderType.TAKE_PROFIT: {"token": "ETH", "triggerPrice": 4000, "sellPercent": 50},
    OrderType.CONDITIONAL_SELL: {"token": "ETH", "conditions": CONDITIONS},
    OrderType.CONDITIONAL_BUY: {"token": "ETH", "conditions": CONDITIONS, "sellToken": "USDC", "spendAmount": 100},
    OrderType.SMART_ENTRY: {
        "token": "ETH",
        "conditions": CONDITIONS,
        "sellToken": "USDC",
        "spendAmount": 100,
        "maxSpendTotal": 500,
    },
    OrderType.DCA: {"token": "ETH", "sellToken": "USDC", "amountPerExecution": 50, "interval": "daily"},
    OrderType.TWAP: {"token": "ETH", "buyToken": "USDC", "totalAmount": 10, "duration": 3600, "slices": 4},
    OrderType.TRAILING_STOP: {"token": "ETH", "trailPercent": 10},
    OrderType.DUAL_PROTECTION: {
        "token": "ETH",
        "stopLoss": {
            "conditions": {"operator": "AND", "conditions": [{"field": "price", "operator": "lte", "value": 2000}]}
        },
        "takeProfit": {
            "conditions": {"operator": "AND", "conditions": [{"field": "price", "operator": "gte", "value": 5000}]},
            "sellPercent": 50,
        },
    },
}


def _order(order_type: OrderType, order_id: str = "order_1", **overrides: Any) -> Order:
    return Order(id=order_id, type=order_type, params=parse_params(order_type, {**PARAMS[order_type], **overrides}))


def _edge_targets(flow: Flow, node_id: str) -> dict[str, str]:
    return {edge.condition: edge.target for edge in flow.outgoing(node_id)}


@pytest.fixture
def generator() -> FlowGenerator:
    return FlowGenerator()


class TestAllTemplates:
    @pytest.mark.parametrize("order_type", list(OrderType))
    def test_generates_valid_flow(self, generator: FlowGenerator, order_type: OrderType) -> None:
        flow = generator.generate(_order(order_type))
        flow.check_structure()
        assert flow.id == "order_1:flow"
        assert flow.metadata["orderType"] == order_type.value
        assert flow.nodes_with_role(NodeRole.TERMINAL)
        assert flow.nodes_with_role(NodeRole.EXECUTE_TRADE)

    @pytest.mark.parametrize("order_type", list(OrderType))
    def test_generation_is_deterministic(self, order_type: OrderType) -> None:
        times = iter([datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 1, 2, tzinfo=timezone.utc)])
        generator = FlowGenerator(clock=lambda: next(times))
        order = _order(order_type)
        first = generator.generate(order)
        second = generator.generate(order)
        assert first.structure() == second.structure()
        assert first.metadata["generatedAt"] != second.metadata["generatedAt"]
        first_data, second_data = first.to_dict(), second.to_dict()
        first_data["metadata"].pop("generatedAt")
        second_data["metadata"].pop("generatedAt")
        assert first_data == second_data

    def test_invalid_params_name_the_field(self, generator: FlowGenerator) -> None:
        order = _order(OrderType.STOP_LOSS)
        order.params = parse_params("take-profit", PARAMS[OrderType.TAKE_PROFIT])
        with pytest.raises(ValidationError) as exc_info:
            generator.generate(order)
        assert exc_info.value.field == "type"


class TestSingleShot:
    def test_stop_loss_shape(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.STOP_LOSS))
        assert len(flow.nodes) >= 3
        check = flow.entry_id
        assert flow.node(check).role == NodeRole.CHECK_CONDITION  # type: ignore[union-attr]
        assert flow.node(check).data["conditions"] == {  # type: ignore[union-attr]
            "operator": "AND",
            "conditions": [{"field": "price", "operator": "lte", "value": 2500.0}],
        }
        targets = _edge_targets(flow, check)
        execute = targets["true"]
        assert flow.node(execute).role == NodeRole.EXECUTE_TRADE  # type: ignore[union-attr]
        assert flow.node(targets["false"]).role == NodeRole.WAIT_TICK  # type: ignore[union-attr]
        assert flow.next_node(targets["false"]) == check
        notify = flow.next_node(execute)
        assert flow.node(notify).role == NodeRole.NOTIFY  # type: ignore[arg-type,union-attr]
        terminal = flow.next_node(notify)  # type: ignore[arg-type]
        assert flow.node(terminal).role == NodeRole.TERMINAL  # type: ignore[arg-type,union-attr]
        assert flow.next_node(terminal) is None  # type: ignore[arg-type]

    def test_execute_node_data(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.TAKE_PROFIT))
        execute = flow.nodes_with_role(NodeRole.EXECUTE_TRADE)[0]
        assert execute.data == {
            "side": "sell",
            "token": "ETH",
            "sellPercent": 50.0,
            "receiveToken": "USDC",
            "chainId": "base",
            "guard": "once",
        }
        assert flow.name == "Take-Profit - ETH"

    def test_config_defaults_flow_into_nodes(self) -> None:
        config = FlowGeneratorConfig(check_interval=5, default_receive_token="DAI", default_chain_id="ethereum")
        flow = FlowGenerator(config).generate(_order(OrderType.STOP_LOSS))
        execute = flow.nodes_with_role(NodeRole.EXECUTE_TRADE)[0]
        assert execute.data["receiveToken"] == "DAI"
        assert execute.data["chainId"] == "ethereum"
        assert flow.nodes_with_role(NodeRole.WAIT_TICK)[0].data["intervalSeconds"] == 5

    def test_conditional_buy_embeds_user_conditions(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.CONDITIONAL_BUY))
        check = flow.node(flow.entry_id)
        assert check is not None
        assert check.data["conditions"]["conditions"][0]["field"] == "rsi"
        execute = flow.nodes_with_role(NodeRole.EXECUTE_TRADE)[0]
        assert execute.data["side"] == "buy"
        assert execute.data["spendAmount"] == 100.0

    def test_notify_channels(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.STOP_LOSS, notifyChannels=["telegram"]))
        notify = flow.nodes_with_role(NodeRole.NOTIFY)[0]
        assert notify.data == {"template": "stop-loss-triggered", "channels": ["telegram"]}


class TestScheduled:
    def test_dca_loop(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.DCA, maxExecutions=3))
        check_schedule = "order_1:check-schedule"
        check_remaining = "order_1:check-remaining"
        assert flow.entry_id == check_schedule
        assert _edge_targets(flow, check_schedule)["true"] == "order_1:execute-partial"
        assert flow.next_node("order_1:execute-partial") == "order_1:update-state"
        assert flow.next_node("order_1:update-state") == "order_1:notify"
        assert flow.next_node("order_1:notify") == check_remaining
        assert _edge_targets(flow, check_remaining) == {"true": check_schedule, "false": "order_1:terminal"}
        wait = _edge_targets(flow, check_schedule)["false"]
        assert flow.node(wait).role == NodeRole.WAIT_TICK  # type: ignore[union-attr]
        assert flow.next_node(wait) == check_remaining

    def test_schedule_conditions(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.DCA, conditions=CONDITIONS))
        data = flow.node("order_1:check-schedule").data["conditions"]  # type: ignore[union-attr]
        assert data["operator"] == "AND"
        assert data["conditions"][0] == {"field": "schedule.secondsUntilDue", "operator": "lte", "value": 0.0}
        assert data["conditions"][1] == {
            "operator": "AND",
            "conditions": [{"field": "rsi", "operator": "lt", "value": 30.0}],
        }
        remaining = flow.node("order_1:check-remaining").data["conditions"]  # type: ignore[union-attr]
        assert remaining["conditions"][0] == {"field": "schedule.remainingExecutions", "operator": "ne", "value": 0.0}

    def test_twap_slices(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.TWAP))
        execute = flow.node("order_1:execute-partial")
        assert execute is not None
        assert execute.data["amount"] == 2.5
        assert execute.data["receiveToken"] == "USDC"
        assert execute.data["guard"] == "per-slice"
        wait = flow.nodes_with_role(NodeRole.WAIT_TICK)[0]
        assert wait.data["intervalSeconds"] == 30.0


class TestTrailingStop:
    def test_update_state_is_entry(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.TRAILING_STOP))
        entry = flow.node(flow.entry_id)
        assert entry is not None
        assert entry.role == NodeRole.UPDATE_STATE
        check = flow.next_node(entry.id)
        assert check is not None
        conditions = flow.node(check).data["conditions"]  # type: ignore[union-attr]
        assert conditions["conditions"][0] == {"field": "trailing.triggered", "operator": "eq", "value": 1.0}
        wait = _edge_targets(flow, check)["false"]
        assert flow.next_node(wait) == entry.id

    def test_activation_conditions_are_anded(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.TRAILING_STOP, activationConditions=CONDITIONS))
        check = flow.nodes_with_role(NodeRole.CHECK_CONDITION)[0]
        assert len(check.data["conditions"]["conditions"]) == 2


class TestDualProtection:
    def test_branches_share_one_execute_node(self, generator: FlowGenerator) -> None:
        flow = generator.generate(_order(OrderType.DUAL_PROTECTION))
        executes = flow.nodes_with_role(NodeRole.EXECUTE_TRADE)
        assert len(executes) == 1
        execute = executes[0]
        assert execute.data["guard"] == "once"
        assert execute.data["sellPercentByBranch"] == {"stop-loss": 100.0, "take-profit": 50.0}
        sl, tp = "order_1:check-stop-loss", "order_1:check-take-profit"
        assert flow.entry_id == sl
        assert _edge_targets(flow, sl) == {"true": execute.id, "false": tp}
        targets = _edge_targets(flow, tp)
        assert targets["true"] == execute.id
        assert flow.next_node(targets["false"]) == sl


class TestFlowStructure:
    def _flow(self, nodes: list[FlowNode], edges: list[FlowEdge], entry: str = "a") -> Flow:
        return Flow(id="f", name="f", description="", version="1", nodes=nodes, edges=edges, metadata={"entry": entry})

    def test_missing_entry(self) -> None:
        flow = self._flow([FlowNode(id="a", role=NodeRole.TERMINAL, name="a")], [], entry="zzz")
        with pytest.raises(FlowStructureError):
            flow.check_structure()

    def test_check_node_needs_both_edges(self) -> None:
        nodes = [
            FlowNode(id="a", role=NodeRole.CHECK_CONDITION, name="a"),
            FlowNode(id="b", role=NodeRole.TERMINAL, name="b"),
        ]
        edges = [FlowEdge(id="a->b", source="a", target="b", condition="true")]
        with pytest.raises(FlowStructureError):
            self._flow(nodes, edges).check_structure()

    def test_unreachable_node(self) -> None:
        nodes = [
            FlowNode(id="a", role=NodeRole.NOTIFY, name="a"),
            FlowNode(id="b", role=NodeRole.TERMINAL, name="b"),
            FlowNode(id="c", role=NodeRole.TERMINAL, name="c"),
        ]
        edges = [FlowEdge(id="a->b", source="a", target="b")]
        with pytest.raises(FlowStructureError, match="unreachable"):
            self._flow(nodes, edges).check_structure()

    def test_dangling_edge(self) -> None:
        nodes = [FlowNode(id="a", role=NodeRole.NOTIFY, name="a")]
        edges = [FlowEdge(id="a->x", source="a", target="x")]
        with pytest.raises(FlowStructureError):
            self._flow(nodes, edges).check_structure()

    def test_edges_serialize_with_from_and_to(self, generator: FlowGenerator) -> None:
        data = generator.generate(_order(OrderType.STOP_LOSS)).to_dict()
        edge = data["edges"][0]
        assert set(edge) == {"id", "from", "to", "condition"}
        assert Flow.model_validate(data).edges[0].source == edge["from"]

    def test_generated_at_uses_clock(self) -> None:
        when = datetime(2026, 5, 5, tzinfo=timezone.utc) + timedelta(hours=1)
        flow = FlowGenerator(clock=lambda: when).generate(_order(OrderType.STOP_LOSS))
        assert flow.metadata["generatedAt"] == when.isoformat()
