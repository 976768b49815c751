"""Flow graph models.

A flow is an explicit node list plus an edge list addressed by node id, so
loop-back edges (re-check on the next tick) need no cyclic references. The
external flow runtime walks it by id lookup.
"""

from __future__ import annotations

from collections import deque
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from order_engine.errors import FlowStructureError

EdgeCondition = Literal["true", "false", "always"]


class NodeRole(str, Enum):
    """What a flow node does when the runtime reaches it."""

    CHECK_CONDITION = "check-condition"
    EXECUTE_TRADE = "execute-trade"
    NOTIFY = "notify"
    WAIT_TICK = "wait-tick"
    UPDATE_STATE = "update-state"
    TERMINAL = "terminal"


class FlowNode(BaseModel):
    id: str
    role: NodeRole
    name: str
    data: dict[str, Any] = Field(default_factory=dict)


class FlowEdge(BaseModel):
    """A directed edge; serialized as ``{"from", "to", "condition"}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    source: str = Field(alias="from")
    target: str = Field(alias="to")
    condition: EdgeCondition = "always"


class Flow(BaseModel):
    """One order's execution graph."""

    id: str
    name: str
    description: str
    version: str
    nodes: list[FlowNode]
    edges: list[FlowEdge]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def entry_id(self) -> str:
        return str(self.metadata.get("entry", ""))

    def node(self, node_id: str) -> FlowNode | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def nodes_with_role(self, role: NodeRole) -> list[FlowNode]:
        return [n for n in self.nodes if n.role == role]

    def outgoing(self, node_id: str) -> list[FlowEdge]:
        return [e for e in self.edges if e.source == node_id]

    def next_node(self, node_id: str, outcome: bool | None = None) -> str | None:
        """Return the successor of *node_id*.

        *outcome* selects the ``true``/``false`` edge of a check node and is
        ignored elsewhere. Returns None at a terminal node.
        """
        wanted = "always" if outcome is None else ("true" if outcome else "false")
        for edge in self.outgoing(node_id):
            if edge.condition == wanted or edge.condition == "always":
                return edge.target
        return None

    def structure(self) -> tuple[list[tuple[str, str]], list[tuple[str, str, str]]]:
        """Nodes and edges without ids or timestamps that vary between generations."""
        return (
            [(n.id, n.role.value) for n in self.nodes],
            [(e.source, e.target, e.condition) for e in self.edges],
        )

    def check_structure(self) -> None:
        """Raise :class:`FlowStructureError` if the graph is malformed.

        Checks: unique node ids, an existing entry node, edges that reference
        existing nodes, exactly one true and one false edge per check node,
        exactly one ``always`` edge per other non-terminal node, no edges out of
        terminals, every node reachable from the entry, and a reachable terminal.
        """
        ids = [n.id for n in self.nodes]
        if len(ids) != len(set(ids)):
            raise FlowStructureError(f"flow {self.id}: duplicate node ids")
        by_id = {n.id: n for n in self.nodes}
        if self.entry_id not in by_id:
            raise FlowStructureError(f"flow {self.id}: entry node {self.entry_id!r} does not exist")

        for edge in self.edges:
            if edge.source not in by_id or edge.target not in by_id:
                raise FlowStructureError(f"flow {self.id}: edge {edge.id} references a missing node")

        for node in self.nodes:
            conditions = sorted(e.condition for e in self.outgoing(node.id))
            if node.role == NodeRole.TERMINAL:
                expected: list[str] = []
            elif node.role == NodeRole.CHECK_CONDITION:
                expected = ["false", "true"]
            else:
                expected = ["always"]
            if conditions != expected:
                raise FlowStructureError(
                    f"flow {self.id}: node {node.id} ({node.role.value}) has edges {conditions}, expected {expected}"
                )

        reachable = {self.entry_id}
        queue = deque([self.entry_id])
        while queue:
            current = queue.popleft()
            for edge in self.outgoing(current):
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)
        unreachable = set(by_id) - reachable
        if unreachable:
            raise FlowStructureError(f"flow {self.id}: unreachable nodes {sorted(unreachable)}")
        if not any(by_id[node_id].role == NodeRole.TERMINAL for node_id in reachable):
            raise FlowStructureError(f"flow {self.id}: no terminal node")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
