"""Flow runtime port.

The runtime that walks flow graphs lives outside this package. The facade
talks to it through :class:`FlowRuntime`; :class:`LocalFlowRegistry` keeps
flows in-process for the CLI and tests.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from order_engine.flow import Flow

logger = logging.getLogger(__name__)


class FlowRuntime(Protocol):
    """Structural protocol for flow runtimes.

    ``register`` returns a runtime handle and may raise on failure.
    ``cancel`` returns False when the runtime could not stop the flow.
    """

    def register(self, flow: Flow) -> str: ...

    def cancel(self, flow_id: str) -> bool: ...


class LocalFlowRegistry:
    """In-process runtime stand-in that records registered flows."""

    def __init__(self) -> None:
        self._flows: dict[str, Flow] = {}
        self._cancelled: set[str] = set()
        self._lock = threading.Lock()

    def register(self, flow: Flow) -> str:
        with self._lock:
            self._flows[flow.id] = flow
            self._cancelled.discard(flow.id)
        logger.debug("Registered flow %s", flow.id, extra={"flow_id": flow.id})
        return flow.id

    def cancel(self, flow_id: str) -> bool:
        with self._lock:
            if flow_id not in self._flows:
                return False
            self._cancelled.add(flow_id)
        logger.debug("Cancelled flow %s", flow_id, extra={"flow_id": flow_id})
        return True

    def get(self, flow_id: str) -> Flow | None:
        with self._lock:
            return self._flows.get(flow_id)

    def is_cancelled(self, flow_id: str) -> bool:
        with self._lock:
            return flow_id in self._cancelled

    @property
    def flow_ids(self) -> list[str]:
        with self._lock:
            return list(self._flows)
