"""OrderTemplates: order creation, lifecycle state machine, and per-order state.

Every transition is a compare-and-set performed under the order's own lock:
read the record, check the transition table, write the whole record back.
Two callers racing on one order (a cancel against the runtime reporting a
trigger, or two branches of a dual-protection flow claiming the shared
execute node) therefore see exactly one winner.
"""

from __future__ import annotations

import builtins
import logging
import threading
import uuid
import weakref
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from order_engine.config import EngineConfig
from order_engine.flow import Flow
from order_engine.flow_generator import FlowGenerator
from order_engine.monitoring.alerts import AlertManager
from order_engine.notifications import event_for_status, render_order_notification
from order_engine.orders import (
    RUNTIME_STATUSES,
    BaseOrderParams,
    DCAParams,
    Order,
    OrderStatus,
    OrderType,
    TWAPParams,
    can_transition,
    parse_order_type,
    parse_params,
    utcnow,
)
from order_engine.repository import InMemoryOrderRepository, OrderRepository
from order_engine.runtime import FlowRuntime
from order_engine.state import advance_schedule, attach_initial_state, derive_snapshot, schedule_exhausted

logger = logging.getLogger(__name__)


@dataclass
class OrderCreation:
    order: Order
    flow: Flow


@dataclass
class OrderFilter:
    """Order listing filter.

    Values within one field are ORed, fields are ANDed. ``token`` matches an
    order's ``token`` or, for TWAP, its ``buy_token``.
    """

    status: builtins.list[OrderStatus] | None = None
    type: builtins.list[OrderType] | None = None
    token: builtins.list[str] | None = None
    limit: int | None = None
    offset: int = 0

    def matches(self, order: Order) -> bool:
        if self.status and order.status not in self.status:
            return False
        if self.type and order.type not in self.type:
            return False
        if self.token:
            wanted = {token.upper() for token in self.token}
            if not wanted.intersection(token.upper() for token in order.params.tokens()):
                return False
        return True


@dataclass
class OrderStats:
    """Counts over the order table; every status and type is present."""

    total: int = 0
    by_status: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "byStatus": dict(self.by_status), "byType": dict(self.by_type)}


def _new_order_id() -> str:
    return f"order_{uuid.uuid4().hex[:16]}"


class OrderTemplates:
    """Facade over order creation and the order lifecycle.

    The repository and flow runtime are injected. Without a runtime, flows
    are generated and attached but never registered anywhere.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        repository: OrderRepository | None = None,
        runtime: FlowRuntime | None = None,
        alerts: AlertManager | None = None,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = _new_order_id,
    ) -> None:
        self._config = config or EngineConfig()
        self._repo: OrderRepository = repository if repository is not None else InMemoryOrderRepository()
        self._runtime = runtime
        self._alerts = alerts
        self._clock = clock
        self._new_id = id_factory
        self._generator = FlowGenerator(self._config.flow_generator, clock=clock)
        # entries vanish once no caller holds the lock
        self._locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @property
    def generator(self) -> FlowGenerator:
        return self._generator

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create(self, order_type: OrderType | str, params: Mapping[str, Any] | BaseOrderParams) -> OrderCreation:
        """Create an order, attach its flow, and register it with the runtime.

        Raises :class:`order_engine.errors.ValidationError` before any side
        effect when params are missing or invalid.
        """
        resolved = parse_order_type(order_type)
        parsed = parse_params(resolved, params)
        now = self._clock()
        order = Order(id=self._new_id(), type=resolved, params=parsed, created_at=now, updated_at=now)
        attach_initial_state(order, now)
        flow = self._generator.generate(order)
        order.flow_id = flow.id

        with self._lock_for(order.id):
            if self._register(order, flow) and self._config.auto_activate:
                order.status = OrderStatus.ACTIVE
            self._repo.set(order)

        logger.info(
            "Created %s order %s (%s)", order.type.value, order.id, order.status.value, extra={"order_id": order.id}
        )
        self._notify(order, event_for_status(order, OrderStatus.CREATED))
        if order.status == OrderStatus.ACTIVE:
            self._notify(order, event_for_status(order, OrderStatus.ACTIVE, previous=OrderStatus.CREATED))
        return OrderCreation(order=order, flow=flow)

    def _register(self, order: Order, flow: Flow) -> bool:
        if self._runtime is None:
            return True
        try:
            self._runtime.register(flow)
        except Exception as exc:
            logger.exception("Failed to register flow %s for order %s", flow.id, order.id, extra={"order_id": order.id})
            order.error = f"flow registration failed: {exc}"
            order.updated_at = self._clock()
            return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Order | None:
        """Return a copy of the order, or None."""
        return self._repo.get(order_id)

    def list(self, order_filter: OrderFilter | None = None) -> builtins.list[Order]:
        """Matching orders, newest first, then paginated."""
        order_filter = order_filter or OrderFilter()
        orders = [order for order in self._repo.list() if order_filter.matches(order)]
        orders.sort(key=lambda order: order.created_at, reverse=True)
        start = max(order_filter.offset, 0)
        end = start + order_filter.limit if order_filter.limit is not None else None
        return orders[start:end]

    def get_stats(self) -> OrderStats:
        statuses: Counter[str] = Counter()
        types: Counter[str] = Counter()
        total = 0
        for order in self._repo.list():
            total += 1
            statuses[order.status.value] += 1
            types[order.type.value] += 1
        return OrderStats(
            total=total,
            by_status={status.value: statuses[status.value] for status in OrderStatus},
            by_type={order_type.value: types[order_type.value] for order_type in OrderType},
        )

    # ------------------------------------------------------------------
    # Owner transitions
    # ------------------------------------------------------------------

    def activate(self, order_id: str) -> bool:
        """Move a created or paused order to active."""
        return self._transition(order_id, OrderStatus.ACTIVE) is not None

    def resume(self, order_id: str) -> bool:
        """Move a paused order back to active."""
        return self._transition(order_id, OrderStatus.ACTIVE, allowed_from={OrderStatus.PAUSED}) is not None

    def pause(self, order_id: str) -> bool:
        return self._transition(order_id, OrderStatus.PAUSED) is not None

    def cancel(self, order_id: str) -> bool:
        """Cancel locally, then ask the runtime to stop the flow.

        A runtime failure is logged and recorded on the order; it never
        undoes the local cancellation.
        """
        order = self._transition(order_id, OrderStatus.CANCELLED)
        if order is None:
            return False
        if self._runtime is not None and order.flow_id:
            try:
                stopped = self._runtime.cancel(order.flow_id)
            except Exception as exc:
                logger.exception("Runtime cancel failed for flow %s", order.flow_id, extra={"order_id": order_id})
                self._flag_error(order_id, f"runtime cancel failed: {exc}")
            else:
                if not stopped:
                    logger.warning("Runtime did not cancel flow %s", order.flow_id, extra={"order_id": order_id})
                    self._flag_error(order_id, "runtime cancel failed")
        return True

    # ------------------------------------------------------------------
    # Runtime callbacks
    # ------------------------------------------------------------------

    def update_status(
        self,
        order_id: str,
        status: OrderStatus | str,
        error: str | None = None,
        *,
        branch: str | None = None,
    ) -> bool:
        """Report a runtime status (triggered, completed or failed).

        Claiming ``triggered`` twice fails, which is what keeps a shared
        execute node from running twice. *branch* names the dual-protection
        leg that fired and only affects the notification.
        """
        try:
            target = OrderStatus(status)
        except ValueError:
            logger.warning("Unknown status %r for order %s", status, order_id)
            return False
        if target not in RUNTIME_STATUSES:
            logger.warning("Status %s is not reported by the runtime (order %s)", target.value, order_id)
            return False

        def stamp(order: Order, now: datetime) -> None:
            if target == OrderStatus.TRIGGERED:
                order.triggered_at = now
            else:
                order.completed_at = now
            if error is not None:
                order.error = error

        return self._transition(order_id, target, mutate=stamp, branch=branch) is not None

    def record_execution(self, order_id: str) -> bool:
        """Claim one DCA/TWAP slice.

        Returns False when the order is not an active scheduled order or has
        nothing left to execute. Claiming the last slice moves the order to
        triggered.
        """
        with self._lock_for(order_id):
            order = self._repo.get(order_id)
            if order is None or order.status != OrderStatus.ACTIVE:
                return False
            if order.schedule is None or not isinstance(order.params, (DCAParams, TWAPParams)):
                logger.warning("Order %s has no schedule to execute", order_id)
                return False
            now = self._clock()
            if schedule_exhausted(order.schedule, order.params, now):
                return False
            advance_schedule(order.schedule, order.params, now)
            order.updated_at = now
            last = order.schedule.remaining_executions is not None and order.schedule.remaining_executions <= 0
            if last:
                order.status = OrderStatus.TRIGGERED
                order.triggered_at = now
            self._repo.set(order)

        logger.info(
            "Order %s executed slice %d", order_id, order.schedule.executions_done, extra={"order_id": order_id}
        )
        self._notify(order, "twap-slice-executed" if order.type == OrderType.TWAP else "dca-executed")
        if last:
            self._notify(order, event_for_status(order, OrderStatus.TRIGGERED))
        return True

    def prepare_snapshot(self, order_id: str, snapshot: Mapping[str, Any]) -> dict[str, Any] | None:
        """Refresh per-order state from *snapshot* and return the merged copy.

        Returns None for an unknown order or one that is neither active nor
        triggered. An active date-bounded schedule whose end date has passed
        is moved to triggered so its flow can finish. Raising an existing
        trailing high-water mark sends ``trailing-stop-updated``.
        """
        with self._lock_for(order_id):
            order = self._repo.get(order_id)
            if order is None or order.status not in (OrderStatus.ACTIVE, OrderStatus.TRIGGERED):
                return None
            now = self._clock()
            previous_high = order.trailing.high_water_mark if order.trailing is not None else None
            merged = derive_snapshot(order, snapshot, now)
            new_high = (
                previous_high is not None
                and order.trailing is not None
                and order.trailing.high_water_mark is not None
                and order.trailing.high_water_mark > previous_high
            )
            expired = (
                order.status == OrderStatus.ACTIVE
                and order.schedule is not None
                and isinstance(order.params, (DCAParams, TWAPParams))
                and schedule_exhausted(order.schedule, order.params, now)
            )
            if expired:
                order.status = OrderStatus.TRIGGERED
                order.triggered_at = now
                order.updated_at = now
            if order.trailing is not None or order.schedule is not None:
                self._repo.set(order)

        if new_high:
            high = merged["trailing"]["highWaterMark"]
            logger.info("Order %s new high %s", order_id, high, extra={"order_id": order_id})
            self._notify(order, "trailing-stop-updated")
        if expired:
            logger.info("Order %s schedule ended", order_id, extra={"order_id": order_id})
            self._notify(order, event_for_status(order, OrderStatus.TRIGGERED))
        return merged

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lock_for(self, order_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = self._locks[order_id] = threading.Lock()
            return lock

    def _transition(
        self,
        order_id: str,
        target: OrderStatus,
        *,
        allowed_from: Iterable[OrderStatus] | None = None,
        mutate: Callable[[Order, datetime], None] | None = None,
        branch: str | None = None,
    ) -> Order | None:
        with self._lock_for(order_id):
            order = self._repo.get(order_id)
            if order is None:
                logger.warning("Order %s not found", order_id)
                return None
            previous = order.status
            allowed = can_transition(previous, target)
            if allowed_from is not None and previous not in set(allowed_from):
                allowed = False
            if not allowed:
                logger.warning(
                    "Order %s cannot move from %s to %s",
                    order_id,
                    previous.value,
                    target.value,
                    extra={"order_id": order_id},
                )
                return None
            now = self._clock()
            order.status = target
            order.updated_at = now
            if mutate is not None:
                mutate(order, now)
            self._repo.set(order)

        logger.info("Order %s: %s -> %s", order_id, previous.value, target.value, extra={"order_id": order_id})
        self._notify(order, event_for_status(order, target, previous=previous, branch=branch))
        return order

    def _flag_error(self, order_id: str, message: str) -> None:
        with self._lock_for(order_id):
            order = self._repo.get(order_id)
            if order is None:
                return
            order.error = message
            order.updated_at = self._clock()
            self._repo.set(order)

    def _notify(self, order: Order, event: str, **context: Any) -> None:
        if self._alerts is None:
            return
        try:
            notification = render_order_notification(event, order, **context)
            if notification is not None:
                self._alerts.alert(notification)
        except Exception:
            logger.exception("Failed to send %s notification", event, extra={"order_id": order.id})
