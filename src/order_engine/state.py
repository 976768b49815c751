"""Per-order state for stateful strategies and the snapshot pre-step.

Trailing stops and DCA/TWAP schedules are not expressed as ordinary
conditions. Before evaluation their state is refreshed and exposed as derived
snapshot fields (``trailing.*`` and ``schedule.*``), so the evaluator itself
stays pure and all mutable state lives on the order record.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

from order_engine.evaluator import resolve_field
from order_engine.orders import (
    DCAParams,
    Order,
    ScheduleState,
    TrailingState,
    TrailingStopParams,
    TWAPParams,
)

ScheduledParams = DCAParams | TWAPParams


def initial_trailing_state(params: TrailingStopParams) -> TrailingState:
    return TrailingState(high_water_mark=params.initial_price)


def initial_schedule_state(params: ScheduledParams, now: datetime) -> ScheduleState:
    """Start a schedule with its first execution due immediately."""
    if isinstance(params, TWAPParams):
        remaining: int | None = params.slices
    else:
        remaining = params.max_executions
    return ScheduleState(remaining_executions=remaining, next_due_at=now)


def attach_initial_state(order: Order, now: datetime) -> None:
    """Give a freshly created order the state its type needs."""
    if isinstance(order.params, TrailingStopParams):
        order.trailing = initial_trailing_state(order.params)
    elif isinstance(order.params, (DCAParams, TWAPParams)):
        order.schedule = initial_schedule_state(order.params, now)


# ------------------------------------------------------------------
# Trailing stop
# ------------------------------------------------------------------


def apply_trailing(state: TrailingState, params: TrailingStopParams, snapshot: Mapping[str, Any]) -> dict[str, float]:
    """Raise the high-water mark to the current price and derive trailing fields.

    ``triggered`` is 1.0 once the price is at or below ``stopPrice``; the
    flow checks that flag so the trigger uses one comparison against the
    same stop price the notifications report. Returns an empty dict when the
    snapshot has no usable price, which leaves ``trailing.triggered``
    unresolved and the trigger fails closed.
    """
    price = resolve_field(snapshot, params.price_field)
    if not isinstance(price, (int, float)) or isinstance(price, bool) or price <= 0:
        return {}

    if state.high_water_mark is None or price > state.high_water_mark:
        state.high_water_mark = float(price)

    high = state.high_water_mark
    stop_price = high * (1.0 - params.trail_percent / 100.0)
    return {
        "highWaterMark": high,
        "stopPrice": stop_price,
        "drawdownPercent": (high - price) / high * 100.0,
        "triggered": 1.0 if price <= stop_price else 0.0,
    }


# ------------------------------------------------------------------
# DCA / TWAP schedule
# ------------------------------------------------------------------


def schedule_interval(params: ScheduledParams) -> float:
    """Seconds between executions."""
    if isinstance(params, TWAPParams):
        return params.slice_interval
    return params.interval_seconds


def schedule_exhausted(state: ScheduleState, params: ScheduledParams, now: datetime) -> bool:
    """True when no further executions may happen."""
    if state.remaining_executions is not None and state.remaining_executions <= 0:
        return True
    end_date = getattr(params, "end_date", None)
    return end_date is not None and now >= end_date


def apply_schedule(state: ScheduleState, params: ScheduledParams, now: datetime) -> dict[str, float]:
    """Derive schedule fields. ``remainingExecutions`` is -1 for an unbounded schedule."""
    if schedule_exhausted(state, params, now):
        remaining = 0
    elif state.remaining_executions is None:
        remaining = -1
    else:
        remaining = state.remaining_executions

    seconds_until_due = 0.0
    if state.next_due_at is not None:
        seconds_until_due = max((state.next_due_at - now).total_seconds(), 0.0)

    return {
        "secondsUntilDue": seconds_until_due,
        "remainingExecutions": remaining,
        "executionsDone": state.executions_done,
    }


def advance_schedule(state: ScheduleState, params: ScheduledParams, now: datetime) -> None:
    """Record one execution and schedule the next."""
    if state.remaining_executions is not None:
        state.remaining_executions -= 1
    state.executions_done += 1
    state.last_executed_at = now
    state.next_due_at = now + timedelta(seconds=schedule_interval(params))


# ------------------------------------------------------------------
# Pre-step
# ------------------------------------------------------------------


def derive_snapshot(order: Order, snapshot: Mapping[str, Any], now: datetime) -> dict[str, Any]:
    """Refresh *order*'s state from *snapshot* and return a merged copy.

    The caller owns *order* (the facade passes a private copy under the
    order's lock); *snapshot* is never mutated.
    """
    merged = dict(snapshot)
    if order.trailing is not None and isinstance(order.params, TrailingStopParams):
        derived = apply_trailing(order.trailing, order.params, snapshot)
        if derived:
            merged["trailing"] = derived
    if order.schedule is not None and isinstance(order.params, (DCAParams, TWAPParams)):
        merged["schedule"] = apply_schedule(order.schedule, order.params, now)
    return merged
