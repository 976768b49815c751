"""Order types, lifecycle statuses, per-type params, and the order record."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from order_engine.conditions import ConditionGroup
from order_engine.errors import ValidationError, from_pydantic


class OrderType(str, Enum):
    """Order template type."""

    STOP_LOSS = "stop-loss"
    TAKE_PROFIT = "take-profit"
    CONDITIONAL_SELL = "conditional-sell"
    CONDITIONAL_BUY = "conditional-buy"
    SMART_ENTRY = "smart-entry"
    DCA = "dca"
    TWAP = "twap"
    TRAILING_STOP = "trailing-stop"
    DUAL_PROTECTION = "dual-protection"


class OrderStatus(str, Enum):
    """Lifecycle status of an order."""

    CREATED = "created"
    ACTIVE = "active"
    PAUSED = "paused"
    TRIGGERED = "triggered"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELLED})

# Statuses only the flow runtime may report.
RUNTIME_STATUSES = frozenset({OrderStatus.TRIGGERED, OrderStatus.COMPLETED, OrderStatus.FAILED})

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.CREATED: frozenset({OrderStatus.ACTIVE, OrderStatus.TRIGGERED, OrderStatus.CANCELLED}),
    OrderStatus.ACTIVE: frozenset({OrderStatus.PAUSED, OrderStatus.TRIGGERED, OrderStatus.CANCELLED}),
    OrderStatus.PAUSED: frozenset({OrderStatus.ACTIVE, OrderStatus.TRIGGERED, OrderStatus.CANCELLED}),
    OrderStatus.TRIGGERED: frozenset({OrderStatus.COMPLETED, OrderStatus.FAILED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.FAILED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Return True if an order may move from *current* to *target*."""
    return target in ALLOWED_TRANSITIONS[current]


# ------------------------------------------------------------------
# Params
# ------------------------------------------------------------------

INTERVAL_SECONDS: dict[str, float] = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
}

Percent = Annotated[float, Field(gt=0, le=100)]
PositiveAmount = Annotated[float, Field(gt=0)]


class BaseOrderParams(BaseModel):
    """Fields shared by every order template.

    Input accepts camelCase (``triggerPrice``) or snake_case names. Params are
    frozen once validated.
    """

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore")

    token: str = Field(min_length=1)
    chain_id: str | None = None
    notify_channels: list[str] = Field(default_factory=list)

    def tokens(self) -> set[str]:
        """Tokens an order can be looked up by."""
        return {self.token}

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StopLossParams(BaseOrderParams):
    """Sell when price drops to ``trigger_price``."""

    type: Literal["stop-loss"] = "stop-loss"
    trigger_price: PositiveAmount
    sell_percent: Percent = 100.0
    receive_token: str | None = None


class TakeProfitParams(BaseOrderParams):
    """Sell when price rises to ``trigger_price``."""

    type: Literal["take-profit"] = "take-profit"
    trigger_price: PositiveAmount
    sell_percent: Percent = 100.0
    receive_token: str | None = None


class ConditionalSellParams(BaseOrderParams):
    type: Literal["conditional-sell"] = "conditional-sell"
    conditions: ConditionGroup
    sell_percent: Percent = 100.0
    receive_token: str | None = None


class ConditionalBuyParams(BaseOrderParams):
    """Spend ``spend_amount`` of ``sell_token`` on ``token`` once conditions hold."""

    type: Literal["conditional-buy"] = "conditional-buy"
    conditions: ConditionGroup
    sell_token: str = Field(min_length=1)
    spend_amount: PositiveAmount


class SmartEntryParams(BaseOrderParams):
    """Repeated conditional buys, bounded by a total budget and a cooldown."""

    type: Literal["smart-entry"] = "smart-entry"
    conditions: ConditionGroup
    sell_token: str = Field(min_length=1)
    spend_amount: PositiveAmount
    max_spend_total: PositiveAmount | None = None
    cooldown_minutes: float = Field(default=60.0, ge=0)

    @model_validator(mode="after")
    def _budget_covers_one_entry(self) -> SmartEntryParams:
        if self.max_spend_total is not None and self.max_spend_total < self.spend_amount:
            raise ValueError("maxSpendTotal must be at least spendAmount")
        return self


class DCAParams(BaseOrderParams):
    """Buy ``amount_per_execution`` of ``token`` on a fixed interval.

    ``interval`` is a named period or a number of seconds. Without
    ``max_executions`` or ``end_date`` the order runs until cancelled.
    """

    type: Literal["dca"] = "dca"
    sell_token: str = Field(min_length=1)
    amount_per_execution: PositiveAmount
    interval: Union[Literal["hourly", "daily", "weekly", "monthly"], PositiveAmount]
    conditions: ConditionGroup | None = None
    max_executions: int | None = Field(default=None, ge=1)
    end_date: datetime | None = None

    @field_validator("end_date")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def interval_seconds(self) -> float:
        if isinstance(self.interval, str):
            return INTERVAL_SECONDS[self.interval]
        return float(self.interval)


class TWAPParams(BaseOrderParams):
    """Sell ``total_amount`` of ``token`` for ``buy_token`` in equal slices over ``duration`` seconds."""

    type: Literal["twap"] = "twap"
    buy_token: str = Field(min_length=1)
    total_amount: PositiveAmount
    duration: PositiveAmount
    slices: int = Field(ge=1)
    conditions: ConditionGroup | None = None

    @property
    def slice_amount(self) -> float:
        return self.total_amount / self.slices

    @property
    def slice_interval(self) -> float:
        return self.duration / self.slices

    def tokens(self) -> set[str]:
        return {self.token, self.buy_token}


class TrailingStopParams(BaseOrderParams):
    """Sell once price falls ``trail_percent`` below its highest observed value.

    ``initial_price`` seeds the high-water mark; otherwise the first observed
    price does.
    """

    type: Literal["trailing-stop"] = "trailing-stop"
    trail_percent: float = Field(gt=0, lt=100)
    sell_percent: Percent = 100.0
    activation_conditions: ConditionGroup | None = None
    initial_price: PositiveAmount | None = None
    price_field: str = "price"
    receive_token: str | None = None


class ProtectionLeg(BaseModel):
    """One branch of a dual-protection order."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    conditions: ConditionGroup
    sell_percent: Percent = 100.0


class DualProtectionParams(BaseOrderParams):
    """Stop-loss and take-profit branches sharing one execution."""

    type: Literal["dual-protection"] = "dual-protection"
    stop_loss: ProtectionLeg
    take_profit: ProtectionLeg
    receive_token: str | None = None


OrderParams = Annotated[
    Union[
        StopLossParams,
        TakeProfitParams,
        ConditionalSellParams,
        ConditionalBuyParams,
        SmartEntryParams,
        DCAParams,
        TWAPParams,
        TrailingStopParams,
        DualProtectionParams,
    ],
    Field(discriminator="type"),
]

PARAMS_BY_TYPE: dict[OrderType, type[BaseOrderParams]] = {
    OrderType.STOP_LOSS: StopLossParams,
    OrderType.TAKE_PROFIT: TakeProfitParams,
    OrderType.CONDITIONAL_SELL: ConditionalSellParams,
    OrderType.CONDITIONAL_BUY: ConditionalBuyParams,
    OrderType.SMART_ENTRY: SmartEntryParams,
    OrderType.DCA: DCAParams,
    OrderType.TWAP: TWAPParams,
    OrderType.TRAILING_STOP: TrailingStopParams,
    OrderType.DUAL_PROTECTION: DualProtectionParams,
}

_params_adapter: TypeAdapter[Any] = TypeAdapter(OrderParams)


def parse_order_type(value: OrderType | str) -> OrderType:
    """Resolve an order type tag, raising :class:`ValidationError` for unknown tags."""
    try:
        return OrderType(value)
    except ValueError:
        raise ValidationError("type", f"unsupported order type {value!r}") from None


def parse_params(order_type: OrderType | str, raw: Mapping[str, Any] | BaseOrderParams) -> BaseOrderParams:
    """Validate *raw* as the params variant for *order_type*.

    Raises :class:`ValidationError` naming the missing or invalid field.
    """
    resolved = parse_order_type(order_type)
    model = PARAMS_BY_TYPE[resolved]
    if isinstance(raw, BaseOrderParams):
        if not isinstance(raw, model):
            given = getattr(raw, "type", type(raw).__name__)
            raise ValidationError("type", f"params of type {given!r} do not match order type {resolved.value!r}")
        raw = raw.model_dump(by_alias=True)
    if not isinstance(raw, Mapping):
        raise ValidationError("params", "expected an object")
    data = {key: value for key, value in raw.items() if key != "type"}
    data["type"] = resolved.value
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        raise from_pydantic(exc) from exc


def params_from_dict(data: Mapping[str, Any]) -> BaseOrderParams:
    """Rebuild stored params using the ``type`` tag they carry."""
    try:
        params: BaseOrderParams = _params_adapter.validate_python(dict(data))
    except PydanticValidationError as exc:
        raise from_pydantic(exc) from exc
    return params


# ------------------------------------------------------------------
# Order record
# ------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class TrailingState:
    """Mutable trailing-stop state. ``high_water_mark`` never decreases."""

    high_water_mark: float | None = None


@dataclass
class ScheduleState:
    """Mutable DCA/TWAP state. ``remaining_executions`` is None when unbounded."""

    remaining_executions: int | None = None
    executions_done: int = 0
    next_due_at: datetime | None = None
    last_executed_at: datetime | None = None


@dataclass
class Order:
    """An order instance and its per-order mutable state."""

    id: str
    type: OrderType
    params: BaseOrderParams
    status: OrderStatus = OrderStatus.CREATED
    flow_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    triggered_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    trailing: TrailingState | None = None
    schedule: ScheduleState | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def state_dict(self) -> dict[str, Any]:
        """Per-order mutable state in wire form."""
        state: dict[str, Any] = {}
        if self.trailing is not None:
            state["trailing"] = {"highWaterMark": self.trailing.high_water_mark}
        if self.schedule is not None:
            state["schedule"] = {
                "remainingExecutions": self.schedule.remaining_executions,
                "executionsDone": self.schedule.executions_done,
                "nextDueAt": _iso(self.schedule.next_due_at),
                "lastExecutedAt": _iso(self.schedule.last_executed_at),
            }
        return state

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire shape (camelCase keys, ISO-8601 datetimes)."""
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "params": self.params.to_dict(),
            "status": self.status.value,
            "flowId": self.flow_id,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.triggered_at is not None:
            data["triggeredAt"] = _iso(self.triggered_at)
        if self.completed_at is not None:
            data["completedAt"] = _iso(self.completed_at)
        if self.error is not None:
            data["error"] = self.error
        state = self.state_dict()
        if state:
            data["state"] = state
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Order:
        """Rebuild an order from :meth:`to_dict` output."""
        state = data.get("state") or {}
        trailing = None
        if "trailing" in state:
            trailing = TrailingState(high_water_mark=state["trailing"].get("highWaterMark"))
        schedule = None
        if "schedule" in state:
            raw = state["schedule"]
            schedule = ScheduleState(
                remaining_executions=raw.get("remainingExecutions"),
                executions_done=raw.get("executionsDone", 0),
                next_due_at=_parse_dt(raw.get("nextDueAt")),
                last_executed_at=_parse_dt(raw.get("lastExecutedAt")),
            )
        created_at = _parse_dt(data.get("createdAt")) or utcnow()
        return cls(
            id=data["id"],
            type=OrderType(data["type"]),
            params=params_from_dict({**data["params"], "type": data["type"]}),
            status=OrderStatus(data["status"]),
            flow_id=data.get("flowId", ""),
            created_at=created_at,
            updated_at=_parse_dt(data.get("updatedAt")) or created_at,
            triggered_at=_parse_dt(data.get("triggeredAt")),
            completed_at=_parse_dt(data.get("completedAt")),
            error=data.get("error"),
            trailing=trailing,
            schedule=schedule,
        )
