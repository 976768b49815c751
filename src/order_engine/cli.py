"""CLI entry point for order-engine."""

import json
import logging
from pathlib import Path
from typing import Annotated, Any, NoReturn, Optional

import typer
import yaml

from order_engine import __version__
from order_engine.config import EngineConfig, load_config
from order_engine.errors import OrderEngineError
from order_engine.evaluator import ConditionEvaluator
from order_engine.monitoring.alerts import build_alert_manager
from order_engine.orders import OrderStatus, OrderType
from order_engine.repository import OrderRepository, open_repository
from order_engine.runtime import LocalFlowRegistry
from order_engine.templates import OrderFilter, OrderTemplates

logger = logging.getLogger(__name__)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"order-engine {__version__}")
        raise typer.Exit()


app = typer.Typer(name="order-engine", help="Order Engine: conditional trading orders as executable flows")


@app.callback()
def main(
    version: Annotated[
        bool, typer.Option("--version", "-V", help="Show version and exit", callback=_version_callback, is_eager=True)
    ] = False,
) -> None:
    """Order Engine: conditional trading orders as executable flows."""


DEFAULT_CONFIG = Path("config.yaml")

ConfigOption = Annotated[Path, typer.Option("--config", "-c", help="Path to config.yaml")]
DbOption = Annotated[
    Optional[Path], typer.Option("--db", help="SQLite order database; overrides the storage section of the config")
]


def _load_config(config_path: Path) -> EngineConfig:
    """Load config from file, warning if the file does not exist."""
    if config_path.exists():
        return load_config(config_path)
    logger.warning("Config file %s not found, using defaults", config_path)
    return EngineConfig()


def _setup_logging(cfg: EngineConfig) -> None:
    """Configure logging based on monitoring config."""
    if cfg.monitoring.structured_logging:
        from order_engine.monitoring.logging import setup_structured_logging  # noqa: PLC0415

        setup_structured_logging(cfg.monitoring)
    else:
        logging.basicConfig(level=cfg.monitoring.log_level, format="%(asctime)s %(levelname)s %(message)s")


def _build_templates(config_path: Path, db_path: Optional[Path]) -> tuple[OrderTemplates, OrderRepository]:
    """Load config and create an OrderTemplates over the configured storage.

    Flows of unfinished orders are re-registered so they can be cancelled in
    this process.
    """
    cfg = _load_config(config_path)
    _setup_logging(cfg)
    repository = open_repository(cfg.storage, db_path)
    runtime = LocalFlowRegistry()
    templates = OrderTemplates(cfg, repository=repository, runtime=runtime, alerts=build_alert_manager(cfg.monitoring))
    for order in repository.list():
        if not order.is_terminal:
            runtime.register(templates.generator.generate(order))
    return templates, repository


def _echo_json(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


def _fail(message: str) -> NoReturn:
    typer.echo(f"Error: {message}", err=True)
    raise typer.Exit(code=1)


@app.command()
def create(
    order_type: Annotated[str, typer.Argument(metavar="TYPE", help="Order type, e.g. stop-loss")],
    params: Annotated[str, typer.Option("--params", "-p", help="Order params as a JSON object")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Create an order and print it."""
    try:
        raw = json.loads(params)
    except json.JSONDecodeError as exc:
        _fail(f"--params is not valid JSON: {exc}")
    templates, repository = _build_templates(config, db)
    try:
        created = templates.create(order_type, raw)
    except OrderEngineError as exc:
        _fail(str(exc))
    finally:
        repository.close()
    typer.echo(f"Created {created.order.type.value} order {created.order.id} ({created.order.status.value})")
    _echo_json(created.order.to_dict())


@app.command(name="list")
def list_orders(
    status: Annotated[Optional[list[str]], typer.Option("--status", "-s", help="Filter by status (repeatable)")] = None,
    order_type: Annotated[
        Optional[list[str]], typer.Option("--type", "-t", help="Filter by order type (repeatable)")
    ] = None,
    token: Annotated[Optional[list[str]], typer.Option("--token", help="Filter by token (repeatable)")] = None,
    limit: Annotated[Optional[int], typer.Option("--limit", help="Maximum number of orders")] = None,
    offset: Annotated[int, typer.Option("--offset", help="Skip this many orders")] = 0,
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """List orders, newest first."""
    try:
        order_filter = OrderFilter(
            status=[OrderStatus(value) for value in status] if status else None,
            type=[OrderType(value) for value in order_type] if order_type else None,
            token=token or None,
            limit=limit,
            offset=offset,
        )
    except ValueError as exc:
        _fail(str(exc))
    templates, repository = _build_templates(config, db)
    try:
        orders = templates.list(order_filter)
    finally:
        repository.close()
    if not orders:
        typer.echo("No orders.")
        return
    for order in orders:
        typer.echo(
            f"{order.id}  {order.type.value:<16} {order.status.value:<10} "
            f"{order.params.token:<8} {order.created_at.isoformat()}"
        )


@app.command()
def show(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Print one order as JSON."""
    templates, repository = _build_templates(config, db)
    try:
        order = templates.get(order_id)
    finally:
        repository.close()
    if order is None:
        _fail(f"order {order_id} not found")
    _echo_json(order.to_dict())


def _lifecycle(action: str, order_id: str, config: Path, db: Optional[Path]) -> None:
    templates, repository = _build_templates(config, db)
    try:
        ok = getattr(templates, action)(order_id)
        order = templates.get(order_id)
    finally:
        repository.close()
    if not ok:
        current = order.status.value if order is not None else "not found"
        _fail(f"cannot {action} order {order_id} ({current})")
    typer.echo(f"Order {order_id}: {order.status.value if order is not None else 'unknown'}")


@app.command()
def activate(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Activate a created or paused order."""
    _lifecycle("activate", order_id, config, db)


@app.command()
def pause(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Pause an active order."""
    _lifecycle("pause", order_id, config, db)


@app.command()
def resume(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Resume a paused order."""
    _lifecycle("resume", order_id, config, db)


@app.command()
def cancel(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Cancel an order that has not triggered."""
    _lifecycle("cancel", order_id, config, db)


@app.command()
def stats(
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Show order counts by status and type."""
    templates, repository = _build_templates(config, db)
    try:
        result = templates.get_stats()
    finally:
        repository.close()
    typer.echo(f"Total orders: {result.total}")
    typer.echo("By status:")
    for name, count in result.by_status.items():
        typer.echo(f"  {name:<12} {count}")
    typer.echo("By type:")
    for name, count in result.by_type.items():
        typer.echo(f"  {name:<16} {count}")


@app.command()
def flow(
    order_id: Annotated[str, typer.Argument(help="Order ID")],
    config: ConfigOption = DEFAULT_CONFIG,
    db: DbOption = None,
) -> None:
    """Print the flow graph generated for an order."""
    templates, repository = _build_templates(config, db)
    try:
        order = templates.get(order_id)
    finally:
        repository.close()
    if order is None:
        _fail(f"order {order_id} not found")
    _echo_json(templates.generator.generate(order).to_dict())


@app.command()
def evaluate(
    conditions_file: Annotated[Path, typer.Argument(help="Condition group as YAML or JSON")],
    snapshot_file: Annotated[Path, typer.Argument(help="Data snapshot as YAML or JSON")],
    details: Annotated[bool, typer.Option("--details", help="Print every leaf comparison")] = False,
    config: ConfigOption = DEFAULT_CONFIG,
) -> None:
    """Evaluate a condition group against a snapshot and print true or false."""
    cfg = _load_config(config)
    for path in (conditions_file, snapshot_file):
        if not path.exists():
            _fail(f"{path} does not exist")
    conditions = yaml.safe_load(conditions_file.read_text())
    snapshot = yaml.safe_load(snapshot_file.read_text()) or {}
    if not isinstance(conditions, dict) or not isinstance(snapshot, dict):
        _fail("conditions and snapshot must both be objects")

    evaluator = ConditionEvaluator(collect_details=cfg.evaluator.collect_details)
    try:
        if details:
            result = evaluator.evaluate_detailed(conditions, snapshot)
            for detail in result.details:
                mark = "x" if detail.met else " "
                typer.echo(
                    f"[{mark}] {detail.condition.field} {detail.condition.operator} "
                    f"{detail.expected_value!r} (actual: {detail.actual_value!r})"
                )
            met = result.met
        else:
            met = evaluator.evaluate(conditions, snapshot)
    except OrderEngineError as exc:
        _fail(str(exc))
    typer.echo("true" if met else "false")
