"""Order table storage.

The facade depends only on :class:`OrderRepository`. Both implementations
hand out independent copies, so a caller mutating a returned order never
affects the stored record.
"""

from __future__ import annotations

import copy
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Protocol

from order_engine.config import StorageConfig
from order_engine.orders import Order


class OrderRepository(Protocol):
    """Structural protocol for order storage.

    ``set`` replaces the whole record in a single write.
    """

    def get(self, order_id: str) -> Order | None: ...

    def set(self, order: Order) -> None: ...

    def delete(self, order_id: str) -> bool: ...

    def list(self) -> list[Order]: ...

    def close(self) -> None: ...


class InMemoryOrderRepository:
    """Dict-backed order table."""

    def __init__(self) -> None:
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            order = self._orders.get(order_id)
            return copy.deepcopy(order) if order is not None else None

    def set(self, order: Order) -> None:
        stored = copy.deepcopy(order)
        with self._lock:
            self._orders[order.id] = stored

    def delete(self, order_id: str) -> bool:
        with self._lock:
            return self._orders.pop(order_id, None) is not None

    def list(self) -> list[Order]:
        with self._lock:
            return [copy.deepcopy(order) for order in self._orders.values()]

    def __len__(self) -> int:
        return len(self._orders)

    def close(self) -> None:
        """Nothing to release; the table lives as long as the object."""


class SqliteOrderRepository:
    """SQLite-backed order table.

    Params and per-order state are stored as JSON in their wire shape; status,
    type and token are kept in their own columns for inspection.
    """

    def __init__(self, path: Path | str) -> None:
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                order_type TEXT NOT NULL,
                status TEXT NOT NULL,
                token TEXT NOT NULL,
                flow_id TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                triggered_at TEXT,
                completed_at TEXT,
                error TEXT,
                params_json TEXT NOT NULL,
                state_json TEXT NOT NULL DEFAULT '{}'
            )
        """)
        self._conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status)")
        self._conn.commit()

    # ------------------------------------------------------------------
    # Order methods
    # ------------------------------------------------------------------

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
        return self._row_to_order(row) if row else None

    def set(self, order: Order) -> None:
        """Insert or replace *order*."""
        data = order.to_dict()
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO orders"
                " (id, order_type, status, token, flow_id, created_at, updated_at,"
                "  triggered_at, completed_at, error, params_json, state_json)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    order.id,
                    order.type.value,
                    order.status.value,
                    order.params.token,
                    order.flow_id,
                    data["createdAt"],
                    data["updatedAt"],
                    data.get("triggeredAt"),
                    data.get("completedAt"),
                    order.error,
                    json.dumps(data["params"]),
                    json.dumps(data.get("state", {})),
                ),
            )
            self._conn.commit()

    def delete(self, order_id: str) -> bool:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM orders WHERE id = ?", (order_id,))
            self._conn.commit()
        return cursor.rowcount > 0

    def list(self) -> list[Order]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM orders ORDER BY created_at").fetchall()
        return [self._row_to_order(row) for row in rows]

    @staticmethod
    def _row_to_order(row: sqlite3.Row) -> Order:
        """Convert a DB row back to an :class:`Order`."""
        data: dict[str, Any] = {
            "id": row["id"],
            "type": row["order_type"],
            "status": row["status"],
            "flowId": row["flow_id"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
            "triggeredAt": row["triggered_at"],
            "completedAt": row["completed_at"],
            "error": row["error"],
            "params": json.loads(row["params_json"]),
            "state": json.loads(row["state_json"]),
        }
        return Order.from_dict(data)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> SqliteOrderRepository:
        return self

    def __exit__(self, *_args: object) -> None:
        self.close()


def open_repository(config: StorageConfig, path: Path | str | None = None) -> OrderRepository:
    """Open the order table named by *config*.

    An explicit *path* overrides the configured backend and opens SQLite there.
    """
    if path is not None:
        return SqliteOrderRepository(path)
    if config.backend == "sqlite":
        return SqliteOrderRepository(config.path)
    return InMemoryOrderRepository()
