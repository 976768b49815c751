"""Structured JSON logging for the order engine.

Lifecycle log calls pass order context through ``extra``; the formatter lifts
those keys to the top level so log lines can be filtered per order or flow.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from order_engine.config import MonitoringConfig

CONTEXT_FIELDS = ("order_id", "flow_id")


class JSONFormatter(logging.Formatter):
    """One JSON object per record, plus any order context the record carries."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value:
                entry[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _json_handler(handler: logging.Handler) -> logging.Handler:
    handler.setFormatter(JSONFormatter())
    return handler


def setup_structured_logging(config: MonitoringConfig) -> None:
    """Send root logging to stderr, and to ``config.log_file`` if set, as JSON lines.

    Existing root handlers are replaced, so a second call does not duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(config.log_level)
    root.handlers.clear()
    root.addHandler(_json_handler(logging.StreamHandler()))
    if config.log_file:
        log_file = Path(config.log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        root.addHandler(_json_handler(logging.FileHandler(log_file)))
