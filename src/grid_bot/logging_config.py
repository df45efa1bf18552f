"""Structured logging configuration helpers for the grid bot."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

DEFAULT_ENV = os.getenv("GRID_BOT_ENV", os.getenv("ENV", "testnet"))

_RESERVED_RECORD_KEYS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
}


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return repr(value)


class JsonFormatter(logging.Formatter):
    """Minimal JSON formatter that emits a stable set of fields.

    Values passed through the logging ``extra`` dictionary are preserved so
    callers can attach contextual identifiers (``event``, ``symbol``,
    ``order_id``, ``client_order_id``, ``price``) without them being dropped.
    The ``event`` field is a short machine-readable label for the log line.
    Decimal values are rendered as strings so prices keep their exact digits.
    """

    def __init__(self, env: str | None = None) -> None:
        super().__init__()
        self.env = env or DEFAULT_ENV

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        log_time = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": log_time.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "event": getattr(record, "event", None),
            "env": getattr(record, "env", self.env),
            "symbol": getattr(record, "symbol", None),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS:
                continue
            payload.setdefault(key, value)

        if record.exc_info and "exception" not in payload:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def configure_logging(level: int = logging.INFO, env: str | None = None) -> None:
    """Configure root logging with a JSON formatter and stdout handler."""

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter(env=env))
    root_logger.addHandler(handler)

    # websockets logs every frame at DEBUG; keep it at INFO unless asked.
    logging.getLogger("websockets").setLevel(max(level, logging.INFO))


def structured_log_extra(
    *,
    env: str | None = None,
    event: str | None = None,
    symbol: str | None = None,
    order_id: int | str | None = None,
    client_order_id: str | None = None,
    side: str | None = None,
    **kwargs: Any,
) -> Dict[str, Any]:
    """Build a consistent set of logging extras with common fields.

    ``event`` should be a short, stable identifier for the log. Order
    identifiers (``order_id``, ``client_order_id``) and ``side`` are only
    included when provided, keeping the payload small for non-order logs.
    Additional custom fields are preserved via ``**kwargs``.
    """

    extra: Dict[str, Any] = {
        "event": kwargs.pop("event", event),
        "env": env or DEFAULT_ENV,
        "symbol": kwargs.pop("symbol", symbol),
    }

    identifier_fields = {
        "order_id": order_id,
        "client_order_id": client_order_id,
        "side": side,
    }
    for key, value in identifier_fields.items():
        if value is not None:
            extra[key] = value

    extra.update(kwargs)
    return extra


def get_log_environment() -> str:
    """Expose the configured environment for downstream helpers."""

    return DEFAULT_ENV


__all__: list[str] = [
    "JsonFormatter",
    "configure_logging",
    "structured_log_extra",
    "get_log_environment",
]
