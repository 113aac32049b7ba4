"""Structured logging for pump history processing.

Every line carries the id of the merge cycle it was emitted in, when there is
one, so the append, eviction and notification lines of a single cycle can be
followed through concurrent writers.
"""

import json
import logging
import sys
from collections.abc import MutableMapping
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from pump_history.config import settings

# Id of the merge cycle currently running in this context, if any
cycle_id_ctx: ContextVar[str | None] = ContextVar("cycle_id", default=None)

# Keyword arguments the stdlib logging call itself understands
_LOGGING_KWARGS = frozenset({"exc_info", "stack_info", "stacklevel", "extra"})


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, UTC)


def _fields(record: logging.LogRecord) -> dict[str, Any]:
    return dict(getattr(record, "extra_fields", None) or {})


class JsonFormatter(logging.Formatter):
    """One JSON object per line.

    Keys: timestamp, level, service, logger, message, then cycle_id when
    inside a merge cycle, the structured fields passed to the logger, and
    exception for records carrying a traceback.
    """

    def __init__(self, service_name: str = "pump-history"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": _record_time(record).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        cycle_id = cycle_id_ctx.get()
        if cycle_id:
            log_data["cycle_id"] = cycle_id
        log_data.update(_fields(record))

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines for local runs.

    Format: timestamp - service - level - [cycle_id] - message key=value...
    """

    def __init__(self, service_name: str = "pump-history"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{_record_time(record):%Y-%m-%d %H:%M:%S} - {self.service_name} - "
            f"{record.levelname} - [{cycle_id_ctx.get() or '-'}] - {record.getMessage()}"
        )

        fields = _fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in fields.items())

        if record.exc_info:
            line += f"\n{self.formatException(record.exc_info)}"
        return line


def setup_logging(
    log_format: str | None = None,
    log_level: str | None = None,
    service_name: str | None = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Arguments left as None fall back to ``settings.log_format``,
    ``settings.log_level`` and ``settings.service_name``.
    """
    log_format = (log_format or settings.log_format).lower()
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    service_name = service_name or settings.service_name

    formatter_class = JsonFormatter if log_format == "json" else TextFormatter
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter_class(service_name=service_name))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    # SQL echo from the document store is noise outside store debugging
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


class StructuredLogger(logging.LoggerAdapter):
    """Logger whose extra keyword arguments become structured fields.

    ``logger.info("Pump history merged", stored=2)`` attaches
    ``{"stored": 2}`` to the record as ``extra_fields``.
    """

    def __init__(self, name: str):
        super().__init__(logging.getLogger(name))

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        fields = {k: v for k, v in kwargs.items() if k not in _LOGGING_KWARGS}
        passthrough = {k: v for k, v in kwargs.items() if k in _LOGGING_KWARGS}
        if fields:
            passthrough["extra"] = {**passthrough.get("extra", {}), "extra_fields": fields}
        return msg, passthrough


def get_logger(name: str) -> StructuredLogger:
    """Return a structured logger, typically for ``__name__``."""
    return StructuredLogger(name)
