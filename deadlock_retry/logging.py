"""JSON rendering for retry and lock status log records."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

__all__ = ["RetryLogFormatter", "configure_logging"]

PACKAGE_LOGGER = "deadlock_retry"

# Extra fields attached by the coordinator to each retry record.
_RETRY_FIELDS = ("attempt", "max_attempts", "delay", "error", "diagnostics")


class RetryLogFormatter(logging.Formatter):
    """Format records as compact JSON, lifting retry metadata to top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.format_to_dict(record), separators=(",", ":"), sort_keys=True, default=str)

    def format_to_dict(self, record: logging.LogRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _RETRY_FIELDS:
            if key in record.__dict__:
                payload[key] = record.__dict__[key]
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return payload


class _SinkHandler(logging.Handler):
    def __init__(self, sink: Callable[[dict[str, Any]], None], formatter: RetryLogFormatter) -> None:
        super().__init__()
        self._sink = sink
        self.formatter = formatter

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - errors handled by logging
        try:
            self._sink(self.formatter.format_to_dict(record))
        except Exception:
            self.handleError(record)


def configure_logging(
    *,
    level: int | str = logging.INFO,
    sink: Callable[[dict[str, Any]], None] | None = None,
) -> logging.Logger:
    """Attach a JSON handler to the package logger and return it.

    ``sink`` receives the payload dictionaries instead of ``sys.stderr``.
    Calling the function again replaces the previously installed handler.
    """

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level}")
        level = resolved

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    formatter = RetryLogFormatter()
    if sink is None:
        handler: logging.Handler = logging.StreamHandler()
        handler.setFormatter(formatter)
    else:
        handler = _SinkHandler(sink, formatter)
    logger.addHandler(handler)
    return logger
