"""Structured logging for Knowledge Tutor."""

from __future__ import annotations

import logging
import os
import sys
from typing import Any

import orjson

LOGGER_NAME = "knowledge_tutor"
CONTEXT_PREFIX = "ctx_"
_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line.

    Attributes passed through ``extra`` whose names start with ``ctx_``
    (see :func:`log_context`) are merged into the object.
    """

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - thin wrapper
        entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        entry.update((k, v) for k, v in vars(record).items() if k.startswith(CONTEXT_PREFIX))
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(entry, default=str).decode("utf-8")


def configure_logging(level: str | int | None = None, use_json: bool = True) -> None:
    """Install a single stdout handler on the root logger."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter() if use_json else logging.Formatter(_PLAIN_FORMAT))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or os.environ.get("KTUT_LOG_LEVEL", "INFO"))
    logging.captureWarnings(True)


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    if not logging.getLogger().handlers:
        configure_logging()
    return logging.getLogger(name)


def log_context(**values: Any) -> dict[str, Any]:
    """Build an ``extra`` mapping, skipping values that are None."""
    return {CONTEXT_PREFIX + key: value for key, value in values.items() if value is not None}


__all__ = ["JsonFormatter", "configure_logging", "get_logger", "log_context"]
