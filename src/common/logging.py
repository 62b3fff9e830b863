"""Structured JSON logging for the dedupe pipeline, CLI and HTTP trigger.

Logs go to stderr so the CLI report on stdout stays machine-readable. Fields
passed through ``extra`` become top-level JSON keys; ``None`` values are
dropped to keep per-decision lines short.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else came from ``extra``.
_STANDARD_ATTRS = frozenset(logging.makeLogRecord({}).__dict__) | {"message", "asctime", "taskName"}


class JsonFormatter(logging.Formatter):
    """Render log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and value is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str, ensure_ascii=False)


def _level_from_env(default: int) -> int:
    name = os.getenv("LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else default
    return level if isinstance(level, int) else default


def configure_logging(level: int = logging.INFO) -> None:
    """Attach the JSON stderr handler to the root logger if none is set.

    ``LOG_LEVEL`` (e.g. ``DEBUG``) overrides ``level``.
    """
    root = logging.getLogger()
    if root.handlers:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
    root.setLevel(_level_from_env(level))


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Return a named logger, configuring JSON output on first use."""
    configure_logging(level)
    return logging.getLogger(name)


def log_decision(
    logger: logging.Logger,
    *,
    run_id: Optional[str],
    action: str,
    outcome: str,
    **context: Any,
) -> None:
    """Emit one merge-decision line (skip, rename, merge or aggressive delete)."""
    logger.info(
        "decision",
        extra={"event": "decision", "run_id": run_id, "action": action, "outcome": outcome, **context},
    )


def log_error(
    logger: logging.Logger,
    message: str,
    *,
    run_id: Optional[str] = None,
    error: Optional[BaseException] = None,
    **context: Any,
) -> None:
    """Emit an error line for a per-unit failure; the pipeline keeps going."""
    logger.error(
        message,
        extra={
            "event": "error",
            "run_id": run_id,
            "error": str(error) if error is not None else None,
            "error_type": type(error).__name__ if error is not None else None,
            **context,
        },
        exc_info=error,
    )
