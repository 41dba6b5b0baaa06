"""Logging configuration: text or JSON output, credential redaction, step context.

Records carry execution context either through ``extra=`` at the call site or
through :func:`log_context`, which tags every record logged inside it (and in
tasks spawned from it) with the given fields.
"""

import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from deepflow.utils.validation import sanitize_log_message

# Record attributes copied into JSON output and the text suffix
CONTEXT_FIELDS = (
    "execution_id",
    "workflow_id",
    "step_id",
    "user_id",
    "provider",
    "model",
    "cost_usd",
    "duration_ms",
)

_context: ContextVar[dict[str, Any]] = ContextVar("deepflow_log_context", default={})

_NOISY_LOGGERS = ("httpx", "httpcore", "openai", "anthropic")


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Tag records logged within the block with ``fields``.

    Nested blocks add to the enclosing context.
    """
    token = _context.set({**_context.get(), **fields})
    try:
        yield
    finally:
        _context.reset(token)


class ContextFilter(logging.Filter):
    """Copy :func:`log_context` fields onto records that lack them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class SanitizingFilter(logging.Filter):
    """Redact provider credentials from the message and its arguments."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = sanitize_log_message(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(
                sanitize_log_message(arg) if isinstance(arg, str) else arg for arg in record.args
            )
        return True


def _context_of(record: logging.LogRecord) -> dict[str, Any]:
    return {key: getattr(record, key) for key in CONTEXT_FIELDS if hasattr(record, key)}


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with execution context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context_of(record),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines; execution and step ids trail the message."""

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ids = [
            f"{key}={getattr(record, key)}"
            for key in ("execution_id", "step_id")
            if getattr(record, key, None)
        ]
        if not ids:
            return line
        head, sep, tail = line.partition("\n")
        return f"{head} [{' '.join(ids)}]{sep}{tail}"


def configure_logging(
    level: str = "INFO", format: str = "text", sanitize_logs: bool = True
) -> None:
    """Configure the root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format ('text' or 'json')
        sanitize_logs: If True, redact API keys and tokens from logs
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # stderr keeps stdout free for streamed frames
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter() if format.lower() == "json" else TextFormatter())
    handler.addFilter(ContextFilter())
    if sanitize_logs:
        handler.addFilter(SanitizingFilter())
    root_logger.addHandler(handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
