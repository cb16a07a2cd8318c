"""
approval_kernel.logging_config -- One JSON object per log line.

Every record carries ``ts``, ``level``, ``logger`` and ``message`` (a
snake_case event name), followed by the request-scoped fields held in
``LogContext`` and whatever the caller passed via ``extra=``.  Kernel
errors attached with ``exc_info`` contribute their ``code`` and context
attributes as ``exc_*`` fields.

Usage::

    logger = get_logger("services.workflow_engine")
    with LogContext.bind(request_id=str(rid), actor_id=actor):
        logger.info("approval_decision_recorded", extra={"decision": "approve"})
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import os
import sys
import threading
from contextvars import ContextVar
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID

_LOGGER_PREFIX = "approval_kernel"
_LEVEL_ENV = "APPROVAL_LOG_LEVEL"

# ---------------------------------------------------------------------------
# Request-scoped context
# ---------------------------------------------------------------------------

_context: ContextVar[Mapping[str, str]] = ContextVar("approval_log_context", default={})


class LogContext:
    """Request-scoped log fields, isolated per thread and per task."""

    FIELDS = ("correlation_id", "actor_id", "request_id", "batch_id")

    @classmethod
    def set(cls, **fields: str | None) -> None:
        """Overwrite the named fields.  ``None`` values are ignored."""
        _context.set(cls._merged(fields))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_context.get())

    @classmethod
    def clear(cls) -> None:
        _context.set({})

    @classmethod
    def bind(cls, **fields: str | None) -> "_Binding":
        """Set fields for the duration of a ``with`` block."""
        return _Binding(cls._merged(fields))

    @classmethod
    def _merged(cls, fields: Mapping[str, str | None]) -> dict[str, str]:
        unknown = set(fields) - set(cls.FIELDS)
        if unknown:
            raise TypeError(f"Unknown log context field(s): {sorted(unknown)}")
        merged = dict(_context.get())
        merged.update({k: str(v) for k, v in fields.items() if v is not None})
        return merged


class _Binding:
    def __init__(self, fields: dict[str, str]):
        self._fields = fields
        self._token = None

    def __enter__(self) -> type[LogContext]:
        self._token = _context.set(self._fields)
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        _context.reset(self._token)


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------

# Attributes every LogRecord has; anything else arrived through ``extra=``.
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


class StructuredFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_context.get(),
        }
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                entry.setdefault(key, value)

        if record.exc_info and record.exc_info[1] is not None:
            entry.update(self._exception_fields(record))

        return json.dumps(entry, default=_jsonable)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if not name.startswith("_") and name != "code":
                fields[f"exc_{name}"] = value
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str | None = None,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``approval_kernel`` logger tree.

    Only the first call has an effect.  ``level`` defaults to the
    ``APPROVAL_LOG_LEVEL`` environment variable, then INFO.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if level is None:
        level = os.environ.get(_LEVEL_ENV, "INFO").upper()

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False

    target = handler or logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root.addHandler(target)


def reset_logging() -> None:
    """Undo ``configure_logging``.  Test use only."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
