"""
Structured JSON logging for the work request kernel.

Every logger lives under ``work_kernel``.  A record becomes one JSON object
per line: timestamp, level, logger name, the event name as ``message``, the
request context bound with ``LogContext`` and whatever the call site passed
in ``extra``.

Kernel errors logged with ``exc_info`` are flattened into ``exc_*`` fields,
so a log search can filter on ``exc_code`` without parsing message text.
"""

from __future__ import annotations

__all__ = [
    "CONTEXT_FIELDS",
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterator, Mapping

LOGGER_PREFIX = "work_kernel"

CONTEXT_FIELDS: tuple[str, ...] = (
    "actor_id",
    "organization_id",
    "work_request_id",
    "operation",
)

# Replaced, never mutated: each bind installs a fresh mapping.
_context: ContextVar[Mapping[str, str]] = ContextVar("work_kernel_log_context", default={})


def _context_values(fields: Mapping[str, Any]) -> dict[str, str]:
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise ValueError(f"Unknown log context field(s): {unknown}")
    return {key: str(value) for key, value in fields.items() if value is not None}


class LogContext:
    """Request-scoped fields stamped on every record of the current thread or task."""

    @staticmethod
    def set(**fields: Any) -> None:
        """Overwrite the given fields.  None values are ignored."""
        _context.set({**_context.get(), **_context_values(fields)})

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set({})

    @staticmethod
    @contextmanager
    def bind(**fields: Any) -> Iterator[None]:
        """Set fields for the duration of the block, then restore the previous ones."""
        token = _context.set({**_context.get(), **_context_values(fields)})
        try:
            yield
        finally:
            _context.reset(token)


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
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
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_context.get())

        for name, value in vars(record).items():
            if name not in _RECORD_ATTRIBUTES and name not in payload:
                payload[name] = value

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Logger named ``work_kernel.<name>``."""
    return logging.getLogger(f"{LOGGER_PREFIX}.{name}")


_install_lock = threading.Lock()
_installed_handler: logging.Handler | None = None


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a single JSON handler to the ``work_kernel`` logger.

    Later calls are no-ops until ``reset_logging`` runs.
    """
    global _installed_handler
    with _install_lock:
        if _installed_handler is not None:
            return
        installed = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
        installed.setFormatter(StructuredFormatter())
        kernel_logger = logging.getLogger(LOGGER_PREFIX)
        kernel_logger.setLevel(level)
        kernel_logger.propagate = False
        kernel_logger.addHandler(installed)
        _installed_handler = installed


def reset_logging() -> None:
    """Detach the handler installed by ``configure_logging``.  Used by tests."""
    global _installed_handler
    with _install_lock:
        kernel_logger = logging.getLogger(LOGGER_PREFIX)
        if _installed_handler is not None:
            kernel_logger.removeHandler(_installed_handler)
            _installed_handler = None
        kernel_logger.setLevel(logging.WARNING)
        kernel_logger.propagate = True
