"""
Module: workflow_kernel.logging_config
Responsibility: One JSON line per log record for everything under the
    ``workflow_kernel`` logger, with request-scoped context (entity, actor,
    organization, correlation and trace ids) merged into every line.
Architecture position: Kernel > infrastructure.  Imported by every service;
    imports nothing from the kernel.

Invariants enforced:
    - Log messages are event names (``workflow_step_advanced``); the
      details travel as ``extra`` fields, never interpolated into the text.
    - Context fields come from ContextVars, so concurrent threads and tasks
      never see each other's entity or actor.
    - ``configure_logging`` installs at most one handler until
      ``reset_logging`` removes it again.

Failure modes:
    - Binding a context field outside CONTEXT_FIELDS raises TypeError.
    - Values JSON cannot encode natively are rendered with ``str``.
"""

__all__ = [
    "CONTEXT_FIELDS",
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Iterator
from uuid import UUID

CONTEXT_FIELDS = (
    "correlation_id",
    "entity_id",
    "actor_id",
    "organization_id",
    "trace_id",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"workflow_log_{name}", default=None) for name in CONTEXT_FIELDS
}


def _context_var(name: str) -> ContextVar[str | None]:
    try:
        return _context_vars[name]
    except KeyError:
        raise TypeError(f"Unknown log context field: {name!r}") from None


class LogContext:
    """Request-scoped fields stamped onto every workflow_kernel log line."""

    @classmethod
    def set(cls, **fields: Any) -> None:
        """Overwrite the given fields; None values leave a field untouched."""
        for name, value in fields.items():
            var = _context_var(name)
            if value is not None:
                var.set(str(value))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return {
            name: value
            for name, var in _context_vars.items()
            if (value := var.get()) is not None
        }

    @classmethod
    def clear(cls) -> None:
        for var in _context_vars.values():
            var.set(None)

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[type["LogContext"]]:
        """
        Set fields for the duration of a ``with`` block.

        Each field goes back to whatever it held before the block, including
        None, even when the block raises.
        """
        tokens = [
            (var, var.set(str(value)))
            for var, value in ((_context_var(n), v) for n, v in fields.items())
            if value is not None
        ]
        try:
            yield cls
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=str)
    return str(value)


class StructuredFormatter(logging.Formatter):
    """
    Render a record as a JSON object.

    Key precedence: envelope (ts, level, logger, message), then bound
    context, then ``extra`` fields, then ``exc_*`` fields of the raised
    exception.  A later source never overwrites an earlier key.
    """

    def format(self, record: logging.LogRecord) -> str:
        body = self._envelope(record)
        for key, value in LogContext.get_all().items():
            body.setdefault(key, value)
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRS:
                body.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            for key, value in self._exception_fields(record).items():
                body.setdefault(key, value)
        return json.dumps(body, default=_to_json)

    @staticmethod
    def _envelope(record: logging.LogRecord) -> dict[str, Any]:
        return {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        # Kernel errors keep their structured context as public attributes.
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for attr, value in vars(exc).items():
            if not attr.startswith("_"):
                fields.setdefault(f"exc_{attr}", value)
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


_LOGGER_PREFIX = "workflow_kernel"


def get_logger(name: str) -> logging.Logger:
    """Child of the ``workflow_kernel`` logger, e.g. ``services.transition_engine``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_installed: logging.Handler | None = None
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> logging.Handler:
    """
    Attach a StructuredFormatter handler to the ``workflow_kernel`` logger.

    The first call installs ``handler`` (or a stream handler on ``stream``,
    stderr by default) and stops propagation to the root logger.  Later
    calls change nothing and return the handler already installed.
    """
    global _installed
    with _lock:
        if _installed is not None:
            return _installed
        if handler is None:
            handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(StructuredFormatter())
        package_logger = logging.getLogger(_LOGGER_PREFIX)
        package_logger.setLevel(level)
        package_logger.propagate = False
        package_logger.addHandler(handler)
        _installed = handler
        return handler


def reset_logging() -> None:
    """Remove the installed handler and restore default propagation (tests)."""
    global _installed
    with _lock:
        package_logger = logging.getLogger(_LOGGER_PREFIX)
        if _installed is not None:
            package_logger.removeHandler(_installed)
            _installed = None
        package_logger.setLevel(logging.NOTSET)
        package_logger.propagate = True
