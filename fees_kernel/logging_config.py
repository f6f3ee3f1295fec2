"""
Structured JSON logging for the fee engine.

Every record under the ``fees_kernel`` logger tree is written as one JSON
line: timestamp, level, logger, message (a snake_case event name such as
``payment_recorded``), the ``extra=`` fields, and the fields bound in
``LogContext`` for the current request, payment or billing run.

LogContext lives in a single ContextVar holding an immutable mapping, so a
copied context (``contextvars.copy_context().run``) carries the run_id and
actor_id of a billing run into its worker threads unchanged.
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
import sys
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "fees_kernel"

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_EMPTY: MappingProxyType = MappingProxyType({})
_fields: ContextVar[MappingProxyType] = ContextVar("fees_log_context", default=_EMPTY)


class LogContext:
    """Request-scoped log fields: who acted, on which family/student, in which run."""

    FIELDS = (
        "correlation_id",
        "actor_id",
        "family_id",
        "student_id",
        "run_id",
    )

    @classmethod
    def _merged(cls, values: dict[str, Any]) -> MappingProxyType:
        current = dict(_fields.get())
        for key, val in values.items():
            if key in cls.FIELDS and val is not None:
                current[key] = str(val)
        return MappingProxyType(current)

    @classmethod
    def set(
        cls,
        *,
        correlation_id: str | None = None,
        actor_id: str | None = None,
        family_id: str | None = None,
        student_id: str | None = None,
        run_id: str | None = None,
    ) -> None:
        """Set fields for the rest of the current context; None leaves a field as is."""
        _fields.set(cls._merged({
            "correlation_id": correlation_id,
            "actor_id": actor_id,
            "family_id": family_id,
            "student_id": student_id,
            "run_id": run_id,
        }))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(_fields.get())

    @classmethod
    def clear(cls) -> None:
        _fields.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **kwargs: Any) -> Iterator[type["LogContext"]]:
        """Bind fields for the duration of a block; unknown names and None are ignored."""
        token = _fields.set(cls._merged(kwargs))
        try:
            yield cls
        finally:
            _fields.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_RESERVED_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    # Money stays a string so "800.00" never turns into 800.0
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; context fields win over same-named extras."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, val in vars(record).items():
            if key not in _RESERVED_KEYS and key not in payload:
                payload[key] = val

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record))

        return json.dumps(payload, default=_json_default)

    def _exception_fields(self, record: logging.LogRecord) -> dict[str, Any]:
        exc = record.exc_info[1]
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        # FeeEngineError subclasses keep their details as public attributes
        for key, val in vars(exc).items():
            if not key.startswith("_") and key not in ("args", "code"):
                fields[f"exc_{key}"] = val
        fields["traceback"] = self.formatException(record.exc_info)
        return fields


# ---------------------------------------------------------------------------
# Logger factory and initialization
# ---------------------------------------------------------------------------


def get_logger(name: str) -> logging.Logger:
    """Logger under the fees_kernel namespace, e.g. ``get_logger("batch.billing_run")``."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the fees_kernel logger tree.

    Only the first call has an effect.  ``level`` accepts a logging constant
    or a level name as found in the ``logging.level`` config key.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    root = logging.getLogger(_LOGGER_PREFIX)
    root.setLevel(level)
    root.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root.addHandler(h)


def reset_logging() -> None:
    """Undo configure_logging (tests only)."""
    global _configured
    with _lock:
        _configured = False
    root = logging.getLogger(_LOGGER_PREFIX)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
