"""
Stable result types for callers of the FeeEngine facade.

Every facade operation returns an ``OperationResult``: either a value, or an
``ErrorKind`` with a message and the structured attributes of the exception
that caused it.  Callers branch on ``error_kind``, never on messages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

from fees_kernel.exceptions import FeeEngineError

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Machine-readable failure categories; values equal exception codes."""

    STUDENT_NOT_FOUND = "STUDENT_NOT_FOUND"
    FAMILY_NOT_FOUND = "FAMILY_NOT_FOUND"
    ALLOCATION_NOT_FOUND = "ALLOCATION_NOT_FOUND"
    PAYMENT_NOT_FOUND = "PAYMENT_NOT_FOUND"
    ALLOCATION_LOCKED = "ALLOCATION_LOCKED"
    CONCURRENT_ALLOCATION_UPDATE = "CONCURRENT_ALLOCATION_UPDATE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    ALLOCATION_OVERPAYMENT = "ALLOCATION_OVERPAYMENT"
    INVALID_DATE = "INVALID_DATE"
    INVALID_PERIOD = "INVALID_PERIOD"
    ALLOCATION_FAMILY_MISMATCH = "ALLOCATION_FAMILY_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    @property
    def is_transient(self) -> bool:
        """Safe to retry the whole operation unchanged."""
        return self is ErrorKind.CONCURRENT_ALLOCATION_UPDATE


_KNOWN_CODES = frozenset(kind.value for kind in ErrorKind)


def error_kind_for(exc: BaseException) -> ErrorKind:
    """Most specific ErrorKind along the exception's class hierarchy."""
    for cls in type(exc).__mro__:
        code = getattr(cls, "code", None)
        if code in _KNOWN_CODES:
            return ErrorKind(code)
    return ErrorKind.INTERNAL_ERROR


def _details(exc: BaseException) -> dict[str, Any]:
    return {key: value for key, value in vars(exc).items() if not key.startswith("_")}


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Value or typed failure of one facade call."""

    value: T | None = None
    error_kind: ErrorKind | None = None
    message: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, value: T) -> OperationResult[T]:
        return cls(value=value)

    @classmethod
    def fail(
        cls,
        error_kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> OperationResult[T]:
        return cls(error_kind=error_kind, message=message, details=details or {})

    @classmethod
    def from_exception(cls, exc: BaseException) -> OperationResult[T]:
        """Map a kernel exception; anything else is an internal error."""
        if not isinstance(exc, FeeEngineError):
            return cls.fail(ErrorKind.INTERNAL_ERROR, "Internal error", {"type": type(exc).__name__})
        return cls.fail(error_kind_for(exc), str(exc), _details(exc))

    @property
    def is_success(self) -> bool:
        return self.error_kind is None

    @property
    def is_retryable(self) -> bool:
        return self.error_kind is not None and self.error_kind.is_transient

    def unwrap(self) -> T:
        """Return the value, or raise RuntimeError for a failed result."""
        if not self.is_success:
            raise RuntimeError(f"{self.error_kind.value}: {self.message}")
        return self.value
