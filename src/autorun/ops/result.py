"""
Operation result envelope.

Provides :class:`OperationResult`, the typed success/failure envelope every
operation in ``autorun.ops`` returns. API routes, CLI commands and the
agent-exposed tools all render it; none of them see raw exceptions.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from autorun.core.errors import AutorunError, ErrorCategory, MissingEntityError

T = TypeVar("T")

# Stable machine-readable codes
NOT_FOUND = "NOT_FOUND"
VALIDATION_FAILED = "VALIDATION_FAILED"
JOB_ACTIVE = "JOB_ACTIVE"
QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"
FORBIDDEN = "FORBIDDEN"
INTERNAL = "INTERNAL"

_CATEGORY_CODES = {
    ErrorCategory.VALIDATION: VALIDATION_FAILED,
    ErrorCategory.CONFIG: VALIDATION_FAILED,
    ErrorCategory.QUEUE: QUEUE_UNAVAILABLE,
}


@dataclass(frozen=True, slots=True)
class OperationError:
    """Structured error detail for failed operations.

    Attributes:
        code: Machine-readable code (``NOT_FOUND``, ``VALIDATION_FAILED``, ...).
        message: Human-readable description of the error.
        category: Optional :class:`ErrorCategory` for routing/alerting.
        details: Extra key/value context (field names, limits, etc.).
        retryable: Whether the caller should retry the operation.
    """

    code: str
    message: str
    category: ErrorCategory | None = None
    details: dict[str, Any] = field(default_factory=dict)
    retryable: bool = False


@dataclass
class OperationResult[T]:
    """Envelope returned by every operation.

    Factory methods :meth:`ok` and :meth:`fail` should be used instead of
    the constructor directly.
    """

    success: bool
    data: T | None = None
    error: OperationError | None = None
    warnings: list[str] = field(default_factory=list)
    elapsed_ms: float = 0.0

    @classmethod
    def ok(
        cls,
        data: T,
        *,
        warnings: list[str] | None = None,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        return cls(success=True, data=data, warnings=warnings or [], elapsed_ms=elapsed_ms)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        *,
        category: ErrorCategory | None = None,
        details: dict[str, Any] | None = None,
        retryable: bool = False,
        elapsed_ms: float = 0.0,
    ) -> OperationResult[T]:
        return cls(
            success=False,
            error=OperationError(
                code=code,
                message=message,
                category=category,
                details=details or {},
                retryable=retryable,
            ),
            elapsed_ms=elapsed_ms,
        )

    @classmethod
    def from_error(cls, error: AutorunError, *, elapsed_ms: float = 0.0) -> OperationResult[T]:
        """Map a typed core error onto a failed result."""
        if isinstance(error, MissingEntityError):
            code = NOT_FOUND
        else:
            code = _CATEGORY_CODES.get(error.category, INTERNAL)
        return cls.fail(
            code,
            error.message,
            category=error.category,
            retryable=error.retryable,
            elapsed_ms=elapsed_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a plain dict (for JSON responses)."""
        d: dict[str, Any] = {"success": self.success}
        if self.data is not None:
            d["data"] = self.data
        if self.error is not None:
            d["error"] = {
                "code": self.error.code,
                "message": self.error.message,
                "retryable": self.error.retryable,
            }
            if self.error.details:
                d["error"]["details"] = self.error.details
        if self.warnings:
            d["warnings"] = self.warnings
        if self.elapsed_ms:
            d["elapsed_ms"] = round(self.elapsed_ms, 2)
        return d


def to_plain(value: Any) -> Any:
    """Dataclasses, enums and datetimes to JSON-ready builtins."""
    if is_dataclass(value) and not isinstance(value, type):
        return to_plain(asdict(value))
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: to_plain(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [to_plain(v) for v in value]
    return value


class _Timer:
    """Minimal stopwatch for timing operations."""

    __slots__ = ("_start",)

    def __init__(self) -> None:
        self._start = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000


def start_timer() -> _Timer:
    """Return a lightweight timer.  Use ``timer.elapsed_ms`` when done."""
    return _Timer()
