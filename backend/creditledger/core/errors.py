"""
Ledger error kinds and typed operation results.

Balance-affecting operations return a LedgerResult instead of raising, so
callers have to look at the outcome. The one exception is a consistency
violation: a broken ledger invariant is raised as ConsistencyViolationError
and is never turned into a result.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class LedgerErrorKind(str, Enum):
    """Distinct, named failure reasons for ledger operations."""
    INVALID_INPUT = "INVALID_INPUT"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE_TRANSITION = "INVALID_STATE_TRANSITION"
    SAFETY_LIMIT_EXCEEDED = "SAFETY_LIMIT_EXCEEDED"
    CONFLICT = "CONFLICT"  # Transient lock/serialization failure, caller may retry
    CONSISTENCY_VIOLATION = "CONSISTENCY_VIOLATION"


@dataclass(frozen=True)
class LedgerError:
    """A failed ledger operation."""
    kind: LedgerErrorKind
    message: str
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert the error to a dictionary for API responses."""
        return {
            "error": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class LedgerResult(Generic[T]):
    """Either a value or a LedgerError, never both."""
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "LedgerResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, kind: LedgerErrorKind, message: str, **details: Any) -> "LedgerResult[T]":
        return cls(error=LedgerError(kind=kind, message=message, details=details))

    def unwrap(self) -> T:
        """Return the value or raise LedgerOperationError."""
        if self.error is not None:
            raise LedgerOperationError(self.error)
        return self.value


class LedgerOperationError(Exception):
    """Raised by LedgerResult.unwrap() for callers that prefer exceptions."""

    def __init__(self, error: LedgerError):
        self.error = error
        super().__init__(f"{error.kind.value}: {error.message}")


class ConsistencyViolationError(Exception):
    """
    A ledger invariant failed to hold.

    This signals data corruption or a bug; the surrounding transaction is
    rolled back and the error propagates to the caller.
    """

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_error(self) -> LedgerError:
        return LedgerError(
            kind=LedgerErrorKind.CONSISTENCY_VIOLATION,
            message=self.message,
            details=self.details,
        )
