"""
Outcome -- typed success-or-error result returned by every public operation.

Expected business conditions (insufficient funds, over-allocation, illegal
transitions) are values, not exceptions.  ``unwrap()`` converts a failed
outcome back into a raised ``SettlementError`` for callers that want it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

from settlement_kernel.exceptions import SettlementError

T = TypeVar("T")

OK = "ok"


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an operation: exactly one of ``value`` / ``error`` is meaningful."""

    value: T | None = None
    error: SettlementError | None = None

    @classmethod
    def ok(cls, value: T) -> Outcome[T]:
        return cls(value=value)

    @classmethod
    def fail(cls, error: SettlementError) -> Outcome[T]:
        if not isinstance(error, SettlementError):
            raise TypeError(f"Outcome.fail requires a SettlementError, got {type(error).__name__}")
        return cls(error=error)

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        """``"ok"`` or the error's machine-readable code."""
        return OK if self.error is None else self.error.code

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
