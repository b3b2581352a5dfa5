from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from latchkey.service.errors import AuthError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a service operation: ``data`` on success, ``error`` otherwise."""

    success: bool
    data: Optional[T] = None
    error: Optional[AuthError] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "Result[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: AuthError) -> "Result[T]":
        return cls(success=False, error=error)

    def unwrap(self) -> T:
        """Return ``data`` or raise the carried error."""
        if not self.success:
            raise self.error
        return self.data


__all__ = ["Result"]
