"""Explicit success/failure values for service operations.

Operations whose failure is an expected outcome (bad credentials, a replayed
refresh token, terminating someone else's session) return a :class:`Result`
instead of raising. The HTTP layer calls :meth:`Result.unwrap`, which raises
the carried :class:`ServiceError` so the shared exception handlers render it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from authcore.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


__all__ = ["Result"]
