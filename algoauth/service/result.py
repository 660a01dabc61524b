from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from algoauth.service.errors import ServiceError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of an auth operation: a value, or one operational error.

    Expected conditions (expired token, wrong password, revoked session) travel
    as ``Result.failure`` instead of unwinding the stack. The HTTP boundary is
    the only place that calls :meth:`unwrap`.
    """

    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def map(self, func: Callable[[T], U]) -> "Result[U]":
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=func(self.value))  # type: ignore[arg-type]


__all__ = ["Result"]
