"""
Explicit success/failure wrapping for call sites that must not let an
exception escape (the scheduler boundary, retries).
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Tagged result of an awaited operation"""
    ok: bool
    value: Optional[T] = None
    error: Optional[Exception] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Outcome[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        """Return the value or re-raise the captured error"""
        if not self.ok:
            raise self.error
        return self.value


async def capture(operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> Outcome[T]:
    """
    Await ``operation(*args, **kwargs)`` and return an Outcome.

    Only ``Exception`` subclasses are captured; cancellation propagates.
    """
    try:
        value = await operation(*args, **kwargs)
    except Exception as e:
        return Outcome.failure(e)
    return Outcome.success(value)
