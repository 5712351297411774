"""
Explicit result values for lifecycle stages.

Stages hand back ``Ok(value)`` or ``Err(classified_error)`` so callers decide
on retries by inspecting ``err.error.retryable`` instead of catching and
parsing exceptions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Generic, TypeVar, Union

from okito.core.errors import ClassifiedError, classify_error

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def is_ok(self) -> bool:
        return True

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err:
    error: ClassifiedError

    @property
    def is_ok(self) -> bool:
        return False

    @property
    def retryable(self) -> bool:
        return self.error.retryable

    def unwrap(self) -> Any:
        """Raise the original failure unchanged."""
        self.error.raise_()


Result = Union[Ok[T], Err]


def err(error: Any) -> Err:
    return Err(classify_error(error))


async def capture(awaitable: Awaitable[T]) -> "Result[T]":
    """Await and turn a raised exception into ``Err``."""
    try:
        value = await awaitable
    except Exception as e:
        return err(e)
    if isinstance(value, (Ok, Err)):
        return value
    return Ok(value)
