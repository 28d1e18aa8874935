"""
Typed results for service operations.

Expected failures (validation, conflicts, provider rejections, lost races)
come back as ``Result.failure``. Anything else, such as a database outage,
is raised.
"""

import functools
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

from pledgehub.utils.errors import EXPECTED_ERRORS, PledgeHubError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    value: Optional[T] = None
    error: Optional[PledgeHubError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PledgeHubError) -> "Result[T]":
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value


def returns_result(func: Callable[..., T]) -> Callable[..., Result[T]]:
    """Wrap a service method so expected errors become ``Result.failure``."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        try:
            return Result.success(func(*args, **kwargs))
        except EXPECTED_ERRORS as e:
            return Result.failure(e)

    return wrapper
