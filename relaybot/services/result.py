from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from relaybot.errors import RelaybotError

T = TypeVar("T")
U = TypeVar("U")


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    @staticmethod
    def from_error(exc: RelaybotError) -> "Result[T]":
        """Failure carrying the error's user-facing text."""
        return Result(ok=False, error=exc.user_message, error_code=exc.code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if not self.ok:
            return Result(ok=False, error=self.error, error_code=self.error_code)
        return Result.success(fn(self.value))
