from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a service call that routers translate into an HTTP response."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    status_code: int = 200

    @staticmethod
    def success(value: T, status_code: int = 200) -> "Result[T]":
        return Result(ok=True, value=value, status_code=status_code)

    @staticmethod
    def failure(error: str, code: str = "unknown", status_code: int = 400) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, status_code=status_code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
