from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    UNKNOWN = "unknown"
    NOT_CONFIGURED = "not_configured"
    TRANSIENT = "transient"
    RETRIES_EXHAUSTED = "retries_exhausted"
    REJECTED = "rejected"


@dataclass
class Result(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0

    @staticmethod
    def success(value: T, attempts: int = 1) -> "Result[T]":
        return Result(ok=True, value=value, attempts=attempts)

    @staticmethod
    def failure(error: str, code: str = ErrorCode.UNKNOWN.value, attempts: int = 0) -> "Result[T]":
        return Result(ok=False, error=error, error_code=code, attempts=attempts)

    @property
    def retryable(self) -> bool:
        return not self.ok and self.error_code == ErrorCode.TRANSIENT.value

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default
