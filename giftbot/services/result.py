from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """Outcome of a collaborator call that may fail in an expected way."""

    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(ok=True, value=value)

    @staticmethod
    def failure(error: str, code: str = "unknown") -> "Result[T]":
        return Result(ok=False, error=error, error_code=code)

    def unwrap_or(self, default: T) -> T:
        return self.value if self.ok else default

    def as_status(self) -> dict:
        """Flatten to the ``{success, error}`` shape used by mark-as-read callers."""
        status = {"success": self.ok}
        if not self.ok:
            status["error"] = self.error
        return status
