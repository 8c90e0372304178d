"""
Outcome Model — Result of one pipeline stage.

Every stage of the transcoding pipeline returns an Outcome, regardless of
success or failure. The orchestrator chains stages with `then()` and stops
at the first failure, so no stage needs nested exception handling.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Generic, Literal, Optional, TypeVar

from ..validation import ProxyError

T = TypeVar("T")
U = TypeVar("U")

FailureKind = Literal["metadata", "codec", "timeout", "cancelled", "transport", "error"]


@dataclass(frozen=True)
class FailureDetails:
    """Details about a stage failure."""

    kind: FailureKind
    message: str
    stage: str = ""


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Success-with-value or a typed failure.

    Use the constructors instead of building one directly.
    """

    status: Literal["ok", "failed"]
    value: Optional[T] = None
    error: Optional[FailureDetails] = None

    @classmethod
    def ok(cls, value: T) -> "Outcome[T]":
        """Create a successful outcome."""
        return cls(status="ok", value=value)

    @classmethod
    def failed(cls, kind: FailureKind, message: str, stage: str = "") -> "Outcome[T]":
        """Create a failed outcome."""
        return cls(status="failed", error=FailureDetails(kind=kind, message=message, stage=stage))

    @classmethod
    def from_error(cls, error: ProxyError, stage: str = "") -> "Outcome[T]":
        """Create a failed outcome from a pipeline exception."""
        return cls.failed(error.kind, str(error) or type(error).__name__, stage)  # type: ignore[arg-type]

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"

    def then(self, step: Callable[[T], "Outcome[U]"]) -> "Outcome[U]":
        """Run the next stage on success; pass a failure through unchanged."""
        if not self.is_ok:
            return self  # type: ignore[return-value]
        return step(self.value)  # type: ignore[arg-type]

    def unwrap(self) -> T:
        """Return the value, or raise if this outcome failed."""
        if not self.is_ok:
            raise RuntimeError(f"unwrap() on failed outcome: {self.error}")
        return self.value  # type: ignore[return-value]
