from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class StepStatus(str, Enum):
    success = "success"
    error = "error"
    cancelled = "cancelled"


class RetryStrategy(str, Enum):
    fixed = "fixed"
    linear = "linear"
    exponential = "exponential"

    @classmethod
    def parse(cls, name: str) -> "RetryStrategy":
        if name == "exp":
            return cls.exponential
        return cls(name)


class CatchMode(str, Enum):
    catch = "!"
    always = "!!"
    recover = "!?"


class RefKind(str, Enum):
    flow = "flow"
    label = "label"


class CircuitState(str, Enum):
    closed = "closed"
    open = "open"
    half_open = "half-open"


@dataclass(frozen=True)
class Outcome:
    """What a node hands to its successor: a value, or the error it raised."""
    value: Any = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def payload(self) -> Any:
        """Input for whatever runs next: the value, or the error itself."""
        return self.value if self.error is None else self.error

    @classmethod
    def success(cls, value: Any = None) -> "Outcome":
        return cls(value=value)

    @classmethod
    def failure(cls, error: Exception) -> "Outcome":
        return cls(error=error)
