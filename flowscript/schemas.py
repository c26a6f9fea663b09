"""Pydantic models for what an execution produces.

Step handlers return ``StepResult`` (or a plain value, which the engine
wraps); the engine appends one ``TraceEntry`` per settled step, compensation
or policy decision to the ``ExecutionTrace`` handed back to the caller.
"""

from __future__ import annotations
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .types import StepStatus


class StepResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    status: StepStatus = StepStatus.success
    value: Any = None
    error: Optional[str] = None
    started_at: float = 0.0
    ended_at: float = 0.0
    halt: bool = Field(default=False, description="Stop the enclosing loop after this iteration")

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.success

    @property
    def duration(self) -> float:
        return self.ended_at - self.started_at

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(status=StepStatus.success, value=value)

    @classmethod
    def failure(cls, error: str) -> "StepResult":
        return cls(status=StepStatus.error, error=error)

    @classmethod
    def done(cls, value: Any = None) -> "StepResult":
        return cls(status=StepStatus.success, value=value, halt=True)


class TraceEntry(BaseModel):
    node_id: str
    step: str
    kind: str = "step"  # step | compensation | timeout | circuit | guard | event | state
    attempt: int = 1
    note: Optional[str] = None
    result: StepResult

    @property
    def status(self) -> StepStatus:
        return self.result.status


class ExecutionTrace(BaseModel):
    flow: str
    entries: List[TraceEntry] = Field(default_factory=list)
    started_at: float = 0.0
    ended_at: float = 0.0
    status: StepStatus = StepStatus.success
    value: Any = None
    error: Optional[str] = None

    def record(self, entry: TraceEntry) -> TraceEntry:
        self.entries.append(entry)
        return entry

    def steps(self, kind: str = "step", status: Optional[StepStatus] = None) -> List[str]:
        """Names of recorded entries of ``kind`` in settle order."""
        return [e.step for e in self.entries
                if e.kind == kind and (status is None or e.result.status == status)]

    def find(self, step: str, kind: str = "step") -> List[TraceEntry]:
        return [e for e in self.entries if e.step == step and e.kind == kind]

    @property
    def ok(self) -> bool:
        return self.status == StepStatus.success
