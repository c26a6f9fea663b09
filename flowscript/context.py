from __future__ import annotations
import asyncio
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Set

from .policy import PolicyStore
from .schemas import ExecutionTrace


class LoopSignal:
    """Raised flag a step sets (via ``StepResult.done``) to end its loop."""

    def __init__(self):
        self.requested = False


class CancelScope:
    """Cancellation domain for a subtree of the running flow.

    Cancelling a scope sets its flag (observed cooperatively by step
    handlers, including ones running on worker threads), cancels the asyncio
    tasks forked inside it and cascades to child scopes. Detached work gets a
    root scope of its own and is therefore never reached.
    """

    def __init__(self, parent: Optional["CancelScope"] = None, deadline: Optional[float] = None):
        self.parent = parent
        self._event = threading.Event()
        self._children: List["CancelScope"] = []
        self._tasks: Set[asyncio.Task] = set()
        if parent is not None:
            parent._children.append(self)
            if parent.deadline is not None:
                deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
            if parent.cancelled:
                self._event.set()
        self.deadline = deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def event(self) -> threading.Event:
        return self._event

    def child(self, deadline: Optional[float] = None) -> "CancelScope":
        return CancelScope(self, deadline)

    def adopt(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self.cancelled:
            task.cancel()
        return task

    def cancel(self):
        self._event.set()
        for task in list(self._tasks):
            task.cancel()
        for scope in list(self._children):
            scope.cancel()

    def close(self):
        """Detach a settled scope from its parent, unless work forked inside
        it is still running and must stay reachable by cancellation."""
        if self.parent is not None and not self._tasks:
            try:
                self.parent._children.remove(self)
            except ValueError:
                pass


@dataclass
class ExecutionContext:
    """Per-invocation mutable state, owned by exactly one execution.

    ``variables`` and ``trace`` are shared by every branch of the execution;
    ``scope`` differs per concurrent branch. The policy store is the only
    object shared between executions.
    """
    variables: Dict[str, Any] = field(default_factory=dict)
    store: PolicyStore = field(default_factory=PolicyStore)
    scope: CancelScope = field(default_factory=CancelScope)
    trace: Optional[ExecutionTrace] = None
    flow: str = ""
    attempt: int = 1
    loop: Optional["LoopSignal"] = None
    pending: Set[asyncio.Task] = field(default_factory=set)

    @property
    def cancelled(self) -> bool:
        return self.scope.cancelled

    @property
    def deadline(self) -> Optional[float]:
        return self.scope.deadline

    def branch(self, scope: Optional[CancelScope] = None, **changes: Any) -> "ExecutionContext":
        """Same execution, new cancellation scope (a child of ours by default)."""
        return replace(self, scope=scope if scope is not None else self.scope.child(), **changes)

    def in_flow(self, flow: str) -> "ExecutionContext":
        return replace(self, flow=flow)

    def track(self, task: asyncio.Task) -> asyncio.Task:
        self.pending.add(task)
        task.add_done_callback(self.pending.discard)
        return task
