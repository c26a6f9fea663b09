from __future__ import annotations
import asyncio
import inspect
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional, Protocol

from .context import CancelScope
from .errors import UnknownStepError
from .schemas import StepResult


@dataclass
class StepContext:
    """What a step handler or predicate sees of the running flow."""
    name: str
    node_id: str
    flow: str
    input: Any = None
    attempt: int = 1
    variables: Dict[str, Any] = field(default_factory=dict)
    scope: CancelScope = field(default_factory=CancelScope)
    executor: Optional[Executor] = None

    @property
    def cancelled(self) -> bool:
        """True once a race was lost or a deadline expired; handlers doing
        long work should check it and return early."""
        return self.scope.cancelled

    @property
    def deadline(self) -> Optional[float]:
        return self.scope.deadline

    def wait_cancelled(self, timeout: Optional[float] = None) -> bool:
        """Blocking wait for cancellation, for handlers on worker threads."""
        return self.scope.event.wait(timeout)


class Executable(Protocol):
    async def invoke(self, ctx: StepContext) -> StepResult:
        ...


async def _call(fn: Callable[..., Any], ctx: StepContext) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(ctx)
    loop = asyncio.get_running_loop()
    value = await loop.run_in_executor(ctx.executor, fn, ctx)
    if inspect.isawaitable(value):
        value = await value
    return value


class FunctionStep:
    """Adapts a plain (sync or async) function to ``Executable``.

    The function receives the ``StepContext``. Returning a ``StepResult``
    passes it through; any other return value is a success carrying that
    value; raising is an error. Synchronous functions run on the engine's
    worker pool.
    """

    def __init__(self, fn: Callable[[StepContext], Any]):
        self.fn = fn

    async def invoke(self, ctx: StepContext) -> StepResult:
        value = await _call(self.fn, ctx)
        if isinstance(value, StepResult):
            return value
        return StepResult.success(value)

    def __repr__(self) -> str:
        return f"FunctionStep({getattr(self.fn, '__name__', self.fn)!r})"


def as_executable(handler: Any) -> Executable:
    if hasattr(handler, "invoke"):
        return handler
    if callable(handler):
        return FunctionStep(handler)
    raise TypeError(f"Step handler must be callable or provide invoke(), got {type(handler).__name__}")


class StepHandlerRegistry:
    """Host-supplied behavior, looked up by name at run time.

    Three separate namespaces: steps (atomic units and compensations),
    predicates (guards and ``?pred`` branch cases) and event sources
    (``source ~> flow`` streams and state machines).
    """

    def __init__(self, steps: Optional[Dict[str, Any]] = None,
                 predicates: Optional[Dict[str, Any]] = None,
                 events: Optional[Dict[str, Any]] = None):
        self._steps: Dict[str, Executable] = {}
        self._predicates: Dict[str, Executable] = {}
        self._events: Dict[str, Any] = {}
        for name, handler in (steps or {}).items():
            self.register_step(name, handler)
        for name, fn in (predicates or {}).items():
            self.register_predicate(name, fn)
        for name, source in (events or {}).items():
            self.register_events(name, source)

    # ---------- registration ----------
    def register_step(self, name: str, handler: Any) -> "StepHandlerRegistry":
        self._steps[name] = as_executable(handler)
        return self

    def register_predicate(self, name: str, fn: Any) -> "StepHandlerRegistry":
        self._predicates[name] = as_executable(fn)
        return self

    def register_events(self, name: str, source: Any) -> "StepHandlerRegistry":
        """``source`` is an iterable, an async iterable, or a callable
        taking the ``StepContext`` and returning either."""
        self._events[name] = source
        return self

    def step(self, name: Optional[str] = None):
        def decorator(fn):
            self.register_step(name or fn.__name__, fn)
            return fn
        return decorator

    def predicate(self, name: Optional[str] = None):
        def decorator(fn):
            self.register_predicate(name or fn.__name__, fn)
            return fn
        return decorator

    # ---------- lookup ----------
    def has_step(self, name: str) -> bool:
        return name in self._steps

    def resolve(self, name: str) -> Executable:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(name, "step") from None

    def resolve_predicate(self, name: str) -> Executable:
        try:
            return self._predicates[name]
        except KeyError:
            raise UnknownStepError(name, "predicate") from None

    async def stream(self, name: str, ctx: StepContext) -> AsyncIterator[Any]:
        if name not in self._events:
            raise UnknownStepError(name, "event source")
        source = self._events[name]
        if callable(source) and not hasattr(source, "__iter__") and not hasattr(source, "__aiter__"):
            source = source(ctx)
            if inspect.isawaitable(source):
                source = await source
        if hasattr(source, "__aiter__"):
            async for event in source:
                yield event
        else:
            for event in source:
                yield event


class DryRunRegistry(StepHandlerRegistry):
    """Every step succeeds with its own name, every predicate holds and
    event sources are empty unless registered explicitly."""

    def has_step(self, name: str) -> bool:
        return True

    def resolve(self, name: str) -> Executable:
        if name in self._steps:
            return self._steps[name]
        return FunctionStep(_echo)

    def resolve_predicate(self, name: str) -> Executable:
        if name in self._predicates:
            return self._predicates[name]
        return FunctionStep(_always)

    async def stream(self, name: str, ctx: StepContext) -> AsyncIterator[Any]:
        if name in self._events:
            async for event in super().stream(name, ctx):
                yield event


async def _echo(ctx: StepContext) -> str:
    return ctx.name


async def _always(ctx: StepContext) -> bool:
    return True
