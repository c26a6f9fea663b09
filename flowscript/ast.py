# Immutable AST for FlowScript programs. Nodes are frozen dataclasses so a
# compiled program can be shared by concurrent executions.
from __future__ import annotations
from dataclasses import dataclass, field, fields, replace, is_dataclass
from typing import Any, Callable, Iterator, Optional, Tuple

from .types import CatchMode, RefKind, RetryStrategy


# ---------- Modifier policies ----------

@dataclass(frozen=True)
class Quantifier:
    minimum: int
    maximum: Optional[int] = None  # None = unbounded

    @property
    def symbol(self) -> str:
        if (self.minimum, self.maximum) == (0, None):
            return "*"
        if (self.minimum, self.maximum) == (1, None):
            return "+"
        if (self.minimum, self.maximum) == (0, 1):
            return "?"
        if self.maximum is None:
            return f"{{{self.minimum},}}"
        return f"{{{self.minimum},{self.maximum}}}"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    strategy: RetryStrategy = RetryStrategy.fixed
    base_delay: Optional[float] = None
    multiplier: Optional[float] = None

    def delay_before(self, attempt: int, base_delay: float, multiplier: float) -> float:
        """Delay before attempt ``attempt`` (2-based; attempt 1 never waits)."""
        if attempt < 2:
            return 0.0
        base = self.base_delay if self.base_delay is not None else base_delay
        mult = self.multiplier if self.multiplier is not None else multiplier
        if self.strategy == RetryStrategy.fixed:
            return base
        if self.strategy == RetryStrategy.linear:
            return base * (attempt - 1)
        return base * mult ** (attempt - 2)


@dataclass(frozen=True)
class TimeoutPolicy:
    duration: float
    fallback: Optional["Node"] = None


@dataclass(frozen=True)
class CircuitPolicy:
    threshold: int
    cooldown: Optional[float] = None
    window: Optional[float] = None


@dataclass(frozen=True)
class NodeMeta:
    """Side annotations that never change how a node executes, except
    ``compensation`` (read by Saga) and ``bind`` (stores the node's value)."""
    compensation: Optional[str] = None
    bind: Optional[str] = None
    annotation: Optional[str] = None
    group: Optional[str] = None


# ---------- Nodes ----------

@dataclass(frozen=True)
class Node:
    node_id: str

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass(frozen=True)
class Atomic(Node):
    name: str
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Sequence(Node):
    children: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Saga(Node):
    children: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Parallel(Node):
    children: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Barrier(Node):
    children: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Race(Node):
    arms: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class BranchCase:
    label: str
    body: Node
    predicate: bool = False


@dataclass(frozen=True)
class Branch(Node):
    cases: Tuple[BranchCase, ...]
    default: Optional[Node] = None
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Catch(Node):
    mode: CatchMode
    body: Node
    handler: Node
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Loop(Node):
    body: Node
    quantifier: Quantifier
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Guard(Node):
    body: Node
    predicate: str
    negated: bool = False
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Retry(Node):
    body: Node
    policy: RetryPolicy
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Timeout(Node):
    body: Node
    policy: TimeoutPolicy
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class CircuitBreaker(Node):
    body: Node
    policy: CircuitPolicy
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Debounce(Node):
    body: Node
    interval: float
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Throttle(Node):
    body: Node
    interval: float
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Detach(Node):
    body: Node
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class EventStream(Node):
    source: str
    body: Node
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Broadcast(Node):
    source: Node
    listeners: Tuple[Node, ...]
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Label(Node):
    name: str
    body: Node
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Ref(Node):
    name: str
    ref_kind: RefKind
    index: Optional[int] = None  # filled in by the resolver
    meta: NodeMeta = NodeMeta()


@dataclass(frozen=True)
class Transition:
    source: str
    event: str
    target: str


@dataclass(frozen=True)
class StateMachine(Node):
    name: str
    transitions: Tuple[Transition, ...]
    meta: NodeMeta = NodeMeta()

    @property
    def initial(self) -> str:
        return self.transitions[0].source

    def next_state(self, state: str, event: str) -> Optional[str]:
        for t in self.transitions:
            if t.source == state and t.event == event:
                return t.target
        return None

    def is_terminal(self, state: str) -> bool:
        return not any(t.source == state for t in self.transitions)


@dataclass(frozen=True)
class Flow:
    """A named, resolved top-level flow: the unit addressed by ``@name``."""
    id: str
    index: int
    root: Node
    labels: Tuple[Label, ...] = field(default=())


# ---------- Traversal ----------

_SKIP = ("node_id", "meta")


def _child_values(value: Any) -> Iterator[Node]:
    if isinstance(value, Node):
        yield value
    elif isinstance(value, tuple):
        for v in value:
            yield from _child_values(v)
    elif is_dataclass(value) and not isinstance(value, type):
        for f in fields(value):
            yield from _child_values(getattr(value, f.name))


def children(node: Node) -> Tuple[Node, ...]:
    """Direct child nodes, including branch bodies and timeout fallbacks."""
    out = []
    for f in fields(node):
        if f.name not in _SKIP:
            out.extend(_child_values(getattr(node, f.name)))
    return tuple(out)


def walk(node: Node) -> Iterator[Node]:
    """Pre-order traversal of ``node`` and every descendant."""
    yield node
    for child in children(node):
        yield from walk(child)


def transform(node: Node, fn: Callable[[Node], Node]) -> Node:
    """Rebuild ``node`` bottom-up, applying ``fn`` to every rebuilt node."""
    def visit(value: Any) -> Any:
        if isinstance(value, Node):
            return transform(value, fn)
        if isinstance(value, tuple):
            return tuple(visit(v) for v in value)
        if isinstance(value, (BranchCase, TimeoutPolicy)):
            return replace(value, **{f.name: visit(getattr(value, f.name)) for f in fields(value)})
        return value

    changes = {f.name: visit(getattr(node, f.name)) for f in fields(node) if f.name not in _SKIP}
    return fn(replace(node, **changes))


def with_meta(node: Node, **values: Any) -> Node:
    return replace(node, meta=replace(node.meta, **values))
