from typing import Any, Optional, Sequence


class FlowScriptError(Exception):
    pass


# ---------- Static (compile-time) errors ----------

class CompileError(FlowScriptError):
    """Raised before any execution; a program that fails to compile never runs."""
    pass


class LexError(CompileError):
    def __init__(self, position: int, message: str, line: int = 0, column: int = 0):
        self.position = position
        self.line = line
        self.column = column
        self.message = message
        super().__init__(f"{message} at line {line}, column {column} (offset {position})")


class ParseError(CompileError):
    def __init__(self, position: int, expected: str, found: str, line: int = 0, column: int = 0):
        self.position = position
        self.expected = expected
        self.found = found
        self.line = line
        self.column = column
        super().__init__(f"expected {expected}, found {found!r} at line {line}, column {column}")


class ResolutionError(CompileError):
    pass


class UnresolvedReferenceError(ResolutionError):
    def __init__(self, name: str, flow: str, kind: str = "flow"):
        self.name = name
        self.flow = flow
        self.kind = kind
        sigil = "@" if kind == "flow" else "#"
        super().__init__(f"Flow '{flow}' references undefined {kind} '{sigil}{name}'")


class CyclicReferenceError(ResolutionError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__("Reference cycle: " + " -> ".join(self.cycle))


class DuplicateLabelError(ResolutionError):
    def __init__(self, name: str, flow: str):
        self.name = name
        self.flow = flow
        super().__init__(f"Label '#{name}' defined more than once in flow '{flow}'")


class ArityError(ResolutionError):
    def __init__(self, node_id: str, kind: str, minimum: int, found: int):
        self.node_id = node_id
        self.kind = kind
        self.minimum = minimum
        self.found = found
        super().__init__(f"{kind} '{node_id}' needs at least {minimum} children, found {found}")


class AmbiguousTransitionError(ResolutionError):
    def __init__(self, machine: str, state: str, event: str):
        self.machine = machine
        self.state = state
        self.event = event
        super().__init__(f"State machine '{machine}' has more than one transition from '{state}' on '{event}'")


# ---------- Dynamic (run-time) errors ----------

class RuntimeFlowError(FlowScriptError):
    """Base of every error scoped to one execution.

    ``code`` is the label a Branch case can match on; ``trace`` carries the
    partial execution trace once the error escapes ``Engine.execute``.
    """
    code = "err"

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message)
        self.node_id = node_id
        self.trace: Any = None


class StepFailedError(RuntimeFlowError):
    code = "failed"

    def __init__(self, step: str, message: str, node_id: Optional[str] = None):
        self.step = step
        super().__init__(f"Step '{step}' failed: {message}", node_id)


class StepTimeoutError(RuntimeFlowError):
    code = "timeout"

    def __init__(self, duration: float, node_id: Optional[str] = None):
        self.duration = duration
        super().__init__(f"Timed out after {duration:g}s", node_id)


class RetryExhaustedError(RuntimeFlowError):
    code = "retry_exhausted"

    def __init__(self, attempts: int, last_error: RuntimeFlowError, node_id: Optional[str] = None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}", node_id)


class CircuitOpenError(RuntimeFlowError):
    code = "circuit_open"

    def __init__(self, key: Any, node_id: Optional[str] = None):
        self.key = key
        super().__init__(f"Circuit {key} is open", node_id)


class GuardFailedError(RuntimeFlowError):
    code = "guard_failed"

    def __init__(self, predicate: str, node_id: Optional[str] = None):
        self.predicate = predicate
        super().__init__(f"Guard '{predicate}' blocked the transition", node_id)


class UnmatchedBranchError(RuntimeFlowError):
    code = "unmatched_branch"

    def __init__(self, discriminant: str, node_id: Optional[str] = None):
        self.discriminant = discriminant
        super().__init__(f"No branch case matches '{discriminant}'", node_id)


class CompensationError(RuntimeFlowError):
    code = "compensation"

    def __init__(self, compensation: str, cause: RuntimeFlowError, original: RuntimeFlowError,
                 node_id: Optional[str] = None):
        self.compensation = compensation
        self.cause = cause
        self.original = original
        super().__init__(f"Compensation '{compensation}' failed ({cause}) while unwinding: {original}", node_id)


class UnknownStepError(RuntimeFlowError):
    code = "unknown_step"

    def __init__(self, name: str, namespace: str = "step"):
        self.name = name
        self.namespace = namespace
        super().__init__(f"No {namespace} handler registered for '{name}'")
