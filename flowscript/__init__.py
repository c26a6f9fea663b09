from .config import EngineConfig
from .context import ExecutionContext
from .engine import Engine
from .errors import (
    AmbiguousTransitionError, ArityError, CircuitOpenError, CompensationError, CompileError,
    CyclicReferenceError, DuplicateLabelError, FlowScriptError, GuardFailedError, LexError, ParseError,
    ResolutionError, RetryExhaustedError, RuntimeFlowError, StepFailedError, StepTimeoutError,
    UnknownStepError, UnmatchedBranchError, UnresolvedReferenceError,
)
from .lexer import Token, tokenize
from .parser import parse
from .policy import PolicyStore
from .registry import DryRunRegistry, StepContext, StepHandlerRegistry
from .resolver import ResolvedProgram, resolve
from .runtime import Runtime, compile_source
from .schemas import ExecutionTrace, StepResult, TraceEntry
from .types import StepStatus

__version__ = "0.1.0"
