from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional, Union

from loguru import logger

from .config import EngineConfig
from .context import ExecutionContext
from .engine import Engine
from .errors import RuntimeFlowError
from .lexer import tokenize
from .parser import parse
from .policy import PolicyStore
from .registry import DryRunRegistry, StepHandlerRegistry
from .resolver import ResolvedProgram, resolve
from .schemas import ExecutionTrace


def compile_source(source: Union[str, Path]) -> ResolvedProgram:
    """Lex, parse and resolve; any static error aborts before execution."""
    if isinstance(source, Path):
        source = source.read_text(encoding="utf-8")
    return resolve(parse(tokenize(source)))


class Runtime:
    """Loads a program once and runs its flows against a handler registry.

    The runtime owns the policy store, so circuit breakers and rate limits
    carry over between ``run_flow`` calls on the same runtime and never leak
    into another runtime.
    """

    def __init__(self, registry: Optional[StepHandlerRegistry] = None, config: Optional[EngineConfig] = None,
                 dry_run: bool = False, **engine_options: Any):
        self.dry_run = dry_run
        self.registry = registry if registry is not None else (DryRunRegistry() if dry_run else StepHandlerRegistry())
        self.config = config or EngineConfig.from_env()
        self.engine = Engine(self.config, **engine_options)
        self.store = PolicyStore()
        self.program: Optional[ResolvedProgram] = None

    def load(self, source: Union[str, Path]) -> ResolvedProgram:
        if isinstance(source, str) and "\n" not in source and source.endswith(".flow") and Path(source).exists():
            source = Path(source)
        self.program = compile_source(source)
        logger.debug("[runtime] Loaded flows {}", self.program.names)
        return self.program

    def _context(self, variables: Optional[Dict[str, Any]]) -> ExecutionContext:
        return ExecutionContext(variables=dict(variables or {}), store=self.store)

    def _entry(self, flow_name: Optional[str]) -> str:
        if not self.program:
            raise RuntimeFlowError("No program loaded")
        if flow_name is None:
            return self.program.names[0]
        return flow_name

    def run_flow(self, flow_name: Optional[str] = None, variables: Optional[Dict[str, Any]] = None) -> ExecutionTrace:
        """Run ``flow_name`` (default: the first flow) to completion."""
        entry = self._entry(flow_name)
        return self.engine.run(self.program, entry, self.registry, self._context(variables))

    async def run_flow_async(self, flow_name: Optional[str] = None,
                             variables: Optional[Dict[str, Any]] = None) -> ExecutionTrace:
        entry = self._entry(flow_name)
        return await self.engine.execute(self.program, entry, self.registry, self._context(variables))

    def close(self):
        self.engine.close()
