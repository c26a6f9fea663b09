from __future__ import annotations
import asyncio
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence as Seq

from loguru import logger
from opentelemetry import trace

from .ast import (
    Atomic, Barrier, Branch, BranchCase, Broadcast, Catch, CircuitBreaker, Debounce, Detach,
    EventStream, Guard, Label, Loop, Node, Parallel, Race, Ref, Retry, Saga, Sequence, StateMachine,
    Throttle, Timeout,
)
from .config import EngineConfig
from .context import CancelScope, ExecutionContext, LoopSignal
from .errors import (
    CircuitOpenError, CompensationError, GuardFailedError, RetryExhaustedError, RuntimeFlowError,
    StepFailedError, StepTimeoutError, UnmatchedBranchError,
)
from .policy import CircuitEntry, RateEntry
from .registry import StepContext, StepHandlerRegistry
from .resolver import ResolvedProgram
from .schemas import ExecutionTrace, StepResult, TraceEntry
from .types import CatchMode, CircuitState, Outcome, RefKind, StepStatus

_tracer = trace.get_tracer(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


def _consume(task: asyncio.Task):
    # discarded race losers and timed-out bodies: retrieve the outcome so
    # asyncio does not warn about it
    if not task.cancelled():
        task.exception()


def _first_error(results: Seq[Any]):
    for r in results:
        if isinstance(r, BaseException):
            raise r


def _name_of(node: Node) -> str:
    if isinstance(node, Atomic):
        return node.name
    if isinstance(node, Ref):
        return ("@" if node.ref_kind == RefKind.flow else "#") + node.name
    return node.kind


class Engine:
    """Tree-walking interpreter for resolved FlowScript programs.

    One engine can run many executions, concurrently or not; everything an
    execution mutates lives in its ``ExecutionContext``. Synchronous step
    handlers run on a thread pool of ``config.max_workers`` threads and at
    most that many handlers run at once per execution.
    """

    def __init__(self, config: Optional[EngineConfig] = None, clock: Optional[Clock] = None,
                 sleep: Optional[Sleep] = None):
        self.config = config or EngineConfig()
        self.clock: Clock = clock or time.monotonic
        self.sleep: Sleep = sleep or asyncio.sleep
        self.executor = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="flowscript")

    def close(self):
        self.executor.shutdown(wait=False)

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc):
        self.close()

    def run(self, program: ResolvedProgram, entry: str, handlers: StepHandlerRegistry,
            ctx: Optional[ExecutionContext] = None) -> ExecutionTrace:
        """Synchronous wrapper around ``execute``."""
        return asyncio.run(self.execute(program, entry, handlers, ctx))

    async def execute(self, program: ResolvedProgram, entry: str, handlers: StepHandlerRegistry,
                      ctx: Optional[ExecutionContext] = None) -> ExecutionTrace:
        """Run ``entry`` to completion and return its trace.

        Circuit breaker and rate limit state lives in ``ctx.store``. Without a
        ``ctx`` every call gets a fresh store, so that state does not carry over
        between calls; pass contexts sharing one ``PolicyStore`` (or use
        ``Runtime``) to keep it.
        """
        if entry not in program:
            raise RuntimeFlowError(f"Flow '{entry}' not found")
        flow = program.flow(entry)
        if ctx is None:
            logger.debug("[flow] No context for '{}', using a fresh policy store", entry)
            ctx = ExecutionContext()
        run_trace = ExecutionTrace(flow=entry, started_at=self.clock())
        ctx = replace(ctx, trace=run_trace, flow=entry, scope=CancelScope(), pending=set(), attempt=1, loop=None)
        interp = _Interpreter(self, program, handlers)
        logger.info("[flow] Start '{}'", entry)
        with _tracer.start_as_current_span(f"flow:{entry}"):
            try:
                value = await interp.eval(flow.root, ctx, Outcome.success(None))
            except RuntimeFlowError as err:
                ctx.scope.cancel()
                if self.config.drain_background:
                    await interp.drain(ctx)
                run_trace.status = StepStatus.error
                run_trace.error = str(err)
                run_trace.ended_at = self.clock()
                err.trace = run_trace
                logger.warning("[flow] Failed '{}': {}", entry, err)
                raise
            except asyncio.CancelledError:
                ctx.scope.cancel()
                raise
            if self.config.drain_background:
                await interp.drain(ctx)
        run_trace.value = value
        run_trace.ended_at = self.clock()
        logger.info("[flow] End '{}' ({} trace entries)", entry, len(run_trace.entries))
        return run_trace


class _Interpreter:
    """Evaluation rules, one ``_exec_*`` method per node kind."""

    def __init__(self, engine: Engine, program: ResolvedProgram, registry: StepHandlerRegistry):
        self.engine = engine
        self.config = engine.config
        self.program = program
        self.registry = registry
        self.limit = asyncio.Semaphore(engine.config.max_workers)
        self._dispatch: Dict[type, Callable[..., Awaitable[Any]]] = {
            Atomic: self._exec_atomic,
            Sequence: self._exec_sequence,
            Saga: self._exec_saga,
            Parallel: self._exec_parallel,
            Barrier: self._exec_barrier,
            Race: self._exec_race,
            Branch: self._exec_branch,
            Catch: self._exec_catch,
            Loop: self._exec_loop,
            Guard: self._exec_guard,
            Retry: self._exec_retry,
            Timeout: self._exec_timeout,
            CircuitBreaker: self._exec_circuit,
            Debounce: self._exec_debounce,
            Throttle: self._exec_throttle,
            Detach: self._exec_detach,
            EventStream: self._exec_stream,
            Broadcast: self._exec_broadcast,
            Label: self._exec_label,
            Ref: self._exec_ref,
            StateMachine: self._exec_machine,
        }

    async def eval(self, node: Node, ctx: ExecutionContext, incoming: Outcome) -> Any:
        value = await self._dispatch[type(node)](node, ctx, incoming)
        if node.meta.bind:
            ctx.variables[node.meta.bind] = value
        return value

    async def drain(self, ctx: ExecutionContext):
        while ctx.pending:
            await asyncio.gather(*list(ctx.pending), return_exceptions=True)

    # ---------- trace helpers ----------
    def _record(self, ctx: ExecutionContext, node_id: str, step: str, kind: str, result: StepResult,
                note: Optional[str] = None):
        if ctx.trace is not None:
            ctx.trace.record(TraceEntry(node_id=node_id, step=step, kind=kind, attempt=ctx.attempt,
                                        note=note, result=result))

    def _mark(self, ctx: ExecutionContext, node_id: str, step: str, kind: str, status: StepStatus,
              note: Optional[str] = None, value: Any = None, error: Optional[str] = None):
        now = self.engine.clock()
        result = StepResult(status=status, value=value, error=error, started_at=now, ended_at=now)
        self._record(ctx, node_id, step, kind, result, note)

    def _step_context(self, name: str, node_id: str, ctx: ExecutionContext, value: Any) -> StepContext:
        return StepContext(name=name, node_id=node_id, flow=ctx.flow, input=value, attempt=ctx.attempt,
                           variables=ctx.variables, scope=ctx.scope, executor=self.engine.executor)

    # ---------- host calls ----------
    async def invoke_step(self, name: str, node_id: str, ctx: ExecutionContext, value: Any,
                          kind: str = "step") -> Any:
        executable = self.registry.resolve(name)
        step_ctx = self._step_context(name, node_id, ctx, value)
        cause: Optional[BaseException] = None
        async with self.limit:
            started = self.engine.clock()
            with _tracer.start_as_current_span(f"{kind}:{name}") as span:
                span.set_attribute("flowscript.node_id", node_id)
                span.set_attribute("flowscript.attempt", ctx.attempt)
                try:
                    result = await executable.invoke(step_ctx)
                except asyncio.CancelledError:
                    self._record(ctx, node_id, name, kind, StepResult(
                        status=StepStatus.cancelled, started_at=started, ended_at=self.engine.clock()), "cancelled")
                    logger.debug("[{}] {} cancelled", kind, name)
                    raise
                except Exception as exc:
                    cause = exc
                    result = StepResult.failure(str(exc) or type(exc).__name__)
        result = result.model_copy(update={"started_at": started, "ended_at": self.engine.clock()})
        self._record(ctx, node_id, name, kind, result)
        if result.status == StepStatus.error:
            logger.debug("[{}] {} failed: {}", kind, name, result.error)
            raise StepFailedError(name, result.error or "error", node_id) from cause
        if result.status == StepStatus.cancelled:
            raise StepFailedError(name, "cancelled by handler", node_id)
        if result.halt and ctx.loop is not None:
            ctx.loop.requested = True
        return result.value

    async def check_predicate(self, name: str, node_id: str, ctx: ExecutionContext, incoming: Outcome) -> bool:
        executable = self.registry.resolve_predicate(name)
        try:
            result = await executable.invoke(self._step_context(name, node_id, ctx, incoming.payload))
        except Exception as exc:
            raise StepFailedError(name, str(exc) or type(exc).__name__, node_id) from exc
        if result.status != StepStatus.success:
            raise StepFailedError(name, result.error or result.status.value, node_id)
        return bool(result.value)

    # ---------- concurrency helpers ----------
    def _spawn(self, node: Node, ctx: ExecutionContext, incoming: Outcome, owner: Optional[CancelScope],
               tag: str) -> asyncio.Task:
        async def runner():
            try:
                await self.eval(node, ctx, incoming)
            except RuntimeFlowError as err:
                # forked and detached work never fails its parent; it is reported only
                logger.warning("[{}] {} failed: {}", tag, node.node_id, err)
                self._mark(ctx, node.node_id, _name_of(node), tag, StepStatus.error, error=str(err))
            finally:
                ctx.scope.close()

        task = asyncio.ensure_future(runner())
        if owner is not None:
            owner.adopt(task)
        ctx.track(task)
        return task

    async def _settle_all(self, nodes: Seq[Node], ctx: ExecutionContext, incoming: Outcome) -> List[Any]:
        """Run ``nodes`` concurrently and wait for every one of them; the
        first error in declared order is raised only after all settled."""
        scopes = [ctx.scope.child() for _ in nodes]
        tasks = [asyncio.ensure_future(self.eval(n, ctx.branch(s), incoming)) for n, s in zip(nodes, scopes)]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for s in scopes:
                s.cancel()
            raise
        finally:
            for s in scopes:
                s.close()
        _first_error(results)
        return list(results)

    def _abandon(self, ctx: ExecutionContext, task: asyncio.Task, scope: CancelScope):
        scope.cancel()
        task.cancel()
        task.add_done_callback(_consume)
        ctx.track(task)

    # ---------- node rules ----------
    async def _exec_atomic(self, node: Atomic, ctx: ExecutionContext, incoming: Outcome) -> Any:
        return await self.invoke_step(node.name, node.node_id, ctx, incoming.payload)

    async def _run_chain(self, children: Seq[Node], ctx: ExecutionContext, incoming: Outcome,
                         on_success: Optional[Callable[[Node, Any], None]] = None) -> Any:
        outcome = incoming
        for i, child in enumerate(children):
            feeds_branch = i + 1 < len(children) and isinstance(children[i + 1], Branch)
            try:
                value = await self.eval(child, ctx, outcome)
            except RuntimeFlowError as err:
                if feeds_branch:
                    outcome = Outcome.failure(err)
                    continue
                raise
            outcome = Outcome.success(value)
            if on_success is not None:
                on_success(child, value)
        return outcome.value

    async def _exec_sequence(self, node: Sequence, ctx: ExecutionContext, incoming: Outcome) -> Any:
        return await self._run_chain(node.children, ctx, incoming)

    async def _exec_saga(self, node: Saga, ctx: ExecutionContext, incoming: Outcome) -> Any:
        stack: List[tuple] = []

        def push(child: Node, value: Any):
            if child.meta.compensation:
                stack.append((child, value))

        try:
            return await self._run_chain(node.children, ctx, incoming, push)
        except RuntimeFlowError as err:
            logger.info("[saga] {} failed, unwinding {} compensation(s)", node.node_id, len(stack))
            while stack:
                child, value = stack.pop()
                compensation = child.meta.compensation
                try:
                    await self.invoke_step(compensation, child.node_id, ctx, value, kind="compensation")
                except RuntimeFlowError as comp_err:
                    logger.error("[saga] compensation '{}' failed: {}", compensation, comp_err)
                    raise CompensationError(compensation, comp_err, err, node.node_id) from comp_err
            raise

    async def _exec_parallel(self, node: Parallel, ctx: ExecutionContext, incoming: Outcome) -> Any:
        logger.debug("[fork] {} starting {} children", node.node_id, len(node.children))
        for child in node.children:
            self._spawn(child, ctx.branch(), incoming, ctx.scope, "fork")
        # let every child reach its first suspension point before continuing
        await asyncio.sleep(0)
        return incoming.value

    async def _exec_barrier(self, node: Barrier, ctx: ExecutionContext, incoming: Outcome) -> List[Any]:
        logger.debug("[barrier] {} begin", node.node_id)
        values = await self._settle_all(node.children, ctx, incoming)
        logger.debug("[barrier] {} end", node.node_id)
        return values

    async def _exec_race(self, node: Race, ctx: ExecutionContext, incoming: Outcome) -> Any:
        logger.debug("[race] {} begin", node.node_id)
        scopes = [ctx.scope.child() for _ in node.arms]
        tasks = [asyncio.ensure_future(self.eval(arm, ctx.branch(s), incoming)) for arm, s in zip(node.arms, scopes)]
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            for task, scope in zip(tasks, scopes):
                self._abandon(ctx, task, scope)
            raise
        winner = next(i for i, t in enumerate(tasks) if t in done)
        for i, (task, scope) in enumerate(zip(tasks, scopes)):
            if i != winner:
                self._abandon(ctx, task, scope)
        scopes[winner].close()
        logger.debug("[race] {} won by arm {}", node.node_id, winner)
        return tasks[winner].result()

    async def _matches(self, case: BranchCase, node: Branch, ctx: ExecutionContext, incoming: Outcome) -> bool:
        if case.predicate:
            return await self.check_predicate(case.label, node.node_id, ctx, incoming)
        if case.label == "ok":
            return incoming.ok
        if case.label == "err":
            return not incoming.ok
        if incoming.ok:
            return isinstance(incoming.value, str) and incoming.value == case.label
        return getattr(incoming.error, "code", None) == case.label

    async def _exec_branch(self, node: Branch, ctx: ExecutionContext, incoming: Outcome) -> Any:
        chosen = Outcome.success(incoming.payload)
        for case in node.cases:
            if await self._matches(case, node, ctx, incoming):
                logger.debug("[branch] {} -> {}", node.node_id, case.label)
                return await self.eval(case.body, ctx, chosen)
        if node.default is not None:
            logger.debug("[branch] {} -> _", node.node_id)
            return await self.eval(node.default, ctx, chosen)
        discriminant = "ok" if incoming.ok else getattr(incoming.error, "code", "err")
        if incoming.ok and isinstance(incoming.value, str):
            discriminant = incoming.value
        raise UnmatchedBranchError(discriminant, node.node_id) from incoming.error

    async def _exec_catch(self, node: Catch, ctx: ExecutionContext, incoming: Outcome) -> Any:
        if node.mode == CatchMode.always:
            try:
                value = await self.eval(node.body, ctx, incoming)
            except RuntimeFlowError as err:
                await self.eval(node.handler, ctx, Outcome.failure(err))
                raise
            await self.eval(node.handler, ctx, Outcome.success(value))
            return value
        try:
            return await self.eval(node.body, ctx, incoming)
        except RuntimeFlowError as err:
            logger.debug("[catch] {} handling {}", node.node_id, err)
            if node.mode == CatchMode.recover:
                self._mark(ctx, node.node_id, _name_of(node.body), "recover", StepStatus.error,
                           note="suppressed", error=str(err))
            # the handler's own error is the node's outcome in both modes
            return await self.eval(node.handler, ctx, Outcome.failure(err))

    async def _exec_loop(self, node: Loop, ctx: ExecutionContext, incoming: Outcome) -> List[Any]:
        q = node.quantifier
        limit = q.maximum if q.maximum is not None else max(q.minimum, self.config.max_loop_iterations)
        signal = LoopSignal()
        loop_ctx = replace(ctx, loop=signal)
        values: List[Any] = []
        outcome = incoming
        for i in range(limit):
            try:
                value = await self.eval(node.body, loop_ctx, outcome)
            except RuntimeFlowError as err:
                if i < q.minimum:
                    raise
                logger.debug("[loop] {} stopped after {} iteration(s): {}", node.node_id, i, err)
                break
            values.append(value)
            outcome = Outcome.success(value)
            if signal.requested:
                break
        return values

    async def _exec_guard(self, node: Guard, ctx: ExecutionContext, incoming: Outcome) -> Any:
        if await self.check_predicate(node.predicate, node.node_id, ctx, incoming) == node.negated:
            self._mark(ctx, node.node_id, node.predicate, "guard", StepStatus.error, error="blocked")
            raise GuardFailedError(("!" if node.negated else "") + node.predicate, node.node_id)
        return await self.eval(node.body, ctx, incoming)

    async def _exec_retry(self, node: Retry, ctx: ExecutionContext, incoming: Outcome) -> Any:
        policy = node.policy
        last: Optional[RuntimeFlowError] = None
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1:
                delay = policy.delay_before(attempt, self.config.retry_base_delay, self.config.retry_multiplier)
                logger.info("[retry] {} attempt {}/{} in {:.3f}s", _name_of(node.body), attempt,
                            policy.max_attempts, delay)
                await self.engine.sleep(delay)
            try:
                return await self.eval(node.body, replace(ctx, attempt=attempt), incoming)
            except RuntimeFlowError as err:
                last = err
        raise RetryExhaustedError(policy.max_attempts, last, node.node_id) from last

    async def _exec_timeout(self, node: Timeout, ctx: ExecutionContext, incoming: Outcome) -> Any:
        duration = node.policy.duration
        scope = ctx.scope.child(deadline=self.engine.clock() + duration)
        task = asyncio.ensure_future(self.eval(node.body, ctx.branch(scope), incoming))
        try:
            done, _ = await asyncio.wait({task}, timeout=duration)
        except asyncio.CancelledError:
            self._abandon(ctx, task, scope)
            raise
        if task in done:
            scope.close()
            return task.result()
        self._abandon(ctx, task, scope)
        error = StepTimeoutError(duration, node.node_id)
        logger.warning("[timeout] {} expired after {:g}s", _name_of(node.body), duration)
        self._mark(ctx, node.node_id, _name_of(node.body), "timeout", StepStatus.error, error=str(error))
        if node.policy.fallback is None:
            raise error
        return await self.eval(node.policy.fallback, ctx, Outcome.failure(error))

    async def _exec_circuit(self, node: CircuitBreaker, ctx: ExecutionContext, incoming: Outcome) -> Any:
        key = (ctx.flow, node.node_id)
        store = ctx.store
        policy = node.policy
        cooldown = policy.cooldown if policy.cooldown is not None else self.config.circuit_cooldown
        while True:
            stored = store.get(key)
            entry = stored or CircuitEntry()
            if entry.state == CircuitState.closed:
                admitted = CircuitState.closed
                break
            if entry.state == CircuitState.open and self.engine.clock() - entry.opened_at >= cooldown:
                if store.compare_and_swap(key, stored, replace(entry, state=CircuitState.half_open)):
                    logger.info("[circuit] {} half-open, admitting one trial call", key)
                    admitted = CircuitState.half_open
                    break
                continue
            self._mark(ctx, node.node_id, _name_of(node.body), "circuit", StepStatus.error,
                       note=entry.state.value, error="circuit open")
            raise CircuitOpenError(key, node.node_id)
        try:
            value = await self.eval(node.body, ctx, incoming)
        except RuntimeFlowError:
            now = self.engine.clock()
            old, new = store.update(key, lambda e: e.record_failure(now, policy.threshold, policy.window)
                                    if e.accepts(admitted) else e, CircuitEntry())
            if new.state == CircuitState.open and old != new:
                logger.warning("[circuit] {} opened after {} consecutive failure(s)", key,
                               new.consecutive_failures)
            raise
        except asyncio.CancelledError:
            # an abandoned trial must not leave the circuit half-open forever
            store.update(key, lambda e: replace(e, state=CircuitState.open)
                         if e.state == CircuitState.half_open == admitted else e, CircuitEntry())
            raise
        _, new = store.update(key, lambda e: e.record_success() if e.accepts(admitted) else e, CircuitEntry())
        if new.state != CircuitState.closed:
            logger.debug("[circuit] {} stays {} after a late success", key, new.state.value)
        return value

    async def _exec_debounce(self, node: Debounce, ctx: ExecutionContext, incoming: Outcome) -> Any:
        key = (ctx.flow, node.node_id)
        store = ctx.store
        _, armed = store.update(key, lambda e: replace(e, pending=e.pending + 1), RateEntry())
        generation = armed.pending
        await self.engine.sleep(node.interval)
        while True:
            stored = store.get(key)
            if stored.pending != generation:
                self._mark(ctx, node.node_id, _name_of(node.body), "step", StepStatus.cancelled, note="debounced")
                return None
            if store.compare_and_swap(key, stored, replace(stored, last_fire_at=self.engine.clock())):
                break
        return await self.eval(node.body, ctx, incoming)

    async def _exec_throttle(self, node: Throttle, ctx: ExecutionContext, incoming: Outcome) -> Any:
        key = (ctx.flow, node.node_id)
        store = ctx.store
        now = self.engine.clock()
        while True:
            stored = store.get(key)
            entry = stored or RateEntry()
            if entry.last_fire_at is not None and now - entry.last_fire_at < node.interval:
                self._mark(ctx, node.node_id, _name_of(node.body), "step", StepStatus.cancelled, note="throttled")
                return None
            if store.compare_and_swap(key, stored, replace(entry, last_fire_at=now)):
                break
        return await self.eval(node.body, ctx, incoming)

    async def _exec_detach(self, node: Detach, ctx: ExecutionContext, incoming: Outcome) -> Any:
        logger.debug("[detach] {}", node.node_id)
        self._spawn(node.body, ctx.branch(CancelScope()), incoming, None, "detach")
        await asyncio.sleep(0)
        return incoming.value

    async def _exec_stream(self, node: EventStream, ctx: ExecutionContext, incoming: Outcome) -> List[Any]:
        step_ctx = self._step_context(node.source, node.node_id, ctx, incoming.payload)
        scopes: List[CancelScope] = []
        tasks: List[asyncio.Task] = []
        try:
            try:
                async for event in self.registry.stream(node.source, step_ctx):
                    self._mark(ctx, node.node_id, node.source, "event", StepStatus.success, value=event)
                    scope = ctx.scope.child()
                    scopes.append(scope)
                    tasks.append(asyncio.ensure_future(self.eval(node.body, ctx.branch(scope), Outcome.success(event))))
                    await asyncio.sleep(0)
            except RuntimeFlowError:
                raise
            except Exception as exc:
                raise StepFailedError(node.source, f"event source failed: {exc}", node.node_id) from exc
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except BaseException:
            for task, scope in zip(tasks, scopes):
                if not task.done():
                    self._abandon(ctx, task, scope)
            raise
        finally:
            for scope in scopes:
                scope.close()
        _first_error(results)
        return list(results)

    async def _exec_broadcast(self, node: Broadcast, ctx: ExecutionContext, incoming: Outcome) -> List[Any]:
        value = await self.eval(node.source, ctx, incoming)
        logger.debug("[broadcast] {} to {} listener(s)", node.node_id, len(node.listeners))
        return await self._settle_all(node.listeners, ctx, Outcome.success(value))

    async def _exec_label(self, node: Label, ctx: ExecutionContext, incoming: Outcome) -> Any:
        return await self.eval(node.body, ctx, incoming)

    async def _exec_ref(self, node: Ref, ctx: ExecutionContext, incoming: Outcome) -> Any:
        if node.ref_kind == RefKind.label:
            label = self.program.label(self.program.index_of(ctx.flow), node.index)
            return await self.eval(label.body, ctx, incoming)
        flow = self.program.flows[node.index]
        logger.debug("[call] @{}", flow.id)
        with _tracer.start_as_current_span(f"flow:{flow.id}"):
            return await self.eval(flow.root, ctx.in_flow(flow.id), incoming)

    async def _enter_state(self, node: StateMachine, state: str, ctx: ExecutionContext, value: Any):
        if self.registry.has_step(state):
            await self.invoke_step(state, node.node_id, ctx, value)

    async def _exec_machine(self, node: StateMachine, ctx: ExecutionContext, incoming: Outcome) -> str:
        state = node.initial
        logger.debug("[machine] {} starts in '{}'", node.name, state)
        await self._enter_state(node, state, ctx, incoming.payload)
        if node.is_terminal(state):
            return state
        step_ctx = self._step_context(node.name, node.node_id, ctx, incoming.payload)
        events = self.registry.stream(node.name, step_ctx)
        try:
            state = await self._follow(node, state, events, ctx)
        except RuntimeFlowError:
            raise
        except Exception as exc:
            raise StepFailedError(node.name, f"event source failed: {exc}", node.node_id) from exc
        finally:
            await events.aclose()
        return state

    async def _follow(self, node: StateMachine, state: str, events, ctx: ExecutionContext) -> str:
        async for event in events:
            name = event if isinstance(event, str) else str(event)
            target = node.next_state(state, name)
            if target is None:
                logger.debug("[machine] {} ignores '{}' in '{}'", node.name, name, state)
                self._mark(ctx, node.node_id, f"{state}:{name}", "state", StepStatus.success, note="ignored")
                continue
            self._mark(ctx, node.node_id, target, "state", StepStatus.success, note=f"{state} --{name}--> {target}")
            state = target
            await self._enter_state(node, state, ctx, event)
            if node.is_terminal(state):
                break
        return state
