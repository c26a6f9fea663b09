"""
Tests for the execution engine: composition, dataflow and error routing.
"""
import pytest

from flowscript.config import EngineConfig
from flowscript.context import ExecutionContext
from flowscript.engine import Engine
from flowscript.errors import (
    GuardFailedError, RuntimeFlowError, StepFailedError, UnknownStepError, UnmatchedBranchError,
)
from flowscript.runtime import compile_source
from flowscript.schemas import ExecutionTrace, StepResult
from flowscript.types import StepStatus


class TestSequencing:
    def test_sequence_runs_in_order_and_threads_values(self, run, recorder):
        recorder.steps("A", "B", "C")
        trace = run("main = A -> B -> C")
        assert recorder.calls == ["A", "B", "C"]
        assert trace.steps() == ["A", "B", "C"]
        assert trace.value == "C"
        assert recorder.inputs == {"A": [None], "B": ["A"], "C": ["B"]}
        assert trace.ok

    def test_first_error_stops_the_sequence(self, run, recorder):
        recorder.step("A", fail_always=True).step("B")
        with pytest.raises(StepFailedError) as exc:
            run("main = A -> B")
        assert recorder.calls == ["A"]
        assert exc.value.code == "failed"
        assert isinstance(exc.value.trace, ExecutionTrace)
        assert exc.value.trace.status == StepStatus.error
        assert exc.value.trace.steps(status=StepStatus.error) == ["A"]

    def test_sync_handlers_and_bindings(self, run, recorder):
        recorder.step("A", value="order-1")
        recorder.registry.register_step("B", lambda ctx: ctx.variables["order"] + "/" + ctx.variables["user"])
        trace = run("main = A:order -> B", ctx=ExecutionContext(variables={"user": "ann"}))
        assert trace.value == "order-1/ann"

    def test_unknown_step(self, run):
        with pytest.raises(UnknownStepError) as exc:
            run("main = Missing")
        assert exc.value.code == "unknown_step"

    def test_unknown_entry_flow(self, engine, recorder):
        program = compile_source("main = A")
        with pytest.raises(RuntimeFlowError):
            engine.run(program, "nope", recorder.registry)


class TestConcurrency:
    def test_barrier_waits_for_all_children(self, run, recorder):
        recorder.step("A", delay=0.05).step("B", delay=0.01).step("C")
        trace = run("main = [A | B] -> C")
        c_start = recorder.times["C"][0][0]
        assert c_start >= recorder.times["A"][0][1]
        assert c_start >= recorder.times["B"][0][1]
        assert recorder.inputs["C"] == [["A", "B"]]
        assert trace.value == "C"

    def test_barrier_raises_after_all_settled(self, run, recorder):
        recorder.step("A", fail_always=True).step("B", delay=0.02)
        with pytest.raises(StepFailedError):
            run("main = A && B")
        assert "B" in recorder.times

    def test_race_takes_first_and_cancels_losers(self, run, recorder):
        recorder.step("A", delay=0.5).step("B", delay=0.01).step("C")
        trace = run("main = <A | B> -> C")
        assert recorder.inputs["C"] == ["B"]
        assert "A" in recorder.cancelled
        assert trace.find("A")[0].status == StepStatus.cancelled

    def test_race_winner_may_be_an_error(self, run, recorder):
        recorder.step("A", fail_always=True).step("B", delay=0.2)
        with pytest.raises(StepFailedError):
            run("main = A || B")

    def test_fork_does_not_block_the_sequence(self, run, recorder):
        recorder.step("A", delay=0.05).step("B").step("C")
        trace = run("main = A | B -> C")
        assert recorder.times["C"][0][0] < recorder.times["A"][0][1]
        # background work is drained before the run returns
        assert "A" in trace.steps()

    def test_fork_failure_is_reported_not_raised(self, run, recorder):
        recorder.step("A", fail_always=True).step("B")
        trace = run("main = A | B")
        assert trace.ok
        assert trace.find("A", kind="fork")[0].status == StepStatus.error

    def test_detach_failure_is_reported_not_raised(self, run, recorder):
        recorder.step("A", delay=0.01, fail_always=True).step("B")
        trace = run("main = A& -> B")
        assert trace.value == "B"
        assert trace.find("A", kind="detach")[0].status == StepStatus.error

    def test_detach_passes_its_input_through(self, run, recorder):
        recorder.steps("A", "B", "C")
        run("main = A -> B& -> C")
        assert recorder.inputs["C"] == ["A"]
        assert recorder.inputs["B"] == ["A"]

    def test_broadcast_delivers_source_value_to_every_listener(self, run, recorder):
        recorder.steps("A", "B", "C")
        trace = run("main = A >> [B, C]")
        assert trace.value == ["B", "C"]
        assert recorder.inputs["B"] == ["A"]
        assert recorder.inputs["C"] == ["A"]


class TestBranching:
    SOURCE = "main = A -> { ok: B, err: C }"

    def test_ok_case(self, run, recorder):
        recorder.steps("A", "B", "C")
        assert run(self.SOURCE).value == "B"

    def test_err_case_receives_the_error(self, run, recorder):
        recorder.step("A", fail_always=True).steps("B", "C")
        trace = run(self.SOURCE)
        assert trace.value == "C"
        assert isinstance(recorder.inputs["C"][0], StepFailedError)
        assert "B" not in recorder.calls

    def test_value_labels(self, run, recorder):
        recorder.step("A", value="silver").steps("G", "S")
        assert run("main = A -> { gold: G, silver: S }").value == "S"

    def test_error_code_labels(self, run, recorder):
        recorder.step("A", delay=0.5).steps("T", "D")
        assert run("main = A~20ms -> { timeout: T, _: D }").value == "T"

    def test_predicate_case(self, run, recorder):
        recorder.steps("A", "V", "N").predicate("vip", True)
        assert run("main = A -> { ?vip: V, _: N }").value == "V"

    def test_unmatched(self, run, recorder):
        recorder.steps("A", "G")
        with pytest.raises(UnmatchedBranchError) as exc:
            run("main = A -> { gold: G }")
        assert exc.value.discriminant == "A"


class TestHandlers:
    def test_catch_replaces_error_with_handler_value(self, run, recorder):
        recorder.step("A", fail_always=True).step("H")
        trace = run("main = A ! H")
        assert trace.value == "H"
        assert isinstance(recorder.inputs["H"][0], StepFailedError)

    def test_catch_skips_handler_on_success(self, run, recorder):
        recorder.steps("A", "H")
        assert run("main = A ! H").value == "A"
        assert recorder.calls == ["A"]

    def test_finally_runs_on_success_and_keeps_value(self, run, recorder):
        recorder.steps("A", "H")
        assert run("main = A !! H").value == "A"
        assert recorder.calls == ["A", "H"]

    def test_finally_runs_on_error_and_reraises(self, run, recorder):
        recorder.step("A", fail_always=True).step("H")
        with pytest.raises(StepFailedError) as exc:
            run("main = A !! H")
        assert exc.value.step == "A"
        assert recorder.calls == ["A", "H"]

    def test_recover_takes_the_handler_outcome(self, run, recorder):
        recorder.step("A", fail_always=True).step("H")
        trace = run("main = A !? H")
        assert trace.ok
        assert trace.value == "H"
        assert trace.find("A", kind="recover")[0].note == "suppressed"

    def test_recover_handler_failure_fails_the_node(self, run, recorder):
        recorder.step("A", fail_always=True).step("H", fail_always=True)
        with pytest.raises(StepFailedError) as exc:
            run("main = A !? H")
        assert exc.value.step == "H"
        assert recorder.calls == ["A", "H"]


class TestGuardsAndLoops:
    def test_guard_blocks(self, run, recorder):
        recorder.step("A").predicate("ready", False)
        with pytest.raises(GuardFailedError):
            run("main = A?[ready]")
        assert recorder.calls == []

    def test_negated_guard(self, run, recorder):
        recorder.step("A").predicate("ready", False)
        assert run("main = A?[!ready]").value == "A"

    def test_exact_repeat(self, run, recorder):
        recorder.step("A")
        assert run("main = A{3}").value == ["A", "A", "A"]

    def test_loop_ends_quietly_after_minimum(self, run, recorder):
        count = {"n": 0}

        async def flaky(ctx):
            count["n"] += 1
            if count["n"] == 3:
                raise RuntimeError("drained")
            return count["n"]

        recorder.registry.register_step("A", flaky)
        assert run("main = A*").value == [1, 2]

    def test_loop_below_minimum_fails(self, run, recorder):
        recorder.step("A", fail_always=True)
        with pytest.raises(StepFailedError):
            run("main = A+")

    def test_handler_can_stop_its_loop(self, run, recorder):
        count = {"n": 0}

        def poll(ctx):
            count["n"] += 1
            if count["n"] == 2:
                return StepResult.done("ready")
            return "waiting"

        recorder.registry.register_step("poll", poll)
        assert run("main = poll*").value == ["waiting", "ready"]

    def test_unbounded_loop_is_capped(self, recorder):
        recorder.step("A")
        with Engine(EngineConfig(max_loop_iterations=5)) as eng:
            program = compile_source("main = A+")
            trace = eng.run(program, "main", recorder.registry)
        assert len(trace.value) == 5


class TestReferences:
    def test_subflow_shares_variables(self, run, recorder):
        recorder.steps("A", "D").step("B", value="from-sub")
        recorder.registry.register_step("C", lambda ctx: ctx.variables["sub"])
        trace = run("main = A -> @sub -> D\nsub = B:sub -> C")
        assert recorder.calls == ["A", "B", "D"]
        assert recorder.inputs["D"] == ["from-sub"]
        assert trace.steps() == ["A", "B", "C", "D"]

    def test_label_reference_reruns_the_labeled_node(self, run, recorder):
        recorder.steps("A", "B")
        run("main = #again: A -> B -> #again")
        assert recorder.calls == ["A", "B", "A"]


class TestEvents:
    def test_stream_dispatches_each_event(self, run, recorder):
        recorder.registry.register_events("clicks", [1, 2, 3])
        recorder.registry.register_step("save", lambda ctx: ctx.input * 10)
        trace = run("main = clicks ~> save")
        assert trace.value == [10, 20, 30]
        assert trace.steps(kind="event") == ["clicks", "clicks", "clicks"]

    def test_async_event_source(self, run, recorder):
        async def ticks(ctx):
            for i in range(2):
                yield i

        recorder.registry.register_events("ticks", ticks)
        recorder.step("tick")
        assert run("main = ticks ~> tick").value == ["tick", "tick"]

    def test_state_machine_follows_transitions(self, run, recorder):
        recorder.registry.register_events("door", ["open", "knock", "lock"])
        recorder.step("locked")
        trace = run("main = machine door { closed: open => opened, opened: lock => locked }")
        assert trace.value == "locked"
        assert trace.steps(kind="state") == ["opened", "opened:knock", "locked"]
        assert recorder.calls == ["locked"]

    def test_state_machine_stops_at_end_of_events(self, run, recorder):
        recorder.registry.register_events("door", ["open"])
        trace = run("main = machine door { closed: open => opened, opened: close => closed }")
        assert trace.value == "opened"

    def test_failing_machine_event_source_is_a_step_error(self, run, recorder):
        async def feed(ctx):
            yield "open"
            raise ValueError("webhook feed down")

        recorder.registry.register_events("door", feed)
        with pytest.raises(StepFailedError) as exc:
            run("main = machine door { closed: open => opened, opened: close => closed }")
        assert "webhook feed down" in str(exc.value)
        assert exc.value.trace.steps(kind="state") == ["opened"]

    def test_failing_machine_event_source_can_be_caught(self, run, recorder):
        def feed(ctx):
            raise ValueError("webhook feed down")

        recorder.registry.register_events("door", feed)
        recorder.step("H")
        trace = run("main = machine door { closed: open => opened } ! H")
        assert trace.value == "H"
        assert isinstance(recorder.inputs["H"][0], StepFailedError)
