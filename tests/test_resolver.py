"""
Tests for static resolution: references, cycles and arity.
"""
import networkx as nx
import pytest

from flowscript.ast import Ref, walk
from flowscript.errors import (
    AmbiguousTransitionError, ArityError, CompileError, CyclicReferenceError, DuplicateLabelError,
    UnresolvedReferenceError,
)
from flowscript.parser import parse
from flowscript.resolver import resolve
from flowscript.runtime import compile_source
from flowscript.types import RefKind


def refs(node):
    return [n for n in walk(node) if isinstance(n, Ref)]


class TestReferences:
    def test_flow_refs_get_indices(self):
        program = compile_source("main = A -> @helper -> @other\nhelper = B\nother = C")
        assert program.names == ["main", "helper", "other"]
        indices = [r.index for r in refs(program["main"].root)]
        assert indices == [1, 2]

    def test_label_refs_index_the_flow_label_table(self):
        program = compile_source("main = #first: A -> #second: B -> #second -> #first")
        flow = program["main"]
        assert [label.name for label in flow.labels] == ["first", "second"]
        assert [r.index for r in refs(flow.root)] == [1, 0]
        assert program.label(0, 1).name == "second"

    def test_unresolved_flow(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            compile_source("main = A -> @missing")
        assert exc.value.name == "missing"
        assert exc.value.kind == "flow"

    def test_label_is_scoped_to_its_flow(self):
        with pytest.raises(UnresolvedReferenceError) as exc:
            compile_source("a = #x: A\nb = B -> #x")
        assert exc.value.kind == "label"
        assert exc.value.flow == "b"

    def test_duplicate_label(self):
        with pytest.raises(DuplicateLabelError):
            compile_source("main = #x: A -> #x: B")

    def test_timeout_fallback_reference_is_checked(self):
        with pytest.raises(UnresolvedReferenceError):
            compile_source("main = A~1s:@nowhere")


class TestCycles:
    def test_self_reference(self):
        with pytest.raises(CyclicReferenceError) as exc:
            compile_source("main = A -> @main")
        assert exc.value.cycle == ["@main", "@main"]

    def test_mutual_recursion(self):
        with pytest.raises(CyclicReferenceError) as exc:
            compile_source("a = A -> @b\nb = B -> @a")
        assert exc.value.cycle[0] == exc.value.cycle[-1]
        assert set(exc.value.cycle) == {"@a", "@b"}

    def test_label_that_reaches_itself(self):
        with pytest.raises(CyclicReferenceError):
            compile_source("main = #loop: (A -> #loop)")

    def test_shared_subflow_is_not_a_cycle(self):
        program = compile_source("main = [@x | @y]\nx = @z\ny = @z\nz = Z")
        assert isinstance(program.call_graph(), nx.DiGraph)
        assert program.call_graph().has_edge(("flow", "x"), ("flow", "z"))


class TestArity:
    def test_race_needs_two_arms(self):
        with pytest.raises(ArityError) as exc:
            compile_source("main = <A>")
        assert exc.value.kind == "Race"
        assert exc.value.minimum == 2

    def test_barrier_needs_two_children(self):
        with pytest.raises(ArityError):
            compile_source("main = [A]")

    def test_branch_needs_a_case(self):
        with pytest.raises(ArityError):
            compile_source("main = A -> { _: B }")

    def test_ambiguous_transition(self):
        with pytest.raises(AmbiguousTransitionError) as exc:
            compile_source("main = machine m { idle: go => a, idle: go => b }")
        assert (exc.value.state, exc.value.event) == ("idle", "go")


def test_resolution_errors_are_compile_errors():
    for source in ("main = @nope", "main = @main", "main = <A>"):
        with pytest.raises(CompileError):
            resolve(parse(source))


def test_resolution_keeps_flow_order_and_kinds():
    program = resolve(parse("b = #l: B -> #l\na = @b"))
    assert program.names == ["b", "a"]
    kinds = [r.ref_kind for r in refs(program["b"].root)]
    assert kinds == [RefKind.label]
    assert "a" in program and "c" not in program
