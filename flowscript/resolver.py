"""
Static checks run between parsing and execution.

The resolver turns the parser's ``{name: root}`` mapping into a
``ResolvedProgram``: a flat table of flows in which every ``@name`` and
``#name`` reference carries an index instead of a pointer. Reference cycles
are found on a NetworkX call graph, so recursive subflows are rejected at
compile time rather than overflowing the interpreter's stack.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List, Mapping, Tuple

import networkx as nx

from .ast import Barrier, Branch, Broadcast, Flow, Label, Node, Race, Ref, StateMachine, transform, walk
from .errors import (
    AmbiguousTransitionError, ArityError, CyclicReferenceError, DuplicateLabelError,
    UnresolvedReferenceError,
)
from .types import RefKind


@dataclass(frozen=True)
class ResolvedProgram:
    flows: Tuple[Flow, ...]

    @property
    def names(self) -> List[str]:
        return [f.id for f in self.flows]

    def index_of(self, name: str) -> int:
        for flow in self.flows:
            if flow.id == name:
                return flow.index
        raise KeyError(name)

    def flow(self, name: str) -> Flow:
        return self.flows[self.index_of(name)]

    def __getitem__(self, name: str) -> Flow:
        return self.flow(name)

    def __contains__(self, name: str) -> bool:
        return any(f.id == name for f in self.flows)

    def label(self, flow_index: int, label_index: int) -> Label:
        return self.flows[flow_index].labels[label_index]

    def call_graph(self) -> nx.DiGraph:
        """Subflow/label reference graph, for exporters and diagnostics."""
        return _reference_graph({f.id: f.root for f in self.flows})


def _refs(node: Node) -> Iterator[Ref]:
    for n in walk(node):
        if isinstance(n, Ref):
            yield n


def _labels(flow: str, root: Node) -> Dict[str, Tuple[int, Label]]:
    table: Dict[str, Tuple[int, Label]] = {}
    for n in walk(root):
        if isinstance(n, Label):
            if n.name in table:
                raise DuplicateLabelError(n.name, flow)
            table[n.name] = (len(table), n)
    return table


def _vertex(flow: str, ref: Ref) -> Tuple[str, ...]:
    if ref.ref_kind == RefKind.flow:
        return ("flow", ref.name)
    return ("label", flow, ref.name)


def _reference_graph(flows: Mapping[str, Node]) -> nx.DiGraph:
    graph = nx.DiGraph()
    for name, root in flows.items():
        graph.add_node(("flow", name))
        containers = [(("flow", name), root)]
        containers += [(("label", name, n.name), n.body) for n in walk(root) if isinstance(n, Label)]
        for vertex, body in containers:
            graph.add_node(vertex)
            for ref in _refs(body):
                graph.add_edge(vertex, _vertex(name, ref))
    return graph


def _describe(vertex: Tuple[str, ...]) -> str:
    if vertex[0] == "flow":
        return f"@{vertex[1]}"
    return f"{vertex[1]}#{vertex[2]}"


def _check_arity(node: Node):
    if isinstance(node, Branch) and len(node.cases) < 1:
        raise ArityError(node.node_id, "Branch", 1, len(node.cases))
    if isinstance(node, Race) and len(node.arms) < 2:
        raise ArityError(node.node_id, "Race", 2, len(node.arms))
    if isinstance(node, Barrier) and len(node.children) < 2:
        raise ArityError(node.node_id, "Barrier", 2, len(node.children))
    if isinstance(node, Broadcast) and len(node.listeners) < 1:
        raise ArityError(node.node_id, "Broadcast", 1, len(node.listeners))
    if isinstance(node, StateMachine):
        seen = set()
        for t in node.transitions:
            if (t.source, t.event) in seen:
                raise AmbiguousTransitionError(node.name, t.source, t.event)
            seen.add((t.source, t.event))


def resolve(flows: Mapping[str, Node]) -> ResolvedProgram:
    index = {name: i for i, name in enumerate(flows)}
    labels = {name: _labels(name, root) for name, root in flows.items()}

    # (a) every reference names something that exists
    for name, root in flows.items():
        for ref in _refs(root):
            if ref.ref_kind == RefKind.flow and ref.name not in index:
                raise UnresolvedReferenceError(ref.name, name, "flow")
            if ref.ref_kind == RefKind.label and ref.name not in labels[name]:
                raise UnresolvedReferenceError(ref.name, name, "label")

    # (b) no flow or label may reach itself, directly or indirectly
    graph = _reference_graph(flows)
    try:
        cycle = nx.find_cycle(graph)
    except nx.NetworkXNoCycle:
        cycle = None
    if cycle:
        path = [_describe(edge[0]) for edge in cycle] + [_describe(cycle[0][0])]
        raise CyclicReferenceError(path)

    # (c) structural arity and deterministic transition tables
    for root in flows.values():
        for node in walk(root):
            _check_arity(node)

    resolved: List[Flow] = []
    for name, root in flows.items():
        table = labels[name]

        def bind(node: Node, _table=table) -> Node:
            if isinstance(node, Ref):
                if node.ref_kind == RefKind.flow:
                    return replace(node, index=index[node.name])
                return replace(node, index=_table[node.name][0])
            return node

        new_root = transform(root, bind)
        # label bodies are taken from the rebuilt tree so their refs carry indices
        rebuilt = {n.name: n for n in walk(new_root) if isinstance(n, Label)}
        ordered = tuple(rebuilt[label_name] for label_name, _ in sorted(table.items(), key=lambda kv: kv[1][0]))
        resolved.append(Flow(name, index[name], new_root, ordered))
    return ResolvedProgram(tuple(resolved))
