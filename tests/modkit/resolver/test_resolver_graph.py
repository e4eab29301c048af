# tests/modkit/resolver/test_resolver_graph.py
import pytest

from modkit.manifest.model import ModIdentity
from modkit.resolver.graph import DependencyGraph


def _id(text: str) -> ModIdentity:
    return ModIdentity.parse(text)


def _graph(edges: list[tuple[str, str]]) -> DependencyGraph:
    graph = DependencyGraph()
    for source, target in edges:
        graph.addEdge(_id(source), _id(target))
    return graph


def test_nodes_are_interned():
    graph = DependencyGraph()
    assert graph.addNode(_id("A-A")) == graph.addNode(_id("A-A"))
    graph.addEdge(_id("A-A"), _id("A-B"))
    graph.addEdge(_id("A-A"), _id("A-B"))
    assert len(graph) == 2
    assert graph.dependencies(_id("A-A")) == [_id("A-B")]
    assert graph.dependents(_id("A-B")) == [_id("A-A")]


def test_acyclic_graph_has_no_cycle():
    graph = _graph([("A-A", "A-B"), ("A-A", "A-C"), ("A-B", "A-C")])
    assert graph.findCycle() is None


def test_cycle_path_starts_and_ends_with_same_identity():
    graph = _graph([("A-A", "A-B"), ("A-B", "A-C"), ("A-C", "A-A"), ("A-C", "A-D")])
    assert graph.findCycle() == [_id("A-A"), _id("A-B"), _id("A-C"), _id("A-A")]


def test_self_loop_is_a_cycle():
    graph = _graph([("A-X", "A-X")])
    assert graph.findCycle() == [_id("A-X"), _id("A-X")]


def test_ranks_and_topological_order():
    graph = _graph([("A-App", "A-Ui"), ("A-App", "A-Core"), ("A-Ui", "A-Core"), ("A-Tool", "A-Core")])
    ranks = graph.ranks()
    assert ranks == {_id("A-Core"): 0, _id("A-Ui"): 1, _id("A-Tool"): 1, _id("A-App"): 2}
    assert graph.topologicalOrder() == [_id("A-Core"), _id("A-Tool"), _id("A-Ui"), _id("A-App")]


def test_ranks_ignore_nodes_outside_subset():
    graph = _graph([("A-App", "A-Pinned"), ("A-App", "A-New")])
    assert graph.ranks([_id("A-App"), _id("A-New")]) == {_id("A-App"): 1, _id("A-New"): 0}


def test_ranks_refuse_cycles():
    graph = _graph([("A-A", "A-B"), ("A-B", "A-A")])
    with pytest.raises(ValueError):
        graph.ranks()


def test_deep_chain_does_not_recurse():
    edges = [(f"A-N{i}", f"A-N{i + 1}") for i in range(3000)]
    graph = _graph(edges)
    assert graph.findCycle() is None
    assert graph.ranks()[_id("A-N0")] == 3000
