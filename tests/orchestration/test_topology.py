"""Tests for workflow step ordering."""

from __future__ import annotations

from autorun.core.models import WorkflowEdge, WorkflowNode
from autorun.orchestration.topology import find_unordered_nodes, topological_sort


def _nodes(*ids):
    return [WorkflowNode(node_id) for node_id in ids]


class TestTopologicalSort:
    def test_chain_in_any_declaration_order(self):
        edges = [WorkflowEdge("a", "b"), WorkflowEdge("b", "c")]
        assert topological_sort(_nodes("c", "b", "a"), edges) == ["a", "b", "c"]

    def test_independent_nodes_keep_declaration_order(self):
        assert topological_sort(_nodes("x", "y", "z"), []) == ["x", "y", "z"]

    def test_diamond(self):
        edges = [
            WorkflowEdge("a", "b"),
            WorkflowEdge("a", "c"),
            WorkflowEdge("b", "d"),
            WorkflowEdge("c", "d"),
        ]
        assert topological_sort(_nodes("d", "c", "b", "a"), edges) == ["a", "c", "b", "d"]

    def test_edges_to_unknown_nodes_are_ignored(self):
        edges = [WorkflowEdge("ghost", "a"), WorkflowEdge("a", "b")]
        assert topological_sort(_nodes("a", "b"), edges) == ["a", "b"]

    def test_duplicate_node_ids_appear_once(self):
        assert topological_sort(_nodes("a", "a", "b"), []) == ["a", "b"]

    def test_cycle_and_its_descendants_are_dropped(self):
        edges = [
            WorkflowEdge("a", "b"),
            WorkflowEdge("b", "c"),
            WorkflowEdge("c", "b"),
            WorkflowEdge("c", "d"),
        ]
        nodes = _nodes("a", "b", "c", "d")
        assert topological_sort(nodes, edges) == ["a"]
        assert find_unordered_nodes(nodes, edges) == ["b", "c", "d"]

    def test_fully_cyclic_graph_yields_nothing(self):
        edges = [WorkflowEdge("a", "b"), WorkflowEdge("b", "a")]
        assert topological_sort(_nodes("a", "b"), edges) == []

    def test_empty(self):
        assert topological_sort([], []) == []
        assert find_unordered_nodes([], []) == []
