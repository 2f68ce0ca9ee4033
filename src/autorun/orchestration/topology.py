"""Step ordering for workflow graphs.

Kahn-style layering: each pass places every node whose dependencies are
all placed, in declaration order. A pass that places nothing ends the
sort, so cycles and nodes downstream of them are left out of the result
instead of looping forever.
"""

from __future__ import annotations

from collections.abc import Iterable

from autorun.core.logging import get_logger
from autorun.core.models import WorkflowEdge, WorkflowNode

logger = get_logger(__name__)


def _dependencies(node_ids: list[str], edges: Iterable[WorkflowEdge]) -> dict[str, set[str]]:
    known = set(node_ids)
    incoming: dict[str, set[str]] = {node_id: set() for node_id in node_ids}
    for edge in edges:
        # Edges that point at unknown nodes are ignored.
        if edge.source in known and edge.target in known:
            incoming[edge.target].add(edge.source)
    return incoming


def topological_sort(nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> list[str]:
    """Return node ids so every node follows all of its dependencies.

    Example:
        >>> a, b, c = WorkflowNode("a"), WorkflowNode("b"), WorkflowNode("c")
        >>> topological_sort([c, b, a], [WorkflowEdge("a", "b"), WorkflowEdge("b", "c")])
        ['a', 'b', 'c']
    """
    node_ids = list(dict.fromkeys(n.id for n in nodes))
    incoming = _dependencies(node_ids, edges)

    order: list[str] = []
    placed: set[str] = set()
    while len(order) < len(node_ids):
        ready = [
            node_id
            for node_id in node_ids
            if node_id not in placed and incoming[node_id] <= placed
        ]
        if not ready:
            break
        order.extend(ready)
        placed.update(ready)
    return order


def find_unordered_nodes(nodes: Iterable[WorkflowNode], edges: Iterable[WorkflowEdge]) -> list[str]:
    """Node ids ``topological_sort`` would drop (on or behind a cycle)."""
    nodes = list(nodes)
    ordered = set(topological_sort(nodes, edges))
    return [n.id for n in nodes if n.id not in ordered]
