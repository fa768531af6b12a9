"""
Static reachability over a flow graph.

Used to decide when a merge node may run: a merge joins its inputs, so it
waits while any input it is still missing can be reached from work that has
not run yet.
"""

from collections.abc import Callable, Iterable, Mapping

from appflow.schemas.app import FlowNode, NodeType


def reachable(
    roots: Iterable[str],
    graph: Mapping[str, FlowNode],
    skip: Callable[[str], bool] | None = None,
) -> set[str]:
    """Ids reachable from roots (roots included), never entering an id ``skip`` accepts."""
    seen: set[str] = set()
    stack = list(roots)
    while stack:
        node_id = stack.pop()
        if node_id in seen or (skip is not None and skip(node_id)):
            continue
        seen.add(node_id)
        node = graph.get(node_id)
        if node is not None:
            stack.extend(node.successor_ids)
    return seen


def find_joins(targets: list[str], graph: Mapping[str, FlowNode]) -> list[str]:
    """
    Merge nodes that combine work from more than one of ``targets``.

    A merge is a join when it, or one of its inputs, is reachable from at
    least two different targets. A join comes before any join it leads to.
    """
    reach = {target: reachable([target], graph) for target in dict.fromkeys(targets)}
    joins: list[str] = []
    for node_id, node in graph.items():
        if node.type != NodeType.MERGE:
            continue
        feeding = [
            target
            for target, ids in reach.items()
            if node_id in ids or any(source in ids for source in node.inputs)
        ]
        if len(feeding) >= 2 and any(node_id in ids for ids in reach.values()):
            joins.append(node_id)

    ordered: list[str] = []
    while joins:
        downstream: set[str] = set()
        for join_id in joins:
            downstream |= reachable(graph[join_id].successor_ids, graph)
        ready = [j for j in joins if j not in downstream] or joins[:1]
        ordered.extend(ready)
        joins = [j for j in joins if j not in ready]
    return ordered
