"""Structural analysis over flow connections.

All functions are pure: they take the connection list (and node ids where
needed) and never touch a Flow instance, so the editor can ask "what if"
questions before committing a change.
"""

import heapq
import logging
from collections import deque
from collections.abc import Iterable, Sequence

import networkx as nx

from toolflow.core.graph_schema import ACTION_HANDLE_PREFIX, Connection

logger = logging.getLogger(__name__)


class CycleDetected(Exception):
    """A connection set (or a proposed connection) forms a directed cycle."""

    def __init__(self, message: str, cycle: list[str] | None = None):
        super().__init__(message)
        self.cycle = cycle or []


def _adjacency(connections: Iterable[Connection], reverse: bool = False) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = {}
    for conn in connections:
        src, dst = conn.source_node_id, conn.target_node_id
        if reverse:
            src, dst = dst, src
        adj.setdefault(src, []).append(dst)
    return adj


def would_create_cycle(source_id: str, target_id: str, connections: Iterable[Connection]) -> bool:
    """Return True if adding ``source_id -> target_id`` would close a cycle.

    That is the case iff ``source_id`` is already reachable from ``target_id``.
    A self-connection always counts as a cycle.
    """
    if source_id == target_id:
        return True

    adj = _adjacency(connections)
    visited: set[str] = set()
    stack = [target_id]
    while stack:
        current = stack.pop()
        if current == source_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        stack.extend(n for n in adj.get(current, []) if n not in visited)
    return False


def _bfs(start: str, adj: dict[str, list[str]]) -> set[str]:
    reached: set[str] = set()
    queue = deque(adj.get(start, []))
    while queue:
        current = queue.popleft()
        if current in reached or current == start:
            continue
        reached.add(current)
        queue.extend(adj.get(current, []))
    return reached


def find_upstream_node_ids(node_id: str, connections: Iterable[Connection]) -> set[str]:
    """All node ids with a directed path into ``node_id`` (excluding itself)."""
    return _bfs(node_id, _adjacency(connections, reverse=True))


def find_downstream_node_ids(node_id: str, connections: Iterable[Connection]) -> set[str]:
    """All node ids reachable from ``node_id`` (excluding itself)."""
    return _bfs(node_id, _adjacency(connections))


def find_cycle(connections: Iterable[Connection]) -> list[str] | None:
    """Return the node ids of one cycle, or None if the graph is acyclic."""
    G = nx.DiGraph()
    for conn in connections:
        G.add_edge(conn.source_node_id, conn.target_node_id)
    try:
        edges = nx.find_cycle(G)
    except nx.NetworkXNoCycle:
        return None
    return [u for u, _ in edges]


def _topological_order(
    reachable: set[str], edges: list[Connection], node_ids: Sequence[str]
) -> list[str]:
    position = {nid: i for i, nid in enumerate(node_ids)}
    fallback = len(position)

    in_degree = {nid: 0 for nid in reachable}
    dependents: dict[str, list[str]] = {nid: [] for nid in reachable}
    for conn in edges:
        if conn.source_node_id in reachable and conn.target_node_id in reachable:
            in_degree[conn.target_node_id] += 1
            dependents[conn.source_node_id].append(conn.target_node_id)

    # Kahn's algorithm with a heap for deterministic ordering
    heap = [(position.get(nid, fallback), nid) for nid, deg in in_degree.items() if deg == 0]
    heapq.heapify(heap)

    result: list[str] = []
    while heap:
        _, nid = heapq.heappop(heap)
        result.append(nid)
        for dep in dependents[nid]:
            in_degree[dep] -= 1
            if in_degree[dep] == 0:
                heapq.heappush(heap, (position.get(dep, fallback), dep))

    if len(result) != len(reachable):
        remaining = reachable - set(result)
        sub_edges = [
            c for c in edges if c.source_node_id in remaining and c.target_node_id in remaining
        ]
        cycle = find_cycle(sub_edges) or sorted(remaining)
        raise CycleDetected(f"Cycle detected in flow: {' -> '.join(cycle)}", cycle)
    return result


def get_execution_order(
    trigger_id: str,
    node_ids: Sequence[str],
    connections: Iterable[Connection],
) -> list[str]:
    """Topological order of the nodes reachable from ``trigger_id``.

    The trigger comes first. Edges leaving an ``action:`` handle are not
    followed. Ties between ready nodes are broken by their position in
    ``node_ids`` so the order is deterministic.

    Raises:
        CycleDetected: If the reachable subgraph contains a cycle.
    """
    edges = [c for c in connections if not c.is_action_path]
    reachable = find_downstream_node_ids(trigger_id, edges) | {trigger_id}
    result = _topological_order(reachable, edges, node_ids)
    logger.debug(f"Execution order from {trigger_id}: {result}")
    return result


def get_action_execution_order(
    source_id: str,
    action: str,
    node_ids: Sequence[str],
    connections: Iterable[Connection],
) -> list[str]:
    """Topological order of the nodes behind one action handle of ``source_id``.

    ``action`` may be given with or without the ``action:`` prefix. The walk
    starts at the targets of that handle and then follows ordinary edges only.
    ``source_id`` itself is not part of the result.

    Raises:
        CycleDetected: If the reachable subgraph contains a cycle.
    """
    handle = action if action.startswith(ACTION_HANDLE_PREFIX) else ACTION_HANDLE_PREFIX + action
    connections = list(connections)
    starts = [
        c.target_node_id
        for c in connections
        if c.source_node_id == source_id and c.source_handle == handle
    ]
    edges = [c for c in connections if not c.is_action_path]
    reachable: set[str] = set()
    for start in starts:
        reachable |= find_downstream_node_ids(start, edges) | {start}
    reachable.discard(source_id)
    result = _topological_order(reachable, edges, node_ids)
    logger.debug(f"Execution order for {handle} on {source_id}: {result}")
    return result
