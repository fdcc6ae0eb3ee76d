"""Terminal rendering of flow graphs.

Provides tree and level-based visualization of flows using Rich.
"""

import networkx as nx
from rich.console import Console
from rich.markup import escape
from rich.tree import Tree

from toolflow.core.graph_schema import Connection, Flow, NodeInstance
from toolflow.core.registry import NodeTypeRegistry


class FlowGraphRenderer:
    """
    Renders flows in the terminal.

    - ``render_as_tree`` walks outgoing connections from each trigger
    - ``render_levels`` lists the nodes by topological generation

    SECURITY: node names, slugs and handles are escaped to prevent Rich
    markup injection.
    """

    # Category symbols and colors
    CATEGORY_STYLES = {
        "trigger": ("[T]", "green"),
        "action": ("[A]", "cyan"),
        "transform": ("[F]", "magenta"),
        "interface": ("[U]", "blue"),
        "return": ("[R]", "yellow"),
    }

    STATUS_COLORS = {
        "pending": "dim",
        "completed": "green",
        "error": "red bold",
    }

    def __init__(self, registry: NodeTypeRegistry | None = None, console: Console | None = None):
        self.registry = registry
        self.console = console or Console()

    def _style(self, node: NodeInstance) -> tuple[str, str]:
        if self.registry is not None and node.type in self.registry:
            category = self.registry.lookup(node.type).category
            return self.CATEGORY_STYLES.get(category, ("[ ]", "white"))
        return ("[?]", "red")

    def _label(self, node: NodeInstance, status: str | None = None) -> str:
        symbol, color = self._style(node)
        safe_name = escape(node.name)
        safe_slug = escape(node.slug or node.id)
        if status and status != "pending":
            color = self.STATUS_COLORS.get(status, color)
            marker = " ✓" if status == "completed" else " ✗" if status == "error" else ""
        else:
            marker = ""
        return f"[{color}]{escape(symbol)} {safe_name}{marker}[/] [dim]({safe_slug})[/]"

    def _edge_map(self, flow: Flow) -> dict[str, list[Connection]]:
        edge_map: dict[str, list[Connection]] = {n.id: [] for n in flow.nodes}
        for conn in flow.connections:
            if conn.source_node_id in edge_map:
                edge_map[conn.source_node_id].append(conn)
        return edge_map

    def render_as_tree(
        self,
        flow: Flow,
        statuses: dict[str, str] | None = None,
        max_depth: int = 50,
    ) -> Tree:
        """
        Render a flow as a Rich Tree rooted at its trigger nodes.

        Nodes reachable from more than one parent appear under each of them.
        """
        tree = Tree(f"[bold]{escape(flow.name)}[/] [dim]{escape(flow.id)}[/]")
        node_map = {n.id: n for n in flow.nodes}
        edge_map = self._edge_map(flow)

        roots = [n for n in flow.nodes if not flow.incoming(n.id)]
        if not roots:
            tree.add("[red]No entry node (every node has an incoming connection)[/]")
            return tree

        for root in roots:
            self._add_node(tree, root, statuses, node_map, edge_map, set(), 0, max_depth)
        return tree

    def _add_node(
        self,
        parent: Tree,
        node: NodeInstance,
        statuses: dict[str, str] | None,
        node_map: dict[str, NodeInstance],
        edge_map: dict[str, list[Connection]],
        visited: set,
        depth: int,
        max_depth: int,
    ) -> None:
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[red]↩ {escape(node.name)} (cycle)[/]")
            return
        visited = visited | {node.id}

        status = statuses.get(node.id) if statuses else None
        branch = parent.add(self._label(node, status))

        for conn in edge_map.get(node.id, []):
            child = node_map.get(conn.target_node_id)
            if child is None:
                branch.add(f"[red]→ missing node {escape(conn.target_node_id)}[/]")
                continue
            target = branch
            if conn.source_handle != "main":
                target = branch.add(f"[dim]{escape(conn.source_handle)}[/]")
            self._add_node(target, child, statuses, node_map, edge_map, visited, depth + 1, max_depth)

    def render_levels(self, flow: Flow) -> str:
        """One line per topological generation, nodes separated by ``|``."""
        G = flow._to_networkx()
        node_map = {n.id: n for n in flow.nodes}
        try:
            levels = list(nx.topological_generations(G))
        except nx.NetworkXUnfeasible:
            # Has cycles - flat layout
            levels = [[n.id for n in flow.nodes]]

        lines = []
        for level in levels:
            labels = [self._label(node_map[nid]) for nid in level if nid in node_map]
            lines.append("  |  ".join(labels))
        return "\n  v\n".join(lines)
