"""Per-node execution context handed to ``NodeTypeDefinition.execute``."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from toolflow.core.graph_schema import NodeInstance

if TYPE_CHECKING:
    from toolflow.core.models import FlowExecution

CallFlowFn = Callable[[str, dict[str, Any]], Awaitable["FlowExecution"]]


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a node sees while it runs.

    ``parameters`` are already template-resolved; ``unresolved_vars`` lists
    the placeholders left in them. ``upstream`` holds the outputs of the nodes
    directly connected to this node's inputs, keyed by slug.
    """

    flow_id: str
    node_id: str
    node: NodeInstance
    parameters: dict[str, Any]
    execution_id: str = ""
    unresolved_vars: list[str] = field(default_factory=list)
    upstream: Mapping[str, Any] = field(default_factory=dict)
    # Validated invocation input; only set for the trigger node
    trigger_input: Mapping[str, Any] | None = None
    depth: int = 0
    # Shared output cache of the run (slug and id keys). Read-only from here.
    _values: Mapping[str, Any] = field(default_factory=dict, repr=False)
    _call_flow: CallFlowFn | None = field(default=None, repr=False)

    async def get_node_value(self, slug_or_id: str) -> Any:
        """Output of an already executed node, by slug or id. None if absent."""
        if slug_or_id in self._values:
            return self._values[slug_or_id]
        return None

    async def call_flow(self, target_flow_id: str, params: dict[str, Any]) -> FlowExecution:
        """Run another flow as a nested invocation and return its trace."""
        if self._call_flow is None:
            raise RuntimeError("Nested flow calls are not available in this context")
        return await self._call_flow(target_flow_id, params)
