"""Tool listing: every active trigger of every active flow, as a callable tool.

A caller (an MCP server, a chat runtime) presents these definitions to a
model, then invokes the chosen one through ``FlowExecutor.invoke`` with the
``flow_id`` and ``trigger_node_id`` recorded here.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from toolflow.core.nodes import build_input_schema, parse_flow_parameters
from toolflow.core.registry import NodeTypeRegistry

if TYPE_CHECKING:
    from toolflow.core.flow_store import FlowStore
    from toolflow.core.graph_schema import NodeInstance

logger = logging.getLogger(__name__)


class ToolDefinition(BaseModel):
    """A trigger presented as a tool. Serializes with ``inputSchema`` as the key."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str
    input_schema: dict[str, Any] = Field(alias="inputSchema")
    flow_id: str = Field(alias="flowId")
    trigger_node_id: str = Field(alias="triggerNodeId")


def describe_trigger(node: NodeInstance) -> str:
    """Tool description with the optional usage guidance appended."""
    params = node.parameters
    parts = [params.get("toolDescription") or f"Execute the {node.name} trigger"]
    if params.get("whenToUse"):
        parts.append(f"\nWHEN TO USE:\n{params['whenToUse']}")
    if params.get("whenNotToUse"):
        parts.append(f"\nWHEN NOT TO USE:\n{params['whenNotToUse']}")
    return "".join(parts)


def list_tools(store: FlowStore, registry: NodeTypeRegistry) -> list[ToolDefinition]:
    """Tools for the active triggers of the store's active flows.

    Triggers with ``isActive: false`` are left out. A trigger whose parameter
    declaration does not parse is skipped with a warning; invoking it would
    fail the same way.
    """
    tools = []
    for flow in store.list_flows():
        if not flow.is_active:
            continue
        for node in flow.nodes:
            if node.type not in registry or not registry.lookup(node.type).is_trigger:
                continue
            if node.parameters.get("isActive", True) is False:
                continue
            try:
                declared = parse_flow_parameters(node.parameters.get("parameters"))
            except ValueError as e:
                logger.warning(f"Skipping trigger '{node.name}' in flow '{flow.name}': {e}")
                continue
            tools.append(
                ToolDefinition(
                    name=node.parameters.get("toolName") or node.ref,
                    description=describe_trigger(node),
                    input_schema=build_input_schema(declared),
                    flow_id=flow.id,
                    trigger_node_id=node.id,
                )
            )
    logger.debug(f"Listed {len(tools)} tools")
    return tools
