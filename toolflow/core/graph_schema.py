"""Flow graph schema definitions using Pydantic models.

A flow is a directed graph of typed node instances joined by connections
between named output and input handles. Flows are authored elsewhere (visual
editor, YAML files) and handed to the engine fully materialized.

Security-first design:
- Node slugs are plain identifiers, so template paths stay unambiguous
- Structural validation runs before any execution
- Cycles are reported, never walked
"""

import re
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any

import networkx as nx
from pydantic import BaseModel, Field, field_validator, model_validator

if TYPE_CHECKING:
    from toolflow.core.registry import NodeTypeRegistry

SLUG_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# Source handles with this prefix start interactive follow-up paths (e.g. a
# button in a UI node). They are not walked during the initial invocation.
ACTION_HANDLE_PREFIX = "action:"


class ParameterType(str, Enum):
    """Types a trigger parameter can declare"""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class FlowParameter(BaseModel):
    """A named input declared by a trigger node."""

    name: str
    type: ParameterType = ParameterType.STRING
    description: str = ""
    optional: bool = False
    default: Any = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not SLUG_PATTERN.match(v):
            raise ValueError(f"Invalid parameter name: '{v}'. Must be a valid identifier.")
        return v


class NodeInstance(BaseModel):
    """A node placed in a flow.

    ``id`` is the stable identity used by connections. ``slug`` is the
    human-readable handle used by template variables; it changes when the node
    is renamed and may be missing on flows imported from older exports (see
    ``FlowEditor.migrate_node_slugs``).
    """

    id: str
    slug: str | None = None
    name: str
    type: str
    parameters: dict[str, Any] = Field(default_factory=dict)

    # UI metadata (position, styling) for visual editor
    ui_metadata: dict | None = None

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v):
        if v is not None and not SLUG_PATTERN.match(v):
            raise ValueError(f"Invalid node slug: '{v}'. Must be a valid identifier.")
        return v

    @property
    def ref(self) -> str:
        """Key used to address this node's output from templates."""
        return self.slug or self.id


class Connection(BaseModel):
    """Directed edge from a source node's output handle to a target node's input handle"""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source_node_id: str
    source_handle: str = "main"
    target_node_id: str
    target_handle: str = "main"

    @property
    def is_action_path(self) -> bool:
        return self.source_handle.startswith(ACTION_HANDLE_PREFIX)


class Flow(BaseModel):
    """Complete flow definition"""

    id: str
    name: str = ""
    description: str | None = None
    is_active: bool = True

    nodes: list[NodeInstance] = Field(default_factory=list)
    connections: list[Connection] = Field(default_factory=list)

    @model_validator(mode="after")
    def default_name(self) -> "Flow":
        if not self.name:
            self.name = self.id
        return self

    def get_node(self, node_id: str) -> NodeInstance | None:
        return next((n for n in self.nodes if n.id == node_id), None)

    def find_node(self, ref: str) -> NodeInstance | None:
        """Find a node by slug, id, or display name (in that order)."""
        for attr in ("slug", "id", "name"):
            node = next((n for n in self.nodes if getattr(n, attr) == ref), None)
            if node is not None:
                return node
        return None

    def incoming(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.target_node_id == node_id]

    def outgoing(self, node_id: str) -> list[Connection]:
        return [c for c in self.connections if c.source_node_id == node_id]

    def validate_flow(self, registry: "NodeTypeRegistry | None" = None) -> list[str]:
        """
        Validate flow structure using NetworkX.
        Returns list of validation errors (empty when the flow is valid).

        When a registry is given, node types, handles, trigger/terminal
        placement, and parameter schemas are checked as well.
        """
        from toolflow.core.slugs import RESERVED_SLUGS

        errors = []

        # Check for duplicate node IDs (critical - would corrupt the output cache)
        seen_node_ids = set()
        for node in self.nodes:
            if node.id in seen_node_ids:
                errors.append(f"Duplicate node ID: '{node.id}'")
            seen_node_ids.add(node.id)
        node_ids = seen_node_ids

        seen_slugs = set()
        for node in self.nodes:
            if node.slug is None:
                errors.append(f"Node '{node.id}' has no slug")
                continue
            if node.slug in RESERVED_SLUGS:
                errors.append(f"Node '{node.id}': slug '{node.slug}' is reserved")
            if node.slug in seen_slugs:
                errors.append(f"Duplicate node slug: '{node.slug}'")
            seen_slugs.add(node.slug)

        seen_names = set()
        for node in self.nodes:
            if node.name in seen_names:
                errors.append(f"Duplicate node name: '{node.name}'")
            seen_names.add(node.name)

        seen_connection_ids = set()
        for conn in self.connections:
            if conn.id in seen_connection_ids:
                errors.append(f"Duplicate connection ID: '{conn.id}'")
            seen_connection_ids.add(conn.id)

        seen_edges = set()
        for conn in self.connections:
            key = (conn.source_node_id, conn.source_handle, conn.target_node_id, conn.target_handle)
            if key in seen_edges:
                errors.append(
                    f"Duplicate connection from '{conn.source_node_id}' to '{conn.target_node_id}'"
                )
            seen_edges.add(key)

        for conn in self.connections:
            if conn.source_node_id not in node_ids:
                errors.append(f"Connection {conn.id}: source '{conn.source_node_id}' not found")
            if conn.target_node_id not in node_ids:
                errors.append(f"Connection {conn.id}: target '{conn.target_node_id}' not found")
            if conn.source_node_id == conn.target_node_id:
                errors.append(f"Connection {conn.id}: node '{conn.source_node_id}' connects to itself")

        # Limit cycle enumeration to prevent DoS on complex graphs
        MAX_CYCLES_TO_REPORT = 20
        G = self._to_networkx()
        try:
            for cycle_count, cycle in enumerate(nx.simple_cycles(G), start=1):
                if cycle_count > MAX_CYCLES_TO_REPORT:
                    errors.append(f"Too many cycles to report (>{MAX_CYCLES_TO_REPORT})")
                    break
                errors.append(f"Cycle detected: {' -> '.join(cycle + cycle[:1])}")
        except nx.NetworkXError as e:
            errors.append(f"Could not perform cycle detection: {e}")

        if registry is not None:
            errors.extend(self._validate_against_registry(registry))

        return errors

    def _validate_against_registry(self, registry: "NodeTypeRegistry") -> list[str]:
        import jsonschema

        errors = []
        node_map = {n.id: n for n in self.nodes}

        for node in self.nodes:
            if node.type not in registry:
                errors.append(f"Node '{node.name}': unknown node type '{node.type}'")
                continue
            definition = registry.lookup(node.type)
            if definition.parameters_schema:
                try:
                    jsonschema.validate(node.parameters, definition.parameters_schema)
                except jsonschema.ValidationError as e:
                    path = ".".join(str(p) for p in e.absolute_path) or "(root)"
                    errors.append(f"Node '{node.name}': invalid parameter {path}: {e.message}")

        for conn in self.connections:
            source = node_map.get(conn.source_node_id)
            target = node_map.get(conn.target_node_id)
            if source is not None and source.type in registry:
                source_def = registry.lookup(source.type)
                if source_def.is_terminal:
                    errors.append(f"Terminal node '{source.name}' cannot have outgoing connections")
                elif not conn.is_action_path and conn.source_handle not in source_def.outputs:
                    errors.append(
                        f"Connection {conn.id}: '{source.name}' has no output handle "
                        f"'{conn.source_handle}'"
                    )
            if target is not None and target.type in registry:
                target_def = registry.lookup(target.type)
                if target_def.is_trigger:
                    errors.append(f"Trigger node '{target.name}' cannot have incoming connections")
                elif conn.target_handle not in target_def.inputs:
                    errors.append(
                        f"Connection {conn.id}: '{target.name}' has no input handle "
                        f"'{conn.target_handle}'"
                    )

        return errors

    def _to_networkx(self) -> nx.DiGraph:
        """Convert to NetworkX DiGraph for analysis"""
        G = nx.DiGraph()
        for node in self.nodes:
            G.add_node(node.id)
        for conn in self.connections:
            G.add_edge(conn.source_node_id, conn.target_node_id)
        return G

    def get_terminal_nodes(self) -> set[str]:
        """Find nodes with no outgoing connections"""
        G = self._to_networkx()
        return {n for n in G.nodes() if G.out_degree(n) == 0}
