"""Edit-time operations on a flow.

``FlowEditor`` works on a private copy of a flow and enforces the structural
rules the engine relies on: unique names and slugs, no edges into triggers or
out of terminal nodes, no duplicates, and no cycles. Slug renames are
propagated to every template reference in the flow.
"""

import logging
import uuid
from collections.abc import Iterable
from typing import Any

import jsonschema

from toolflow.core.graph_analysis import CycleDetected, would_create_cycle
from toolflow.core.graph_schema import Connection, Flow, NodeInstance
from toolflow.core.registry import NodeTypeDefinition, NodeTypeRegistry
from toolflow.core.slugs import generate_unique_slug, generate_unique_tool_name, is_valid_slug
from toolflow.core.templates import migrate_template_references, update_slug_references

logger = logging.getLogger(__name__)


class FlowEditError(Exception):
    """A requested edit would leave the flow invalid."""

    pass


class NodeNotFound(FlowEditError):
    """The referenced node does not exist in the flow."""

    pass


class FlowEditor:
    """Apply validated edits to a copy of ``flow``; read the result from ``.flow``.

    ``reserved_tool_names`` are tool names already taken elsewhere (other
    flows of the same application) and are avoided when generating new ones.
    """

    def __init__(
        self,
        flow: Flow,
        registry: NodeTypeRegistry,
        reserved_tool_names: Iterable[str] = (),
    ):
        self.flow = flow.model_copy(deep=True)
        self.registry = registry
        self._reserved_tool_names = set(reserved_tool_names)

    # --- Helpers ---

    def _node(self, node_id: str) -> NodeInstance:
        node = self.flow.get_node(node_id)
        if node is None:
            raise NodeNotFound(f"Node '{node_id}' not found in flow '{self.flow.id}'")
        return node

    def _definition(self, type_name: str) -> NodeTypeDefinition:
        # UnknownNodeType propagates unchanged
        return self.registry.lookup(type_name)

    def _tool_names(self, exclude_node_id: str | None = None) -> set[str]:
        names = set(self._reserved_tool_names)
        for node in self.flow.nodes:
            if node.id != exclude_node_id and node.parameters.get("toolName"):
                names.add(node.parameters["toolName"])
        return names

    def _validate_parameters(self, definition: NodeTypeDefinition, parameters: dict) -> None:
        if not definition.parameters_schema:
            return
        try:
            jsonschema.validate(parameters, definition.parameters_schema)
        except jsonschema.ValidationError as e:
            path = ".".join(str(p) for p in e.absolute_path) or "(root)"
            raise FlowEditError(f"Invalid parameter {path} for {definition.name}: {e.message}")

    def _propagate_slug(self, old_slug: str | None, new_slug: str) -> None:
        if not old_slug or old_slug == new_slug:
            return
        updated = []
        for node in self.flow.nodes:
            parameters = update_slug_references(node.parameters, old_slug, new_slug)
            updated.append(node.model_copy(update={"parameters": parameters}))
        self.flow.nodes = updated
        logger.info(f"Renamed slug '{old_slug}' -> '{new_slug}' in flow '{self.flow.id}'")

    # --- Nodes ---

    def add_node(
        self,
        type_name: str,
        name: str,
        parameters: dict[str, Any] | None = None,
        node_id: str | None = None,
        ui_metadata: dict | None = None,
    ) -> NodeInstance:
        definition = self._definition(type_name)
        if any(n.name == name for n in self.flow.nodes):
            raise FlowEditError(f"Node with name '{name}' already exists in this flow")
        node_id = node_id or str(uuid.uuid4())
        if self.flow.get_node(node_id) is not None:
            raise FlowEditError(f"Node id '{node_id}' already exists in this flow")

        merged = {**definition.default_parameters, **(parameters or {})}
        if definition.is_trigger:
            merged["toolName"] = generate_unique_tool_name(name, self._tool_names())
            merged.setdefault("isActive", True)
            merged.setdefault("toolDescription", "")
            merged.setdefault("parameters", [])
        self._validate_parameters(definition, merged)

        slug = generate_unique_slug(name, (n.slug for n in self.flow.nodes if n.slug))
        node = NodeInstance(
            id=node_id,
            slug=slug,
            name=name,
            type=type_name,
            parameters=merged,
            ui_metadata=ui_metadata,
        )
        self.flow.nodes.append(node)
        return node

    def update_node(
        self,
        node_id: str,
        name: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> NodeInstance:
        """Rename and/or merge parameters into a node.

        A new name regenerates the slug (and the tool name for triggers) and
        rewrites references to the old slug across the flow.
        """
        node = self._node(node_id)
        definition = self._definition(node.type)
        updates: dict[str, Any] = {}
        old_slug = node.slug

        new_parameters = dict(node.parameters)
        if parameters is not None:
            new_parameters.update(parameters)

        if name is not None and name != node.name:
            if any(n.name == name and n.id != node_id for n in self.flow.nodes):
                raise FlowEditError(f"Node with name '{name}' already exists in this flow")
            updates["name"] = name
            updates["slug"] = generate_unique_slug(
                name, (n.slug for n in self.flow.nodes if n.slug and n.id != node_id)
            )
            if definition.is_trigger:
                new_parameters["toolName"] = generate_unique_tool_name(
                    name, self._tool_names(exclude_node_id=node_id)
                )

        self._validate_parameters(definition, new_parameters)
        updates["parameters"] = new_parameters
        self._replace(node.model_copy(update=updates))

        if "slug" in updates:
            self._propagate_slug(old_slug, updates["slug"])
        return self._node(node_id)

    def rename_slug(self, node_id: str, new_slug: str) -> NodeInstance:
        node = self._node(node_id)
        if not is_valid_slug(new_slug):
            raise FlowEditError(f"Invalid slug: '{new_slug}'")
        if any(n.slug == new_slug and n.id != node_id for n in self.flow.nodes):
            raise FlowEditError(f"Slug '{new_slug}' is already used in this flow")
        old_slug = node.slug
        self._replace(node.model_copy(update={"slug": new_slug}))
        self._propagate_slug(old_slug, new_slug)
        return self._node(node_id)

    def delete_node(self, node_id: str) -> None:
        """Remove a node and every connection touching it."""
        self._node(node_id)
        self.flow.nodes = [n for n in self.flow.nodes if n.id != node_id]
        self.flow.connections = [
            c
            for c in self.flow.connections
            if c.source_node_id != node_id and c.target_node_id != node_id
        ]

    def _replace(self, node: NodeInstance) -> None:
        self.flow.nodes = [node if n.id == node.id else n for n in self.flow.nodes]

    # --- Connections ---

    def add_connection(
        self,
        source_node_id: str,
        target_node_id: str,
        source_handle: str = "main",
        target_handle: str = "main",
    ) -> Connection:
        source = self.flow.get_node(source_node_id)
        if source is None:
            raise NodeNotFound(f"Source node {source_node_id} not found in flow")
        target = self.flow.get_node(target_node_id)
        if target is None:
            raise NodeNotFound(f"Target node {target_node_id} not found in flow")

        source_def = self._definition(source.type)
        target_def = self._definition(target.type)
        if target_def.is_trigger:
            raise FlowEditError(
                "Cannot create connection to trigger node. "
                "Trigger nodes do not accept incoming connections."
            )
        if source_def.is_terminal:
            raise FlowEditError(f"Terminal node '{source.name}' cannot have outgoing connections")
        if source_node_id == target_node_id:
            raise FlowEditError("Cannot connect a node to itself")

        if would_create_cycle(source_node_id, target_node_id, self.flow.connections):
            raise CycleDetected(
                "This connection would create a circular reference",
                [target_node_id, source_node_id],
            )

        for conn in self.flow.connections:
            if (
                conn.source_node_id == source_node_id
                and conn.source_handle == source_handle
                and conn.target_node_id == target_node_id
                and conn.target_handle == target_handle
            ):
                raise FlowEditError("This connection already exists")

        connection = Connection(
            source_node_id=source_node_id,
            source_handle=source_handle,
            target_node_id=target_node_id,
            target_handle=target_handle,
        )
        self.flow.connections.append(connection)
        return connection

    def delete_connection(self, connection_id: str) -> None:
        remaining = [c for c in self.flow.connections if c.id != connection_id]
        if len(remaining) == len(self.flow.connections):
            raise FlowEditError(f"Connection '{connection_id}' not found in flow")
        self.flow.connections = remaining

    # --- Migration ---

    def migrate_node_slugs(self) -> bool:
        """Give every node a slug and rewrite ``{{ <node-id>.path }}`` references.

        Returns True if anything changed.
        """
        existing: set[str] = {n.slug for n in self.flow.nodes if n.slug}
        id_to_slug: dict[str, str] = {}
        nodes = []
        changed = False
        for node in self.flow.nodes:
            if not node.slug:
                slug = generate_unique_slug(node.name, existing)
                existing.add(slug)
                node = node.model_copy(update={"slug": slug})
                changed = True
            id_to_slug[node.id] = node.slug
            nodes.append(node)

        migrated = []
        for node in nodes:
            parameters = migrate_template_references(node.parameters, id_to_slug)
            if parameters != node.parameters:
                changed = True
                node = node.model_copy(update={"parameters": parameters})
            migrated.append(node)

        self.flow.nodes = migrated
        if changed:
            logger.info(f"Migrated node slugs in flow '{self.flow.id}'")
        return changed
