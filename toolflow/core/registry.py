"""Node type registry.

Each node kind is a ``NodeTypeDefinition`` subclass. The registry maps type
names to definition instances and is immutable once built, so one instance
can be shared by every concurrently running invocation.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from toolflow.core.context import ExecutionContext
    from toolflow.core.models import ExecutionResult

logger = logging.getLogger(__name__)


class UnknownNodeType(Exception):
    """A node references a type name that is not registered."""

    pass


class NodeTypeDefinition:
    """Contract for a node kind.

    Subclasses set the class attributes and implement ``execute``. A type
    with no ``inputs`` is a trigger; a type with no ``outputs`` is terminal.
    """

    name: str = ""
    display_name: str = ""
    category: str = "action"
    description: str = ""
    inputs: tuple[str, ...] = ("main",)
    outputs: tuple[str, ...] = ("main",)
    default_parameters: dict[str, Any] = {}
    # JSON Schema for ``parameters``; validated at edit time and by ``validate``
    parameters_schema: dict[str, Any] | None = None
    output_schema: dict[str, Any] | None = None
    # Parameter names the engine passes through without template resolution
    raw_parameters: tuple[str, ...] = ()

    @property
    def is_trigger(self) -> bool:
        return not self.inputs

    @property
    def is_terminal(self) -> bool:
        return not self.outputs

    def get_output_schema(self, parameters: dict[str, Any]) -> dict[str, Any] | None:
        """JSON Schema of this node's output. Static unless a kind overrides it."""
        return self.output_schema

    def trace_input(self, parameters: dict[str, Any]) -> dict[str, Any]:
        """What the execution trace records as this node's input."""
        return dict(parameters)

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r}>"


class NodeTypeRegistry:
    """Immutable mapping from type name to ``NodeTypeDefinition``."""

    def __init__(self, definitions: Iterable[NodeTypeDefinition] = ()):
        types: dict[str, NodeTypeDefinition] = {}
        for definition in definitions:
            if not definition.name:
                raise ValueError(f"Node type {definition!r} has no name")
            if definition.name in types:
                raise ValueError(f"Duplicate node type: '{definition.name}'")
            types[definition.name] = definition
        self._types = MappingProxyType(types)

    @staticmethod
    def builder() -> NodeTypeRegistryBuilder:
        return NodeTypeRegistryBuilder()

    def lookup(self, type_name: str) -> NodeTypeDefinition:
        try:
            return self._types[type_name]
        except KeyError:
            raise UnknownNodeType(
                f"Unknown node type '{type_name}'. Registered types: {sorted(self._types)}"
            ) from None

    def __contains__(self, type_name: object) -> bool:
        return type_name in self._types

    def __len__(self) -> int:
        return len(self._types)

    def names(self) -> list[str]:
        return list(self._types)

    def definitions(self) -> list[NodeTypeDefinition]:
        return list(self._types.values())

    @property
    def types(self) -> MappingProxyType:
        return self._types


class NodeTypeRegistryBuilder:
    """Collects definitions at startup, then freezes them into a registry."""

    def __init__(self) -> None:
        self._definitions: list[NodeTypeDefinition] = []

    def register(self, definition: NodeTypeDefinition) -> NodeTypeRegistryBuilder:
        logger.debug(f"Registering node type {definition.name}")
        self._definitions.append(definition)
        return self

    def build(self) -> NodeTypeRegistry:
        return NodeTypeRegistry(self._definitions)
