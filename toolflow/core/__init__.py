"""Core modules for the toolflow engine."""

from toolflow.core.engine import FlowExecutor
from toolflow.core.graph_schema import Connection, Flow, FlowParameter, NodeInstance
from toolflow.core.models import (
    ExecutionResult,
    ExecutionStatus,
    FlowExecution,
    NodeExecutionData,
    NodeExecutionStatus,
)
from toolflow.core.nodes import build_default_registry
from toolflow.core.registry import NodeTypeDefinition, NodeTypeRegistry
from toolflow.core.tools import ToolDefinition, list_tools

__all__ = [
    "Connection",
    "ExecutionResult",
    "ExecutionStatus",
    "Flow",
    "FlowExecution",
    "FlowExecutor",
    "FlowParameter",
    "NodeExecutionData",
    "NodeExecutionStatus",
    "NodeInstance",
    "NodeTypeDefinition",
    "NodeTypeRegistry",
    "ToolDefinition",
    "build_default_registry",
    "list_tools",
]
