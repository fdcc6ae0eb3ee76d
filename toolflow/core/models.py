"""Data models for flow execution traces.

Uses Pydantic so traces serialize cleanly for observability tooling.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionStatus(str, Enum):
    """Status of a whole flow invocation."""

    PENDING = "pending"
    FULFILLED = "fulfilled"
    ERROR = "error"


class NodeExecutionStatus(str, Enum):
    """Status of a single node within an invocation."""

    PENDING = "pending"
    COMPLETED = "completed"
    ERROR = "error"


# --- Node results ---


class ExecutionResult(BaseModel):
    """What a node's ``execute`` returns."""

    success: bool
    output: Any = None
    error: str | None = None

    @classmethod
    def ok(cls, output: Any = None) -> "ExecutionResult":
        return cls(success=True, output=output)

    @classmethod
    def fail(cls, error: str, output: Any = None) -> "ExecutionResult":
        return cls(success=False, error=error, output=output)


def with_execution_metadata(output: Any, **metadata: Any) -> dict[str, Any]:
    """Attach an ``_execution`` metadata dict to a node output.

    Dict outputs keep their keys at the root; anything else is wrapped as
    ``{"_value": output}``.
    """
    data = dict(output) if isinstance(output, dict) else {"_value": output}
    existing = data.get("_execution")
    merged = dict(existing) if isinstance(existing, dict) else {}
    merged.update(metadata)
    data["_execution"] = merged
    return data


# --- Execution trace ---


class NodeExecutionData(BaseModel):
    """One executed node in a flow run."""

    node_id: str
    node_name: str
    node_type: str
    executed_at: datetime = Field(default_factory=_utcnow)
    input_data: dict[str, Any] = Field(default_factory=dict)
    output_data: Any = None
    status: NodeExecutionStatus = NodeExecutionStatus.PENDING
    error: str | None = None
    execution_time_ms: float | None = None


class ExecutionErrorInfo(BaseModel):
    """Why a run ended in ``error``."""

    message: str
    node_id: str | None = None
    node_name: str | None = None
    error_type: str | None = None
    stack: str | None = None


class FlowExecution(BaseModel):
    """The auditable record of one flow invocation."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    flow_id: str
    flow_name: str = ""
    tool_name: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = Field(default_factory=_utcnow)
    ended_at: datetime | None = None
    initial_params: dict[str, Any] = Field(default_factory=dict)
    node_executions: list[NodeExecutionData] = Field(default_factory=list)
    error_info: ExecutionErrorInfo | None = None
    parent_execution_id: str | None = None
    depth: int = 0

    @property
    def duration_ms(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds() * 1000

    def get_node_execution(self, node_id: str) -> NodeExecutionData | None:
        return next((n for n in self.node_executions if n.node_id == node_id), None)

    def final_output(self) -> Any:
        """Output of the last completed node, or None if nothing completed."""
        for entry in reversed(self.node_executions):
            if entry.status == NodeExecutionStatus.COMPLETED:
                return entry.output_data
        return None
