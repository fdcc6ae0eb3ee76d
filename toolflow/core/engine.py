"""Flow execution engine.

Walks the nodes reachable from a trigger in dependency order, one at a time,
threading each node's output into the parameters of the nodes after it. Every
invocation yields a ``FlowExecution`` trace, whether it succeeds or not.

Failure policy:
- Lookups that happen before a run exists (missing flow, missing or inactive
  trigger) raise to the caller.
- Anything after the run starts (invalid input, unknown node types, cycles,
  node failures) ends the run in ``error`` with ``error_info`` filled in. The
  first failing node aborts the whole run; nothing is retried.

``execute_action`` runs the follow-up behind a UI node's ``action:`` handle the
same way, seeded with the action data instead of trigger input.
"""

from __future__ import annotations

import logging
import time
import traceback
from datetime import datetime, timezone
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from toolflow.core.config import EngineConfig
from toolflow.core.context import ExecutionContext
from toolflow.core.graph_analysis import (
    CycleDetected,
    get_action_execution_order,
    get_execution_order,
)
from toolflow.core.graph_schema import ACTION_HANDLE_PREFIX, Flow, NodeInstance
from toolflow.core.models import (
    ExecutionErrorInfo,
    ExecutionResult,
    ExecutionStatus,
    FlowExecution,
    NodeExecutionData,
    NodeExecutionStatus,
)
from toolflow.core.nodes import parse_flow_parameters, validate_trigger_input
from toolflow.core.registry import NodeTypeDefinition, NodeTypeRegistry, UnknownNodeType
from toolflow.core.templates import resolve_parameters

if TYPE_CHECKING:
    from toolflow.core.flow_store import FlowStore

logger = logging.getLogger(__name__)

SECRETS_NAMESPACE = "secrets"


class FlowNotFound(Exception):
    """No flow with the requested id exists in the store."""

    pass


class TriggerNotFound(Exception):
    """The flow has no trigger matching the requested slug, id or tool name."""

    pass


class InactiveTrigger(Exception):
    """The flow or the selected trigger is disabled."""

    pass


class InvalidTriggerInput(Exception):
    """Invocation input does not satisfy the trigger's declared parameters."""

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message)
        self.errors = errors or []


class CallDepthExceeded(Exception):
    """Nested flow calls went too deep or re-entered a flow already running."""

    pass


class NodeExecutionFailure(Exception):
    """A node reported ``success: False``."""

    pass


class MissingNodeReference(Exception):
    """A connection or action names a node that is not in the flow."""

    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlowExecutor:
    """Runs flows from a store against an immutable node type registry."""

    def __init__(
        self,
        store: FlowStore,
        registry: NodeTypeRegistry,
        config: EngineConfig | None = None,
        secrets: dict[str, Any] | None = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or EngineConfig()
        self.secrets = dict(secrets or {})

    async def invoke(
        self,
        flow_id: str,
        trigger: str | None,
        initial_params: dict[str, Any] | None = None,
    ) -> FlowExecution:
        """Execute a flow from one of its triggers.

        Args:
            flow_id: Flow to run.
            trigger: Trigger slug, node id or tool name. ``None`` picks the
                first active trigger.
            initial_params: Invocation input, validated against the trigger.

        Raises:
            FlowNotFound, TriggerNotFound, InactiveTrigger: Before any run starts.
        """
        return await self._invoke(flow_id, trigger, dict(initial_params or {}), ())

    async def execute_action(
        self,
        flow_id: str,
        node_id: str,
        action: str,
        data: dict[str, Any] | None = None,
    ) -> FlowExecution:
        """Run the nodes wired to an ``action:`` handle of a UI node.

        ``data`` (for example a submitted form) stands in for the UI node's
        output, so downstream templates read it as ``{{ <slug>.field }}``.
        The follow-up is recorded as its own ``FlowExecution``.

        Args:
            flow_id: Flow holding the node.
            node_id: Node slug, id or name of the node whose handle fired.
            action: Action name, with or without the ``action:`` prefix.
            data: Payload of the action.

        Raises:
            FlowNotFound, InactiveTrigger: The flow is missing or disabled.
            MissingNodeReference: The flow has no such node.
        """
        flow = self._load_flow(flow_id)
        node = flow.find_node(node_id)
        if node is None:
            raise MissingNodeReference(f"Node '{node_id}' not found in flow '{flow.name}'")
        action_name = action.removeprefix(ACTION_HANDLE_PREFIX)
        payload = dict(data or {})

        execution = FlowExecution(
            flow_id=flow.id,
            flow_name=flow.name,
            tool_name=f"{node.ref}:{action_name}",
            initial_params=payload,
        )
        logger.info(
            f"Starting execution {execution.id} of action '{action_name}' on '{node.name}' "
            f"in flow '{flow.name}'"
        )

        try:
            order = get_action_execution_order(
                node.id, action_name, [n.id for n in flow.nodes], flow.connections
            )
            plan = self._plan_nodes(flow, order)
        except (CycleDetected, MissingNodeReference, UnknownNodeType) as e:
            return self._fail(execution, e)
        if not plan:
            logger.info(f"Action '{action_name}' on '{node.name}' has no connected nodes")

        values: dict[str, Any] = {SECRETS_NAMESPACE: MappingProxyType(self.secrets)}
        values[node.id] = payload
        if node.slug and node.slug != SECRETS_NAMESPACE:
            values[node.slug] = payload

        return await self._walk(execution, flow, plan, values, {}, (flow.id,))

    # --- Trigger resolution ---

    def _load_flow(self, flow_id: str) -> Flow:
        flow = self.store.get_flow(flow_id)
        if flow is None:
            raise FlowNotFound(f"Flow '{flow_id}' not found")
        if not flow.is_active:
            raise InactiveTrigger(f"Flow '{flow.name}' is not active")
        return flow

    def _is_trigger(self, node: NodeInstance) -> bool:
        return node.type in self.registry and self.registry.lookup(node.type).is_trigger

    def _resolve_trigger(self, flow: Flow, trigger: str | None) -> NodeInstance:
        triggers = [n for n in flow.nodes if self._is_trigger(n)]
        if trigger is None:
            active = [n for n in triggers if n.parameters.get("isActive", True) is not False]
            if not active:
                raise TriggerNotFound(f"Flow '{flow.name}' has no active trigger")
            return active[0]

        for attr in ("slug", "id"):
            node = next((n for n in triggers if getattr(n, attr) == trigger), None)
            if node is not None:
                break
        else:
            node = next((n for n in triggers if n.parameters.get("toolName") == trigger), None)

        if node is None:
            raise TriggerNotFound(f"Flow '{flow.name}' has no trigger '{trigger}'")
        if node.parameters.get("isActive", True) is False:
            raise InactiveTrigger(f"Trigger '{node.name}' in flow '{flow.name}' is not active")
        return node

    # --- Run ---

    async def _invoke(
        self,
        flow_id: str,
        trigger: str | None,
        initial_params: dict[str, Any],
        call_stack: tuple[str, ...],
        parent_execution_id: str | None = None,
    ) -> FlowExecution:
        flow = self._load_flow(flow_id)
        trigger_node = self._resolve_trigger(flow, trigger)
        stack = (*call_stack, flow.id)

        execution = FlowExecution(
            flow_id=flow.id,
            flow_name=flow.name,
            tool_name=trigger_node.parameters.get("toolName") or trigger_node.ref,
            initial_params=initial_params,
            parent_execution_id=parent_execution_id,
            depth=len(call_stack),
        )
        logger.info(
            f"Starting execution {execution.id} of flow '{flow.name}' via '{trigger_node.ref}'"
        )

        # Step 1: validate invocation input
        try:
            declared = parse_flow_parameters(trigger_node.parameters.get("parameters"))
            trigger_input, errors = validate_trigger_input(declared, initial_params)
        except ValueError as e:
            trigger_input, errors = dict(initial_params), [str(e)]
        if errors:
            error = InvalidTriggerInput("; ".join(errors), errors)
            execution.node_executions.append(
                NodeExecutionData(
                    node_id=trigger_node.id,
                    node_name=trigger_node.name,
                    node_type=trigger_node.type,
                    input_data=dict(initial_params),
                    status=NodeExecutionStatus.ERROR,
                    error=str(error),
                )
            )
            return self._fail(execution, error, trigger_node)

        # Step 2: preflight the reachable subgraph
        try:
            order = get_execution_order(
                trigger_node.id, [n.id for n in flow.nodes], flow.connections
            )
            plan = self._plan_nodes(flow, order)
        except (CycleDetected, MissingNodeReference, UnknownNodeType) as e:
            return self._fail(execution, e)

        # Step 3: walk in order
        values: dict[str, Any] = {SECRETS_NAMESPACE: MappingProxyType(self.secrets)}
        return await self._walk(execution, flow, plan, values, trigger_input, stack)

    def _nested_caller(self, execution: FlowExecution, stack: tuple[str, ...]):
        async def call_flow(target_flow_id: str, params: dict[str, Any]) -> FlowExecution:
            if target_flow_id in stack:
                raise CallDepthExceeded(
                    f"Flow '{target_flow_id}' is already running in this call chain: "
                    f"{' -> '.join(stack)}"
                )
            if len(stack) > self.config.max_call_depth:
                raise CallDepthExceeded(
                    f"Maximum flow call depth ({self.config.max_call_depth}) exceeded"
                )
            return await self._invoke(target_flow_id, None, dict(params), stack, execution.id)

        return call_flow

    async def _walk(
        self,
        execution: FlowExecution,
        flow: Flow,
        plan: list[tuple[NodeInstance, NodeTypeDefinition]],
        values: dict[str, Any],
        trigger_input: dict[str, Any],
        stack: tuple[str, ...],
    ) -> FlowExecution:
        call_flow = self._nested_caller(execution, stack)
        for node, definition in plan:
            ok = await self._run_node(
                execution, flow, node, definition, values, trigger_input, call_flow
            )
            if not ok:
                return execution

        execution.status = ExecutionStatus.FULFILLED
        execution.ended_at = _utcnow()
        logger.info(
            f"Execution {execution.id} fulfilled ({len(execution.node_executions)} nodes, "
            f"{execution.duration_ms:.1f}ms)"
        )
        return execution

    def _plan_nodes(
        self, flow: Flow, order: list[str]
    ) -> list[tuple[NodeInstance, NodeTypeDefinition]]:
        plan = []
        for node_id in order:
            node = flow.get_node(node_id)
            if node is None:
                raise MissingNodeReference(f"Connection references missing node '{node_id}'")
            plan.append((node, self.registry.lookup(node.type)))
        return plan

    async def _run_node(
        self,
        execution: FlowExecution,
        flow: Flow,
        node: NodeInstance,
        definition: NodeTypeDefinition,
        values: dict[str, Any],
        trigger_input: dict[str, Any],
        call_flow,
    ) -> bool:
        """Execute one node and record it. Returns False if the run must stop."""
        parameters = {**definition.default_parameters, **node.parameters}
        resolved, unresolved = resolve_parameters(parameters, values, skip=definition.raw_parameters)
        if unresolved:
            logger.debug(f"Node '{node.name}' has unresolved variables: {unresolved}")

        upstream = {}
        for conn in flow.incoming(node.id):
            source = flow.get_node(conn.source_node_id)
            if source is not None and source.id in values:
                upstream[source.ref] = values[source.id]

        context = ExecutionContext(
            flow_id=flow.id,
            node_id=node.id,
            node=node,
            parameters=resolved,
            execution_id=execution.id,
            unresolved_vars=unresolved,
            upstream=MappingProxyType(upstream),
            trigger_input=MappingProxyType(trigger_input) if definition.is_trigger else None,
            depth=execution.depth,
            _values=MappingProxyType(values),
            _call_flow=call_flow,
        )

        if definition.is_trigger:
            input_data = dict(trigger_input)
        else:
            input_data = definition.trace_input(resolved)
        entry = NodeExecutionData(
            node_id=node.id,
            node_name=node.name,
            node_type=node.type,
            input_data=input_data,
        )
        execution.node_executions.append(entry)

        started = time.perf_counter()
        try:
            result = await definition.execute(context)
            if not isinstance(result, ExecutionResult):
                raise TypeError(
                    f"Node type '{definition.name}' returned {type(result).__name__}, "
                    "expected ExecutionResult"
                )
        except Exception as e:
            entry.execution_time_ms = _elapsed_ms(started)
            entry.status = NodeExecutionStatus.ERROR
            entry.error = str(e)
            logger.error(f"Node '{node.name}' ({node.type}) raised: {e}")
            self._fail(execution, e, node, stack=traceback.format_exc())
            return False

        entry.execution_time_ms = _elapsed_ms(started)
        entry.output_data = result.output
        if not result.success:
            entry.status = NodeExecutionStatus.ERROR
            entry.error = result.error or "Node reported failure"
            logger.error(f"Node '{node.name}' ({node.type}) failed: {entry.error}")
            self._fail(execution, NodeExecutionFailure(entry.error), node)
            return False

        entry.status = NodeExecutionStatus.COMPLETED
        values[node.id] = result.output
        if node.slug and node.slug != SECRETS_NAMESPACE:
            values[node.slug] = result.output
        logger.debug(f"Node '{node.name}' completed in {entry.execution_time_ms}ms")
        return True

    def _fail(
        self,
        execution: FlowExecution,
        error: Exception,
        node: NodeInstance | None = None,
        stack: str | None = None,
    ) -> FlowExecution:
        execution.status = ExecutionStatus.ERROR
        execution.ended_at = _utcnow()
        execution.error_info = ExecutionErrorInfo(
            message=str(error),
            node_id=node.id if node else None,
            node_name=node.name if node else None,
            error_type=type(error).__name__,
            stack=stack,
        )
        logger.warning(f"Execution {execution.id} of flow '{execution.flow_name}' failed: {error}")
        return execution


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
