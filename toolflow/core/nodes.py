"""Built-in node kinds.

Every kind is a ``NodeTypeDefinition`` subclass registered by name in
``build_default_registry``. Outputs follow one convention: the data sits at
the root of a dict next to an ``_execution`` metadata dict.
"""

import asyncio
import json
import logging
import time
from typing import Any

import httpx
import jsonschema
from jinja2 import StrictUndefined, TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment
from pydantic import ValidationError

from toolflow.core.config import EngineConfig, GuardSettings, HttpSettings
from toolflow.core.context import ExecutionContext
from toolflow.core.graph_schema import FlowParameter, ParameterType
from toolflow.core.models import ExecutionResult, ExecutionStatus, with_execution_metadata
from toolflow.core.registry import NodeTypeDefinition, NodeTypeRegistry
from toolflow.core.templates import TEMPLATE_RE, UnresolvedTemplateVariable, parse_template_references
from toolflow.core.url_guard import SSRFBlocked, check_resolved_addresses, parse_and_validate_url

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS")

_JSON_TYPES = {
    ParameterType.STRING: "string",
    ParameterType.NUMBER: "number",
    ParameterType.INTEGER: "integer",
    ParameterType.BOOLEAN: "boolean",
    ParameterType.OBJECT: "object",
    ParameterType.ARRAY: "array",
}

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off"})


# --- Trigger input handling ---


def parse_flow_parameters(raw: Any) -> list[FlowParameter]:
    """Parse a trigger's ``parameters`` list into ``FlowParameter`` models."""
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ValueError("Trigger 'parameters' must be a list")
    try:
        return [FlowParameter(**p) if isinstance(p, dict) else p for p in raw]
    except (ValidationError, TypeError) as e:
        raise ValueError(f"Invalid trigger parameter declaration: {e}")


def build_input_schema(parameters: list[FlowParameter]) -> dict[str, Any]:
    """JSON Schema describing the input a trigger accepts."""
    properties = {}
    required = []
    for param in parameters:
        prop: dict[str, Any] = {"type": _JSON_TYPES[param.type]}
        if param.description:
            prop["description"] = param.description
        properties[param.name] = prop
        if not param.optional and param.default is None:
            required.append(param.name)
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _coerce(value: Any, param_type: ParameterType) -> Any:
    """Best-effort conversion of string input to the declared type."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    try:
        if param_type == ParameterType.INTEGER:
            return int(text)
        if param_type == ParameterType.NUMBER:
            number = float(text)
            return int(number) if number.is_integer() and "." not in text else number
        if param_type == ParameterType.BOOLEAN:
            lowered = text.lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
            return value
        if param_type in (ParameterType.OBJECT, ParameterType.ARRAY):
            return json.loads(text)
    except (ValueError, json.JSONDecodeError):
        return value
    return value


def validate_trigger_input(
    parameters: list[FlowParameter], values: dict[str, Any]
) -> tuple[dict[str, Any], list[str]]:
    """Apply defaults, coerce, and validate invocation input.

    Returns the coerced input and a list of error messages (empty when valid).
    Keys that are not declared are passed through unchanged.
    """
    data = dict(values or {})
    errors = []
    for param in parameters:
        if param.name not in data or data[param.name] is None:
            if param.default is not None:
                data[param.name] = param.default
            elif not param.optional:
                errors.append(f"Missing required parameter: {param.name}")
                continue
            else:
                data.pop(param.name, None)
                continue
        data[param.name] = _coerce(data[param.name], param.type)

    if errors:
        return data, errors

    validator = jsonschema.Draft7Validator(build_input_schema(parameters))
    for error in validator.iter_errors(data):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"Invalid parameter {path}: {error.message}")
    return data, errors


# --- Node kinds ---


class UserIntent(NodeTypeDefinition):
    """Trigger node: the entry point a caller invokes by tool name."""

    name = "UserIntent"
    display_name = "User Intent"
    category = "trigger"
    description = "Entry point exposed to callers as a tool"
    inputs = ()
    outputs = ("main",)
    default_parameters = {
        "toolName": "",
        "toolDescription": "",
        "isActive": True,
        "parameters": [],
    }
    parameters_schema = {
        "type": "object",
        "properties": {
            "toolName": {"type": "string"},
            "toolDescription": {"type": "string"},
            "whenToUse": {"type": "string"},
            "whenNotToUse": {"type": "string"},
            "isActive": {"type": "boolean"},
            "parameters": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string"},
                        "type": {"enum": [t.value for t in ParameterType]},
                        "description": {"type": "string"},
                        "optional": {"type": "boolean"},
                    },
                    "required": ["name"],
                },
            },
        },
    }
    raw_parameters = ("parameters",)

    def get_output_schema(self, parameters):
        try:
            declared = parse_flow_parameters(parameters.get("parameters"))
        except ValueError:
            declared = []
        schema = build_input_schema(declared)
        schema["properties"]["_execution"] = {
            "type": "object",
            "properties": {
                "success": {"type": "boolean"},
                "type": {"type": "string", "const": "trigger"},
                "toolName": {"type": "string"},
            },
        }
        return schema

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        tool_name = context.parameters.get("toolName") or context.node.slug or context.node.id
        output = with_execution_metadata(
            dict(context.trigger_input or {}),
            success=True,
            type="trigger",
            toolName=tool_name,
        )
        return ExecutionResult.ok(output)


class ApiCall(NodeTypeDefinition):
    """Outbound HTTP request, guarded against SSRF."""

    name = "ApiCall"
    display_name = "API Call"
    category = "action"
    description = "Make HTTP requests to external APIs"
    default_parameters = {
        "method": "GET",
        "url": "",
        "headers": [],
    }
    parameters_schema = {
        "type": "object",
        "properties": {
            "method": {"type": "string", "enum": list(HTTP_METHODS)},
            "url": {"type": "string"},
            "headers": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {"key": {"type": "string"}, "value": {"type": "string"}},
                    "required": ["key"],
                },
            },
            "timeout": {"type": "integer", "minimum": 1},
        },
    }
    output_schema = {
        "type": "object",
        "properties": {
            "type": {"type": "string", "const": "apiCall"},
            "status": {"type": "integer"},
            "statusText": {"type": "string"},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "body": {},
            "_execution": {
                "type": "object",
                "properties": {
                    "success": {"type": "boolean"},
                    "error": {"type": "string"},
                    "durationMs": {"type": "number"},
                    "httpStatus": {"type": "integer"},
                    "httpStatusText": {"type": "string"},
                    "requestUrl": {"type": "string"},
                },
                "required": ["success", "durationMs"],
            },
        },
        "required": ["type", "_execution"],
    }

    def __init__(
        self,
        http: HttpSettings | None = None,
        guard: GuardSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.http = http or HttpSettings()
        self.guard = guard or GuardSettings()
        self._transport = transport

    def trace_input(self, parameters):
        # Header values routinely carry secrets; only names go into the trace
        headers = parameters.get("headers") or []
        return {
            "method": str(parameters.get("method") or "GET").upper(),
            "url": parameters.get("url", ""),
            "headers": [h.get("key") for h in headers if isinstance(h, dict)],
            "timeout": parameters.get("timeout"),
        }

    @staticmethod
    def _failure(message: str, started: float, url: str | None = None) -> ExecutionResult:
        metadata = {"success": False, "error": message, "durationMs": _elapsed_ms(started)}
        if url is not None:
            metadata["requestUrl"] = url
        return ExecutionResult.fail(message, output={"type": "apiCall", "_execution": metadata})

    def _build_headers(self, raw: Any, node_name: str) -> dict[str, str]:
        headers = {"User-Agent": self.http.user_agent}
        if isinstance(raw, dict):
            raw = [{"key": k, "value": v} for k, v in raw.items()]
        for entry in raw or []:
            key = str(entry.get("key") or "").strip()
            if not key:
                continue
            value = "" if entry.get("value") is None else str(entry["value"])
            if TEMPLATE_RE.search(value):
                logger.warning(f"Header '{key}' on node '{node_name}' has unresolved variables")
            headers[key] = value
        return headers

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        params = context.parameters
        method = str(params.get("method") or "GET").upper()
        raw_url = params.get("url") or ""
        timeout_ms = params.get("timeout") or self.http.timeout_ms
        started = time.perf_counter()

        if not isinstance(raw_url, str) or not raw_url.strip():
            return self._failure("URL is required for API Call node", started)

        leftovers = [
            f"{ref.slug}.{ref.path}" if ref.path else ref.slug
            for ref in parse_template_references(raw_url)
        ]
        if leftovers:
            raise UnresolvedTemplateVariable(
                f"URL has unresolved variables: {', '.join(leftovers)}", leftovers
            )

        validation = parse_and_validate_url(raw_url, self.guard)
        if not validation.valid:
            raise SSRFBlocked(f"SSRF Protection: {validation.error}")
        url = validation.url
        headers = self._build_headers(params.get("headers"), context.node.name)
        request_kwargs: dict[str, Any] = {}
        request_url = httpx.URL(url)
        if self.guard.resolve_hostnames:
            addresses = await asyncio.to_thread(
                check_resolved_addresses, request_url.host, self.guard
            )
            if addresses:
                # Connect to the vetted address; keep the name for Host and TLS
                address = addresses[0]
                headers["Host"] = request_url.netloc.decode("ascii")
                request_kwargs["extensions"] = {"sni_hostname": request_url.host}
                request_url = request_url.copy_with(
                    host=f"[{address}]" if ":" in address else address
                )

        body = params.get("body")
        if body is not None and method not in ("GET", "HEAD"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=float(timeout_ms) / 1000,
                follow_redirects=False,
            ) as client:
                async with client.stream(
                    method, request_url, headers=headers, **request_kwargs
                ) as response:
                    content = bytearray()
                    async for chunk in response.aiter_bytes():
                        content.extend(chunk)
                        if len(content) > self.http.max_response_bytes:
                            return self._failure(
                                f"Response exceeds {self.http.max_response_bytes} bytes", started, url
                            )
        except httpx.TimeoutException:
            return self._failure(f"Request timeout after {timeout_ms}ms", started, url)
        except httpx.HTTPError as e:
            return self._failure(f"Network error: {e}", started, url)

        text = bytes(content).decode(response.charset_encoding or "utf-8", errors="replace")
        content_type = response.headers.get("content-type", "")
        response_body: Any = text
        if "json" in content_type and text:
            try:
                response_body = json.loads(text)
            except json.JSONDecodeError:
                pass

        logger.info(f"{method} {url} -> {response.status_code}")
        output = {
            "type": "apiCall",
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "body": response_body,
            "_execution": {
                "success": True,
                "durationMs": _elapsed_ms(started),
                "httpStatus": response.status_code,
                "httpStatusText": response.reason_phrase,
                "requestUrl": url,
            },
        }
        return ExecutionResult.ok(output)


class Transform(NodeTypeDefinition):
    """Reshape upstream data with a sandboxed Jinja2 expression."""

    name = "Transform"
    display_name = "Transform"
    category = "transform"
    description = "Compute a new value from upstream outputs"
    default_parameters = {"expression": ""}
    parameters_schema = {
        "type": "object",
        "properties": {"expression": {"type": "string"}},
    }
    raw_parameters = ("expression",)

    def __init__(self):
        # SECURITY: SandboxedEnvironment blocks attribute access to internals
        # StrictUndefined raises on unknown names instead of yielding ""
        self.jinja_env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        expression = context.parameters.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            return ExecutionResult.fail("Transform expression is required")

        upstream = dict(context.upstream)
        variables = {slug: value for slug, value in upstream.items() if slug.isidentifier()}
        variables["input"] = upstream
        variables["main"] = upstream

        started = time.perf_counter()
        try:
            compiled = self.jinja_env.compile_expression(expression.strip(), undefined_to_none=False)
            result = compiled(**variables)
        except (TemplateError, TypeError, ValueError, ArithmeticError, LookupError) as e:
            return ExecutionResult.fail(f"Transform failed: {e}")

        if isinstance(result, Undefined):
            return ExecutionResult.fail("Transform produced an undefined value")

        output = with_execution_metadata(
            result, success=True, type="transform", durationMs=_elapsed_ms(started)
        )
        return ExecutionResult.ok(output)


class Interface(NodeTypeDefinition):
    """Describes UI the transport renders with upstream data."""

    name = "Interface"
    display_name = "Interface"
    category = "interface"
    description = "Display data with a UI layout"
    default_parameters = {"layoutTemplate": "table", "props": {}}
    parameters_schema = {
        "type": "object",
        "properties": {
            "layoutTemplate": {"type": "string"},
            "props": {"type": "object"},
        },
    }

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        output = {
            "type": "interface",
            "layoutTemplate": context.parameters.get("layoutTemplate"),
            "props": context.parameters.get("props") or {},
            "data": dict(context.upstream),
            "_execution": {"success": True},
        }
        return ExecutionResult.ok(output)


class Return(NodeTypeDefinition):
    """Terminal node producing the text handed back to the caller."""

    name = "Return"
    display_name = "Return"
    category = "return"
    description = "Return a value to the caller"
    outputs = ()
    default_parameters = {"text": ""}
    parameters_schema = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
    }
    output_schema = {
        "type": "object",
        "properties": {"type": {"const": "return"}, "text": {"type": "string"}},
        "required": ["type", "text"],
    }

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        text = context.parameters.get("text")
        if text is None:
            text = ""
        if context.unresolved_vars:
            logger.warning(
                f"Return node '{context.node.name}' has unresolved variables: {context.unresolved_vars}"
            )
        return ExecutionResult.ok({"type": "return", "text": str(text), "_execution": {"success": True}})


class Link(NodeTypeDefinition):
    """Terminal node handing the caller a URL to open.

    The link is not fetched, so it does not pass the outbound request guard.
    """

    name = "Link"
    display_name = "Link"
    category = "return"
    description = "Open an external URL"
    outputs = ()
    default_parameters = {"href": ""}
    parameters_schema = {
        "type": "object",
        "properties": {"href": {"type": "string"}},
    }
    output_schema = {
        "type": "object",
        "properties": {"type": {"const": "link"}, "href": {"type": "string"}},
        "required": ["type", "href"],
    }

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        href = str(context.parameters.get("href") or "").strip()
        if not href:
            return ExecutionResult.fail(
                "URL is required",
                output={
                    "type": "link",
                    "href": "",
                    "_execution": {"success": False, "error": "URL is required"},
                },
            )
        if not href.startswith(("http://", "https://")):
            href = f"https://{href}"
        return ExecutionResult.ok({"type": "link", "href": href, "_execution": {"success": True}})


class CallFlow(NodeTypeDefinition):
    """Invoke another flow and wait for its result."""

    name = "CallFlow"
    display_name = "Call Flow"
    category = "action"
    description = "Run another flow as a sub-flow"
    default_parameters = {"targetFlowId": "", "params": {}}
    parameters_schema = {
        "type": "object",
        "properties": {
            "targetFlowId": {"type": "string"},
            "params": {"type": "object"},
        },
    }

    async def execute(self, context: ExecutionContext) -> ExecutionResult:
        target = context.parameters.get("targetFlowId")
        if not target:
            return ExecutionResult.fail("Target flow is required for Call Flow node")
        params = context.parameters.get("params") or {}
        if not isinstance(params, dict):
            return ExecutionResult.fail("Call Flow 'params' must be a mapping")

        sub = await context.call_flow(target, params)
        output = {
            "type": "callFlow",
            "targetFlowId": target,
            "executionId": sub.id,
            "status": sub.status.value,
            "output": sub.final_output(),
            "_execution": {"success": sub.status == ExecutionStatus.FULFILLED},
        }
        if sub.status != ExecutionStatus.FULFILLED:
            reason = sub.error_info.message if sub.error_info else "unknown error"
            return ExecutionResult.fail(f"Sub-flow '{target}' failed: {reason}", output=output)
        return ExecutionResult.ok(output)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def build_default_registry(
    config: EngineConfig | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> NodeTypeRegistry:
    """Registry with every built-in node kind.

    ``transport`` is handed to ``ApiCall``'s HTTP client (tests pass an
    ``httpx.MockTransport``).
    """
    config = config or EngineConfig()
    return (
        NodeTypeRegistry.builder()
        .register(UserIntent())
        .register(ApiCall(config.http, config.guard, transport=transport))
        .register(Transform())
        .register(Interface())
        .register(Return())
        .register(Link())
        .register(CallFlow())
        .build()
    )
