"""Tests for the built-in node kinds."""

from __future__ import annotations

import asyncio
import json
import socket
from types import SimpleNamespace

import pytest

from toolflow.core.config import GuardSettings, HttpSettings
from toolflow.core.context import ExecutionContext
from toolflow.core.graph_schema import FlowParameter, NodeInstance, ParameterType
from toolflow.core.models import ExecutionStatus
from toolflow.core.nodes import ApiCall, build_input_schema, validate_trigger_input
from toolflow.core.templates import UnresolvedTemplateVariable
from toolflow.core.url_guard import SSRFBlocked


@pytest.fixture
def make_context():
    """Factory building an ExecutionContext for a single node."""

    def _make(node_type: str, parameters: dict, **kwargs) -> ExecutionContext:
        node = NodeInstance(id=f"n-{node_type.lower()}", name=node_type, type=node_type, parameters=parameters)
        return ExecutionContext(
            flow_id="test-flow",
            node_id=node.id,
            node=node,
            parameters=parameters,
            **kwargs,
        )

    return _make


@pytest.fixture
def run(registry, make_context):
    """Execute a registered node kind directly and return its ExecutionResult."""

    def _run(node_type: str, parameters: dict, **kwargs):
        definition = registry.lookup(node_type)
        return asyncio.run(definition.execute(make_context(node_type, parameters, **kwargs)))

    return _run


# =============================================================================
# Trigger Input
# =============================================================================


class TestTriggerInput:
    """Tests for validate_trigger_input and build_input_schema."""

    def test_defaults_applied(self):
        params = [FlowParameter(name="id", default="42")]
        data, errors = validate_trigger_input(params, {})
        assert data == {"id": "42"}
        assert errors == []

    def test_missing_required(self):
        params = [FlowParameter(name="city"), FlowParameter(name="days", type=ParameterType.INTEGER)]
        _, errors = validate_trigger_input(params, {"days": 3})
        assert errors == ["Missing required parameter: city"]

    def test_optional_may_be_absent(self):
        params = [FlowParameter(name="note", optional=True)]
        data, errors = validate_trigger_input(params, {"note": None})
        assert errors == []
        assert "note" not in data

    @pytest.mark.parametrize(
        "param_type,raw,expected",
        [
            (ParameterType.INTEGER, "7", 7),
            (ParameterType.NUMBER, "2.5", 2.5),
            (ParameterType.NUMBER, "3", 3),
            (ParameterType.BOOLEAN, "yes", True),
            (ParameterType.BOOLEAN, "off", False),
            (ParameterType.OBJECT, '{"a": 1}', {"a": 1}),
            (ParameterType.ARRAY, "[1, 2]", [1, 2]),
        ],
    )
    def test_string_coercion(self, param_type, raw, expected):
        data, errors = validate_trigger_input([FlowParameter(name="v", type=param_type)], {"v": raw})
        assert errors == []
        assert data["v"] == expected

    def test_type_mismatch_reported(self):
        params = [FlowParameter(name="days", type=ParameterType.INTEGER)]
        _, errors = validate_trigger_input(params, {"days": "many"})
        assert len(errors) == 1
        assert errors[0].startswith("Invalid parameter days")

    def test_undeclared_keys_pass_through(self):
        data, errors = validate_trigger_input([], {"extra": 1})
        assert data == {"extra": 1}
        assert errors == []

    def test_build_input_schema(self):
        schema = build_input_schema(
            [
                FlowParameter(name="city", description="City name"),
                FlowParameter(name="units", optional=True),
                FlowParameter(name="days", type=ParameterType.INTEGER, default=3),
            ]
        )
        assert schema["properties"]["city"] == {"type": "string", "description": "City name"}
        assert schema["properties"]["days"] == {"type": "integer"}
        assert schema["required"] == ["city"]


# =============================================================================
# UserIntent, Interface, Return
# =============================================================================


class TestUserIntent:
    def test_output_is_input_plus_metadata(self, run):
        result = run("UserIntent", {"toolName": "lookup_user"}, trigger_input={"id": "42"})
        assert result.success
        assert result.output["id"] == "42"
        assert result.output["_execution"] == {"success": True, "type": "trigger", "toolName": "lookup_user"}

    def test_tool_name_falls_back_to_node_id(self, run):
        result = run("UserIntent", {})
        assert result.output["_execution"]["toolName"] == "n-userintent"


class TestInterfaceAndReturn:
    def test_interface_carries_upstream(self, run):
        result = run(
            "Interface",
            {"layoutTemplate": "card", "props": {"title": "User"}},
            upstream={"apiCall": {"body": {"name": "Ada"}}},
        )
        assert result.output["type"] == "interface"
        assert result.output["layoutTemplate"] == "card"
        assert result.output["props"] == {"title": "User"}
        assert result.output["data"]["apiCall"]["body"]["name"] == "Ada"

    def test_return_text(self, run):
        result = run("Return", {"text": "done"})
        assert result.output["type"] == "return"
        assert result.output["text"] == "done"

    def test_return_keeps_unresolved_text(self, run):
        result = run("Return", {"text": "Hi {{ x.name }}"}, unresolved_vars=["x.name"])
        assert result.success
        assert result.output["text"] == "Hi {{ x.name }}"

    def test_link_prefixes_scheme(self, run):
        result = run("Link", {"href": " docs.example.com/start "})
        assert result.success
        assert result.output["type"] == "link"
        assert result.output["href"] == "https://docs.example.com/start"

    def test_link_keeps_http_scheme(self, run):
        assert run("Link", {"href": "http://example.com"}).output["href"] == "http://example.com"

    @pytest.mark.parametrize("href", ["", "   ", None])
    def test_link_requires_url(self, run, href):
        result = run("Link", {"href": href})
        assert not result.success
        assert result.error == "URL is required"
        assert result.output["_execution"]["success"] is False


# =============================================================================
# ApiCall
# =============================================================================


class TestApiCall:
    """ApiCall against the mock transport."""

    def test_json_response(self, run, requests_seen):
        result = run("ApiCall", {"method": "GET", "url": "https://x.test/users/42"})
        assert result.success
        out = result.output
        assert out["type"] == "apiCall"
        assert out["status"] == 200
        assert out["statusText"] == "OK"
        assert out["body"] == {"id": "42", "name": "Ada"}
        assert out["_execution"]["success"] is True
        assert out["_execution"]["httpStatus"] == 200
        assert out["_execution"]["requestUrl"] == "https://x.test/users/42"
        assert requests_seen[0].headers["user-agent"] == HttpSettings().user_agent

    def test_error_status_is_still_success(self, run):
        result = run("ApiCall", {"url": "https://x.test/nothing-here"})
        assert result.success
        assert result.output["status"] == 404
        assert result.output["body"] == {"error": "not found"}

    def test_text_body(self, run):
        result = run("ApiCall", {"url": "https://x.test/text"})
        assert result.output["body"] == "plain body"

    def test_headers_and_body_sent(self, run, requests_seen):
        run(
            "ApiCall",
            {
                "method": "POST",
                "url": "https://x.test/users/1",
                "headers": [{"key": "Authorization", "value": "Bearer s3cret"}, {"key": "", "value": "x"}],
                "body": {"name": "Ada"},
            },
        )
        request = requests_seen[0]
        assert request.method == "POST"
        assert request.headers["authorization"] == "Bearer s3cret"
        assert json.loads(request.content) == {"name": "Ada"}

    def test_timeout_is_failure_result(self, run):
        result = run("ApiCall", {"url": "https://x.test/timeout", "timeout": 1500})
        assert not result.success
        assert result.error == "Request timeout after 1500ms"
        assert result.output["_execution"]["success"] is False

    def test_network_error_is_failure_result(self, run):
        result = run("ApiCall", {"url": "https://x.test/down"})
        assert not result.success
        assert result.error.startswith("Network error:")

    def test_empty_url_fails(self, run):
        result = run("ApiCall", {"url": ""})
        assert not result.success
        assert result.error == "URL is required for API Call node"

    def test_unresolved_url_raises(self, run, requests_seen):
        with pytest.raises(UnresolvedTemplateVariable) as excinfo:
            run("ApiCall", {"url": "https://x.test/users/{{ trigger.id }}"})
        assert excinfo.value.variables == ["trigger.id"]
        assert requests_seen == []

    @pytest.mark.parametrize(
        "url",
        ["http://localhost/users/42", "http://169.254.169.254/latest", "http://10.0.0.1/", "ftp://x.test/"],
    )
    def test_blocked_urls_raise_before_any_request(self, run, requests_seen, url):
        with pytest.raises(SSRFBlocked, match="SSRF Protection"):
            run("ApiCall", {"url": url})
        assert requests_seen == []

    def test_response_size_cap(self, mock_transport, make_context):
        node = ApiCall(HttpSettings(max_response_bytes=10), GuardSettings(), transport=mock_transport)
        result = asyncio.run(node.execute(make_context("ApiCall", {"url": "https://x.test/users/42"})))
        assert not result.success
        assert "exceeds 10 bytes" in result.error

    def test_resolved_address_is_pinned(self, monkeypatch, mock_transport, make_context, requests_seen):
        monkeypatch.setattr(
            socket,
            "getaddrinfo",
            lambda host, port, **kw: [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("93.184.216.34", 0))],
        )
        node = ApiCall(HttpSettings(), GuardSettings(resolve_hostnames=True), transport=mock_transport)
        result = asyncio.run(node.execute(make_context("ApiCall", {"url": "https://api.example.com/users/1"})))

        assert result.success
        request = requests_seen[0]
        assert request.url.host == "93.184.216.34"
        assert request.headers["host"] == "api.example.com"
        assert request.extensions["sni_hostname"] == "api.example.com"
        assert result.output["_execution"]["requestUrl"] == "https://api.example.com/users/1"

    def test_blocked_resolution_sends_nothing(self, monkeypatch, mock_transport, make_context, requests_seen):
        monkeypatch.setattr(
            socket,
            "getaddrinfo",
            lambda host, port, **kw: [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("127.0.0.1", 0))],
        )
        node = ApiCall(HttpSettings(), GuardSettings(resolve_hostnames=True), transport=mock_transport)
        with pytest.raises(SSRFBlocked, match="loopback"):
            asyncio.run(node.execute(make_context("ApiCall", {"url": "https://rebind.example/users/1"})))
        assert requests_seen == []

    def test_trace_input_hides_header_values(self, registry):
        trace = registry.lookup("ApiCall").trace_input(
            {"method": "get", "url": "https://x.test", "headers": [{"key": "Authorization", "value": "secret"}]}
        )
        assert trace["method"] == "GET"
        assert trace["headers"] == ["Authorization"]
        assert "secret" not in str(trace)


# =============================================================================
# Transform
# =============================================================================


class TestTransform:
    def test_dict_result(self, run):
        upstream = {"apiCall": {"body": {"name": "Ada", "id": "42"}}}
        result = run("Transform", {"expression": "{'who': apiCall.body.name | upper}"}, upstream=upstream)
        assert result.success
        assert result.output["who"] == "ADA"
        assert result.output["_execution"]["type"] == "transform"

    def test_scalar_result_wrapped(self, run):
        result = run("Transform", {"expression": "input.a.n * 2"}, upstream={"a": {"n": 21}})
        assert result.output["_value"] == 42

    def test_unknown_name_fails(self, run):
        result = run("Transform", {"expression": "missing.value"})
        assert not result.success
        assert result.error.startswith("Transform failed")

    def test_empty_expression_fails(self, run):
        result = run("Transform", {"expression": "  "})
        assert not result.success

    def test_sandbox_blocks_internals(self, run):
        result = run("Transform", {"expression": "a.__class__.__mro__"}, upstream={"a": {}})
        assert not result.success


# =============================================================================
# CallFlow
# =============================================================================


class TestCallFlow:
    def test_invokes_nested_flow(self, run):
        calls = []

        async def call_flow(target, params):
            calls.append((target, params))
            return SimpleNamespace(
                id="sub-1",
                status=ExecutionStatus.FULFILLED,
                error_info=None,
                final_output=lambda: {"text": "ok"},
            )

        result = run("CallFlow", {"targetFlowId": "child", "params": {"id": "1"}}, _call_flow=call_flow)
        assert calls == [("child", {"id": "1"})]
        assert result.success
        assert result.output["executionId"] == "sub-1"
        assert result.output["status"] == "fulfilled"
        assert result.output["output"] == {"text": "ok"}

    def test_failed_sub_flow_fails_node(self, run):
        async def call_flow(target, params):
            return SimpleNamespace(
                id="sub-2",
                status=ExecutionStatus.ERROR,
                error_info=SimpleNamespace(message="boom"),
                final_output=lambda: None,
            )

        result = run("CallFlow", {"targetFlowId": "child"}, _call_flow=call_flow)
        assert not result.success
        assert result.error == "Sub-flow 'child' failed: boom"

    def test_missing_target(self, run):
        assert not run("CallFlow", {"targetFlowId": ""}).success

    def test_no_call_flow_available(self, run):
        with pytest.raises(RuntimeError):
            run("CallFlow", {"targetFlowId": "child"})
