# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the toolflow test suite.

Provides:
- Flow builders (the user lookup flow used by engine and CLI tests)
- A registry whose ApiCall node talks to an ``httpx.MockTransport``
- Flow files written to a temporary directory
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest
import yaml

from toolflow.core.config import EngineConfig
from toolflow.core.graph_schema import Connection, Flow, NodeInstance
from toolflow.core.nodes import build_default_registry


def make_connection(source: str, target: str, **kwargs: Any) -> Connection:
    """Connection with a deterministic id (``source->target``)."""
    kwargs.setdefault("id", f"{source}->{target}")
    return Connection(source_node_id=source, target_node_id=target, **kwargs)


def chain(*node_ids: str) -> list[Connection]:
    return [make_connection(a, b) for a, b in zip(node_ids, node_ids[1:])]


def build_lookup_flow(url: str = "https://x.test/users/{{trigger.id}}", flow_id: str = "lookup") -> Flow:
    """UserIntent -> ApiCall -> Return, the canonical three-node flow."""
    return Flow(
        id=flow_id,
        name="User Lookup",
        nodes=[
            NodeInstance(
                id="n-trigger",
                slug="trigger",
                name="Trigger",
                type="UserIntent",
                parameters={
                    "toolName": "lookup_user",
                    "parameters": [{"name": "id", "type": "string", "default": "42"}],
                },
            ),
            NodeInstance(
                id="n-api",
                slug="apiCall",
                name="ApiCall",
                type="ApiCall",
                parameters={"method": "GET", "url": url},
            ),
            NodeInstance(
                id="n-return",
                slug="result",
                name="Return",
                type="Return",
                parameters={"text": "User {{ apiCall.body.name }} ({{ apiCall.status }})"},
            ),
        ],
        connections=chain("n-trigger", "n-api", "n-return"),
    )


# =============================================================================
# HTTP Fixtures
# =============================================================================


@pytest.fixture
def requests_seen() -> list[httpx.Request]:
    """Requests received by the mock transport, in order."""
    return []


@pytest.fixture
def mock_transport(requests_seen) -> httpx.MockTransport:
    """Transport answering /users/<id> with JSON, /missing with 404, /text with text."""

    def handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request)
        path = request.url.path
        if path.startswith("/users/"):
            user_id = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={"id": user_id, "name": "Ada"})
        if path == "/text":
            return httpx.Response(200, text="plain body", headers={"content-type": "text/plain"})
        if path == "/timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if path == "/down":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(404, json={"error": "not found"})

    return httpx.MockTransport(handler)


# =============================================================================
# Registry and Flow Fixtures
# =============================================================================


@pytest.fixture
def engine_config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def registry(engine_config, mock_transport):
    """Default registry wired to the mock transport."""
    return build_default_registry(engine_config, transport=mock_transport)


@pytest.fixture
def connect():
    """Factory: ``connect("a", "b", source_handle=...)`` -> Connection."""
    return make_connection


@pytest.fixture
def make_lookup_flow():
    """Factory for the lookup flow with a custom ApiCall URL or flow id."""
    return build_lookup_flow


@pytest.fixture
def lookup_flow() -> Flow:
    return build_lookup_flow()


@pytest.fixture
def flow_file(tmp_path: Path, lookup_flow: Flow) -> Path:
    """The lookup flow written as YAML."""
    path = tmp_path / "lookup.yaml"
    path.write_text(yaml.safe_dump(lookup_flow.model_dump(mode="json", exclude_none=True)))
    return path


@pytest.fixture
def json_flow_file(tmp_path: Path, lookup_flow: Flow) -> Path:
    path = tmp_path / "lookup.json"
    path.write_text(json.dumps(lookup_flow.model_dump(mode="json", exclude_none=True)))
    return path
