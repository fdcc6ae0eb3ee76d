"""Tests for FlowEditor edit-time operations."""

from __future__ import annotations

import pytest

from toolflow.core.editor import FlowEditError, FlowEditor, NodeNotFound
from toolflow.core.graph_analysis import CycleDetected
from toolflow.core.graph_schema import Flow, NodeInstance
from toolflow.core.registry import UnknownNodeType


@pytest.fixture
def editor(registry, lookup_flow):
    return FlowEditor(lookup_flow, registry, reserved_tool_names={"taken_elsewhere"})


@pytest.fixture
def empty_editor(registry):
    return FlowEditor(Flow(id="blank"), registry)


# =============================================================================
# Nodes
# =============================================================================


class TestAddNode:
    def test_slug_and_defaults(self, empty_editor):
        node = empty_editor.add_node("ApiCall", "Fetch User", {"url": "https://x.test"})
        assert node.slug == "fetchUser"
        assert node.parameters["method"] == "GET"
        assert node.parameters["url"] == "https://x.test"
        assert empty_editor.flow.get_node(node.id) is not None

    def test_slug_collision(self, empty_editor):
        empty_editor.add_node("Transform", "Shape")
        second = empty_editor.add_node("Transform", "shape")
        assert second.slug == "shape2"

    def test_duplicate_name_rejected(self, empty_editor):
        empty_editor.add_node("Transform", "Shape")
        with pytest.raises(FlowEditError, match="already exists"):
            empty_editor.add_node("Return", "Shape")

    def test_trigger_gets_tool_name(self, registry):
        editor = FlowEditor(Flow(id="f"), registry, reserved_tool_names={"get_weather"})
        node = editor.add_node("UserIntent", "Get Weather")
        assert node.parameters["toolName"] == "get_weather_2"
        assert node.parameters["isActive"] is True
        assert node.parameters["parameters"] == []

    def test_unknown_type(self, empty_editor):
        with pytest.raises(UnknownNodeType):
            empty_editor.add_node("Mystery", "X")

    def test_invalid_parameters(self, empty_editor):
        with pytest.raises(FlowEditError, match="Invalid parameter method"):
            empty_editor.add_node("ApiCall", "Bad", {"method": "FETCH"})

    def test_original_flow_untouched(self, registry, lookup_flow):
        editor = FlowEditor(lookup_flow, registry)
        editor.add_node("Transform", "Extra")
        assert len(lookup_flow.nodes) == 3
        assert len(editor.flow.nodes) == 4


class TestUpdateNode:
    """Renames propagate the new slug to every template reference."""

    def test_rename_rewrites_references(self, editor):
        updated = editor.update_node("n-api", name="Fetch User")
        assert updated.slug == "fetchUser"
        text = editor.flow.get_node("n-return").parameters["text"]
        assert text == "User {{ fetchUser.body.name }} ({{ fetchUser.status }})"

    def test_rename_trigger_regenerates_tool_name(self, editor):
        updated = editor.update_node("n-trigger", name="Find Person")
        assert updated.parameters["toolName"] == "find_person"
        assert updated.slug == "findPerson"
        api_url = editor.flow.get_node("n-api").parameters["url"]
        assert api_url == "https://x.test/users/{{findPerson.id}}"

    def test_parameter_merge(self, editor):
        updated = editor.update_node("n-api", parameters={"timeout": 500})
        assert updated.parameters["timeout"] == 500
        assert updated.parameters["method"] == "GET"
        assert updated.slug == "apiCall"

    def test_rename_to_existing_name(self, editor):
        with pytest.raises(FlowEditError):
            editor.update_node("n-api", name="Return")

    def test_missing_node(self, editor):
        with pytest.raises(NodeNotFound):
            editor.update_node("ghost", name="x")


class TestRenameSlug:
    def test_rename(self, editor):
        editor.rename_slug("n-api", "user")
        assert "{{ user.body.name }}" in editor.flow.get_node("n-return").parameters["text"]

    @pytest.mark.parametrize("slug", ["secrets", "1abc", "has-dash", "result"])
    def test_rejects_invalid_or_taken(self, editor, slug):
        with pytest.raises(FlowEditError):
            editor.rename_slug("n-api", slug)


class TestDeleteNode:
    def test_cascades_connections(self, editor):
        editor.delete_node("n-api")
        assert editor.flow.get_node("n-api") is None
        assert editor.flow.connections == []


# =============================================================================
# Connections
# =============================================================================


class TestConnections:
    def test_add_and_delete(self, editor):
        editor.add_node("Interface", "Card")
        card = editor.flow.find_node("card")
        conn = editor.add_connection("n-api", card.id)
        assert conn in editor.flow.connections
        editor.delete_connection(conn.id)
        assert conn not in editor.flow.connections

    def test_into_trigger_rejected(self, editor):
        with pytest.raises(FlowEditError, match="Cannot create connection to trigger node"):
            editor.add_connection("n-api", "n-trigger")

    def test_out_of_terminal_rejected(self, editor):
        with pytest.raises(FlowEditError, match="Terminal node 'Return'"):
            editor.add_connection("n-return", "n-api")

    def test_self_connection_rejected(self, editor):
        with pytest.raises(FlowEditError, match="itself"):
            editor.add_connection("n-api", "n-api")

    def test_cycle_rejected(self, registry):
        flow = Flow(
            id="f",
            nodes=[
                NodeInstance(id="a", slug="a", name="A", type="Transform"),
                NodeInstance(id="b", slug="b", name="B", type="Transform"),
            ],
        )
        editor = FlowEditor(flow, registry)
        editor.add_connection("a", "b")
        with pytest.raises(CycleDetected, match="circular reference"):
            editor.add_connection("b", "a")

    def test_duplicate_rejected(self, editor):
        with pytest.raises(FlowEditError, match="already exists"):
            editor.add_connection("n-trigger", "n-api")

    def test_missing_endpoint(self, editor):
        with pytest.raises(NodeNotFound):
            editor.add_connection("n-api", "ghost")

    def test_delete_unknown_connection(self, editor):
        with pytest.raises(FlowEditError):
            editor.delete_connection("nope")


# =============================================================================
# Migration
# =============================================================================


class TestMigrateNodeSlugs:
    def test_assigns_slugs_and_rewrites_uuid_references(self, registry):
        api_id = "123e4567-e89b-12d3-a456-426614174000"
        flow = Flow(
            id="legacy",
            nodes=[
                NodeInstance(id=api_id, name="Fetch User", type="ApiCall", parameters={"url": "https://x.test"}),
                NodeInstance(
                    id="r",
                    name="Done",
                    type="Return",
                    parameters={"text": f"{{{{ {api_id}.body.name }}}}"},
                ),
            ],
        )
        editor = FlowEditor(flow, registry)
        assert editor.migrate_node_slugs() is True
        assert editor.flow.get_node(api_id).slug == "fetchUser"
        assert editor.flow.get_node("r").slug == "done"
        assert editor.flow.get_node("r").parameters["text"] == "{{ fetchUser.body.name }}"

    def test_noop_when_already_migrated(self, editor):
        assert editor.migrate_node_slugs() is False
