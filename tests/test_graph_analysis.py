"""Tests for graph analysis: cycle checks, reachability and execution order."""

from __future__ import annotations

import pytest

from toolflow.core.graph_analysis import (
    CycleDetected,
    find_cycle,
    find_downstream_node_ids,
    find_upstream_node_ids,
    get_action_execution_order,
    get_execution_order,
    would_create_cycle,
)


@pytest.fixture
def diamond(connect):
    """A->B, A->C, B->D, C->D"""
    return [connect("A", "B"), connect("A", "C"), connect("B", "D"), connect("C", "D")]


# =============================================================================
# Cycle Checks
# =============================================================================


class TestWouldCreateCycle:
    """Tests for would_create_cycle."""

    def test_back_edge_closes_cycle(self, diamond):
        """D->A closes a loop because A reaches D."""
        assert would_create_cycle("D", "A", diamond) is True

    def test_forward_edge_is_safe(self, diamond):
        """A->D adds a shortcut but no loop."""
        assert would_create_cycle("A", "D", diamond) is False

    def test_sibling_edge_is_safe(self, diamond):
        assert would_create_cycle("B", "C", diamond) is False
        assert would_create_cycle("C", "B", diamond) is False

    def test_self_connection_is_cycle(self):
        assert would_create_cycle("A", "A", []) is True

    def test_empty_graph(self):
        assert would_create_cycle("A", "B", []) is False

    def test_long_chain(self, connect):
        """Path target->...->source through many hops is found."""
        conns = [connect(f"n{i}", f"n{i + 1}") for i in range(50)]
        assert would_create_cycle("n50", "n0", conns) is True
        assert would_create_cycle("n0", "n50", conns) is False

    def test_matches_path_existence(self, diamond):
        """True exactly when a path target -> source exists."""
        nodes = ["A", "B", "C", "D"]
        for source in nodes:
            for target in nodes:
                if source == target:
                    continue
                path_exists = source in find_downstream_node_ids(target, diamond)
                assert would_create_cycle(source, target, diamond) is path_exists


class TestFindCycle:
    """Tests for find_cycle."""

    def test_acyclic_returns_none(self, diamond):
        assert find_cycle(diamond) is None

    def test_reports_cycle_nodes(self, connect):
        conns = [connect("A", "B"), connect("B", "C"), connect("C", "A"), connect("C", "D")]
        cycle = find_cycle(conns)
        assert cycle is not None
        assert set(cycle) == {"A", "B", "C"}


# =============================================================================
# Reachability
# =============================================================================


class TestReachability:
    """Tests for upstream/downstream BFS."""

    def test_diamond_upstream(self, diamond):
        assert find_upstream_node_ids("D", diamond) == {"A", "B", "C"}

    def test_diamond_downstream(self, diamond):
        assert find_downstream_node_ids("A", diamond) == {"B", "C", "D"}

    def test_duality(self, diamond):
        """X is upstream of Y iff Y is downstream of X."""
        for x in "ABCD":
            for y in "ABCD":
                assert (x in find_upstream_node_ids(y, diamond)) == (
                    y in find_downstream_node_ids(x, diamond)
                )

    def test_excludes_self(self, diamond):
        assert "A" not in find_downstream_node_ids("A", diamond)
        assert "D" not in find_upstream_node_ids("D", diamond)

    def test_isolated_node(self, diamond):
        assert find_upstream_node_ids("Z", diamond) == set()
        assert find_downstream_node_ids("Z", diamond) == set()

    def test_terminates_on_cycle(self, connect):
        conns = [connect("A", "B"), connect("B", "A")]
        assert find_downstream_node_ids("A", conns) == {"B"}


# =============================================================================
# Execution Order
# =============================================================================


class TestExecutionOrder:
    """Tests for get_execution_order."""

    def test_trigger_first_and_dependencies_respected(self, diamond):
        order = get_execution_order("A", ["A", "B", "C", "D"], diamond)
        assert order[0] == "A"
        assert order[-1] == "D"
        assert set(order) == {"A", "B", "C", "D"}

    def test_ties_follow_node_order(self, diamond):
        assert get_execution_order("A", ["A", "C", "B", "D"], diamond) == ["A", "C", "B", "D"]
        assert get_execution_order("A", ["A", "B", "C", "D"], diamond) == ["A", "B", "C", "D"]

    def test_only_reachable_nodes(self, connect):
        conns = [connect("T", "X"), connect("U", "Y")]
        assert get_execution_order("T", ["T", "U", "X", "Y"], conns) == ["T", "X"]

    def test_node_waits_for_all_reachable_inputs(self, connect):
        """A join node runs after both branches even when declared early."""
        conns = [connect("T", "A"), connect("A", "B"), connect("B", "J"), connect("T", "J")]
        order = get_execution_order("T", ["T", "J", "A", "B"], conns)
        assert order.index("J") > order.index("B")

    def test_action_edges_not_followed(self, connect):
        conns = [
            connect("T", "UI"),
            connect("UI", "Followup", source_handle="action:submit"),
        ]
        assert get_execution_order("T", ["T", "UI", "Followup"], conns) == ["T", "UI"]

    def test_cycle_raises(self, connect):
        conns = [connect("T", "A"), connect("A", "B"), connect("B", "A")]
        with pytest.raises(CycleDetected) as exc_info:
            get_execution_order("T", ["T", "A", "B"], conns)
        assert set(exc_info.value.cycle) == {"A", "B"}

    def test_cycle_outside_reachable_subgraph_ignored(self, connect):
        conns = [connect("T", "A"), connect("X", "Y"), connect("Y", "X")]
        assert get_execution_order("T", ["T", "A", "X", "Y"], conns) == ["T", "A"]


class TestActionExecutionOrder:
    """Tests for get_action_execution_order."""

    @pytest.fixture
    def form(self, connect):
        return [
            connect("T", "UI"),
            connect("UI", "Save", source_handle="action:submit"),
            connect("Save", "Done"),
            connect("UI", "Bye", source_handle="action:cancel"),
            connect("Done", "Later", source_handle="action:again"),
        ]

    def test_walks_only_the_fired_handle(self, form):
        nodes = ["T", "UI", "Save", "Done", "Bye", "Later"]
        assert get_action_execution_order("UI", "submit", nodes, form) == ["Save", "Done"]
        assert get_action_execution_order("UI", "action:cancel", nodes, form) == ["Bye"]

    def test_unwired_action_is_empty(self, form):
        assert get_action_execution_order("UI", "delete", ["T", "UI"], form) == []

    def test_join_after_both_action_targets(self, connect):
        conns = [
            connect("UI", "A", source_handle="action:go"),
            connect("UI", "B", source_handle="action:go"),
            connect("A", "J"),
            connect("B", "J"),
        ]
        order = get_action_execution_order("UI", "go", ["UI", "J", "B", "A"], conns)
        assert order == ["B", "A", "J"]

    def test_cycle_behind_action_raises(self, connect):
        conns = [
            connect("UI", "A", source_handle="action:go"),
            connect("A", "B"),
            connect("B", "A"),
        ]
        with pytest.raises(CycleDetected):
            get_action_execution_order("UI", "go", ["UI", "A", "B"], conns)
