"""Tests for terminal rendering of flows and run results."""

from io import StringIO

import pytest
from rich.console import Console

from flowengine.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    node_statuses,
)
from flowengine.cli_ui.node_inspector import NodeInspector
from flowengine.core.flow_schema import FlowDefinition
from flowengine.core.models import NodeExecutionResult


@pytest.fixture
def console():
    return Console(file=StringIO(), width=120, color_system=None)


def rendered(console: Console, renderable) -> str:
    console.print(renderable)
    return console.file.getvalue()


@pytest.fixture
def definition(sample_flow_json):
    return FlowDefinition.from_json(sample_flow_json)


@pytest.fixture
def run_state(state):
    state.record_node_result(NodeExecutionResult.success("start", {"inputs": {"n": 5}}))
    state.record_node_result(NodeExecutionResult.failed("check", "Variable not found: x"))
    return state


class TestTreeRendering:
    def test_tree_follows_edges_and_labels_handles(self, console, definition):
        output = rendered(console, TerminalGraphRenderer(console).render_as_tree(definition))

        assert "[>] start" in output
        assert "[?] check" in output
        assert "(true)" in output and "(false)" in output
        assert "[#] small" in output

    def test_statuses_are_marked(self, console, definition, run_state):
        renderer = TerminalGraphRenderer(console)

        output = rendered(console, renderer.render_as_tree(definition, node_statuses(run_state)))

        assert "start ✓" in output
        assert "check ✗" in output

    def test_no_start_node(self, console, make_node, make_flow):
        tree = TerminalGraphRenderer(console).render_as_tree(make_flow([make_node("e", "end")]))
        assert "Error: no start node" in rendered(console, tree)

    def test_cycle_is_marked_not_followed(self, console, make_node, make_edge, make_flow):
        definition = make_flow(
            [make_node("s", "start"), make_node("l", "loop"), make_node("e", "end")],
            [make_edge("s", "l"), make_edge("l", "l", "loop"), make_edge("l", "e", "exit")],
        )

        output = rendered(console, TerminalGraphRenderer(console).render_as_tree(definition))

        assert "↩ l (loop)" in output

    def test_iteration_body_branch(self, console, make_node, make_edge, make_flow):
        definition = make_flow(
            [make_node("s", "start"), make_node("it", "iteration"),
             make_node("b", "code", parent_id="it", title="Body code"), make_node("e", "end")],
            [make_edge("s", "it"), make_edge("it", "e")],
        )

        output = rendered(console, TerminalGraphRenderer(console).render_as_tree(definition))

        assert "body" in output
        assert "[C] Body code" in output

    def test_labels_are_escaped(self, console, make_node, make_flow):
        definition = make_flow([make_node("s", "start", title="[bold]x[/bold]")])

        output = rendered(console, TerminalGraphRenderer(console).render_as_tree(definition))

        assert "[bold]x[/bold]" in output


class TestLevelRendering:
    def test_levels(self, console, definition):
        text = TerminalGraphRenderer(console).render_levels(definition)

        lines = text.splitlines()
        assert lines[0].endswith("start[/]")
        assert "v" in lines[1]
        assert "check" in lines[2]

    def test_cyclic_graph_falls_back_to_declaration_order(self, console, make_node, make_edge, make_flow):
        definition = make_flow(
            [make_node("a", "code"), make_node("b", "code")],
            [make_edge("a", "b"), make_edge("b", "a")],
        )

        text = TerminalGraphRenderer(console).render_levels(definition)

        assert len(text.splitlines()) == 1


class TestStatusTable:
    def test_rows_per_node(self, console, definition, run_state):
        table = StatusTableRenderer(console).render_status_table(definition, run_state)

        assert table.row_count == 4
        output = rendered(console, table)
        assert "Success" in output
        assert "Failed" in output
        assert "Variable not found: x" in output
        assert "Not run" in output


class TestNodeInspector:
    def test_inspect_single_node(self, console, definition, run_state):
        NodeInspector(console).inspect_node(definition, run_state, "check")
        output = console.file.getvalue()

        assert "Node: check" in output
        assert "Type: condition" in output
        assert "Status: failed" in output
        assert "Variable not found: x" in output

    def test_inspect_node_that_did_not_run(self, console, definition, run_state):
        NodeInspector(console).inspect_node(definition, run_state, "big")
        assert "did not run" in console.file.getvalue()

    def test_unknown_node(self, console, definition, run_state):
        NodeInspector(console).inspect_node(definition, run_state, "ghost")
        assert "Node 'ghost' not found" in console.file.getvalue()

    def test_list_nodes(self, console, definition, run_state):
        NodeInspector(console).inspect_node(definition, run_state)
        output = console.file.getvalue()

        assert "Flow Nodes" in output
        assert "not run" in output
