"""Terminal rendering of flow graphs and run results.

Tree and level views of a FlowDefinition plus a per-node status table for a
finished (or failed) run, built with Rich.
"""

from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from flowengine.core.flow_schema import FlowDefinition, FlowEdge, FlowNode, NodeType
from flowengine.core.models import NodeExecutionStatus
from flowengine.core.state import ExecutionState


def node_statuses(state: ExecutionState | None) -> dict[str, str]:
    """Latest status per node id, as plain strings."""
    if state is None:
        return {}
    return {node_id: result.status.value for node_id, result in state.node_results.items()}


class TerminalGraphRenderer:
    """
    Renders flow graphs in the terminal.

    render_as_tree() follows edges from the first start node and labels
    branch handles ("true"/"false", "loop"/"exit"). render_levels() shows
    topological generations and falls back to declaration order for cyclic
    graphs.
    """

    NODE_STYLES = {
        NodeType.START: ("[>]", "green"),
        NodeType.END: ("[#]", "green"),
        NodeType.ANSWER: ("[A]", "green"),
        NodeType.LLM: ("[L]", "cyan"),
        NodeType.VECTOR_SEARCH: ("[V]", "cyan"),
        NodeType.MCP_TOOL: ("[T]", "cyan"),
        NodeType.PARAMETER_EXTRACTOR: ("[X]", "cyan"),
        NodeType.CONDITION: ("[?]", "magenta"),
        NodeType.LOOP: ("[O]", "yellow"),
        NodeType.ITERATION: ("[I]", "yellow"),
        NodeType.VARIABLE: ("[=]", "blue"),
        NodeType.CODE: ("[C]", "white"),
        NodeType.HTTP_REQUEST: ("[H]", "white"),
    }

    STATUS_COLORS = {
        "success": "green",
        "failed": "red bold",
        "skipped": "dim strikethrough",
    }

    STATUS_MARKS = {
        "success": " ✓",
        "failed": " ✗",
        "skipped": " ⊘",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    @staticmethod
    def _build_edge_map(definition: FlowDefinition) -> dict[str, list[FlowEdge]]:
        edge_map: dict[str, list[FlowEdge]] = {n.id: [] for n in definition.nodes}
        for edge in definition.edges:
            if edge.source in edge_map:
                edge_map[edge.source].append(edge)
        return edge_map

    def _node_text(self, node: FlowNode, statuses: dict[str, str] | None) -> str:
        symbol, color = self.NODE_STYLES.get(node.node_type, ("[ ]", "white"))
        symbol = escape(symbol)
        # Labels come from user-authored flows
        safe_label = escape(node.label)
        status = statuses.get(node.id) if statuses else None
        if status:
            status_color = self.STATUS_COLORS.get(status, "white")
            mark = self.STATUS_MARKS.get(status, "")
            return f"[{status_color}]{symbol} {safe_label}{mark}[/]"
        return f"[{color}]{symbol} {safe_label}[/]"

    def render_as_tree(
        self,
        definition: FlowDefinition,
        statuses: dict[str, str] | None = None,
        title: str = "Flow",
        max_depth: int = 50,
    ) -> Tree:
        """Render the flow as a Rich Tree rooted at the first start node."""
        tree = Tree(f"[bold]{escape(title)}[/]")
        node_map = {n.id: n for n in definition.nodes}
        edge_map = self._build_edge_map(definition)

        start_nodes = definition.get_start_nodes()
        if not start_nodes:
            tree.add("[red]Error: no start node[/]")
            return tree

        self._add_node_to_tree(
            tree, start_nodes[0], statuses, node_map, edge_map, set(), 0, max_depth
        )
        return tree

    def _add_node_to_tree(
        self,
        parent: Tree,
        node: FlowNode,
        statuses: dict[str, str] | None,
        node_map: dict[str, FlowNode],
        edge_map: dict[str, list[FlowEdge]],
        visited: set[str],
        depth: int,
        max_depth: int,
    ):
        if depth >= max_depth:
            parent.add("[dim]... (max depth reached)[/]")
            return
        if node.id in visited:
            parent.add(f"[dim]↩ {escape(node.id)} (loop)[/]")
            return
        visited.add(node.id)

        branch = parent.add(self._node_text(node, statuses))

        body = [n for n in node_map.values() if n.parent_id == node.id]
        if body:
            body_branch = branch.add("[dim]body[/]")
            for body_node in body:
                body_branch.add(self._node_text(body_node, statuses))

        for edge in edge_map.get(node.id, []):
            child = node_map.get(edge.target)
            if child is None:
                continue
            target = branch
            if edge.source_handle:
                target = branch.add(f"[dim]({escape(edge.source_handle)})[/]")
            self._add_node_to_tree(
                target,
                child,
                statuses,
                node_map,
                edge_map,
                visited.copy(),
                depth + 1,
                max_depth,
            )

    def render_levels(
        self, definition: FlowDefinition, statuses: dict[str, str] | None = None
    ) -> str:
        """Render topological generations, one line per level."""
        node_map = {n.id: n for n in definition.nodes}
        levels = definition.topological_levels() or [[n.id for n in definition.nodes]]

        lines = []
        for level_idx, level in enumerate(levels):
            level_nodes = [
                self._node_text(node_map[node_id], statuses)
                for node_id in level
                if node_id in node_map
            ]
            lines.append("  |  ".join(level_nodes))
            if level_idx < len(levels) - 1:
                lines.append("  v")
        return "\n".join(lines)


class StatusTableRenderer:
    """Per-node result table for one run."""

    STATUS_TEXT = {
        NodeExecutionStatus.SUCCESS.value: "[green]✓ Success[/]",
        NodeExecutionStatus.FAILED.value: "[red]✗ Failed[/]",
        NodeExecutionStatus.SKIPPED.value: "[dim]⊘ Skipped[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_status_table(self, definition: FlowDefinition, state: ExecutionState) -> Table:
        table = Table(title=f"Execution: {escape(state.execution_id[:8])}...")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Visits", justify="right")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Output", max_width=40)

        for node in definition.nodes:
            result = state.node_results.get(node.id)
            if result is None:
                status_text = "[dim]○ Not run[/]"
                elapsed = ""
                output: Any = ""
            else:
                status_text = self.STATUS_TEXT.get(result.status.value, result.status.value)
                elapsed = str(result.execution_time_ms)
                output = result.error if result.is_failed else result.output

            output_str = escape(str(output if output is not None else ""))
            if len(output_str) > 40:
                output_str = output_str[:37] + "..."

            table.add_row(
                escape(node.label),
                node.node_type.value,
                status_text,
                str(state.visit_count(node.id)),
                elapsed,
                output_str,
            )

        return table
