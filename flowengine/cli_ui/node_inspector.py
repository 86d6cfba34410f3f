"""Node inspection for debugging flow runs."""

import json

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from flowengine.core.flow_schema import FlowDefinition, FlowNode
from flowengine.core.state import ExecutionState


class NodeInspector:
    """
    Shows node configuration and the latest result of a run.

    All user-controlled strings are escaped before they reach Rich markup.
    """

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def inspect_node(
        self,
        definition: FlowDefinition,
        state: ExecutionState,
        node_id: str | None = None,
    ):
        """
        Print details for ``node_id``, or a summary of every node when None.
        """
        if node_id:
            node = definition.get_node(node_id)
            if node:
                self._inspect_node(node, state)
            else:
                self.console.print(f"[red]Node '{escape(node_id)}' not found[/]")
            return

        self._list_nodes(definition, state)

    def _list_nodes(self, definition: FlowDefinition, state: ExecutionState):
        table = Table(title="Flow Nodes")
        table.add_column("ID")
        table.add_column("Type")
        table.add_column("Label")
        table.add_column("Status")

        for node in definition.nodes:
            result = state.node_results.get(node.id)
            table.add_row(
                escape(node.id),
                node.node_type.value,
                escape(node.title) if node.title else "-",
                result.status.value if result else "not run",
            )

        self.console.print(table)

    @staticmethod
    def _json_panel(value, title: str) -> Panel:
        try:
            text = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError):
            return Panel(f"[dim]<Not JSON: {escape(repr(value)[:100])}>[/]", title=title)
        return Panel(Syntax(text, "json", theme="monokai"), title=title)

    def _inspect_node(self, node: FlowNode, state: ExecutionState):
        safe_id = escape(node.id)
        result = state.node_results.get(node.id)

        info_parts = [
            Text.from_markup(f"[bold]ID:[/] {safe_id}"),
            Text.from_markup(f"[bold]Type:[/] {node.node_type.value}"),
            Text.from_markup(f"[bold]Label:[/] {escape(node.title or '-')}"),
            Text.from_markup(f"[bold]Visits:[/] {state.visit_count(node.id)}"),
        ]
        if node.parent_id:
            info_parts.append(Text.from_markup(f"[bold]Parent:[/] {escape(node.parent_id)}"))
        if result:
            info_parts.append(Text.from_markup(f"[bold]Status:[/] {result.status.value}"))
            info_parts.append(
                Text.from_markup(f"[bold]Time:[/] {result.execution_time_ms} ms")
            )
        if node.data:
            info_parts.append(Text(""))
            info_parts.append(Text.from_markup("[bold]Configuration:[/]"))
            info_parts.append(
                Syntax(json.dumps(node.data, indent=2, default=str), "json", theme="monokai")
            )

        self.console.print(Panel(Group(*info_parts), title=f"Node: {safe_id}"))

        if result is None:
            self.console.print(f"[yellow]Node {safe_id} did not run[/]")
            return
        if result.output is not None:
            self.console.print(self._json_panel(result.output, "Output Data"))
        if result.error:
            self.console.print(
                Panel(f"[red]{escape(result.error)}[/]", title="Error", style="red")
            )
