"""CLI entry point for the flow engine.

Commands:
- flowengine init: Create .flowengine/config.yaml with engine defaults
- flowengine validate: Check a flow definition
- flowengine visualize: Show a flow graph in the terminal
- flowengine run: Execute a flow with the basic executor set
- flowengine import-dify: Convert a Dify DSL document to a flow definition
- flowengine version: Show version information
"""

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import click
import yaml
from rich.console import Console
from rich.markup import escape

from flowengine.cli_ui.graph_renderer import (
    StatusTableRenderer,
    TerminalGraphRenderer,
    node_statuses,
)
from flowengine.cli_ui.node_inspector import NodeInspector
from flowengine.core.config import CONFIG_DIR, CONFIG_FILE, EngineConfig, load_project_config
from flowengine.core.dsl_parser import DifyDSLParser
from flowengine.core.engine_factory import ExecutionEngineFactory
from flowengine.core.errors import FlowEngineError
from flowengine.core.flow_schema import FlowDefinition
from flowengine.core.models import FlowExecution
from flowengine.core.state import ExecutionState

console = Console()
err_console = Console(stderr=True)


def get_project_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def load_definition(path: str) -> FlowDefinition:
    """Load a flow definition from a JSON or YAML file."""
    text = Path(path).read_text()
    if Path(path).suffix.lower() in (".yaml", ".yml"):
        return FlowDefinition.from_yaml(text)
    return FlowDefinition.from_json(text)


def _load_or_exit(path: str) -> FlowDefinition:
    try:
        return load_definition(path)
    except FlowEngineError as e:
        console.print(f"[red]Error loading '{escape(path)}':[/red] {escape(e.message)}")
        sys.exit(1)


def _parse_input_value(raw: str) -> Any:
    """Decode ``--input`` values as JSON when possible, else keep the string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _collect_inputs(inputs: tuple[str, ...], inputs_file: str | None) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    if inputs_file:
        with open(inputs_file) as f:
            loaded = yaml.safe_load(f)
        if loaded is not None and not isinstance(loaded, dict):
            raise click.BadParameter(
                f"expected a mapping, got {type(loaded).__name__}", param_hint="--inputs-file"
            )
        variables.update(loaded or {})

    for item in inputs:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"'{item}' is not KEY=VALUE", param_hint="--input")
        variables[key] = _parse_input_value(value)
    return variables


@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """Flow Engine - interpret and run node/edge agent flows."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


@main.command()
def init() -> None:
    """Initialize a project configuration."""
    config_dir = get_project_path() / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(
        yaml.safe_dump({"engine": EngineConfig().model_dump()}, sort_keys=False)
    )
    console.print(f"[green]Created {CONFIG_DIR}/{CONFIG_FILE}[/green]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
def validate(flow_file: str) -> None:
    """Validate a flow definition (JSON or YAML)."""
    definition = _load_or_exit(flow_file)

    error = definition.validate()
    if error:
        console.print("[red]Validation errors:[/red]")
        for message in definition.validate_graph():
            console.print(f"  [red]• {escape(message)}[/]")
        sys.exit(1)

    warnings = definition.validate_graph()
    for warning in warnings:
        console.print(f"  [yellow]• {escape(warning)}[/]")
    console.print(
        f"[green]✓ Flow is valid[/green] ({len(definition.nodes)} nodes, "
        f"{len(definition.edges)} edges)"
    )


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--levels", is_flag=True, help="Show topological levels instead of a tree")
def visualize(flow_file: str, levels: bool) -> None:
    """Visualize a flow graph in the terminal."""
    definition = _load_or_exit(flow_file)
    renderer = TerminalGraphRenderer(console)

    if levels:
        rendered = renderer.render_levels(definition)
        if rendered:
            console.print(rendered)
    else:
        console.print(renderer.render_as_tree(definition, title=Path(flow_file).name))

    console.print()
    console.print(f"[bold]Nodes:[/] {len(definition.nodes)}")
    console.print(f"[bold]Edges:[/] {len(definition.edges)}")
    starts = ", ".join(escape(n.id) for n in definition.get_start_nodes()) or "(none)"
    console.print(f"[bold]Start:[/] {starts}")

    messages = definition.validate_graph()
    if definition.validate():
        console.print("\n[red bold]Validation Errors:[/]")
        for message in messages:
            console.print(f"  [red]• {escape(message)}[/]")
    elif messages:
        console.print("\n[yellow bold]Warnings:[/]")
        for message in messages:
            console.print(f"  [yellow]• {escape(message)}[/]")
    else:
        console.print("\n[green]✓ Graph is valid[/]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--input", "-i", "inputs", multiple=True, help="Input variable as KEY=VALUE")
@click.option(
    "--inputs-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML file with input variables",
)
@click.option("--tenant-id", default=None, help="Tenant UUID (default: random)")
@click.option("--user-id", default=None, help="User UUID (default: random)")
@click.option("--session-id", default=None, help="Session id")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Engine pass limit (default: from config.yaml or 1000)",
)
@click.option(
    "--timeout",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Run timeout in seconds (default: from config.yaml, none)",
)
@click.option("--inspect", "inspect_node", default=None, help="Node ID to inspect after the run")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON")
def run(
    flow_file: str,
    inputs: tuple[str, ...],
    inputs_file: str | None,
    tenant_id: str | None,
    user_id: str | None,
    session_id: str | None,
    max_iterations: int | None,
    timeout: float | None,
    inspect_node: str | None,
    as_json: bool,
) -> None:
    """Execute a flow with the built-in executors."""
    definition = _load_or_exit(flow_file)
    variables = _collect_inputs(inputs, inputs_file)

    try:
        config = load_project_config(get_project_path())
    except FlowEngineError as e:
        console.print(f"[red]Config error:[/red] {escape(e.message)}")
        sys.exit(1)

    engine = ExecutionEngineFactory.create_basic(config)
    if max_iterations is not None:
        engine = engine.with_max_iterations(max_iterations)
    if timeout is not None:
        engine = engine.with_run_timeout(timeout)

    execution = FlowExecution.new(
        flow_id=Path(flow_file).stem,
        tenant_id=tenant_id or str(uuid.uuid4()),
        user_id=user_id or str(uuid.uuid4()),
        session_id=session_id,
        input_data=variables,
    )

    state: ExecutionState | None
    try:
        state = asyncio.run(engine.execute(execution, definition, variables))
    except FlowEngineError as e:
        state = e.state

    if as_json:
        payload = {
            "execution": execution.model_dump(mode="json", exclude={"output_data"}),
            "outputs": state.get_variable("outputs") if state else None,
            "visited_nodes": state.visited_nodes if state else [],
        }
        click.echo(json.dumps(payload, indent=2, default=str))
    else:
        if state is not None:
            console.print(StatusTableRenderer(console).render_status_table(definition, state))
            if inspect_node:
                NodeInspector(console).inspect_node(definition, state, inspect_node)

        if execution.is_completed:
            outputs = state.get_variable("outputs") if state else None
            console.print("[green]Flow completed successfully[/green]")
            if outputs is not None:
                console.print_json(json.dumps(outputs, default=str))
        else:
            console.print(
                f"[red]Flow {execution.status.value}:[/red] "
                f"{escape(execution.error_message or '')}"
            )
            if state is not None:
                tree = TerminalGraphRenderer(console).render_as_tree(
                    definition, node_statuses(state), title=Path(flow_file).name
                )
                console.print(tree)

    if not execution.is_completed:
        sys.exit(1)


@main.command("import-dify")
@click.argument("dsl_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write flow JSON here")
def import_dify(dsl_file: str, output: str | None) -> None:
    """Convert a Dify DSL document (JSON or YAML) to a flow definition."""
    text = Path(dsl_file).read_text()
    parser = DifyDSLParser()

    try:
        warnings = parser.validate(text)
        imported = parser.parse(text)
    except FlowEngineError as e:
        console.print(f"[red]Import failed:[/red] {escape(e.message)}")
        sys.exit(1)

    for warning in warnings:
        err_console.print(f"[yellow]Warning:[/yellow] {escape(warning)}", highlight=False)

    flow_json = imported.definition.to_json_str(indent=2)
    if output:
        Path(output).write_text(flow_json + "\n")
        console.print(
            f"[green]Imported {len(imported.definition.nodes)} nodes to "
            f"{escape(output)}[/green]"
        )
    else:
        click.echo(flow_json)


@main.command()
def version() -> None:
    """Show version information."""
    from flowengine import __version__

    console.print(f"Flow Engine v{__version__}")


if __name__ == "__main__":
    main()
