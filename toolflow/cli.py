"""CLI entry point for toolflow.

Commands:
- toolflow validate: Check a flow file for structural problems
- toolflow run: Invoke a flow from one of its triggers
- toolflow action: Run the nodes behind an action handle of a UI node
- toolflow tools: List the tools exposed by active triggers
- toolflow nodes: List the registered node types
- toolflow rename: Rename a node and rewrite references to it
- toolflow upstream: Show the nodes before and after a node
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from toolflow import __version__
from toolflow.cli_ui.graph_renderer import FlowGraphRenderer
from toolflow.cli_ui.trace_renderer import TraceRenderer
from toolflow.core.config import ConfigError, EngineConfig, load_config
from toolflow.core.editor import FlowEditError, FlowEditor
from toolflow.core.engine import (
    FlowExecutor,
    FlowNotFound,
    InactiveTrigger,
    MissingNodeReference,
    TriggerNotFound,
)
from toolflow.core.flow_store import FlowLoadError, InMemoryFlowStore, load_flow_directory, load_flow_file
from toolflow.core.graph_analysis import find_downstream_node_ids, find_upstream_node_ids
from toolflow.core.graph_schema import Flow
from toolflow.core.models import ExecutionStatus, FlowExecution
from toolflow.core.nodes import build_default_registry
from toolflow.core.registry import UnknownNodeType
from toolflow.core.tools import list_tools

console = Console()


def _parse_pairs(pairs: tuple[str, ...], option: str) -> dict[str, str]:
    result = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got '{pair}'", param_hint=option)
        result[key.strip()] = value
    return result


def _load_flow_or_exit(flow_file: str) -> Flow:
    try:
        return load_flow_file(flow_file)
    except FlowLoadError as e:
        console.print(f"[red]Error loading flow:[/red] {escape(str(e))}")
        sys.exit(1)


def _load_config_or_exit(config_path: str | None) -> EngineConfig:
    try:
        return load_config(Path(config_path) if config_path else None)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {escape(str(e))}")
        sys.exit(1)


def _build_store_or_exit(flows_dir: str | None, flow: Flow | None = None) -> InMemoryFlowStore:
    try:
        store = load_flow_directory(flows_dir) if flows_dir else InMemoryFlowStore()
    except FlowLoadError as e:
        console.print(f"[red]Error loading flows:[/red] {escape(str(e))}")
        sys.exit(1)
    if flow is not None:
        store.add(flow)
    return store


def _report_execution(execution: FlowExecution, as_json: bool) -> None:
    if as_json:
        click.echo(execution.model_dump_json(indent=2))
    else:
        TraceRenderer(console).print(execution)

    if execution.status != ExecutionStatus.FULFILLED:
        sys.exit(1)


def _write_flow(flow: Flow, path: Path) -> None:
    data = flow.model_dump(mode="json", exclude_none=True)
    with open(path, "w", encoding="utf-8") as f:
        if path.suffix == ".json":
            json.dump(data, f, indent=2)
            f.write("\n")
        else:
            yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
def main(verbose: bool) -> None:
    """toolflow - run flows of typed nodes as callable tools."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
        )


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Engine config file")
@click.option("--levels", is_flag=True, help="Show topological levels instead of the tree")
def validate(flow_file: str, config_path: str | None, levels: bool) -> None:
    """Validate a flow file and show its structure."""
    flow = _load_flow_or_exit(flow_file)
    config = _load_config_or_exit(config_path)
    registry = build_default_registry(config)

    renderer = FlowGraphRenderer(registry, console)
    if levels:
        console.print(renderer.render_levels(flow))
    else:
        console.print(renderer.render_as_tree(flow))
    console.print()
    console.print(f"[bold]Nodes:[/] {len(flow.nodes)}")
    console.print(f"[bold]Connections:[/] {len(flow.connections)}")
    terminal = [n for n in flow.nodes if n.id in flow.get_terminal_nodes()]
    console.print(
        f"[bold]Terminal nodes:[/] {', '.join(escape(n.name) for n in terminal) or '(none)'}"
    )

    errors = flow.validate_flow(registry)
    if errors:
        console.print("\n[red bold]Validation Errors:[/]")
        for error in errors:
            # SECURITY: escape error messages that may contain user data
            console.print(f"  [red]• {escape(str(error))}[/]")
        sys.exit(1)
    console.print("\n[green]✓ Flow is valid[/]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--trigger", "-t", help="Trigger slug, node id or tool name (default: first active)")
@click.option("--param", "-p", "params", multiple=True, help="Input parameter as KEY=VALUE")
@click.option("--secret", "-s", "secrets", multiple=True, help="Secret as KEY=VALUE")
@click.option(
    "--flows-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Directory of flows available to Call Flow nodes",
)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Engine config file")
@click.option("--json", "as_json", is_flag=True, help="Print the execution trace as JSON")
def run(
    flow_file: str,
    trigger: str | None,
    params: tuple[str, ...],
    secrets: tuple[str, ...],
    flows_dir: str | None,
    config_path: str | None,
    as_json: bool,
) -> None:
    """Run a flow and print its execution trace."""
    initial_params = _parse_pairs(params, "--param")
    secret_values = _parse_pairs(secrets, "--secret")
    flow = _load_flow_or_exit(flow_file)
    config = _load_config_or_exit(config_path)
    store = _build_store_or_exit(flows_dir, flow)

    executor = FlowExecutor(store, build_default_registry(config), config, secrets=secret_values)
    try:
        execution = asyncio.run(executor.invoke(flow.id, trigger, initial_params))
    except (FlowNotFound, TriggerNotFound, InactiveTrigger) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _report_execution(execution, as_json)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("node")
@click.argument("action")
@click.option("--data", "-d", "data", multiple=True, help="Action data as KEY=VALUE")
@click.option("--secret", "-s", "secrets", multiple=True, help="Secret as KEY=VALUE")
@click.option(
    "--flows-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Directory of flows available to Call Flow nodes",
)
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Engine config file")
@click.option("--json", "as_json", is_flag=True, help="Print the execution trace as JSON")
def action(
    flow_file: str,
    node: str,
    action: str,
    data: tuple[str, ...],
    secrets: tuple[str, ...],
    flows_dir: str | None,
    config_path: str | None,
    as_json: bool,
) -> None:
    """Fire ACTION on NODE and run the nodes wired to that action handle."""
    payload = _parse_pairs(data, "--data")
    secret_values = _parse_pairs(secrets, "--secret")
    flow = _load_flow_or_exit(flow_file)
    config = _load_config_or_exit(config_path)
    store = _build_store_or_exit(flows_dir, flow)

    executor = FlowExecutor(store, build_default_registry(config), config, secrets=secret_values)
    try:
        execution = asyncio.run(executor.execute_action(flow.id, node, action, payload))
    except (FlowNotFound, InactiveTrigger, MissingNodeReference) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)
    _report_execution(execution, as_json)


@main.command()
@click.argument("flow_files", nargs=-1, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--flows-dir",
    type=click.Path(exists=True, file_okay=False),
    help="Directory of flows to list",
)
@click.option("--json", "as_json", is_flag=True, help="Print the tool definitions as JSON")
def tools(flow_files: tuple[str, ...], flows_dir: str | None, as_json: bool) -> None:
    """List the tools exposed by the active triggers of FLOW_FILES."""
    store = _build_store_or_exit(flows_dir)
    for flow_file in flow_files:
        store.add(_load_flow_or_exit(flow_file))

    definitions = list_tools(store, build_default_registry())
    if as_json:
        click.echo(json.dumps([t.model_dump(by_alias=True) for t in definitions], indent=2))
        return

    table = Table(title="Tools")
    table.add_column("Name", style="cyan")
    table.add_column("Flow")
    table.add_column("Parameters")
    table.add_column("Description")
    for tool in definitions:
        table.add_row(
            escape(tool.name),
            escape(tool.flow_id),
            escape(", ".join(tool.input_schema.get("properties", {}))) or "-",
            escape(tool.description),
        )
    console.print(table)


@main.command()
def nodes() -> None:
    """List the available node types."""
    registry = build_default_registry()
    table = Table(title="Node Types")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Category", style="magenta")
    table.add_column("Inputs")
    table.add_column("Outputs")
    table.add_column("Description")

    for definition in registry.definitions():
        table.add_row(
            definition.name,
            definition.display_name,
            definition.category,
            ", ".join(definition.inputs) or "-",
            ", ".join(definition.outputs) or "-",
            definition.description,
        )
    console.print(table)


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("node")
@click.argument("new_name")
@click.option("--write", is_flag=True, help="Save the result back to FLOW_FILE")
def rename(flow_file: str, node: str, new_name: str, write: bool) -> None:
    """Rename NODE (slug, id or name) and update references to it."""
    flow = _load_flow_or_exit(flow_file)
    target = flow.find_node(node)
    if target is None:
        console.print(f"[red]Node '{escape(node)}' not found[/red]")
        sys.exit(1)

    editor = FlowEditor(flow, build_default_registry())
    try:
        updated = editor.update_node(target.id, name=new_name)
    except (FlowEditError, UnknownNodeType) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)

    console.print(
        f"Renamed [cyan]{escape(target.name)}[/] ({escape(target.slug or '-')}) -> "
        f"[cyan]{escape(updated.name)}[/] ({escape(updated.slug or '-')})"
    )
    before = {n.id: n.parameters for n in flow.nodes}
    for changed in editor.flow.nodes:
        if changed.id != target.id and before.get(changed.id) != changed.parameters:
            console.print(f"  [dim]updated references in[/] {escape(changed.name)}")

    if write:
        _write_flow(editor.flow, Path(flow_file))
        console.print(f"[green]Saved {escape(flow_file)}[/green]")


@main.command()
@click.argument("flow_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("node")
def upstream(flow_file: str, node: str) -> None:
    """Show the nodes upstream and downstream of NODE."""
    flow = _load_flow_or_exit(flow_file)
    target = flow.find_node(node)
    if target is None:
        console.print(f"[red]Node '{escape(node)}' not found[/red]")
        sys.exit(1)

    def names(ids: set[str]) -> str:
        labels = []
        for n in flow.nodes:
            if n.id in ids:
                labels.append(f"{escape(n.name)} [dim]({escape(n.ref)})[/]")
        return ", ".join(labels) or "[dim](none)[/]"

    console.print(f"[bold]{escape(target.name)}[/]")
    console.print(f"  [bold]Upstream:[/] {names(find_upstream_node_ids(target.id, flow.connections))}")
    console.print(
        f"  [bold]Downstream:[/] {names(find_downstream_node_ids(target.id, flow.connections))}"
    )


if __name__ == "__main__":
    main()
