"""CLI entry point for storyflow.

Commands:
- storyflow init: Create .storyflow/config.yaml and the execution database
- storyflow validate: Check a workflow file without running it
- storyflow run: Execute a workflow file with the configured AI CLIs
- storyflow history: List recorded executions
- storyflow inspect: Show the per-node trace of an execution
- storyflow version: Print the version
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import click
import pydantic
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

from storyflow import __version__
from storyflow.cli_ui.node_inspector import STATUS_COLORS, NodeInspector
from storyflow.core.ai import CLIAdapter
from storyflow.core.blocks import BlockMap, validate_structure
from storyflow.core.config import (
    CONFIG_DIR,
    CONFIG_FILE,
    DEFAULT_CONFIG_YAML,
    ConfigError,
    EngineConfig,
    load_config,
)
from storyflow.core.errors import StructuralError
from storyflow.core.executor import EventType, ExecutionEvent, ExecutionResult, WorkflowExecutor
from storyflow.core.injection import SettingsLibrary
from storyflow.core.recorder import SQLiteRecorder
from storyflow.core.state import Database
from storyflow.core.workflow_schema import Workflow

console = Console()


def get_project_path() -> Path:
    """Get the project path (current directory)."""
    return Path.cwd()


def _load_engine_config() -> EngineConfig:
    try:
        return load_config(get_project_path())
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def load_workflow(path: Path, config: EngineConfig | None = None) -> Workflow:
    """Read a YAML or JSON workflow file.

    ``loop_max_count`` and ``timeout_seconds`` fall back to the engine
    configuration when the file omits them.

    Raises:
        ValueError: unreadable file or content that is not a mapping.
        pydantic.ValidationError: the mapping does not describe a workflow.
    """
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data: Any = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ValueError(f"Error parsing '{path}': {e}") from e

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid content in '{path}'. Expected a mapping, got {type(data).__name__}."
        )
    if config is not None:
        data.setdefault("loop_max_count", config.loop_max_count)
        data.setdefault("timeout_seconds", config.timeout_seconds)
    return Workflow.model_validate(data)


def _load_workflow_or_exit(workflow_file: str, config: EngineConfig) -> Workflow:
    try:
        return load_workflow(Path(workflow_file), config)
    except pydantic.ValidationError as e:
        console.print("[red]Error validating workflow schema:[/red]")
        for err in e.errors():
            loc = ".".join(str(x) for x in err["loc"])
            console.print(f"  - {escape(loc)}: {escape(err['msg'])}")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        sys.exit(1)


def _open_database(config: EngineConfig) -> Database | None:
    db_path = config.database_path(get_project_path())
    if not db_path.exists():
        console.print("[yellow]No storyflow database found. Run 'storyflow init' first.[/yellow]")
        return None
    return Database(db_path)


@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool) -> None:
    """storyflow - creative-writing workflow engine.

    Runs ordered node lists (AI calls, text transforms, loops, conditions and
    parallel blocks) against AI CLIs used as stateless workers.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@main.command()
def init() -> None:
    """Initialize a project directory for storyflow."""
    project_path = get_project_path()
    config_dir = project_path / CONFIG_DIR
    config_path = config_dir / CONFIG_FILE

    if config_path.exists():
        console.print("[yellow]Project already initialized[/yellow]")
        return

    config_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)

    config = load_config(project_path)
    db_path = config.database_path(project_path)
    Database(db_path)

    console.print(
        Panel(
            "[green]Project initialized![/green]\n\n"
            f"Created: {config_dir}\n"
            f"- {CONFIG_FILE}: Engine configuration\n"
            f"- {db_path.name}: Execution history database",
            title="storyflow Initialized",
        )
    )


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
def validate(workflow_file: str) -> None:
    """Validate a workflow file without executing it."""
    config = _load_engine_config()
    workflow = _load_workflow_or_exit(workflow_file, config)

    try:
        block_map = validate_structure(workflow)
    except StructuralError as e:
        console.print("[red]Validation errors:[/red]")
        for problem in e.problems:
            console.print(f"  - {escape(problem)}")
        sys.exit(1)

    console.print("[green]Workflow validation passed[/green]")
    console.print(f"  Nodes: {len(workflow.nodes)}")
    console.print(f"  Blocks: {len(block_map.blocks)}")
    if block_map.blocks:
        console.print(_block_tree(block_map))


def _block_tree(block_map: BlockMap) -> Tree:
    tree = Tree("[bold]Block nesting[/]")

    def add(parent: Tree, block_id: str) -> None:
        block = block_map.get(block_id)
        branch = parent.add(f"{escape(block_id)} [dim]({block.kind})[/]")
        for child in block_map.children(block_id):
            add(branch, child)

    for root in block_map.roots():
        add(tree, root)
    return tree


def _print_stream_chunk(event: ExecutionEvent) -> None:
    # Item-runs stream concurrently; only the main sequence is echoed
    if event.type == EventType.NODE_STREAMING and event.item_index is None:
        console.out(event.content or "", end="", highlight=False)
    elif event.type == EventType.NODE_COMPLETED and event.node_type == "ai_chat":
        if event.item_index is None:
            console.out("")


def _print_result(workflow: Workflow, result: ExecutionResult) -> None:
    table = Table(title=f"Execution {escape(result.execution_id)}")
    table.add_column("Node")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Runs", justify="right")

    for node in workflow.ordered_nodes():
        state = result.node_states.get(node.id)
        status = state.status.value if state else "pending"
        color = STATUS_COLORS.get(status, "white")
        table.add_row(
            escape(node.display_name),
            escape(node.type),
            f"[{color}]{status}[/]",
            str(state.iteration) if state else "-",
        )
    console.print(table)

    if result.output:
        console.print(Panel(escape(result.output), title="Output"))
    if result.error:
        where = f" at '{escape(result.failed_node_id)}'" if result.failed_node_id else ""
        console.print(f"[red]Error{where}:[/red] {escape(result.error)}")
    console.print(f"[dim]Elapsed: {result.elapsed_seconds:.1f}s[/dim]")


@main.command()
@click.argument("workflow_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--input", "-i", "input_text", default="", help="Input text for the start node")
@click.option(
    "--settings",
    "-s",
    "settings_file",
    type=click.Path(exists=True, dir_okay=False),
    help="YAML file with settings and setting prompts",
)
@click.option("--stream", is_flag=True, help="Echo AI output as it streams")
def run(workflow_file: str, input_text: str, settings_file: str | None, stream: bool) -> None:
    """Execute a workflow file."""
    config = _load_engine_config()
    workflow = _load_workflow_or_exit(workflow_file, config)

    try:
        settings = SettingsLibrary.from_file(Path(settings_file)) if settings_file else None
    except (OSError, yaml.YAMLError, pydantic.ValidationError) as e:
        console.print(f"[red]Error loading settings:[/red] {escape(str(e))}")
        sys.exit(1)

    db = Database(config.database_path(get_project_path()))
    adapter = CLIAdapter(
        providers=config.provider_commands(),
        default_provider=config.default_provider,
    )
    executor = WorkflowExecutor(workflow, adapter=adapter, settings=settings)
    executor.add_sink(SQLiteRecorder(db))
    if stream:
        executor.add_listener(_print_stream_chunk)

    console.print(f"\n[bold]Running workflow:[/bold] {escape(workflow.name or workflow.id)}")
    console.print(f"[dim]Execution ID: {executor.execution_id}[/dim]\n")

    try:
        result = asyncio.run(executor.execute(input_text))
    except StructuralError as e:
        console.print("[red]Validation errors:[/red]")
        for problem in e.problems:
            console.print(f"  - {escape(problem)}")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]Execution {executor.execution_id} cancelled[/yellow]")
        sys.exit(130)

    _print_result(workflow, result)
    if result.status.value != "completed":
        sys.exit(1)


@main.command()
@click.option("--workflow-id", "-w", help="Filter by workflow ID")
@click.option("--limit", "-n", type=int, default=20, help="Number of executions to show")
def history(workflow_id: str | None, limit: int) -> None:
    """List recorded executions, most recent first."""
    db = _open_database(_load_engine_config())
    if db is None:
        return

    executions = db.list_executions(workflow_id=workflow_id, limit=limit)
    if not executions:
        console.print("[dim]No executions recorded[/dim]")
        return

    table = Table(title="Executions")
    table.add_column("ID")
    table.add_column("Workflow")
    table.add_column("Status")
    table.add_column("Started")
    table.add_column("Error")
    for execution in executions:
        status = execution.status.value
        table.add_row(
            escape(execution.id),
            escape(execution.workflow_id),
            f"[{STATUS_COLORS.get(status, 'white')}]{status}[/]",
            execution.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            escape(execution.error or "-"),
        )
    console.print(table)


@main.command()
@click.argument("execution_id")
@click.option("--node", "-n", help="Specific node ID to inspect")
def inspect(execution_id: str, node: str | None) -> None:
    """Inspect an execution's per-node trace.

    By default, shows the execution summary and every node result.
    Use --node to show every iteration of one node in detail.
    """
    db = _open_database(_load_engine_config())
    if db is None:
        return

    inspector = NodeInspector(db, console)
    if not inspector.inspect_execution(execution_id, node):
        sys.exit(1)


@main.command()
def version() -> None:
    """Print the storyflow version."""
    console.print(f"storyflow {__version__}")


if __name__ == "__main__":
    main()
