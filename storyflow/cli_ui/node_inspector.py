"""Terminal rendering of execution traces.

One-shot views over what the recorder stored: an execution summary panel, the
per-node trace table and detailed panels for every iteration of one node.
"""

import json

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from storyflow.core.models import Execution, NodeResult
from storyflow.core.state import Database

# Status colors - string keys so DB values and enum values look up the same
STATUS_COLORS = {
    "pending": "dim",
    "running": "blue bold",
    "paused": "yellow",
    "completed": "green",
    "failed": "red bold",
    "skipped": "dim strikethrough",
    "cancelled": "yellow",
    "timeout": "magenta",
}


def _status_text(status: str) -> str:
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{escape(status)}[/]"


def _preview(text: str | None, width: int = 60) -> str:
    if not text:
        return "-"
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 3] + "..."


class NodeInspector:
    """
    Trace inspection in the terminal.

    SECURITY: All user-controlled strings are escaped to prevent Rich markup injection.
    """

    def __init__(self, db: Database, console: Console | None = None):
        self.db = db
        self.console = console or Console()

    def show_execution(self, execution: Execution) -> None:
        safe_error = escape(execution.error) if execution.error else "-"
        finished = execution.finished_at.isoformat() if execution.finished_at else "-"
        self.console.print(
            Panel(
                f"[bold]Workflow:[/] {escape(execution.workflow_id)}\n"
                f"[bold]Status:[/] {_status_text(execution.status.value)}\n"
                f"[bold]Started:[/] {execution.started_at.isoformat()}\n"
                f"[bold]Finished:[/] {finished}\n"
                f"[bold]Error:[/] {safe_error}",
                title=f"Execution: {escape(execution.id)}",
            )
        )

    def render_trace_table(self, results: list[NodeResult]) -> Table:
        table = Table(title="Node Trace")
        table.add_column("Node")
        table.add_column("Iter", justify="right")
        table.add_column("Status")
        table.add_column("Output")
        table.add_column("Error")

        for result in results:
            table.add_row(
                escape(result.node_id),
                str(result.iteration),
                _status_text(result.status.value),
                escape(_preview(result.output)),
                escape(_preview(result.error, 40)),
            )
        return table

    def inspect_execution(self, execution_id: str, node_id: str | None = None) -> bool:
        """Print the trace of an execution, or every iteration of one node.

        Returns False if there was nothing to show.
        """
        execution = self.db.get_execution(execution_id)
        if execution is None:
            self.console.print(f"[red]Execution '{escape(execution_id)}' not found[/]")
            return False

        if node_id is None:
            self.show_execution(execution)
            self.console.print(self.render_trace_table(self.db.get_node_results(execution_id)))
            if execution.final_output:
                self.console.print(Panel(escape(execution.final_output), title="Final Output"))
            return True

        results = self.db.get_node_results(execution_id, node_id)
        if not results:
            self.console.print(f"[yellow]No trace for node '{escape(node_id)}'[/]")
            return False
        for result in results:
            self._inspect_result(result)
        return True

    def _inspect_result(self, result: NodeResult) -> None:
        """Show detailed information for one node iteration"""
        safe_id = escape(result.node_id)
        info_parts = [
            Text.from_markup(f"[bold]Node:[/] {safe_id}"),
            Text.from_markup(f"[bold]Iteration:[/] {result.iteration}"),
            Text.from_markup(f"[bold]Status:[/] {_status_text(result.status.value)}"),
        ]
        if result.resolved_config:
            info_parts.append(Text(""))
            info_parts.append(Text.from_markup("[bold]Resolved config:[/]"))
            config_json = json.dumps(result.resolved_config, indent=2, ensure_ascii=False)
            info_parts.append(Syntax(config_json, "json", theme="monokai"))

        # Group keeps the Syntax renderable intact inside the panel
        self.console.print(
            Panel(Group(*info_parts), title=f"Node: {safe_id} #{result.iteration}")
        )

        if result.input:
            self.console.print(Panel(escape(result.input), title="Input"))
        if result.output:
            self.console.print(Panel(escape(result.output), title="Output"))
        if result.error:
            self.console.print(Panel(f"[red]{escape(result.error)}[/]", title="Error", style="red"))
