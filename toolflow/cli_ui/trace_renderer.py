"""Terminal rendering of execution traces.

SECURITY: all strings taken from flows or node outputs are escaped to prevent
Rich markup injection.
"""

import json
from typing import Any

from rich.console import Console, Group
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from toolflow.core.models import ExecutionStatus, FlowExecution, NodeExecutionStatus


def _preview(value: Any, limit: int = 60) -> str:
    if value is None:
        return ""
    if isinstance(value, dict):
        value = {k: v for k, v in value.items() if k != "_execution"}
    try:
        text = json.dumps(value, default=str)
    except (TypeError, ValueError):
        text = str(value)
    return text if len(text) <= limit else text[: limit - 3] + "..."


class TraceRenderer:
    """Renders a ``FlowExecution`` as a node table plus a summary panel."""

    STATUS_TEXT = {
        NodeExecutionStatus.COMPLETED: "[green]✓ Completed[/]",
        NodeExecutionStatus.ERROR: "[red]✗ Error[/]",
        NodeExecutionStatus.PENDING: "[dim]○ Pending[/]",
    }

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def render_table(self, execution: FlowExecution) -> Table:
        table = Table(title=f"Execution: {escape(execution.id[:8])}...")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Node", style="cyan")
        table.add_column("Type", style="magenta")
        table.add_column("Status", justify="center")
        table.add_column("Time (ms)", justify="right")
        table.add_column("Output", max_width=60)

        for index, entry in enumerate(execution.node_executions, start=1):
            timing = f"{entry.execution_time_ms:.1f}" if entry.execution_time_ms is not None else ""
            if entry.status == NodeExecutionStatus.ERROR:
                detail = f"[red]{escape(entry.error or '')}[/]"
            else:
                detail = escape(_preview(entry.output_data))
            table.add_row(
                str(index),
                escape(entry.node_name),
                escape(entry.node_type),
                self.STATUS_TEXT.get(entry.status, escape(str(entry.status))),
                timing,
                detail,
            )
        return table

    def render_summary(self, execution: FlowExecution) -> Panel:
        if execution.status == ExecutionStatus.FULFILLED:
            title, border = "[green]Fulfilled[/]", "green"
        elif execution.status == ExecutionStatus.ERROR:
            title, border = "[red]Error[/]", "red"
        else:
            title, border = "[yellow]Pending[/]", "yellow"

        lines = [
            f"Flow: {escape(execution.flow_name)} [dim]({escape(execution.flow_id)})[/]",
            f"Tool: {escape(execution.tool_name or '-')}",
        ]
        if execution.duration_ms is not None:
            lines.append(f"Duration: {execution.duration_ms:.1f}ms")

        info = execution.error_info
        if info is not None:
            where = f" in node '{escape(info.node_name)}'" if info.node_name else ""
            lines.append(f"[red]{escape(info.error_type or 'Error')}{where}: {escape(info.message)}[/]")
        elif execution.status == ExecutionStatus.FULFILLED:
            lines.append(f"Output: {escape(_preview(execution.final_output(), limit=200))}")

        return Panel("\n".join(lines), title=title, border_style=border)

    def render(self, execution: FlowExecution) -> Group:
        return Group(self.render_table(execution), self.render_summary(execution))

    def print(self, execution: FlowExecution) -> None:
        self.console.print(self.render(execution))
