"""Rich terminal rendering for flows and execution traces."""

from toolflow.cli_ui.graph_renderer import FlowGraphRenderer
from toolflow.cli_ui.trace_renderer import TraceRenderer

__all__ = [
    "FlowGraphRenderer",
    "TraceRenderer",
]
