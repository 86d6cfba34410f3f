"""Terminal UI components for flow visualization.

- Tree and level views of flow graphs
- Per-node status tables for a run
- Node inspection
"""

from flowengine.cli_ui.graph_renderer import StatusTableRenderer, TerminalGraphRenderer
from flowengine.cli_ui.node_inspector import NodeInspector

__all__ = [
    "TerminalGraphRenderer",
    "StatusTableRenderer",
    "NodeInspector",
]
