"""Rich terminal views for execution traces."""

from storyflow.cli_ui.node_inspector import NodeInspector

__all__ = ["NodeInspector"]
