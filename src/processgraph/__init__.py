"""Public API for processgraph."""
from .codec import (
    CodecError,
    export_interchange_xml,
    export_snapshot,
    import_interchange_xml,
    import_snapshot,
    parse_interchange_xml,
    parse_snapshot,
)
from .model import Connection, InteractionMode, MultiInstance, Node, NodeType, Point
from .preview import render_png
from .routing import RoutedPath, route_connection
from .store import GraphStore

__all__ = [
    "GraphStore",
    "Node",
    "Connection",
    "NodeType",
    "MultiInstance",
    "InteractionMode",
    "Point",
    "RoutedPath",
    "route_connection",
    "render_png",
    "CodecError",
    "export_snapshot",
    "import_snapshot",
    "parse_snapshot",
    "export_interchange_xml",
    "import_interchange_xml",
    "parse_interchange_xml",
]
