"""Value types for process diagrams."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, NamedTuple, Optional, Tuple

from .config import DEFAULT_FOOTPRINT, FootprintConfig

XML_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9._-]*$")


class NodeType(str, Enum):
    START = "start"
    MESSAGE_START = "messageStart"
    USER_TASK = "userTask"
    SERVICE_TASK = "serviceTask"
    SUBPROCESS = "subprocess"
    EXCLUSIVE_GATEWAY = "exclusiveGateway"
    PARALLEL_GATEWAY = "parallelGateway"
    EVENT_GATEWAY = "eventGateway"
    MESSAGE_CATCH = "messageCatch"
    TERMINAL = "terminal"
    BOUNDARY = "boundary"

    @classmethod
    def parse(cls, value: str) -> "NodeType":
        """Resolve a type tag, accepting the short tags of older snapshots."""
        try:
            return cls(value)
        except ValueError:
            pass
        legacy = _LEGACY_TYPE_TAGS.get(value)
        if legacy is None:
            raise ValueError(f"unknown node type: {value!r}")
        return legacy


_LEGACY_TYPE_TAGS: Dict[str, NodeType] = {
    "usertask": NodeType.USER_TASK,
    "servicetask": NodeType.SERVICE_TASK,
    "xgateway": NodeType.EXCLUSIVE_GATEWAY,
    "pgateway": NodeType.PARALLEL_GATEWAY,
    "eventgateway": NodeType.EVENT_GATEWAY,
}


class MultiInstance(str, Enum):
    NONE = "none"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class InteractionMode(str, Enum):
    MOVE = "move"
    ADD = "add"
    LINK = "link"
    DELETE = "delete"


class Footprint(str, Enum):
    CIRCLE = "circle"
    SQUARE = "square"
    RECTANGLE = "rectangle"


FOOTPRINT_BY_TYPE: Dict[NodeType, Footprint] = {
    NodeType.START: Footprint.CIRCLE,
    NodeType.MESSAGE_START: Footprint.CIRCLE,
    NodeType.USER_TASK: Footprint.SQUARE,
    NodeType.SERVICE_TASK: Footprint.SQUARE,
    NodeType.SUBPROCESS: Footprint.RECTANGLE,
    NodeType.EXCLUSIVE_GATEWAY: Footprint.CIRCLE,
    NodeType.PARALLEL_GATEWAY: Footprint.CIRCLE,
    NodeType.EVENT_GATEWAY: Footprint.CIRCLE,
    NodeType.MESSAGE_CATCH: Footprint.CIRCLE,
    NodeType.TERMINAL: Footprint.CIRCLE,
    NodeType.BOUNDARY: Footprint.CIRCLE,
}

MULTI_INSTANCE_TYPES = frozenset({NodeType.USER_TASK, NodeType.SERVICE_TASK, NodeType.SUBPROCESS})
NO_INCOMING_TYPES = frozenset({NodeType.START, NodeType.MESSAGE_START})
NO_OUTGOING_TYPES = frozenset({NodeType.TERMINAL})


class Point(NamedTuple):
    """A planar point; ``z`` is the depth axis of the ground plane."""

    x: float
    z: float

    def __add__(self, other):  # type: ignore[override]
        return Point(self.x + other[0], self.z + other[1])

    def __sub__(self, other):
        return Point(self.x - other[0], self.z - other[1])


@dataclass(frozen=True)
class Bounds:
    width: float
    height: float


@dataclass(frozen=True)
class Node:
    id: str
    type: NodeType
    position: Point
    name: str = ""
    description: str = ""
    multi_instance: MultiInstance = MultiInstance.NONE
    parent_id: Optional[str] = None
    bounds: Optional[Bounds] = None

    @property
    def footprint(self) -> Footprint:
        return FOOTPRINT_BY_TYPE[self.type]

    @property
    def is_container(self) -> bool:
        return self.type is NodeType.SUBPROCESS


@dataclass(frozen=True)
class Connection:
    id: str
    source_id: str
    target_id: str
    waypoints: Optional[Tuple[Point, ...]] = None


@dataclass
class DiagramDocument:
    """A complete diagram as produced by an importer."""

    process_id: Optional[str] = None
    process_name: Optional[str] = None
    nodes: Tuple[Node, ...] = ()
    connections: Tuple[Connection, ...] = ()
    warnings: list = field(default_factory=list)


def is_valid_xml_id(value: str) -> bool:
    return bool(XML_NAME_RE.match(value))


def node_size(node: Node, config: FootprintConfig = DEFAULT_FOOTPRINT) -> Tuple[float, float]:
    """Width and depth of the node's footprint on the ground plane."""
    if node.bounds is not None:
        return node.bounds.width, node.bounds.height
    footprint = node.footprint
    if footprint is Footprint.CIRCLE:
        return config.round_diameter, config.round_diameter
    if footprint is Footprint.SQUARE:
        return config.square_size, config.square_size
    return config.container_width, config.container_depth


def container_bounds(
    container: Node, children, config: FootprintConfig = DEFAULT_FOOTPRINT
) -> Optional[Bounds]:
    """Bounds that enclose every child footprint around the container's centre."""
    max_x = 0.0
    max_z = 0.0
    seen = False
    for child in children:
        seen = True
        width, depth = node_size(child, config)
        max_x = max(max_x, abs(child.position.x - container.position.x) + width / 2.0)
        max_z = max(max_z, abs(child.position.z - container.position.z) + depth / 2.0)
    if not seen:
        return None
    pad = config.container_padding
    return Bounds(
        width=max(2.0 * max_x + 2.0 * pad, config.container_min_size),
        height=max(2.0 * max_z + 2.0 * pad, config.container_min_size),
    )
