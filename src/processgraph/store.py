"""Canonical diagram state and its mutation rules."""
from __future__ import annotations

import logging
import re
import time
from collections import deque
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .codec import export_snapshot, import_snapshot
from .config import DEFAULT_FOOTPRINT, DEFAULT_ROUTING, FootprintConfig, RoutingConfig
from .model import (
    MULTI_INSTANCE_TYPES,
    NO_INCOMING_TYPES,
    NO_OUTGOING_TYPES,
    Connection,
    DiagramDocument,
    InteractionMode,
    MultiInstance,
    Node,
    NodeType,
    Point,
    container_bounds,
    is_valid_xml_id,
)
from . import routing

logger = logging.getLogger(__name__)

NUMERIC_ID_RE = re.compile(r"^\d+$")
FLOW_ID_RE = re.compile(r"^Flow_(\d+)_")
INVALID_XML_ID_HINT = "must start with a letter or underscore and contain only letters, numbers, ., -, or _."

Listener = Callable[["GraphStore"], None]
PointLike = Union[Point, Tuple[float, float], Sequence[float]]


def derive_node_counter(nodes: Iterable[Node]) -> int:
    highest = 0
    for node in nodes:
        if NUMERIC_ID_RE.match(node.id):
            highest = max(highest, int(node.id))
    return highest


def derive_connection_counter(connections: Iterable[Connection]) -> int:
    highest = 0
    for conn in connections:
        match = FLOW_ID_RE.match(conn.id)
        if match:
            highest = max(highest, int(match.group(1)))
    return highest


def _near(a: float, b: float) -> bool:
    return abs(a - b) < 1e-4


def _axis_of(a: Point, b: Point) -> Optional[str]:
    if _near(a.x, b.x):
        return "z"
    if _near(a.z, b.z):
        return "x"
    return None


def _shift_run(original: List[Point], points: List[Point], delta: Point, *, from_end: bool) -> bool:
    """Shift the end waypoint and the axis-aligned run behind it; False if no axis."""
    if len(original) < 2:
        return False
    indices = list(range(len(original)))
    if from_end:
        indices.reverse()
    first, second = indices[0], indices[1]
    axis = _axis_of(original[first], original[second])
    if axis is None:
        return False
    base = original[first]
    points[first] = points[first] + delta
    for i in indices[1:]:
        p = original[i]
        if axis == "x" and not _near(p.z, base.z):
            break
        if axis == "z" and not _near(p.x, base.x):
            break
        points[i] = points[i] + delta
    return True


def _as_point(value: PointLike) -> Point:
    return Point(float(value[0]), float(value[1]))


class GraphStore:
    """Owns nodes, connections and interaction state.

    Mutations never raise: each one either applies completely or leaves the
    graph untouched, and reports the outcome through ``status`` (plus
    ``dirty`` for model changes). Observers either ``subscribe`` or poll
    ``version``.
    """

    def __init__(
        self,
        *,
        routing_config: RoutingConfig = DEFAULT_ROUTING,
        footprint_config: FootprintConfig = DEFAULT_FOOTPRINT,
    ) -> None:
        self.routing_config = routing_config
        self.footprint_config = footprint_config
        self._nodes: Dict[str, Node] = {}
        self._connections: Dict[str, Connection] = {}
        self._listeners: List[Listener] = []
        self._selected_node_ids: List[str] = []
        self._drag_origin: Optional[Point] = None
        self._drag_start: Dict[str, Point] = {}

        self.process_id = "Process_1"
        self.process_name = "Process"
        self.mode = InteractionMode.MOVE
        self.current_node_type = NodeType.USER_TASK
        self.selected_node_id: Optional[str] = None
        self.selected_connection_id: Optional[str] = None
        self.dragged_node_id: Optional[str] = None
        self.hovered_node_id: Optional[str] = None
        self.hovered_connection_id: Optional[str] = None
        self.snap_to_grid = True
        self.last_saved_at: Optional[float] = None
        self.status = "System Ready"
        self.dirty = False
        self.version = 0
        self.node_counter = 0
        self.connection_counter = 0

    @classmethod
    def with_sample_process(cls, spacing: float = 5.0) -> "GraphStore":
        """A store holding a small linear process, laid out along x."""
        store = cls()
        store.snap_to_grid = False
        types = [
            NodeType.START,
            NodeType.USER_TASK,
            NodeType.EXCLUSIVE_GATEWAY,
            NodeType.SERVICE_TASK,
            NodeType.EXCLUSIVE_GATEWAY,
            NodeType.TERMINAL,
        ]
        start_offset = (len(types) - 1) * spacing * 0.5
        previous: Optional[Node] = None
        for i, node_type in enumerate(types):
            store.set_node_type(node_type)
            node = store.add_node(Point(i * spacing - start_offset, 0.0))
            if previous is not None:
                store.add_connection(previous.id, node.id)
            previous = node
        store.set_node_type(NodeType.USER_TASK)
        store.snap_to_grid = True
        store.status = "System Ready"
        store.dirty = False
        return store

    # -- change notification -------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, message: Optional[str] = None, *, dirty: bool = True) -> bool:
        if message is not None:
            self.status = message
        if dirty:
            self.dirty = True
        self.version += 1
        if message:
            logger.debug(message)
        for listener in list(self._listeners):
            listener(self)
        return True

    def _reject(self, message: str) -> bool:
        logger.warning("rejected: %s", message)
        self._commit(message, dirty=False)
        return False

    def report_failure(self, message: str) -> bool:
        """Surface a failure from an outside collaborator (e.g. an importer)."""
        return self._reject(message)

    # -- queries ---------------------------------------------------------------

    @property
    def selected_node_ids(self) -> Tuple[str, ...]:
        return tuple(self._selected_node_ids)

    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def get_node(self, node_id: str) -> Optional[Node]:
        return self._nodes.get(node_id)

    def get_connection(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def children_of(self, node_id: str) -> List[Node]:
        return [node for node in self._nodes.values() if node.parent_id == node_id]

    def descendants_of(self, node_id: str) -> List[Node]:
        index = self._children_index()
        result: List[Node] = []
        seen = {node_id}
        queue = deque(index.get(node_id, []))
        while queue:
            child_id = queue.popleft()
            if child_id in seen:
                continue
            seen.add(child_id)
            result.append(self._nodes[child_id])
            queue.extend(index.get(child_id, []))
        return result

    def route(self, connection_id: str) -> routing.RoutedPath:
        conn = self._connections.get(connection_id)
        if conn is None:
            return routing.RoutedPath(segments=(), elevation=self.routing_config.elevation)
        return routing.route_connection(conn, self._nodes, self.routing_config, self.footprint_config)

    def arrow_placement(self, connection_id: str) -> Tuple[Optional[routing.Point3], routing.Quaternion]:
        path = self.route(connection_id)
        divisions = self.routing_config.sample_divisions
        return routing.arrow_position(path, divisions), routing.arrow_orientation(path, divisions)

    def footprint_anchor(self, connection_id: str, end: str = "source") -> Optional[routing.Point3]:
        conn = self._connections.get(connection_id)
        if conn is None:
            return None
        node = self._nodes.get(conn.source_id if end == "source" else conn.target_id)
        if node is None:
            return None
        return routing.footprint_anchor(node, self.routing_config)

    def tube_radius(self, connection_id: str) -> float:
        conn = self._connections.get(connection_id)
        if conn is None:
            return self.routing_config.tube_radius
        return routing.tube_radius(
            self._nodes.get(conn.source_id), self._nodes.get(conn.target_id), self.routing_config
        )

    def container_shell(self, node_id: str, layer: str = "outer") -> Optional[routing.ShellDims]:
        node = self._nodes.get(node_id)
        if node is None or not node.is_container:
            return None
        return routing.container_shell(node, layer, self.footprint_config)

    def _children_index(self) -> Dict[str, List[str]]:
        index: Dict[str, List[str]] = {}
        for node in self._nodes.values():
            if node.parent_id:
                index.setdefault(node.parent_id, []).append(node.id)
        return index

    # -- interaction state -----------------------------------------------------

    def set_mode(self, mode: Union[InteractionMode, str]) -> bool:
        try:
            resolved = InteractionMode(mode)
        except ValueError:
            return self._reject(f"Unknown mode: {mode}")
        self.mode = resolved
        if resolved is not InteractionMode.LINK:
            self.selected_node_id = None
            self._selected_node_ids = []
        if resolved is InteractionMode.DELETE:
            self.selected_connection_id = None
        return self._commit(f"Mode: {resolved.value.upper()}", dirty=False)

    def set_node_type(self, node_type: Union[NodeType, str]) -> bool:
        try:
            resolved = NodeType.parse(node_type) if isinstance(node_type, str) else node_type
        except ValueError:
            return self._reject(f"Unknown node type: {node_type}")
        self.current_node_type = resolved
        return self._commit(f"Selected Node Type: {resolved.value.upper()}", dirty=False)

    def toggle_snap(self) -> bool:
        self.snap_to_grid = not self.snap_to_grid
        return self._commit(f"Snap to grid: {'ON' if self.snap_to_grid else 'OFF'}", dirty=False)

    def select_node(self, node_id: str) -> bool:
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        self.selected_connection_id = None

        if self.mode is InteractionMode.LINK:
            pending = self.selected_node_id
            if pending is None:
                self._set_selection([node_id])
                return self._commit("Source node selected. Click target node.", dirty=False)
            self._set_selection([])
            if pending == node_id:
                return self._commit("Deselected source node.", dirty=False)
            created, message = self._connect(pending, node_id)
            if created is None:
                return self._reject(message)
            return self._commit(message)

        if self.mode is InteractionMode.DELETE:
            return self.delete_node(node_id)

        self._set_selection([node_id])
        if self.mode is InteractionMode.MOVE:
            self.dragged_node_id = node_id
            return self._commit(f"Dragging Node {node_id}", dirty=False)
        return self._commit(f"Selected Node {node_id}", dirty=False)

    def toggle_node_selection(self, node_id: str) -> bool:
        if self.mode is not InteractionMode.MOVE:
            return self._reject("Multi-select is only available in move mode.")
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        selected = list(self._selected_node_ids)
        if node_id in selected:
            selected.remove(node_id)
            if self.selected_node_id == node_id:
                self.selected_node_id = selected[-1] if selected else None
        else:
            selected.append(node_id)
            self.selected_node_id = node_id
        self._selected_node_ids = selected
        self.selected_connection_id = None
        return self._commit(f"Selected {len(selected)} node(s).", dirty=False)

    def select_connection(self, connection_id: str) -> bool:
        if connection_id not in self._connections:
            return self._reject(f"Connection {connection_id} not found")
        self._set_selection([])
        self.selected_connection_id = connection_id
        return self._commit(f"Selected Connection {connection_id}", dirty=False)

    def clear_selection(self) -> bool:
        self._set_selection([])
        self.selected_connection_id = None
        self.dragged_node_id = None
        self._drag_origin = None
        self._drag_start = {}
        return self._commit("Selection cleared.", dirty=False)

    def hover_node(self, node_id: Optional[str], hovered: bool) -> bool:
        if hovered:
            self.hovered_node_id = node_id
        elif self.hovered_node_id == node_id:
            self.hovered_node_id = None
        return self._commit(dirty=False)

    def hover_connection(self, connection_id: Optional[str], hovered: bool) -> bool:
        if hovered:
            self.hovered_connection_id = connection_id
        elif self.hovered_connection_id == connection_id:
            self.hovered_connection_id = None
        return self._commit(dirty=False)

    def _set_selection(self, node_ids: List[str]) -> None:
        self._selected_node_ids = list(node_ids)
        self.selected_node_id = node_ids[-1] if node_ids else None

    # -- node mutations --------------------------------------------------------

    def add_node(self, position: PointLike) -> Node:
        point = _as_point(position)
        if self.snap_to_grid:
            point = Point(float(round(point.x)), float(round(point.z)))
        node_id = self._next_node_id()
        node = Node(id=node_id, type=self.current_node_type, position=point, name=f"Node {node_id}")
        self._nodes[node_id] = node
        self._commit(f"Added {node.type.value} at {point.x:.1f}, {point.z:.1f}")
        return node

    def move_node(self, node_id: str, position: PointLike) -> bool:
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        point = _as_point(position)
        self._move(node_id, point)
        return self._commit(f"Moved Node {node_id} to {point.x:.1f}, {point.z:.1f}")

    def _move(self, node_id: str, position: Point) -> None:
        self._move_many({node_id: position})

    def _move_many(self, targets: Dict[str, Point]) -> None:
        """Move each target with its descendants, then reflow connections once."""
        index = self._children_index()
        next_positions: Dict[str, Point] = {}
        moved: Dict[str, Point] = {}
        for node_id, position in targets.items():
            delta = position - self._nodes[node_id].position
            next_positions[node_id] = position
            moved[node_id] = delta
            queue = deque(index.get(node_id, []))
            while queue:
                child_id = queue.popleft()
                if child_id in moved:
                    continue
                moved[child_id] = delta
                next_positions[child_id] = self._nodes[child_id].position + delta
                queue.extend(index.get(child_id, []))

        nodes = {
            nid: replace(node, position=next_positions[nid]) if nid in next_positions else node
            for nid, node in self._nodes.items()
        }
        connections = {
            cid: self._reflow_waypoints(conn, moved) for cid, conn in self._connections.items()
        }
        self._nodes = nodes
        self._connections = connections

    @staticmethod
    def _reflow_waypoints(conn: Connection, moved: Dict[str, Point]) -> Connection:
        source_delta = moved.get(conn.source_id)
        target_delta = moved.get(conn.target_id)
        if source_delta is None and target_delta is None:
            return conn
        if not conn.waypoints or len(conn.waypoints) < 2:
            return replace(conn, waypoints=None) if conn.waypoints is not None else conn

        original = list(conn.waypoints)
        if (
            source_delta is not None
            and target_delta is not None
            and _near(source_delta.x, target_delta.x)
            and _near(source_delta.z, target_delta.z)
        ):
            return replace(conn, waypoints=tuple(p + source_delta for p in original))

        points = list(original)
        if source_delta is not None and not _shift_run(original, points, source_delta, from_end=False):
            return replace(conn, waypoints=None)
        if target_delta is not None and not _shift_run(original, points, target_delta, from_end=True):
            return replace(conn, waypoints=None)
        return replace(conn, waypoints=tuple(points))

    def delete_node(self, node_id: str) -> bool:
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        self._remove_node(node_id)
        return self._commit(f"Deleted Node {node_id}")

    def _remove_node(self, node_id: str) -> None:
        removed = self._nodes[node_id]
        promoted_to = removed.parent_id if removed.parent_id in self._nodes else None
        nodes: Dict[str, Node] = {}
        promoted = False
        for nid, node in self._nodes.items():
            if nid == node_id:
                continue
            if node.parent_id == node_id:
                node = replace(node, parent_id=promoted_to)
                promoted = True
            nodes[nid] = node
        dropped = {
            cid for cid, conn in self._connections.items() if node_id in (conn.source_id, conn.target_id)
        }
        self._nodes = nodes
        self._connections = {cid: c for cid, c in self._connections.items() if cid not in dropped}
        if promoted and promoted_to is not None:
            self._refresh_bounds(promoted_to)

        if self.selected_node_id == node_id:
            self.selected_node_id = None
        self._selected_node_ids = [nid for nid in self._selected_node_ids if nid != node_id]
        if self.dragged_node_id == node_id:
            self.dragged_node_id = None
        if self.hovered_node_id == node_id:
            self.hovered_node_id = None
        if self.selected_connection_id in dropped:
            self.selected_connection_id = None
        if self.hovered_connection_id in dropped:
            self.hovered_connection_id = None
        self._drag_start.pop(node_id, None)

    def delete_selected(self) -> bool:
        if self._selected_node_ids:
            targets = [nid for nid in self._selected_node_ids if nid in self._nodes]
            for nid in targets:
                self._remove_node(nid)
            self._set_selection([])
            return self._commit(f"Deleted {len(targets)} node(s)")
        if self.selected_connection_id:
            return self.delete_connection(self.selected_connection_id)
        return self._reject("Nothing selected.")

    def update_node_id(self, node_id: str, new_id: str) -> bool:
        next_id = (new_id or "").strip()
        if not next_id:
            return self._reject("Node ID cannot be empty.")
        if not is_valid_xml_id(next_id):
            return self._reject(f"Node ID {INVALID_XML_ID_HINT}")
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        if next_id == node_id:
            return self._reject("Node ID unchanged.")
        if next_id in self._nodes:
            return self._reject(f"Node ID {next_id} already exists.")

        nodes: Dict[str, Node] = {}
        for nid, node in self._nodes.items():
            if nid == node_id:
                node = replace(node, id=next_id)
            if node.parent_id == node_id:
                node = replace(node, parent_id=next_id)
            nodes[node.id] = node

        renamed: Dict[str, str] = {}
        connections: Dict[str, Connection] = {}
        for cid, conn in self._connections.items():
            if node_id in (conn.source_id, conn.target_id):
                source_id = next_id if conn.source_id == node_id else conn.source_id
                target_id = next_id if conn.target_id == node_id else conn.target_id
                conn = replace(
                    conn,
                    id=self._make_connection_id(source_id, target_id),
                    source_id=source_id,
                    target_id=target_id,
                )
                renamed[cid] = conn.id
            connections[conn.id] = conn

        self._nodes = nodes
        self._connections = connections
        if self.selected_node_id == node_id:
            self.selected_node_id = next_id
        self._selected_node_ids = [next_id if nid == node_id else nid for nid in self._selected_node_ids]
        if self.dragged_node_id == node_id:
            self.dragged_node_id = next_id
        if self.hovered_node_id == node_id:
            self.hovered_node_id = next_id
        if self.selected_connection_id in renamed:
            self.selected_connection_id = renamed[self.selected_connection_id]
        if self.hovered_connection_id in renamed:
            self.hovered_connection_id = renamed[self.hovered_connection_id]
        if node_id in self._drag_start:
            self._drag_start[next_id] = self._drag_start.pop(node_id)
        return self._commit(f"Renamed Node {node_id} to {next_id}")

    def update_node_name(self, node_id: str, name: str) -> bool:
        next_name = (name or "").strip()
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        if not next_name:
            return self._reject("Node name cannot be empty.")
        self._nodes[node_id] = replace(self._nodes[node_id], name=next_name)
        return self._commit(f"Renamed Node {node_id} to {next_name!r}")

    def update_node_description(self, node_id: str, description: str) -> bool:
        if node_id not in self._nodes:
            return self._reject(f"Node {node_id} not found")
        self._nodes[node_id] = replace(self._nodes[node_id], description=description or "")
        return self._commit(f"Updated description of Node {node_id}")

    def update_node_multi_instance(
        self, node_id: str, multi_instance: Union[MultiInstance, str, None]
    ) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return self._reject(f"Node {node_id} not found")
        try:
            resolved = MultiInstance(multi_instance) if multi_instance is not None else MultiInstance.NONE
        except ValueError:
            return self._reject(f"Unknown multi-instance marker: {multi_instance}")
        if resolved is not MultiInstance.NONE and node.type not in MULTI_INSTANCE_TYPES:
            return self._reject(f"{node.type.value} nodes cannot be multi-instance")
        self._nodes[node_id] = replace(node, multi_instance=resolved)
        return self._commit(f"Multi-instance of Node {node_id}: {resolved.value}")

    def set_node_parent(self, node_id: str, parent_id: Optional[str]) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return self._reject(f"Node {node_id} not found")
        if parent_id is not None:
            parent = self._nodes.get(parent_id)
            if parent is None:
                return self._reject(f"Node {parent_id} not found")
            if not parent.is_container:
                return self._reject(f"Node {parent_id} is not a subprocess")
            cursor: Optional[str] = parent_id
            while cursor is not None:
                if cursor == node_id:
                    return self._reject(f"Node {node_id} cannot be nested inside itself")
                ancestor = self._nodes.get(cursor)
                cursor = ancestor.parent_id if ancestor is not None else None
        previous = node.parent_id
        self._nodes[node_id] = replace(node, parent_id=parent_id)
        for container_id in (previous, parent_id):
            if container_id is not None:
                self._refresh_bounds(container_id)
        if parent_id is None:
            return self._commit(f"Node {node_id} moved to top level")
        return self._commit(f"Node {node_id} nested in {parent_id}")

    def _refresh_bounds(self, container_id: str) -> None:
        container = self._nodes.get(container_id)
        if container is None or not container.is_container:
            return
        bounds = container_bounds(container, self.children_of(container_id), self.footprint_config)
        if bounds is not None:
            self._nodes[container_id] = replace(container, bounds=bounds)

    def _next_node_id(self) -> str:
        self.node_counter += 1
        while str(self.node_counter) in self._nodes:
            self.node_counter += 1
        return str(self.node_counter)

    # -- connection mutations -------------------------------------------------

    def add_connection(self, source_id: str, target_id: str) -> Optional[Connection]:
        created, message = self._connect(source_id, target_id)
        if created is None:
            self._reject(message)
            return None
        self._commit(message)
        return created

    def _connect(self, source_id: str, target_id: str) -> Tuple[Optional[Connection], str]:
        if source_id == target_id:
            return None, "Cannot connect a node to itself."
        if any(c.source_id == source_id and c.target_id == target_id for c in self._connections.values()):
            return None, f"Node {source_id} is already connected to {target_id}."
        source = self._nodes.get(source_id)
        target = self._nodes.get(target_id)
        if source is None:
            return None, f"Error: Source node {source_id} not found"
        if target is None:
            return None, f"Error: Target node {target_id} not found"
        if target.type in NO_INCOMING_TYPES:
            return None, "Start node cannot have incoming connections"
        if source.type in NO_OUTGOING_TYPES:
            return None, "Terminal node cannot have outgoing connections"
        conn = Connection(id=self._make_connection_id(source_id, target_id), source_id=source_id, target_id=target_id)
        self._connections[conn.id] = conn
        return conn, f"Connected {source_id} to {target_id}"

    def delete_connection(self, connection_id: str) -> bool:
        if connection_id not in self._connections:
            return self._reject(f"Connection {connection_id} not found")
        del self._connections[connection_id]
        if self.selected_connection_id == connection_id:
            self.selected_connection_id = None
        if self.hovered_connection_id == connection_id:
            self.hovered_connection_id = None
        return self._commit("Deleted Connection")

    def _make_connection_id(self, source_id: str, target_id: str) -> str:
        self.connection_counter += 1
        candidate = f"Flow_{self.connection_counter}_{source_id}_{target_id}"
        while candidate in self._connections:
            self.connection_counter += 1
            candidate = f"Flow_{self.connection_counter}_{source_id}_{target_id}"
        return candidate

    # -- group drag ------------------------------------------------------------

    def begin_drag(self, point: PointLike) -> bool:
        ids = [nid for nid in self._selected_node_ids if nid in self._nodes]
        if not ids and self.dragged_node_id in self._nodes:
            ids = [self.dragged_node_id]
        if not ids:
            return self._reject("No node selected to drag.")
        captured = set(ids)
        roots = [nid for nid in ids if not self._has_ancestor_in(nid, captured)]
        self._drag_origin = _as_point(point)
        self._drag_start = {nid: self._nodes[nid].position for nid in roots}
        if self.dragged_node_id is None:
            self.dragged_node_id = self.selected_node_id or roots[-1]
        return self._commit(f"Dragging {len(roots)} node(s)", dirty=False)

    def drag_to(self, point: PointLike) -> bool:
        if self._drag_origin is None:
            return self._reject("No drag in progress.")
        delta = _as_point(point) - self._drag_origin
        targets: Dict[str, Point] = {}
        for nid, start in self._drag_start.items():
            if nid not in self._nodes:
                continue
            target = start + delta
            if self.snap_to_grid:
                target = Point(float(round(target.x)), float(round(target.z)))
            targets[nid] = target
        self._move_many(targets)
        return self._commit(f"Moved {len(self._drag_start)} node(s)")

    def end_drag(self) -> bool:
        self.dragged_node_id = None
        self._drag_origin = None
        self._drag_start = {}
        return self._commit(dirty=False)

    def _has_ancestor_in(self, node_id: str, candidates: set) -> bool:
        seen = {node_id}
        cursor = self._nodes[node_id].parent_id
        while cursor is not None and cursor not in seen:
            if cursor in candidates:
                return True
            seen.add(cursor)
            parent = self._nodes.get(cursor)
            cursor = parent.parent_id if parent is not None else None
        return False

    # -- process metadata ------------------------------------------------------

    def update_process_id(self, process_id: str) -> bool:
        next_id = (process_id or "").strip()
        if not next_id:
            return self._reject("Process ID cannot be empty.")
        if not is_valid_xml_id(next_id):
            return self._reject(f"Process ID {INVALID_XML_ID_HINT}")
        if next_id == self.process_id:
            return self._reject("Process ID unchanged.")
        self.process_id = next_id
        return self._commit("Updated process ID.")

    def update_process_name(self, process_name: str) -> bool:
        next_name = (process_name or "").strip()
        if not next_name:
            return self._reject("Process name cannot be empty.")
        if next_name == self.process_name:
            return self._reject("Process name unchanged.")
        self.process_name = next_name
        return self._commit("Updated process name.")

    # -- wholesale replacement and snapshots ----------------------------------

    def replace_diagram(self, document: DiagramDocument, status: str) -> bool:
        nodes = {node.id: node for node in document.nodes}
        connections = {
            conn.id: conn
            for conn in document.connections
            if conn.source_id in nodes and conn.target_id in nodes
        }
        self._nodes = nodes
        self._connections = connections
        if document.process_id and is_valid_xml_id(document.process_id):
            self.process_id = document.process_id
        if document.process_name and document.process_name.strip():
            self.process_name = document.process_name.strip()

        self._set_selection([])
        self.selected_connection_id = None
        self.dragged_node_id = None
        self.hovered_node_id = None
        self.hovered_connection_id = None
        self._drag_origin = None
        self._drag_start = {}

        self.node_counter = derive_node_counter(nodes.values())
        self.connection_counter = derive_connection_counter(connections.values())
        self.dirty = False
        logger.info("diagram replaced: %d nodes, %d connections", len(nodes), len(connections))
        return self._commit(status, dirty=False)

    def save_snapshot(self) -> str:
        text = export_snapshot(self)
        self.last_saved_at = time.time()
        self.dirty = False
        self._commit("Saved snapshot.", dirty=False)
        return text

    def load_snapshot(self, raw: str) -> bool:
        return import_snapshot(self, raw)
