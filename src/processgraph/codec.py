"""Snapshot JSON and BPMN interchange XML for process diagrams."""
from __future__ import annotations

import json
import logging
import math
import xml.etree.ElementTree as ET
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from .config import DEFAULT_FOOTPRINT, DEFAULT_INTERCHANGE, FootprintConfig, InterchangeConfig
from .model import (
    MULTI_INSTANCE_TYPES,
    Bounds,
    Connection,
    DiagramDocument,
    Footprint,
    MultiInstance,
    Node,
    NodeType,
    Point,
    container_bounds,
)

if TYPE_CHECKING:  # pragma: no cover
    from .store import GraphStore

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

BPMN_NS = "http://www.omg.org/spec/BPMN/20100524/MODEL"
BPMNDI_NS = "http://www.omg.org/spec/BPMN/20100524/DI"
DC_NS = "http://www.omg.org/spec/DD/20100524/DC"
DI_NS = "http://www.omg.org/spec/DD/20100524/DI"
ET.register_namespace("bpmn", BPMN_NS)
ET.register_namespace("bpmndi", BPMNDI_NS)
ET.register_namespace("dc", DC_NS)
ET.register_namespace("di", DI_NS)

TAG_BY_TYPE: Dict[NodeType, str] = {
    NodeType.START: "startEvent",
    NodeType.MESSAGE_START: "startEvent",
    NodeType.USER_TASK: "userTask",
    NodeType.SERVICE_TASK: "serviceTask",
    NodeType.SUBPROCESS: "subProcess",
    NodeType.EXCLUSIVE_GATEWAY: "exclusiveGateway",
    NodeType.PARALLEL_GATEWAY: "parallelGateway",
    NodeType.EVENT_GATEWAY: "eventBasedGateway",
    NodeType.MESSAGE_CATCH: "intermediateCatchEvent",
    NodeType.TERMINAL: "endEvent",
    NodeType.BOUNDARY: "boundaryEvent",
}

MESSAGE_TYPES = frozenset({NodeType.MESSAGE_START, NodeType.MESSAGE_CATCH})

_PLAIN_TYPE_BY_TAG: Dict[str, NodeType] = {
    "endEvent": NodeType.TERMINAL,
    "userTask": NodeType.USER_TASK,
    "serviceTask": NodeType.SERVICE_TASK,
    "subProcess": NodeType.SUBPROCESS,
    "exclusiveGateway": NodeType.EXCLUSIVE_GATEWAY,
    "parallelGateway": NodeType.PARALLEL_GATEWAY,
    "eventBasedGateway": NodeType.EVENT_GATEWAY,
    "boundaryEvent": NodeType.BOUNDARY,
}


class CodecError(ValueError):
    """Structured import failure with a stable code for CLI mapping."""

    def __init__(
        self, code: str, message: str, *, line: Optional[int] = None, column: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.line = line
        self.column = column

    def __str__(self) -> str:
        return self.message


# -- snapshot ----------------------------------------------------------------


def snapshot_payload(store: "GraphStore") -> Dict[str, Any]:
    return {
        "version": SNAPSHOT_VERSION,
        "processId": store.process_id,
        "processName": store.process_name,
        "nodes": [
            {
                "id": node.id,
                "type": node.type.value,
                "name": node.name,
                "description": node.description,
                "multiInstance": None if node.multi_instance is MultiInstance.NONE else node.multi_instance.value,
                "parentId": node.parent_id,
                "bounds": (
                    {"width": node.bounds.width, "height": node.bounds.height} if node.bounds is not None else None
                ),
                "position": {"x": node.position.x, "y": 0.0, "z": node.position.z},
            }
            for node in store.nodes()
        ],
        "connections": [
            {
                "id": conn.id,
                "sourceId": conn.source_id,
                "targetId": conn.target_id,
                "waypoints": (
                    [{"x": p.x, "z": p.z} for p in conn.waypoints] if conn.waypoints is not None else None
                ),
            }
            for conn in store.connections()
        ],
    }


def export_snapshot(store: "GraphStore") -> str:
    return json.dumps(snapshot_payload(store), indent=2)


def parse_snapshot(raw: str) -> DiagramDocument:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise CodecError(
            "E_PARSE",
            f"Failed to load file: {exc}",
            line=getattr(exc, "lineno", None),
            column=getattr(exc, "colno", None),
        ) from exc
    if not isinstance(data, dict):
        raise CodecError("E_SNAPSHOT", "Invalid file: expected a JSON object.")
    if not isinstance(data.get("nodes"), list):
        raise CodecError("E_SNAPSHOT", "Invalid file: missing nodes.")
    if not isinstance(data.get("connections"), list):
        raise CodecError("E_SNAPSHOT", "Invalid file: missing connections.")

    document = DiagramDocument(
        process_id=_optional_str(data.get("processId")),
        process_name=_optional_str(data.get("processName")),
    )
    nodes: Dict[str, Node] = {}
    for entry in data["nodes"]:
        node = _node_from_snapshot(entry)
        if node.id in nodes:
            raise CodecError("E_SNAPSHOT", f"Invalid file: duplicate node id {node.id}.")
        nodes[node.id] = node

    connections: Dict[str, Connection] = {}
    for entry in data["connections"]:
        conn = _connection_from_snapshot(entry)
        if conn.source_id not in nodes or conn.target_id not in nodes:
            document.warnings.append(f"dropped connection {conn.id}: unknown endpoint")
            continue
        if conn.id in connections:
            document.warnings.append(f"dropped connection {conn.id}: duplicate id")
            continue
        connections[conn.id] = conn

    document.nodes = tuple(_sanitize_parents(nodes, document.warnings).values())
    document.connections = tuple(connections.values())
    return document


def _node_from_snapshot(entry: Any) -> Node:
    if not isinstance(entry, dict) or not isinstance(entry.get("id"), str):
        raise CodecError("E_SNAPSHOT", "Invalid file: node without id.")
    node_id = entry["id"]
    try:
        node_type = NodeType.parse(str(entry.get("type")))
    except ValueError as exc:
        raise CodecError("E_SNAPSHOT", f"Invalid file: {exc} (node {node_id}).") from exc
    try:
        multi = MultiInstance(entry.get("multiInstance") or MultiInstance.NONE)
    except ValueError as exc:
        raise CodecError("E_SNAPSHOT", f"Invalid file: bad multiInstance on node {node_id}.") from exc

    position = entry.get("position")
    if not isinstance(position, dict):
        position = {}
    bounds = entry.get("bounds")
    return Node(
        id=node_id,
        type=node_type,
        position=Point(_number(position.get("x")), _number(position.get("z"))),
        name=_optional_str(entry.get("name")) or f"Node {node_id}",
        description=_optional_str(entry.get("description")) or "",
        multi_instance=multi,
        parent_id=_optional_str(entry.get("parentId")),
        bounds=(
            Bounds(_number(bounds.get("width")), _number(bounds.get("height")))
            if isinstance(bounds, dict)
            else None
        ),
    )


def _connection_from_snapshot(entry: Any) -> Connection:
    if not isinstance(entry, dict):
        raise CodecError("E_SNAPSHOT", "Invalid file: malformed connection.")
    conn_id = _optional_str(entry.get("id"))
    source_id = _optional_str(entry.get("sourceId")) or ""
    target_id = _optional_str(entry.get("targetId")) or ""
    waypoints = entry.get("waypoints")
    return Connection(
        id=conn_id or f"Flow_{source_id}_{target_id}",
        source_id=source_id,
        target_id=target_id,
        waypoints=(
            tuple(Point(_number(p.get("x")), _number(p.get("z"))) for p in waypoints if isinstance(p, dict))
            if isinstance(waypoints, list)
            else None
        ),
    )


def import_snapshot(store: "GraphStore", raw: str) -> bool:
    try:
        document = parse_snapshot(raw)
    except CodecError as exc:
        return store.report_failure(exc.message)
    for warning in document.warnings:
        logger.warning(warning)
    return store.replace_diagram(document, "Diagram loaded.")


# -- interchange XML -----------------------------------------------------------


def build_interchange_tree(store: "GraphStore", config: InterchangeConfig = DEFAULT_INTERCHANGE) -> ET.Element:
    nodes = {node.id: node for node in store.nodes()}
    connections = store.connections()
    process_id = store.process_id

    # Shape corners and edge waypoints all land at or beyond the margin.
    corners: List[Tuple[float, float]] = []
    for node in nodes.values():
        width, height = _shape_size(node, config)
        corners.append(
            (node.position.x * config.scale - width / 2.0, -node.position.z * config.scale - height / 2.0)
        )
    for conn in connections:
        if conn.waypoints is not None and len(conn.waypoints) >= 2:
            corners.extend((p.x * config.scale, -p.z * config.scale) for p in conn.waypoints)
    min_x = min([x for x, _ in corners] + [0.0])
    min_y = min([y for _, y in corners] + [0.0])
    offset_x = config.margin - min_x
    offset_y = config.margin - min_y

    def _to_diagram(x: float, z: float) -> Tuple[float, float]:
        return x * config.scale + offset_x, -z * config.scale + offset_y

    def _is_nested(node: Node) -> bool:
        parent = nodes.get(node.parent_id) if node.parent_id else None
        return parent is not None and parent.is_container

    children: Dict[str, List[Node]] = {}
    for node in nodes.values():
        if _is_nested(node):
            children.setdefault(node.parent_id, []).append(node)

    flows_by_parent: Dict[Optional[str], List[Connection]] = {}
    for conn in connections:
        source = nodes.get(conn.source_id)
        target = nodes.get(conn.target_id)
        owner = None
        if source is not None and target is not None and _is_nested(source) and source.parent_id == target.parent_id:
            owner = source.parent_id
        flows_by_parent.setdefault(owner, []).append(conn)

    definitions = ET.Element(
        _qual(BPMN_NS, "definitions"),
        {"id": "Definitions_1", "targetNamespace": "http://bpmn.io/schema/bpmn"},
    )
    process = ET.SubElement(
        definitions,
        _qual(BPMN_NS, "process"),
        {"id": process_id, "name": store.process_name, "isExecutable": "false"},
    )

    def _emit(parent_el: ET.Element, node: Node) -> None:
        el = ET.SubElement(parent_el, _qual(BPMN_NS, TAG_BY_TYPE[node.type]), {"id": node.id, "name": node.name or ""})
        if node.description.strip():
            doc = ET.SubElement(el, _qual(BPMN_NS, "documentation"))
            doc.text = node.description
        if node.type in MESSAGE_TYPES:
            ET.SubElement(el, _qual(BPMN_NS, "messageEventDefinition"), {"id": f"MessageEvent_{node.id}"})
        if node.multi_instance is not MultiInstance.NONE:
            ET.SubElement(
                el,
                _qual(BPMN_NS, "multiInstanceLoopCharacteristics"),
                {"isSequential": "true" if node.multi_instance is MultiInstance.SEQUENTIAL else "false"},
            )
        if node.is_container:
            for child in children.get(node.id, []):
                _emit(el, child)
            for conn in flows_by_parent.get(node.id, []):
                _emit_flow(el, conn)

    for node in nodes.values():
        if not _is_nested(node):
            _emit(process, node)
    for conn in flows_by_parent.get(None, []):
        _emit_flow(process, conn)

    diagram = ET.SubElement(definitions, _qual(BPMNDI_NS, "BPMNDiagram"), {"id": "BPMNDiagram_1"})
    plane = ET.SubElement(diagram, _qual(BPMNDI_NS, "BPMNPlane"), {"id": "BPMNPlane_1", "bpmnElement": process_id})
    for node in nodes.values():
        width, height = _shape_size(node, config)
        cx, cy = _to_diagram(node.position.x, node.position.z)
        attrs = {"id": f"{node.id}_di", "bpmnElement": node.id}
        if node.is_container:
            attrs["isExpanded"] = "true"
        shape = ET.SubElement(plane, _qual(BPMNDI_NS, "BPMNShape"), attrs)
        ET.SubElement(
            shape,
            _qual(DC_NS, "Bounds"),
            {"x": _fmt(cx - width / 2.0), "y": _fmt(cy - height / 2.0), "width": _fmt(width), "height": _fmt(height)},
        )
    for conn in connections:
        source = nodes.get(conn.source_id)
        target = nodes.get(conn.target_id)
        if source is None or target is None:
            continue
        if conn.waypoints is not None and len(conn.waypoints) >= 2:
            points = [_to_diagram(p.x, p.z) for p in conn.waypoints]
        else:
            points = [
                _to_diagram(source.position.x, source.position.z),
                _to_diagram(target.position.x, target.position.z),
            ]
        edge = ET.SubElement(plane, _qual(BPMNDI_NS, "BPMNEdge"), {"id": f"{conn.id}_di", "bpmnElement": conn.id})
        for x, y in points:
            ET.SubElement(edge, _qual(DI_NS, "waypoint"), {"x": _fmt(x), "y": _fmt(y)})
    return definitions


def _emit_flow(parent_el: ET.Element, conn: Connection) -> None:
    ET.SubElement(
        parent_el,
        _qual(BPMN_NS, "sequenceFlow"),
        {"id": conn.id, "sourceRef": conn.source_id, "targetRef": conn.target_id},
    )


def _shape_size(node: Node, config: InterchangeConfig) -> Tuple[float, float]:
    if node.is_container and node.bounds is not None:
        return node.bounds.width * config.scale, node.bounds.height * config.scale
    if node.footprint is Footprint.CIRCLE:
        return config.round_shape
    return config.task_shape


def export_interchange_xml(store: "GraphStore", config: InterchangeConfig = DEFAULT_INTERCHANGE) -> str:
    root = build_interchange_tree(store, config)
    logger.info("exported %d nodes as interchange XML", len(store.nodes()))
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + _pretty_xml(root)


def parse_interchange_xml(
    raw: str,
    config: InterchangeConfig = DEFAULT_INTERCHANGE,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> DiagramDocument:
    try:
        root = ET.fromstring(raw)
    except ET.ParseError as exc:
        line, column = getattr(exc, "position", (None, None))
        raise CodecError("E_PARSE", f"Invalid BPMN XML: {exc}", line=line, column=column) from exc
    process = root if _local_name(root.tag) == "process" else root.find(f".//{_qual(BPMN_NS, 'process')}")
    if process is None:
        raise CodecError("E_INTERCHANGE", "Invalid BPMN XML: no process element.")

    document = DiagramDocument(process_id=process.get("id"), process_name=process.get("name"))

    shape_bounds: Dict[str, Tuple[float, float, float, float]] = {}
    for shape in root.iter(_qual(BPMNDI_NS, "BPMNShape")):
        element_id = shape.get("bpmnElement")
        bounds = shape.find(_qual(DC_NS, "Bounds"))
        if not element_id or bounds is None:
            continue
        shape_bounds[element_id] = (
            _number(bounds.get("x")),
            _number(bounds.get("y")),
            _number(bounds.get("width")),
            _number(bounds.get("height")),
        )

    def _from_diagram(x: float, y: float) -> Point:
        return Point(x / config.scale, -y / config.scale)

    nodes: Dict[str, Node] = {}

    def _walk(container: ET.Element, parent_id: Optional[str]) -> None:
        for el in container:
            if not isinstance(el.tag, str) or _namespace_of(el.tag) != BPMN_NS:
                continue
            local = _local_name(el.tag)
            if local == "sequenceFlow":
                continue
            node_type = _resolve_type(el)
            element_id = el.get("id")
            if node_type is None or not element_id:
                if element_id:
                    document.warnings.append(f"skipped unsupported element {local} {element_id}")
                continue
            if element_id in nodes:
                document.warnings.append(f"skipped duplicate element id {element_id}")
                continue
            nodes[element_id] = _node_from_element(el, element_id, node_type, parent_id)
            if node_type is NodeType.SUBPROCESS:
                _walk(el, element_id)

    def _node_from_element(el: ET.Element, element_id: str, node_type: NodeType, parent_id: Optional[str]) -> Node:
        box = shape_bounds.get(element_id)
        position = _from_diagram(box[0] + box[2] / 2.0, box[1] + box[3] / 2.0) if box else Point(0.0, 0.0)
        doc = el.find(_qual(BPMN_NS, "documentation"))
        multi = MultiInstance.NONE
        loop = el.find(_qual(BPMN_NS, "multiInstanceLoopCharacteristics"))
        if loop is not None and node_type in MULTI_INSTANCE_TYPES:
            sequential = (loop.get("isSequential") or "").strip().lower() == "true"
            multi = MultiInstance.SEQUENTIAL if sequential else MultiInstance.PARALLEL
        return Node(
            id=element_id,
            type=node_type,
            position=position,
            name=el.get("name") or f"Node {element_id}",
            description=(doc.text or "").strip() if doc is not None else "",
            multi_instance=multi,
            parent_id=parent_id,
            bounds=(
                Bounds(box[2] / config.scale, box[3] / config.scale)
                if box and node_type is NodeType.SUBPROCESS
                else None
            ),
        )

    _walk(process, None)

    waypoints_by_flow: Dict[str, Tuple[Point, ...]] = {}
    for edge in root.iter(_qual(BPMNDI_NS, "BPMNEdge")):
        flow_id = edge.get("bpmnElement")
        if not flow_id:
            continue
        points = []
        for waypoint in edge.findall(_qual(DI_NS, "waypoint")):
            x = _maybe_number(waypoint.get("x"))
            y = _maybe_number(waypoint.get("y"))
            if x is None or y is None:
                continue
            points.append(_from_diagram(x, y))
        if len(points) >= 2:
            waypoints_by_flow[flow_id] = tuple(points)

    connections: Dict[str, Connection] = {}
    for flow in process.iter(_qual(BPMN_NS, "sequenceFlow")):
        source_id = flow.get("sourceRef") or ""
        target_id = flow.get("targetRef") or ""
        flow_id = flow.get("id") or f"Flow_{source_id}_{target_id}"
        if source_id not in nodes or target_id not in nodes:
            document.warnings.append(f"dropped flow {flow_id}: unresolved endpoint")
            continue
        if flow_id in connections:
            document.warnings.append(f"dropped flow {flow_id}: duplicate id")
            continue
        connections[flow_id] = Connection(
            id=flow_id,
            source_id=source_id,
            target_id=target_id,
            waypoints=waypoints_by_flow.get(flow_id),
        )

    nodes, connections = _recenter(nodes, connections)
    nodes = _fit_containers(nodes, footprint)
    document.nodes = tuple(nodes.values())
    document.connections = tuple(connections.values())
    return document


def _resolve_type(el: ET.Element) -> Optional[NodeType]:
    local = _local_name(el.tag)
    has_message = el.find(_qual(BPMN_NS, "messageEventDefinition")) is not None
    if local == "startEvent":
        return NodeType.MESSAGE_START if has_message else NodeType.START
    if local == "intermediateCatchEvent":
        return NodeType.MESSAGE_CATCH if has_message else None
    return _PLAIN_TYPE_BY_TAG.get(local)


def _recenter(
    nodes: Dict[str, Node], connections: Dict[str, Connection]
) -> Tuple[Dict[str, Node], Dict[str, Connection]]:
    if not nodes:
        return nodes, connections
    xs = [node.position.x for node in nodes.values()]
    zs = [node.position.z for node in nodes.values()]
    center = Point((min(xs) + max(xs)) / 2.0, (min(zs) + max(zs)) / 2.0)
    if center.x == 0.0 and center.z == 0.0:
        return nodes, connections
    moved_nodes = {nid: replace(node, position=node.position - center) for nid, node in nodes.items()}
    moved_connections = {
        cid: (
            replace(conn, waypoints=tuple(p - center for p in conn.waypoints))
            if conn.waypoints is not None
            else conn
        )
        for cid, conn in connections.items()
    }
    return moved_nodes, moved_connections


def _fit_containers(nodes: Dict[str, Node], footprint: FootprintConfig) -> Dict[str, Node]:
    """Recompute subprocess bounds from their children, innermost first."""
    result = dict(nodes)

    def _depth(node_id: str) -> int:
        depth = 0
        cursor = result[node_id].parent_id
        while cursor is not None and cursor in result and depth <= len(result):
            depth += 1
            cursor = result[cursor].parent_id
        return depth

    containers = [nid for nid, node in result.items() if node.is_container]
    for container_id in sorted(containers, key=_depth, reverse=True):
        container = result[container_id]
        kids = [node for node in result.values() if node.parent_id == container_id]
        bounds = container_bounds(container, kids, footprint)
        if bounds is not None:
            result[container_id] = replace(container, bounds=bounds)
    return result


def _sanitize_parents(nodes: Dict[str, Node], warnings: List[str]) -> Dict[str, Node]:
    result: Dict[str, Node] = {}
    for nid, node in nodes.items():
        parent = nodes.get(node.parent_id) if node.parent_id else None
        if node.parent_id and (parent is None or not parent.is_container or node.parent_id == nid):
            warnings.append(f"node {nid}: dropped invalid parent {node.parent_id}")
            node = replace(node, parent_id=None)
        result[nid] = node

    for nid in list(result):
        seen = {nid}
        cursor = result[nid].parent_id
        while cursor is not None and cursor not in seen:
            seen.add(cursor)
            cursor = result[cursor].parent_id
        if cursor == nid:
            warnings.append(f"node {nid}: dropped cyclic parent {result[nid].parent_id}")
            result[nid] = replace(result[nid], parent_id=None)
    return result


def import_interchange_xml(store: "GraphStore", raw: str) -> bool:
    try:
        document = parse_interchange_xml(raw, footprint=store.footprint_config)
    except CodecError as exc:
        return store.report_failure(exc.message)
    for warning in document.warnings:
        logger.warning(warning)
    return store.replace_diagram(document, "Imported BPMN XML.")


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _number(value: Any) -> float:
    parsed = _maybe_number(value)
    return 0.0 if parsed is None else parsed


def _maybe_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(parsed) or math.isinf(parsed):
        return None
    return parsed


def _pretty_xml(element: ET.Element) -> str:
    ET.indent(element, space="  ")
    return ET.tostring(element, encoding="unicode")


def _fmt(value: float) -> str:
    if math.isclose(value, round(value)):
        return str(int(round(value)))
    return f"{value:.3f}".rstrip("0").rstrip(".")


def _namespace_of(tag: str) -> Optional[str]:
    if tag.startswith("{"):
        return tag[1:].split("}", 1)[0]
    return None


def _local_name(tag: str) -> str:
    if tag.startswith("{"):
        return tag.split("}", 1)[1]
    return tag


def _qual(ns: str, local: str) -> str:
    return f"{{{ns}}}{local}"
