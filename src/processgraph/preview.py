"""Top-down PNG preview of a routed diagram."""
from __future__ import annotations

import io
import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFont

from .config import (
    DEFAULT_FOOTPRINT,
    DEFAULT_PREVIEW,
    DEFAULT_ROUTING,
    FootprintConfig,
    PreviewConfig,
    RoutingConfig,
)
from .model import Connection, Footprint, Node
from .routing import RoutedPath, container_shell, half_extents, route_connection, tube_radius

logger = logging.getLogger(__name__)

MAX_PREVIEW_PIXELS = 8192


def render_png(
    nodes: Iterable[Node],
    connections: Iterable[Connection],
    *,
    scale: Optional[float] = None,
    padding: Optional[float] = None,
    config: PreviewConfig = DEFAULT_PREVIEW,
    routing_config: RoutingConfig = DEFAULT_ROUTING,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> bytes:
    scale = config.scale if scale is None else scale
    padding = config.padding if padding is None else padding
    if scale <= 0:
        raise ValueError("preview scale must be > 0")
    padding = max(padding, 0.0)

    node_list = list(nodes)
    nodes_by_id = {node.id: node for node in node_list}
    routed: List[Tuple[Connection, RoutedPath]] = [
        (conn, route_connection(conn, nodes_by_id, routing_config, footprint)) for conn in connections
    ]

    extent = _extent(node_list, routed, footprint)
    min_x, min_z, max_x, max_z = extent
    width = max(int(math.ceil((max_x - min_x) * scale + 2 * padding)), 1)
    height = max(int(math.ceil((max_z - min_z) * scale + 2 * padding)), 1)
    if width > MAX_PREVIEW_PIXELS or height > MAX_PREVIEW_PIXELS:
        raise ValueError(f"preview would be {width}x{height} pixels; lower the scale")

    def _px(x: float, z: float) -> Tuple[float, float]:
        # +z points up in the preview, matching the interchange layout.
        return (x - min_x) * scale + padding, (max_z - z) * scale + padding

    image = Image.new("RGB", (width, height), config.background)
    draw = ImageDraw.Draw(image)
    font = ImageFont.load_default()

    depth = _depths(nodes_by_id)
    for node in sorted(node_list, key=lambda n: (not n.is_container, depth[n.id])):
        _draw_node(draw, node, _px, scale, config, footprint)

    for conn, path in routed:
        if path.is_empty():
            continue
        points = [_px(x, z) for x, _y, z in path.spaced_points(routing_config.path_segments)]
        radius = tube_radius(nodes_by_id.get(conn.source_id), nodes_by_id.get(conn.target_id), routing_config)
        line_width = max(int(round(radius * scale * 0.5)), 1)
        draw.line(points, fill=config.connection, width=line_width, joint="curve")
        _draw_arrowhead(draw, points, line_width * 3.0, config.connection)

    for node in node_list:
        if not node.name:
            continue
        cx, cy = _px(node.position.x, node.position.z)
        left, top, right, bottom = draw.textbbox((0, 0), node.name, font=font)
        draw.text((cx - (right - left) / 2.0, cy - (bottom - top) / 2.0), node.name, fill=config.label, font=font)

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    logger.info("rendered preview %dx%d for %d nodes", width, height, len(node_list))
    return buffer.getvalue()


def _extent(
    nodes: List[Node], routed: List[Tuple[Connection, RoutedPath]], footprint: FootprintConfig
) -> Tuple[float, float, float, float]:
    xs: List[float] = []
    zs: List[float] = []
    for node in nodes:
        half_w, half_d = half_extents(node, footprint)
        xs.extend((node.position.x - half_w, node.position.x + half_w))
        zs.extend((node.position.z - half_d, node.position.z + half_d))
    for _conn, path in routed:
        for point in path.vertices():
            xs.append(point.x)
            zs.append(point.z)
    if not xs:
        return 0.0, 0.0, 0.0, 0.0
    return min(xs), min(zs), max(xs), max(zs)


def _depths(nodes_by_id: Dict[str, Node]) -> Dict[str, int]:
    depths: Dict[str, int] = {}
    for node_id, node in nodes_by_id.items():
        depth = 0
        cursor = node.parent_id
        while cursor is not None and cursor in nodes_by_id and depth < len(nodes_by_id):
            depth += 1
            cursor = nodes_by_id[cursor].parent_id
        depths[node_id] = depth
    return depths


def _draw_node(draw, node: Node, px, scale: float, config: PreviewConfig, footprint: FootprintConfig) -> None:
    cx, cy = px(node.position.x, node.position.z)
    if node.footprint is Footprint.RECTANGLE:
        shell = container_shell(node, "outer", footprint)
        half_w = shell.width * scale / 2.0
        half_h = shell.depth * scale / 2.0
        draw.rectangle((cx - half_w, cy - half_h, cx + half_w, cy + half_h), outline=config.container_outline, width=2)
        return
    half_w, half_d = half_extents(node, footprint)
    box = (cx - half_w * scale, cy - half_d * scale, cx + half_w * scale, cy + half_d * scale)
    if node.footprint is Footprint.CIRCLE:
        draw.ellipse(box, fill=config.node_fill, outline=config.node_outline, width=2)
    else:
        draw.rounded_rectangle(box, radius=half_w * scale * 0.25, fill=config.node_fill, outline=config.node_outline, width=2)


def _draw_arrowhead(draw, points: List[Tuple[float, float]], size: float, fill: str) -> None:
    if len(points) < 2:
        return
    (ax, ay), (bx, by) = points[-2], points[-1]
    length = math.hypot(bx - ax, by - ay)
    if length == 0.0:
        return
    ux, uy = (bx - ax) / length, (by - ay) / length
    base_x, base_y = bx - ux * size, by - uy * size
    half = size * 0.5
    draw.polygon(
        [(bx, by), (base_x - uy * half, base_y + ux * half), (base_x + uy * half, base_y - ux * half)],
        fill=fill,
    )
