"""Connector routing on the ground plane.

Every function here is pure: the same endpoint nodes, waypoints and config
always produce the same path, so results are memoized on those inputs.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .config import DEFAULT_FOOTPRINT, DEFAULT_ROUTING, FootprintConfig, RoutingConfig
from .model import Connection, Footprint, Node, Point, node_size

Point3 = Tuple[float, float, float]
Quaternion = Tuple[float, float, float, float]

IDENTITY_QUATERNION: Quaternion = (0.0, 0.0, 0.0, 1.0)


@dataclass(frozen=True)
class LineSegment:
    start: Point
    end: Point

    def point_at(self, t: float) -> Point:
        return Point(
            self.start.x + (self.end.x - self.start.x) * t,
            self.start.z + (self.end.z - self.start.z) * t,
        )

    def length(self) -> float:
        return _distance(self.start, self.end)


@dataclass(frozen=True)
class ArcSegment:
    """Quadratic Bezier corner; ``control`` is the original vertex."""

    start: Point
    control: Point
    end: Point

    def point_at(self, t: float) -> Point:
        u = 1.0 - t
        return Point(
            u * u * self.start.x + 2.0 * u * t * self.control.x + t * t * self.end.x,
            u * u * self.start.z + 2.0 * u * t * self.control.z + t * t * self.end.z,
        )

    def length(self, steps: int = 16) -> float:
        total = 0.0
        prev = self.start
        for i in range(1, steps + 1):
            point = self.point_at(i / steps)
            total += _distance(prev, point)
            prev = point
        return total


Segment = Union[LineSegment, ArcSegment]


@dataclass(frozen=True)
class ShellDims:
    width: float
    height: float
    depth: float


@dataclass(frozen=True)
class RoutedPath:
    segments: Tuple[Segment, ...]
    elevation: float

    def is_empty(self) -> bool:
        return not self.segments

    def vertices(self) -> List[Point]:
        if not self.segments:
            return []
        points = [self.segments[0].start]
        for segment in self.segments:
            points.append(segment.end)
        return points

    def length(self) -> float:
        return sum(segment.length() for segment in self.segments)

    def sample_points(self, divisions: int = DEFAULT_ROUTING.sample_divisions) -> List[Point3]:
        """Lines contribute their two ends, arcs ``divisions`` steps; repeats are dropped."""
        planar: List[Point] = []
        for segment in self.segments:
            resolution = 1 if isinstance(segment, LineSegment) else max(divisions, 1)
            for j in range(resolution + 1):
                point = segment.point_at(j / resolution)
                if planar and planar[-1] == point:
                    continue
                planar.append(point)
        return [self._lift(point) for point in planar]

    def spaced_points(self, count: int = DEFAULT_ROUTING.path_segments) -> List[Point3]:
        """``count + 1`` points evenly spaced by arc length."""
        dense = [Point(x, z) for x, _y, z in self.sample_points(max(count, 8))]
        if len(dense) < 2:
            return [self._lift(point) for point in dense]
        cumulative = [0.0]
        for prev, point in zip(dense, dense[1:]):
            cumulative.append(cumulative[-1] + _distance(prev, point))
        total = cumulative[-1]
        if total <= 0.0:
            return [self._lift(dense[0])]
        result: List[Point3] = []
        cursor = 1
        for i in range(count + 1):
            target = total * i / count
            while cursor < len(dense) - 1 and cumulative[cursor] < target:
                cursor += 1
            span = cumulative[cursor] - cumulative[cursor - 1]
            t = 0.0 if span <= 0.0 else (target - cumulative[cursor - 1]) / span
            t = max(0.0, min(1.0, t))
            a = dense[cursor - 1]
            b = dense[cursor]
            result.append(self._lift(Point(a.x + (b.x - a.x) * t, a.z + (b.z - a.z) * t)))
        return result

    def _lift(self, point: Point) -> Point3:
        return (point.x, self.elevation, point.z)


def route_connection(
    connection: Connection,
    nodes_by_id: Dict[str, Node],
    config: RoutingConfig = DEFAULT_ROUTING,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> RoutedPath:
    source = nodes_by_id.get(connection.source_id)
    target = nodes_by_id.get(connection.target_id)
    if source is None or target is None:
        return RoutedPath(segments=(), elevation=config.elevation)
    return route_between(source, target, connection.waypoints, config, footprint)


@lru_cache(maxsize=2048)
def route_between(
    source: Node,
    target: Node,
    waypoints: Optional[Tuple[Point, ...]] = None,
    config: RoutingConfig = DEFAULT_ROUTING,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> RoutedPath:
    if waypoints is not None and len(waypoints) >= 2:
        points = _waypoint_route(source, target, waypoints, config, footprint)
    else:
        points = _automatic_route(source, target, config, footprint)
    segments = round_corners(points, config.corner_radius, config)
    return RoutedPath(segments=segments, elevation=config.elevation)


def _automatic_route(
    source: Node, target: Node, config: RoutingConfig, footprint: FootprintConfig
) -> List[Point]:
    offset_a = node_offset(source, config)
    offset_b = node_offset(target, config)
    start_anchor, start_dir = side_anchor(source, target.position, footprint)
    end_anchor, end_dir = side_anchor(target, source.position, footprint)

    projected = Point(start_anchor.x + start_dir.x * offset_a, start_anchor.z + start_dir.z * offset_a)
    start_out = footprint_hit(source, projected, config, footprint) or projected
    end_in = footprint_hit(target, start_out, config, footprint) or Point(
        end_anchor.x - end_dir.x * offset_b, end_anchor.z - end_dir.z * offset_b
    )

    if start_dir.x != 0.0:
        elbow = Point(end_in.x, start_out.z)
    else:
        elbow = Point(start_out.x, end_in.z)

    eps = config.point_epsilon
    points = [start_out]
    if _distance(elbow, start_out) > eps and _distance(elbow, end_in) > eps:
        points.append(elbow)
    if _distance(end_in, points[-1]) > eps:
        points.append(end_in)
    return points


def _waypoint_route(
    source: Node,
    target: Node,
    waypoints: Sequence[Point],
    config: RoutingConfig,
    footprint: FootprintConfig,
) -> List[Point]:
    eps = config.point_epsilon
    first = Point(*waypoints[0])
    last = Point(*waypoints[-1])
    interior = [Point(*p) for p in waypoints[1:-1]]
    while interior and _distance(interior[0], first) < eps:
        interior.pop(0)
    while interior and _distance(interior[-1], last) < eps:
        interior.pop()

    start_ref = interior[0] if interior else last
    end_ref = interior[-1] if interior else first
    start = waypoint_anchor(source, start_ref, config, footprint)
    end = waypoint_anchor(target, end_ref, config, footprint)
    return orthogonalize([start, *interior, end], eps)


def orthogonalize(points: Sequence[Point], eps: float = DEFAULT_ROUTING.point_epsilon) -> List[Point]:
    """Insert elbows so every leg is axis-aligned, then drop redundant vertices."""
    if len(points) < 2:
        return list(points)
    result: List[Point] = [points[0]]
    for nxt in points[1:]:
        prev = result[-1]
        if abs(nxt.x - prev.x) < eps or abs(nxt.z - prev.z) < eps:
            result.append(nxt)
            continue
        if len(result) >= 2:
            before = result[-2]
            horizontal = abs(prev.x - before.x) >= abs(prev.z - before.z)
        else:
            horizontal = abs(nxt.x - prev.x) >= abs(nxt.z - prev.z)
        elbow = Point(nxt.x, prev.z) if horizontal else Point(prev.x, nxt.z)
        if _distance(elbow, prev) > eps:
            result.append(elbow)
        result.append(nxt)

    simplified: List[Point] = []
    for point in result:
        if not simplified or _distance(point, simplified[-1]) > eps:
            simplified.append(point)

    cleaned: List[Point] = []
    for i, point in enumerate(simplified):
        if not cleaned or i == len(simplified) - 1:
            cleaned.append(point)
            continue
        prev = cleaned[-1]
        nxt = simplified[i + 1]
        same_x = abs(prev.x - point.x) < eps and abs(point.x - nxt.x) < eps
        same_z = abs(prev.z - point.z) < eps and abs(point.z - nxt.z) < eps
        if same_x or same_z:
            continue
        cleaned.append(point)
    return cleaned


def round_corners(
    points: Sequence[Point], radius: float, config: RoutingConfig = DEFAULT_ROUTING
) -> Tuple[Segment, ...]:
    if len(points) < 2:
        return ()
    segments: List[Segment] = []
    if len(points) == 2 or radius <= 0:
        _append_line(segments, points[0], points[-1])
        return tuple(segments)

    current = points[0]
    for i in range(1, len(points) - 1):
        prev, point, nxt = points[i - 1], points[i], points[i + 1]
        len_in = _distance(prev, point)
        len_out = _distance(point, nxt)
        if len_in < config.corner_epsilon or len_out < config.corner_epsilon:
            continue
        dir_in = Point((point.x - prev.x) / len_in, (point.z - prev.z) / len_in)
        dir_out = Point((nxt.x - point.x) / len_out, (nxt.z - point.z) / len_out)
        dot = dir_in.x * dir_out.x + dir_in.z * dir_out.z
        r = min(radius, len_in * 0.5, len_out * 0.5)
        if abs(dot) > config.colinear_dot or r < config.corner_epsilon:
            _append_line(segments, current, point)
            current = point
            continue
        entry = Point(point.x - dir_in.x * r, point.z - dir_in.z * r)
        exit_ = Point(point.x + dir_out.x * r, point.z + dir_out.z * r)
        _append_line(segments, current, entry)
        segments.append(ArcSegment(entry, point, exit_))
        current = exit_
    _append_line(segments, current, points[-1])
    return tuple(segments)


def _append_line(segments: List[Segment], start: Point, end: Point) -> None:
    if _distance(start, end) > 0.0:
        segments.append(LineSegment(start, end))


def node_offset(node: Node, config: RoutingConfig = DEFAULT_ROUTING) -> float:
    return 0.0 if node.is_container else config.node_offset


def container_shell(
    node: Node, layer: str = "outer", footprint: FootprintConfig = DEFAULT_FOOTPRINT
) -> ShellDims:
    width = node.bounds.width if node.bounds is not None else footprint.container_width
    depth = node.bounds.height if node.bounds is not None else footprint.container_depth
    scale = footprint.shell_outer_scale if layer == "outer" else footprint.shell_inner_scale
    return ShellDims(width=width * scale, height=footprint.shell_height, depth=depth * scale)


def half_extents(node: Node, footprint: FootprintConfig = DEFAULT_FOOTPRINT) -> Tuple[float, float]:
    if node.is_container:
        shell = container_shell(node, "outer", footprint)
        return shell.width / 2.0, shell.depth / 2.0
    width, depth = node_size(node, footprint)
    return width / 2.0, depth / 2.0


def cardinal_normal(origin: Point, toward: Point) -> Point:
    dx = toward.x - origin.x
    dz = toward.z - origin.z
    if abs(dx) >= abs(dz):
        return Point(1.0, 0.0) if dx >= 0 else Point(-1.0, 0.0)
    return Point(0.0, 1.0) if dz >= 0 else Point(0.0, -1.0)


def side_anchor(
    node: Node, toward: Point, footprint: FootprintConfig = DEFAULT_FOOTPRINT
) -> Tuple[Point, Point]:
    """Cardinal boundary point facing ``toward`` and its outward normal."""
    half_w, half_d = half_extents(node, footprint)
    normal = cardinal_normal(node.position, toward)
    anchor = Point(node.position.x + normal.x * half_w, node.position.z + normal.z * half_d)
    return anchor, normal


def waypoint_anchor(
    node: Node,
    toward: Point,
    config: RoutingConfig = DEFAULT_ROUTING,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> Point:
    if node.is_container:
        return side_anchor(node, toward, footprint)[0]
    dx = toward.x - node.position.x
    dz = toward.z - node.position.z
    length = math.hypot(dx, dz)
    if length < config.point_epsilon:
        return node.position
    offset = node_offset(node, config)
    return Point(node.position.x + dx / length * offset, node.position.z + dz / length * offset)


def footprint_hit(
    node: Node,
    origin: Point,
    config: RoutingConfig = DEFAULT_ROUTING,
    footprint: FootprintConfig = DEFAULT_FOOTPRINT,
) -> Optional[Point]:
    """Where the ray from ``origin`` toward the node centre meets its footprint."""
    if node.footprint is Footprint.RECTANGLE:
        half_w, half_d = half_extents(node, footprint)
        return ray_rect_hit(origin, node.position, half_w, half_d, config.point_epsilon)
    return ray_circle_hit(origin, node.position, config.footprint_radius, config.point_epsilon)


def ray_circle_hit(origin: Point, center: Point, radius: float, eps: float = 1e-4) -> Optional[Point]:
    length = _distance(origin, center)
    if length < eps:
        return None
    travel = max(0.0, length - radius)
    return Point(
        origin.x + (center.x - origin.x) / length * travel,
        origin.z + (center.z - origin.z) / length * travel,
    )


def ray_rect_hit(
    origin: Point, center: Point, half_w: float, half_d: float, eps: float = 1e-4
) -> Optional[Point]:
    length = _distance(origin, center)
    if length < eps:
        return None
    bbox = (center.x - half_w, center.z - half_d, center.x + half_w, center.z + half_d)
    hit = _ray_rect_intersection((center.x, center.z), (origin.x, origin.z), bbox)
    if hit is None:
        return None
    point = Point(hit[0], hit[1])
    if _distance(center, point) >= length:
        # Origin already sits inside the rectangle.
        return None
    return point


def _ray_rect_intersection(
    origin: Tuple[float, float],
    toward: Tuple[float, float],
    bbox: Tuple[float, float, float, float],
) -> Optional[Tuple[float, float]]:
    ox, oy = origin
    tx, ty = toward
    dx = tx - ox
    dy = ty - oy
    if abs(dx) < 1e-12 and abs(dy) < 1e-12:
        return None

    left, top, right, bottom = bbox
    candidates: List[Tuple[float, float, float]] = []

    if abs(dx) > 1e-12:
        for x in (left, right):
            t = (x - ox) / dx
            if t <= 1e-12:
                continue
            y = oy + t * dy
            if top - 1e-9 <= y <= bottom + 1e-9:
                candidates.append((t, x, y))

    if abs(dy) > 1e-12:
        for y in (top, bottom):
            t = (y - oy) / dy
            if t <= 1e-12:
                continue
            x = ox + t * dx
            if left - 1e-9 <= x <= right + 1e-9:
                candidates.append((t, x, y))

    if not candidates:
        return None

    _t, x, y = min(candidates, key=lambda item: item[0])
    return (x, y)


def arrow_position(path: RoutedPath, divisions: int = DEFAULT_ROUTING.sample_divisions) -> Optional[Point3]:
    points = path.sample_points(divisions)
    return points[-1] if points else None


def arrow_orientation(path: RoutedPath, divisions: int = DEFAULT_ROUTING.sample_divisions) -> Quaternion:
    """Unit quaternion (x, y, z, w) turning +Y onto the path's final direction."""
    points = path.sample_points(divisions)
    if len(points) < 2:
        return IDENTITY_QUATERNION
    (ax, ay, az), (bx, by, bz) = points[-2], points[-1]
    dx, dy, dz = bx - ax, by - ay, bz - az
    norm = math.sqrt(dx * dx + dy * dy + dz * dz)
    if norm == 0.0:
        return IDENTITY_QUATERNION
    return _quaternion_from_unit_vectors((0.0, 1.0, 0.0), (dx / norm, dy / norm, dz / norm))


def _quaternion_from_unit_vectors(v_from: Point3, v_to: Point3) -> Quaternion:
    fx, fy, fz = v_from
    tx, ty, tz = v_to
    r = fx * tx + fy * ty + fz * tz + 1.0
    if r < 1e-8:
        # Opposite vectors: rotate half a turn around any perpendicular axis.
        if abs(fx) > abs(fz):
            x, y, z, w = -fy, fx, 0.0, 0.0
        else:
            x, y, z, w = 0.0, -fz, fy, 0.0
    else:
        x = fy * tz - fz * ty
        y = fz * tx - fx * tz
        z = fx * ty - fy * tx
        w = r
    norm = math.sqrt(x * x + y * y + z * z + w * w)
    return (x / norm, y / norm, z / norm, w / norm)


def tube_radius(source: Optional[Node], target: Optional[Node], config: RoutingConfig = DEFAULT_ROUTING) -> float:
    if (source is not None and source.is_container) or (target is not None and target.is_container):
        return config.container_tube_radius
    return config.tube_radius


def footprint_anchor(node: Node, config: RoutingConfig = DEFAULT_ROUTING) -> Point3:
    return (node.position.x, config.elevation, node.position.z)


def _distance(a: Point, b: Point) -> float:
    return math.hypot(b[0] - a[0], b[1] - a[1])
