"""Fixed geometry and layout constants."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class RoutingConfig:
    # Lifted slightly above the ground plane (-1.5) to avoid z-fighting.
    elevation: float = -1.4
    corner_radius: float = 0.5
    node_offset: float = 0.75
    footprint_radius: float = 0.75
    tube_radius: float = 0.3
    container_tube_radius: float = 0.45
    sample_divisions: int = 20
    path_segments: int = 32
    colinear_dot: float = 0.999
    point_epsilon: float = 1e-4
    corner_epsilon: float = 1e-6


@dataclass(frozen=True)
class FootprintConfig:
    round_diameter: float = 1.5
    square_size: float = 1.2
    container_width: float = 4.0
    container_depth: float = 3.0
    shell_outer_scale: float = 1.05
    shell_inner_scale: float = 0.95
    shell_height: float = 1.6
    container_padding: float = 0.6
    container_min_size: float = 1.0


@dataclass(frozen=True)
class InterchangeConfig:
    scale: float = 80.0
    margin: float = 120.0
    round_shape: tuple = (50.0, 50.0)
    task_shape: tuple = (100.0, 80.0)


@dataclass(frozen=True)
class PreviewConfig:
    scale: float = 40.0
    padding: float = 20.0
    background: str = "#05070a"
    node_fill: str = "#101010"
    node_outline: str = "#00f2ff"
    container_outline: str = "#414e5c"
    connection: str = "#00f2ff"
    label: str = "#aaaaaa"


DEFAULT_ROUTING = RoutingConfig()
DEFAULT_FOOTPRINT = FootprintConfig()
DEFAULT_INTERCHANGE = InterchangeConfig()
DEFAULT_PREVIEW = PreviewConfig()
