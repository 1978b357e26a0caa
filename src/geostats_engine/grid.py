"""Regular target grids built from observation extents."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .geometry import BlockRegion


@dataclass(frozen=True)
class GridSpec:
    origin: Tuple[float, ...]
    cell_size: Tuple[float, ...]
    shape: Tuple[int, ...]

    @property
    def n_cells(self) -> int:
        return int(np.prod(self.shape))

    def to_record(self) -> dict:
        return {"origin": list(self.origin), "cell_size": list(self.cell_size), "shape": list(self.shape)}


def grid_from_extents(
    coordinates: np.ndarray,
    cell_size: Sequence[float],
    pad: float = 0.0,
) -> GridSpec:
    """Create a grid spec covering the coordinate extents.

    Args:
        coordinates: Array (n, ndim) of observation coordinates.
        cell_size: Cell extent per axis.
        pad: Margin added on every side.

    Returns:
        GridSpec with at least one cell per axis.
    """
    coords = np.asarray(coordinates, dtype=float)
    if coords.ndim == 1:
        coords = coords.reshape(-1, 1)
    if coords.size == 0:
        raise ValueError("grid_from_extents needs at least one coordinate")
    sizes = np.asarray(cell_size, dtype=float)
    if sizes.shape != (coords.shape[1],):
        raise ValueError("cell_size must have one entry per axis")
    if np.any(sizes <= 0):
        raise ValueError("cell sizes must be positive")

    lower = coords.min(axis=0) - pad
    upper = coords.max(axis=0) + pad
    counts = np.maximum(np.ceil((upper - lower) / sizes).astype(int), 1)
    return GridSpec(
        origin=tuple(float(v) for v in lower),
        cell_size=tuple(float(v) for v in sizes),
        shape=tuple(int(v) for v in counts),
    )


def grid_locations(spec: GridSpec) -> List[Tuple[float, ...]]:
    """Cell centres, first axis varying slowest."""
    axes = [
        origin + size * (np.arange(n) + 0.5)
        for origin, size, n in zip(spec.origin, spec.cell_size, spec.shape)
    ]
    grid = np.meshgrid(*axes, indexing="ij")
    points = np.stack([g.ravel() for g in grid], axis=1)
    return [tuple(float(v) for v in row) for row in points]


def block_regions(spec: GridSpec, discretization: Optional[Sequence[int]] = None) -> List[BlockRegion]:
    """One ``BlockRegion`` per grid cell."""
    cells = tuple(int(n) for n in discretization) if discretization else ()
    return [BlockRegion(center, spec.cell_size, cells) for center in grid_locations(spec)]
