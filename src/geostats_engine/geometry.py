"""Geometry collaborators.

The engine never looks inside a location: it asks a ``GeometryProvider``
for distances, block discretizations and region incidence. Two reference
providers are included, ``EuclideanGeometry`` for coordinate tuples and
``SpaceTimeGeometry`` for (space, time) pairs.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist


class GeometryProvider(ABC):
    """Distances, areal supports and incidence between opaque locations."""

    @abstractmethod
    def distance(self, a: Any, b: Any) -> float:
        """Symmetric, non-negative distance; zero for the same location."""

    @abstractmethod
    def block_discretization(self, region: Any) -> List[Any]:
        """Sample locations representing ``region`` for block averaging."""

    def distance_matrix(self, a: Sequence[Any], b: Sequence[Any]) -> np.ndarray:
        out = np.empty((len(a), len(b)), dtype=float)
        for i, loc_a in enumerate(a):
            for j, loc_b in enumerate(b):
                out[i, j] = self.distance(loc_a, loc_b)
        return out

    def region_center(self, region: Any) -> Any:
        points = self.block_discretization(region)
        return points[len(points) // 2]

    def incidence(self, points: Sequence[Any], regions: Sequence[Any]) -> Dict[int, List[int]]:
        """Map each region index to the indices of the points it contains."""
        result: Dict[int, List[int]] = {}
        for j, region in enumerate(regions):
            result[j] = [i for i, point in enumerate(points) if region.contains(point)]
        return result

    def bounding_diagonal(self, locations: Sequence[Any]) -> float:
        if len(locations) < 2:
            return 0.0
        return float(np.max(self.distance_matrix(locations, locations)))

    def coordinates(self, locations: Sequence[Any]) -> Optional[np.ndarray]:
        """Euclidean embedding whose distances equal ``distance``, if any."""
        return None


def _subcell_centers(length: float, n: int) -> np.ndarray:
    if n <= 0:
        raise ValueError("n must be positive")
    step = length / n
    return (np.arange(n) + 0.5) * step - 0.5 * length


def discretize_block(
    center: Sequence[float],
    size: Sequence[float],
    discretization: Sequence[int],
) -> np.ndarray:
    """Discretize an axis-aligned block into sub-cell centres.

    Args:
        center: Block centre, one value per axis.
        size: Block extent per axis.
        discretization: Sub-cells per axis.

    Returns:
        Array (nsub, ndim) with sub-cell centres.
    """
    if not (len(center) == len(size) == len(discretization)):
        raise ValueError("center, size and discretization must have the same length")
    axes = [
        _subcell_centers(float(length), int(n)) + float(c)
        for c, length, n in zip(center, size, discretization)
    ]
    grid = np.meshgrid(*axes, indexing="ij")
    return np.stack([g.ravel() for g in grid], axis=1)


@dataclass(frozen=True)
class BlockRegion:
    """Axis-aligned block with a regular sub-cell discretization."""

    center: Tuple[float, ...]
    size: Tuple[float, ...]
    discretization: Tuple[int, ...] = ()

    def __post_init__(self) -> None:
        if len(self.center) != len(self.size):
            raise ValueError("center and size must have the same dimension")
        if any(s < 0 for s in self.size):
            raise ValueError("size must be non-negative")
        if self.discretization and len(self.discretization) != len(self.center):
            raise ValueError("discretization must have one entry per axis")
        if any(n <= 0 for n in self.discretization):
            raise ValueError("discretization entries must be positive")

    @property
    def cells(self) -> Tuple[int, ...]:
        return self.discretization or tuple(1 for _ in self.center)

    def points(self) -> np.ndarray:
        return discretize_block(self.center, self.size, self.cells)

    def contains(self, point: Sequence[float]) -> bool:
        offset = np.abs(np.asarray(point, dtype=float) - np.asarray(self.center, dtype=float))
        return bool(np.all(offset <= 0.5 * np.asarray(self.size, dtype=float)))


def _as_coordinates(locations: Sequence[Any]) -> np.ndarray:
    coords = np.asarray(locations, dtype=float)
    if coords.ndim == 1:
        coords = coords.reshape(-1, 1)
    return coords


class EuclideanGeometry(GeometryProvider):
    """Locations are coordinate tuples; distance is Euclidean."""

    def distance(self, a: Any, b: Any) -> float:
        diff = np.atleast_1d(np.asarray(a, dtype=float) - np.asarray(b, dtype=float))
        return float(np.sqrt(np.dot(diff, diff)))

    def distance_matrix(self, a: Sequence[Any], b: Sequence[Any]) -> np.ndarray:
        if len(a) == 0 or len(b) == 0:
            return np.zeros((len(a), len(b)), dtype=float)
        return cdist(_as_coordinates(a), _as_coordinates(b))

    def block_discretization(self, region: BlockRegion) -> List[Tuple[float, ...]]:
        return [tuple(float(v) for v in row) for row in region.points()]

    def region_center(self, region: Any) -> Any:
        if isinstance(region, BlockRegion):
            return tuple(float(v) for v in region.center)
        return super().region_center(region)

    def bounding_diagonal(self, locations: Sequence[Any]) -> float:
        if len(locations) == 0:
            return 0.0
        coords = _as_coordinates(locations)
        extent = coords.max(axis=0) - coords.min(axis=0)
        return float(np.sqrt(np.sum(extent**2)))

    def coordinates(self, locations: Sequence[Any]) -> Optional[np.ndarray]:
        if len(locations) == 0:
            return np.zeros((0, 0), dtype=float)
        return _as_coordinates(locations)


class SpaceTimeLocation(NamedTuple):
    space: Any
    time: float


@dataclass(frozen=True)
class SpaceTimeRegion:
    """A spatial region observed over a set of time instants."""

    region: Any
    times: Tuple[float, ...]

    def contains(self, point: SpaceTimeLocation) -> bool:
        return point.time in self.times and self.region.contains(point.space)


class SpaceTimeGeometry(GeometryProvider):
    """Space-time distances built on a purely spatial provider.

    The joint distance is the metric distance ``sqrt(h**2 + (kappa*u)**2)``
    where ``kappa`` (the anisotropy ratio) converts time units into space
    units. Space-time covariance models use ``spatial_lags`` and
    ``time_lags`` separately.
    """

    def __init__(self, spatial: GeometryProvider, anisotropy_ratio: float = 1.0):
        if anisotropy_ratio < 0:
            raise ValueError("anisotropy_ratio must be non-negative")
        self.spatial = spatial
        self.anisotropy_ratio = float(anisotropy_ratio)

    def with_anisotropy(self, anisotropy_ratio: float) -> "SpaceTimeGeometry":
        return SpaceTimeGeometry(self.spatial, anisotropy_ratio)

    def spatial_lags(self, a: Sequence[SpaceTimeLocation], b: Sequence[SpaceTimeLocation]) -> np.ndarray:
        return self.spatial.distance_matrix([loc.space for loc in a], [loc.space for loc in b])

    def time_lags(self, a: Sequence[SpaceTimeLocation], b: Sequence[SpaceTimeLocation]) -> np.ndarray:
        ta = np.fromiter((loc.time for loc in a), dtype=float, count=len(a))
        tb = np.fromiter((loc.time for loc in b), dtype=float, count=len(b))
        return np.abs(ta[:, None] - tb[None, :])

    def distance(self, a: SpaceTimeLocation, b: SpaceTimeLocation) -> float:
        h = self.spatial.distance(a.space, b.space)
        u = abs(float(a.time) - float(b.time))
        return float(np.hypot(h, self.anisotropy_ratio * u))

    def distance_matrix(self, a: Sequence[SpaceTimeLocation], b: Sequence[SpaceTimeLocation]) -> np.ndarray:
        return np.hypot(self.spatial_lags(a, b), self.anisotropy_ratio * self.time_lags(a, b))

    def block_discretization(self, region: SpaceTimeRegion) -> List[SpaceTimeLocation]:
        spatial_points = self.spatial.block_discretization(region.region)
        return [SpaceTimeLocation(p, float(t)) for t in region.times for p in spatial_points]

    def region_center(self, region: SpaceTimeRegion) -> SpaceTimeLocation:
        return SpaceTimeLocation(self.spatial.region_center(region.region), float(np.mean(region.times)))

    def bounding_diagonal(self, locations: Sequence[SpaceTimeLocation]) -> float:
        return self.spatial.bounding_diagonal(unique_spaces(locations))

    def time_span(self, locations: Sequence[SpaceTimeLocation]) -> float:
        if len(locations) == 0:
            return 0.0
        times = [float(loc.time) for loc in locations]
        return max(times) - min(times)

    def coordinates(self, locations: Sequence[SpaceTimeLocation]) -> Optional[np.ndarray]:
        spatial = self.spatial.coordinates([loc.space for loc in locations])
        if spatial is None:
            return None
        times = np.fromiter((loc.time for loc in locations), dtype=float, count=len(locations))
        if spatial.size == 0:
            return np.zeros((len(locations), 1), dtype=float)
        return np.column_stack([spatial, self.anisotropy_ratio * times])


def unique_spaces(locations: Iterable[SpaceTimeLocation]) -> List[Any]:
    seen = []
    marker = set()
    for loc in locations:
        key = loc.space
        try:
            if key in marker:
                continue
            marker.add(key)
        except TypeError:
            pass
        seen.append(key)
    return seen
