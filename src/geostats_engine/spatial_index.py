"""Neighbour search over observations.

When the geometry exposes a Euclidean embedding the index keeps a
logarithmic stack of static ``cKDTree`` blocks (sizes ``leaf_size * 2**i``)
plus a small linear buffer, so insertions cost O(log n) amortized tree
rebuild work per point and queries touch O(log n) trees. Without an
embedding it falls back to an O(n) scan through
``GeometryProvider.distance_matrix``; that fallback is only meant for small
conditioning sets.

Equal distances are ordered by insertion sequence, so neighbour selection
is deterministic for a fixed insertion order.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, List, Optional, Tuple

import numpy as np
from scipy.spatial import cKDTree

from .geometry import GeometryProvider
from .observations import Observation, check_observation

_RADIUS_SLACK = 1e-9


@dataclass(frozen=True)
class _Block:
    ids: np.ndarray
    tree: cKDTree

    @property
    def size(self) -> int:
        return int(self.ids.size)


class SpatialIndex:
    def __init__(
        self,
        geometry: GeometryProvider,
        observations: Iterable[Observation] = (),
        leaf_size: int = 32,
    ):
        if leaf_size <= 0:
            raise ValueError("leaf_size must be positive")
        self.geometry = geometry
        self.leaf_size = int(leaf_size)
        self._entries: List[Optional[Observation]] = []
        self._coords: List[np.ndarray] = []
        self._buffer: List[int] = []
        self._levels: List[Optional[_Block]] = []
        self._live = 0
        self._embedded = geometry.coordinates([]) is not None
        self._owner = threading.get_ident()
        self._frozen = False
        for obs in observations:
            self.insert(obs)

    def __len__(self) -> int:
        return self._live

    def __iter__(self) -> Iterator[Observation]:
        for obs in self._entries:
            if obs is not None:
                yield obs

    def observations(self) -> List[Observation]:
        return list(self)

    @property
    def uses_tree(self) -> bool:
        return self._embedded

    def freeze(self) -> "SpatialIndex":
        """Mark the index read-only; it can then be shared across threads."""
        self._frozen = True
        return self

    def copy(self) -> "SpatialIndex":
        """Independent, writable copy owned by the calling thread."""
        clone = SpatialIndex.__new__(SpatialIndex)
        clone.geometry = self.geometry
        clone.leaf_size = self.leaf_size
        clone._entries = list(self._entries)
        clone._coords = list(self._coords)
        clone._buffer = list(self._buffer)
        # Blocks are never mutated in place, only replaced.
        clone._levels = list(self._levels)
        clone._live = self._live
        clone._embedded = self._embedded
        clone._owner = threading.get_ident()
        clone._frozen = False
        return clone

    def _check_writable(self) -> None:
        if self._frozen:
            raise RuntimeError("SpatialIndex is frozen; copy() it before mutating.")
        if threading.get_ident() != self._owner:
            raise RuntimeError("SpatialIndex may only be mutated by the thread that owns it.")

    def insert(self, observation: Observation) -> None:
        """Add one observation; non-finite input raises ``InvalidObservation``."""
        self._check_writable()
        entry_id = len(self._entries)
        check_observation(observation, entry_id)
        self._entries.append(observation)
        self._live += 1
        if not self._embedded:
            return
        self._coords.append(np.asarray(self.geometry.coordinates([observation.location])[0], dtype=float))
        self._buffer.append(entry_id)
        if len(self._buffer) >= self.leaf_size:
            self._flush_buffer()

    def _flush_buffer(self) -> None:
        carry = np.asarray(self._buffer, dtype=np.int64)
        self._buffer = []
        level = 0
        while level < len(self._levels) and self._levels[level] is not None:
            carry = np.concatenate([self._levels[level].ids, carry])
            self._levels[level] = None
            level += 1
        if level == len(self._levels):
            self._levels.append(None)
        points = np.vstack([self._coords[i] for i in carry])
        self._levels[level] = _Block(ids=carry, tree=cKDTree(points))

    def remove(self, observation: Observation) -> None:
        """Remove the earliest live entry equal to ``observation``."""
        self._check_writable()
        for entry_id, obs in enumerate(self._entries):
            if obs is not None and obs == observation:
                self._entries[entry_id] = None
                self._live -= 1
                break
        else:
            raise KeyError("Observation not present in index")
        if self._embedded:
            self._rebuild()

    def _rebuild(self) -> None:
        live_ids = [i for i, obs in enumerate(self._entries) if obs is not None]
        self._levels = []
        self._buffer = []
        for entry_id in live_ids:
            self._buffer.append(entry_id)
            if len(self._buffer) >= self.leaf_size:
                self._flush_buffer()

    def _blocks(self) -> List[_Block]:
        return [block for block in self._levels if block is not None]

    def _candidate_ids(self, query: np.ndarray, k: Optional[int], max_radius: Optional[float]) -> List[int]:
        candidates = set(self._buffer)
        bound = np.inf if max_radius is None else max_radius * (1.0 + _RADIUS_SLACK) + _RADIUS_SLACK
        blocks = self._blocks()

        if k is None:
            for block in blocks:
                if max_radius is None:
                    candidates.update(int(i) for i in block.ids)
                else:
                    hits = block.tree.query_ball_point(query, r=bound)
                    candidates.update(int(block.ids[j]) for j in hits)
            return sorted(candidates)

        kth = []
        for block in blocks:
            kk = min(k, block.size)
            dist, idx = block.tree.query(query, k=kk, distance_upper_bound=bound)
            dist = np.atleast_1d(dist)
            idx = np.atleast_1d(idx)
            found = idx < block.size
            candidates.update(int(block.ids[j]) for j in idx[found])
            kth.extend(dist[found].tolist())

        if blocks and len(kth) >= k:
            # Pull in every point tied with the k-th distance so the
            # insertion-order tie-break sees the whole tie group.
            radius = sorted(kth)[k - 1]
            radius = min(radius * (1.0 + _RADIUS_SLACK) + _RADIUS_SLACK, bound)
            for block in blocks:
                hits = block.tree.query_ball_point(query, r=radius)
                candidates.update(int(block.ids[j]) for j in hits)
        return sorted(candidates)

    def neighbors(
        self,
        location: Any,
        k: Optional[int] = None,
        max_radius: Optional[float] = None,
    ) -> List[Tuple[float, Observation]]:
        """Return ``(distance, observation)`` pairs, nearest first."""
        if k is not None and k <= 0:
            return []
        if self._live == 0:
            return []

        if self._embedded:
            query = np.asarray(self.geometry.coordinates([location])[0], dtype=float)
            ids = self._candidate_ids(query, k, max_radius)
        else:
            ids = [i for i, obs in enumerate(self._entries) if obs is not None]
        if not ids:
            return []

        locations = [self._entries[i].location for i in ids]
        dist = self.geometry.distance_matrix([location], locations)[0]
        id_arr = np.asarray(ids, dtype=np.int64)
        if max_radius is not None:
            keep = dist <= max_radius
            dist = dist[keep]
            id_arr = id_arr[keep]
        order = np.lexsort((id_arr, dist))
        if k is not None:
            order = order[:k]
        return [(float(dist[j]), self._entries[int(id_arr[j])]) for j in order]

    def k_nearest(
        self,
        location: Any,
        k: Optional[int] = None,
        max_radius: Optional[float] = None,
    ) -> List[Observation]:
        return [obs for _, obs in self.neighbors(location, k, max_radius)]


def ensure_index(conditioning: Any, geometry: Optional[GeometryProvider] = None) -> SpatialIndex:
    """Accept a ready index or a sequence of observations plus a geometry."""
    if isinstance(conditioning, SpatialIndex):
        return conditioning
    if geometry is None:
        raise ValueError("geometry is required when conditioning data is not a SpatialIndex")
    return SpatialIndex(geometry, conditioning)
