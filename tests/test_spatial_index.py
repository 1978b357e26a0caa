from __future__ import annotations

import threading

import numpy as np
import pytest

from geostats_engine.errors import InvalidObservation
from geostats_engine.geometry import EuclideanGeometry, GeometryProvider
from geostats_engine.observations import Observation
from geostats_engine.spatial_index import SpatialIndex, ensure_index


def _random_observations(n: int, seed: int = 3) -> list:
    rng = np.random.default_rng(seed)
    coords = rng.uniform(0.0, 100.0, size=(n, 2))
    return [Observation((float(x), float(y)), float(i)) for i, (x, y) in enumerate(coords)]


def _brute_force(observations, query, k=None, max_radius=None):
    dist = np.array([np.hypot(o.location[0] - query[0], o.location[1] - query[1]) for o in observations])
    ids = np.arange(len(observations))
    keep = np.ones(len(observations), dtype=bool) if max_radius is None else dist <= max_radius
    order = np.lexsort((ids[keep], dist[keep]))
    chosen = ids[keep][order]
    if k is not None:
        chosen = chosen[:k]
    return [observations[i] for i in chosen]


class _RingGeometry(GeometryProvider):
    """Distances on a circle of circumference 10; no Euclidean embedding."""

    def distance(self, a, b):
        d = abs(float(a) - float(b)) % 10.0
        return min(d, 10.0 - d)

    def block_discretization(self, region):
        return [region]


def test_k_nearest_matches_brute_force():
    observations = _random_observations(300)
    index = SpatialIndex(EuclideanGeometry(), observations, leaf_size=8)
    assert index.uses_tree
    for query in [(50.0, 50.0), (0.0, 0.0), (99.0, 3.0)]:
        for k in (1, 5, 17):
            assert index.k_nearest(query, k=k) == _brute_force(observations, query, k=k)
        assert index.k_nearest(query, k=10, max_radius=15.0) == _brute_force(observations, query, k=10, max_radius=15.0)
        assert index.k_nearest(query, max_radius=20.0) == _brute_force(observations, query, max_radius=20.0)


def test_ties_follow_insertion_order():
    far = [Observation((500.0 + i, 500.0), -1.0) for i in range(20)]
    ring = [
        Observation((0.0, 1.0), 1.0),
        Observation((1.0, 0.0), 2.0),
        Observation((0.0, -1.0), 3.0),
        Observation((-1.0, 0.0), 4.0),
    ]
    index = SpatialIndex(EuclideanGeometry(), far + ring, leaf_size=4)
    nearest = index.k_nearest((0.0, 0.0), k=2)
    assert [o.value for o in nearest] == [1.0, 2.0]


def test_duplicate_locations_are_returned_in_insertion_order():
    index = SpatialIndex(EuclideanGeometry(), leaf_size=2)
    for value in (1.0, 2.0, 3.0):
        index.insert(Observation((5.0, 5.0), value))
    index.insert(Observation((6.0, 5.0), 4.0))
    result = index.neighbors((5.0, 5.0), k=3)
    assert [d for d, _ in result] == [0.0, 0.0, 0.0]
    assert [o.value for _, o in result] == [1.0, 2.0, 3.0]


def test_remove_and_missing_observation():
    observations = _random_observations(40)
    index = SpatialIndex(EuclideanGeometry(), observations, leaf_size=4)
    target = observations[7]
    index.remove(target)
    assert len(index) == 39
    assert target not in index.k_nearest(target.location)
    with pytest.raises(KeyError):
        index.remove(target)


def test_copy_is_independent():
    observations = _random_observations(20)
    index = SpatialIndex(EuclideanGeometry(), observations, leaf_size=4)
    clone = index.copy()
    clone.insert(Observation((1.0, 1.0), 99.0))
    assert len(clone) == 21
    assert len(index) == 20
    assert all(o.value != 99.0 for o in index)


def test_frozen_index_and_foreign_thread_cannot_mutate():
    index = SpatialIndex(EuclideanGeometry(), _random_observations(5))
    errors = []

    def mutate():
        try:
            index.insert(Observation((0.0, 0.0), 0.0))
        except RuntimeError as err:
            errors.append(err)

    worker = threading.Thread(target=mutate)
    worker.start()
    worker.join()
    assert len(errors) == 1

    index.freeze()
    with pytest.raises(RuntimeError):
        index.insert(Observation((0.0, 0.0), 0.0))
    assert len(index.k_nearest((0.0, 0.0), k=2)) == 2


def test_fallback_scan_without_embedding():
    geometry = _RingGeometry()
    observations = [Observation(x, x) for x in (0.5, 9.5, 3.0, 5.0)]
    index = SpatialIndex(geometry, observations)
    assert not index.uses_tree
    nearest = index.k_nearest(0.0, k=2)
    assert [o.value for o in nearest] == [0.5, 9.5]


def test_empty_and_zero_k():
    index = SpatialIndex(EuclideanGeometry())
    assert index.k_nearest((0.0, 0.0)) == []
    index.insert(Observation((0.0, 0.0), 1.0))
    assert index.k_nearest((0.0, 0.0), k=0) == []


def test_ensure_index_requires_geometry_for_sequences():
    observations = _random_observations(3)
    with pytest.raises(ValueError):
        ensure_index(observations)
    index = ensure_index(observations, EuclideanGeometry())
    assert ensure_index(index) is index


def test_non_finite_observations_are_rejected_with_their_position():
    observations = _random_observations(6)
    observations[4] = Observation((float("nan"), 1.0), 1.0)
    with pytest.raises(InvalidObservation) as info:
        SpatialIndex(EuclideanGeometry(), observations)
    assert info.value.details["observation_index"] == 4

    index = SpatialIndex(EuclideanGeometry(), _random_observations(3))
    with pytest.raises(InvalidObservation):
        index.insert(Observation((1.0, 1.0), 2.0, covariates=(float("inf"),)))
    assert len(index) == 3
