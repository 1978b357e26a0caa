from __future__ import annotations

import numpy as np
import pytest

from geostats_engine.cancellation import CancellationToken
from geostats_engine.errors import InsufficientNeighbors, InvalidObservation, OperationCancelled
from geostats_engine.geometry import BlockRegion, EuclideanGeometry
from geostats_engine.kriging import KrigingOptions, predict
from geostats_engine.models import VariogramModel
from geostats_engine.observations import Observation
from geostats_engine.simulation import (
    SimulationOptions,
    realization_rng,
    realizations_to_frame,
    simulate,
    summarize_realizations,
)
from geostats_engine.spatial_index import SpatialIndex

MODEL = VariogramModel.single("exponential", 1.0, 25.0, nugget=0.05)
DATA = [
    ((10.0, 10.0), 1.2),
    ((30.0, 25.0), 1.9),
    ((45.0, 15.0), 0.4),
    ((50.0, 50.0), 1.0),
    ((70.0, 40.0), 2.3),
    ((80.0, 85.0), 0.1),
    ((35.0, 75.0), 0.9),
]
TARGETS = [(float(x), float(y)) for x in range(5, 100, 20) for y in range(5, 100, 20)]


def _index() -> SpatialIndex:
    return SpatialIndex(EuclideanGeometry(), [Observation(loc, value) for loc, value in DATA])


def test_same_seed_same_realizations_for_any_worker_count():
    options = SimulationOptions(nmax=8, seed=42)
    first = simulate(MODEL, _index(), TARGETS, 4, options)
    second = simulate(MODEL, _index(), TARGETS, 4, options)
    threaded = simulate(MODEL, _index(), TARGETS, 4, SimulationOptions(nmax=8, seed=42, workers=3))
    assert [r.values for r in first] == [r.values for r in second]
    assert [r.values for r in first] == [r.values for r in threaded]
    assert all(r.ok and len(r.values) == len(TARGETS) for r in first)
    assert all(np.all(np.isfinite(r.values)) for r in first)


def test_different_seeds_and_realizations_differ():
    a = simulate(MODEL, _index(), TARGETS, 2, SimulationOptions(nmax=8, seed=1))
    b = simulate(MODEL, _index(), TARGETS, 2, SimulationOptions(nmax=8, seed=2))
    assert a[0].values != b[0].values
    assert a[0].values != a[1].values


def test_realization_stream_is_child_of_seed():
    rng = realization_rng(7, 3)
    expected = np.random.Generator(np.random.PCG64(np.random.SeedSequence(7).spawn(4)[3]))
    assert rng.integers(0, 1000, 5).tolist() == expected.integers(0, 1000, 5).tolist()


def test_target_on_conditioning_point_takes_its_value():
    targets = [(50.0, 50.0), (60.0, 60.0)]
    realizations = simulate(MODEL, _index(), targets, 3, SimulationOptions(seed=5))
    for realization in realizations:
        assert realization.values[0] == 1.0
        assert realization.as_mapping(targets)[(50.0, 50.0)] == 1.0


def test_conditioning_index_is_not_modified():
    index = _index()
    before = index.observations()
    simulate(MODEL, index, TARGETS, 2, SimulationOptions(nmax=8, seed=3))
    assert index.observations() == before
    assert not any(obs.is_simulated for obs in index)


def test_single_target_draws_follow_kriging_distribution():
    target = (60.0, 20.0)
    kriged = predict(MODEL, _index(), target)
    draws = np.array([r.values[0] for r in simulate(MODEL, _index(), [target], 400, SimulationOptions(seed=11))])
    sd = np.sqrt(kriged.prediction_variance)
    assert abs(draws.mean() - kriged.predicted_value) < 4.0 * sd / np.sqrt(len(draws))
    assert draws.std() == pytest.approx(sd, rel=0.2)


def test_failed_realizations_are_reported_or_raised():
    targets = [(20.0, 20.0), (900.0, 900.0)]
    options = SimulationOptions(seed=9, kriging=KrigingOptions(max_radius=40.0))
    realizations = simulate(MODEL, _index(), targets, 2, options)
    assert [r.ok for r in realizations] == [False, False]
    error = realizations[0].error
    assert isinstance(error, InsufficientNeighbors)
    assert error.details["realization"] == 0
    assert error.details["target_index"] == 1
    with pytest.raises(InsufficientNeighbors):
        realizations[0].as_mapping(targets)

    fail_fast = SimulationOptions(seed=9, kriging=KrigingOptions(max_radius=40.0), fail_fast=True)
    with pytest.raises(InsufficientNeighbors):
        simulate(MODEL, _index(), targets, 2, fail_fast)

    frame = realizations_to_frame(realizations, targets)
    assert frame["sim_01"].isna().all()


def test_normal_score_values_stay_within_data_range():
    values = [value for _, value in DATA]
    realizations = simulate(MODEL, _index(), TARGETS, 3, SimulationOptions(nmax=8, seed=4, normal_score=True))
    for realization in realizations:
        assert min(realization.values) >= min(values) - 1e-12
        assert max(realization.values) <= max(values) + 1e-12


def test_summary_quantiles_are_ordered():
    realizations = simulate(MODEL, _index(), TARGETS, 10, SimulationOptions(nmax=8, seed=21))
    summary = summarize_realizations(realizations, TARGETS)
    assert len(summary) == len(TARGETS)
    assert (summary["p10"] <= summary["p50"]).all()
    assert (summary["p50"] <= summary["p90"]).all()
    frame = realizations_to_frame(realizations, TARGETS)
    assert [c for c in frame.columns if c.startswith("sim_")] == [f"sim_{i:02d}" for i in range(1, 11)]


def test_invalid_requests():
    with pytest.raises(ValueError):
        simulate(MODEL, _index(), [BlockRegion((5.0, 5.0), (2.0, 2.0))], 1)
    with pytest.raises(ValueError):
        simulate(MODEL, _index(), TARGETS, 0)


def test_cancelled_simulation():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        simulate(MODEL, _index(), TARGETS, 2, SimulationOptions(seed=1), cancel=token)


def test_neighbourhood_settings_override_explicit_kriging_options():
    base = KrigingOptions(nmax=20, max_radius=500.0, ridge=1e-6)
    merged = SimulationOptions(nmax=4, kriging=base).kriging_options()
    assert merged.nmax == 4
    assert merged.max_radius == 500.0
    assert merged.ridge == 1e-6
    assert SimulationOptions(kriging=base).kriging_options() == base


def test_non_finite_conditioning_data_is_rejected():
    observations = [Observation(loc, value) for loc, value in DATA]
    observations[2] = Observation(DATA[2][0], float("inf"))
    with pytest.raises(InvalidObservation) as info:
        simulate(MODEL, SpatialIndex(EuclideanGeometry(), observations), TARGETS, 2, SimulationOptions(seed=1))
    assert info.value.details["observation_index"] == 2


def test_unseeded_realizations_share_one_root():
    realizations = simulate(MODEL, _index(), TARGETS, 2, SimulationOptions(nmax=8))
    assert all(r.ok for r in realizations)
    assert realizations[0].values != realizations[1].values
