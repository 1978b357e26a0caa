from __future__ import annotations

import numpy as np
import pytest

from geostats_engine.cancellation import CancellationToken
from geostats_engine.errors import FitDivergence, InsufficientData, OperationCancelled
from geostats_engine.fitting import WeightingScheme, fit_variogram, weighted_sse
from geostats_engine.models import Structure, VariogramModel
from geostats_engine.variography import DistanceBin, EmpiricalVariogram


def _synthetic(model: VariogramModel, n_bins: int = 30, width: float = 1.0, noise: float = 0.0, seed: int = 0) -> EmpiricalVariogram:
    rng = np.random.default_rng(seed)
    bins = []
    for k in range(n_bins):
        lag = (k + 0.5) * width
        gamma = float(model.gamma(lag)) + noise * float(rng.standard_normal())
        bins.append(DistanceBin(k * width, (k + 1) * width, lag, 40 + k, max(gamma, 0.0)))
    return EmpiricalVariogram(tuple(bins), n_bins * width, width)


TRUE_MODEL = VariogramModel((Structure("nugget", 0.3), Structure("exponential", 2.0, 8.0)))
START_MODEL = VariogramModel((Structure("nugget", 0.1), Structure("exponential", 1.0, 3.0)))


@pytest.mark.parametrize("scheme", list(WeightingScheme))
def test_recovers_parameters_of_exact_bins(scheme):
    fitted = fit_variogram(START_MODEL, _synthetic(TRUE_MODEL), weighting=scheme)
    assert fitted.nugget == pytest.approx(0.3, rel=1e-3, abs=1e-4)
    assert fitted.structures[1].partial_sill == pytest.approx(2.0, rel=1e-3)
    assert fitted.structures[1].range == pytest.approx(8.0, rel=1e-3)


def test_parameters_stay_non_negative():
    # An empirical curve starting below zero would pull an unconstrained nugget negative.
    bins = []
    for k in range(20):
        lag = k + 0.5
        gamma = max(float(Structure("spherical", 1.0, 12.0).gamma(lag)) - 0.15, 0.0)
        bins.append(DistanceBin(float(k), float(k + 1), lag, 30, gamma))
    empirical = EmpiricalVariogram(tuple(bins), 20.0, 1.0)
    start = VariogramModel((Structure("nugget", 0.2), Structure("spherical", 1.0, 8.0)))
    fitted = fit_variogram(start, empirical, weighting="pairs")
    for structure in fitted.structures:
        assert structure.partial_sill >= 0.0
        assert structure.range >= 0.0


def test_fit_reduces_weighted_residuals():
    empirical = _synthetic(TRUE_MODEL, noise=0.05, seed=4)
    for scheme in ("uniform", "pairs_over_model_squared"):
        fitted = fit_variogram(START_MODEL, empirical, weighting=scheme)
        assert weighted_sse(fitted, empirical, scheme) < weighted_sse(START_MODEL, empirical, scheme)


def test_fixed_ranges_and_nugget():
    empirical = _synthetic(TRUE_MODEL)
    fitted = fit_variogram(START_MODEL, empirical, weighting="uniform", fit_ranges=False, fit_nugget=False)
    assert fitted.structures[1].range == 3.0
    assert fitted.nugget == 0.1


def test_too_few_bins():
    empirical = _synthetic(TRUE_MODEL, n_bins=3)
    with pytest.raises(InsufficientData):
        fit_variogram(START_MODEL, empirical)


def test_iteration_bound_raises_fit_divergence():
    with pytest.raises(FitDivergence) as info:
        fit_variogram(START_MODEL, _synthetic(TRUE_MODEL), weighting="uniform", max_iterations=1)
    assert info.value.details["status"] == 0


def test_cancelled_fit():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(OperationCancelled):
        fit_variogram(START_MODEL, _synthetic(TRUE_MODEL), cancel=token)


@pytest.mark.parametrize(
    "value, expected",
    [
        (WeightingScheme.PAIRS, WeightingScheme.PAIRS),
        ("uniform", WeightingScheme.UNIFORM),
        ("PAIRS_OVER_LAG_SQUARED", WeightingScheme.PAIRS_OVER_LAG_SQUARED),
        ("cressie", WeightingScheme.PAIRS_OVER_MODEL_SQUARED),
        (7, WeightingScheme.PAIRS_OVER_LAG_SQUARED),
        (6, WeightingScheme.UNIFORM),
    ],
)
def test_weighting_scheme_parse(value, expected):
    assert WeightingScheme.parse(value) is expected


def test_weighting_scheme_rejects_unknown():
    with pytest.raises(ValueError):
        WeightingScheme.parse("median")
    with pytest.raises(ValueError):
        WeightingScheme.parse(3)


@pytest.mark.parametrize("scheme", list(WeightingScheme))
def test_refitting_identical_noisy_bins_gives_identical_parameters(scheme):
    empirical = _synthetic(TRUE_MODEL, noise=0.05, seed=5)
    first = fit_variogram(START_MODEL, empirical, weighting=scheme)
    second = fit_variogram(START_MODEL, empirical, weighting=scheme)
    assert len(first.structures) == len(second.structures)
    for a, b in zip(first.structures, second.structures):
        assert a.kind == b.kind
        assert b.partial_sill == pytest.approx(a.partial_sill, rel=1e-9, abs=1e-12)
        assert b.range == pytest.approx(a.range, rel=1e-9, abs=1e-12)
