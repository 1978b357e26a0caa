from __future__ import annotations

import numpy as np
import pytest

from geostats_engine.errors import InsufficientData, InvalidObservation
from geostats_engine.geometry import BlockRegion, SpaceTimeLocation
from geostats_engine.observations import Observation, Target
from geostats_engine.transforms import normal_score_transform
from geostats_engine.trending import TrendSpec, fit_trend, spatial_point


def test_covariate_trend_fit():
    observations = [Observation((float(i), 0.0), 2.0 + 0.5 * c, covariates=(c,)) for i, c in enumerate([1.0, 3.0, 4.0, 8.0])]
    fit = fit_trend(observations, TrendSpec.from_covariates(n_covariates=1))
    assert fit.coef == pytest.approx([2.0, 0.5])
    assert fit.r2 == pytest.approx(1.0)
    assert np.allclose(fit.residuals, 0.0)


def test_trend_needs_enough_observations_and_finite_terms():
    spec = TrendSpec.linear_drift(2)
    with pytest.raises(InsufficientData):
        fit_trend([Observation((0.0, 0.0), 1.0), Observation((1.0, 0.0), 2.0)], spec)
    with pytest.raises(ValueError):
        TrendSpec.from_covariates()
    bad = [Observation((0.0, 0.0), 1.0, covariates=(np.inf,)), Observation((1.0, 0.0), 1.0, covariates=(1.0,))]
    with pytest.raises(InvalidObservation):
        fit_trend(bad, TrendSpec.from_covariates([0]))


def test_linear_drift_rows_use_spatial_part():
    spec = TrendSpec.linear_drift(2)
    assert spec.n_terms == 3
    assert not spec.is_intercept_only
    assert TrendSpec.intercept().is_intercept_only
    assert spec.row(Target((3.0, 4.0))).tolist() == [1.0, 3.0, 4.0]
    assert spec.row(Target(SpaceTimeLocation((3.0, 4.0), 9.0))).tolist() == [1.0, 3.0, 4.0]
    assert spatial_point(BlockRegion((1.0, 2.0), (2.0, 2.0))) == (1.0, 2.0)


def test_normal_score_transform_round_trip_and_clamping():
    values = [5.0, 1.0, 3.0, 2.0, 4.0]
    transform = normal_score_transform(values)
    scores = transform.transform(values)
    assert np.all(np.diff(scores[np.argsort(values)]) > 0)
    assert abs(scores.mean()) < 1e-12
    assert transform.back_transform(scores) == pytest.approx(values)
    assert transform.back_transform([-10.0, 10.0]).tolist() == [1.0, 5.0]
    with pytest.raises(ValueError):
        normal_score_transform([np.nan])
