from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple

import numpy as np

from .errors import InsufficientData, InvalidObservation
from .observations import Observation, observation_values

TrendTerm = Callable[[Any], float]


def _intercept(_item: Any) -> float:
    return 1.0


def _covariate(position: int) -> TrendTerm:
    def term(item: Any) -> float:
        return float(item.covariates[position])

    term.__name__ = f"covariate_{position}"
    return term


def spatial_point(location: Any) -> Any:
    """Coordinates behind a location: region centre, space part of a space-time pair."""
    if hasattr(location, "center"):
        return location.center
    if hasattr(location, "region") and hasattr(location, "times"):
        return spatial_point(location.region)
    if hasattr(location, "space") and hasattr(location, "time"):
        return spatial_point(location.space)
    return location


def _coordinate(axis: int) -> TrendTerm:
    def term(item: Any) -> float:
        return float(np.atleast_1d(np.asarray(spatial_point(item.location), dtype=float))[axis])

    term.__name__ = f"coordinate_{axis}"
    return term


@dataclass(frozen=True)
class TrendSpec:
    """Ordered covariate extraction functions defining the mean model.

    Each term is a pure function of an item exposing ``location`` and
    ``covariates`` (an ``Observation`` or a ``Target``).
    """

    terms: Tuple[TrendTerm, ...]

    @classmethod
    def intercept(cls) -> "TrendSpec":
        return cls((_intercept,))

    @classmethod
    def from_covariates(cls, indices: Optional[Iterable[int]] = None, n_covariates: Optional[int] = None, intercept: bool = True) -> "TrendSpec":
        if indices is None:
            if n_covariates is None:
                raise ValueError("Either indices or n_covariates must be given")
            indices = range(n_covariates)
        terms = [_covariate(int(i)) for i in indices]
        if intercept:
            terms.insert(0, _intercept)
        return cls(tuple(terms))

    @classmethod
    def linear_drift(cls, n_dims: int) -> "TrendSpec":
        """Intercept plus one term per spatial coordinate (universal kriging)."""
        return cls((_intercept,) + tuple(_coordinate(axis) for axis in range(n_dims)))

    @property
    def n_terms(self) -> int:
        return len(self.terms)

    @property
    def is_intercept_only(self) -> bool:
        return self.terms == (_intercept,)

    def design_matrix(self, items: Sequence[Any]) -> np.ndarray:
        design = np.empty((len(items), len(self.terms)), dtype=float)
        for i, item in enumerate(items):
            for j, term in enumerate(self.terms):
                design[i, j] = term(item)
        return design

    def row(self, item: Any) -> np.ndarray:
        return np.array([term(item) for term in self.terms], dtype=float)


@dataclass(frozen=True)
class TrendFit:
    coef: np.ndarray
    residuals: np.ndarray
    r2: float

    def predict(self, design: np.ndarray) -> np.ndarray:
        return design @ self.coef


def fit_trend(
    observations: Sequence[Observation],
    trend: TrendSpec,
    weights: Optional[np.ndarray] = None,
) -> TrendFit:
    """Ordinary (or weighted) least-squares fit of value on the trend terms."""
    design = trend.design_matrix(observations)
    values = observation_values(observations)
    if not np.all(np.isfinite(design)):
        raise InvalidObservation("Trend design matrix contains non-finite entries.")
    if len(values) < trend.n_terms:
        raise InsufficientData(
            f"Trend with {trend.n_terms} terms needs at least {trend.n_terms} observations, got {len(values)}"
        )

    if weights is None:
        coef, *_ = np.linalg.lstsq(design, values, rcond=None)
    else:
        w = np.sqrt(np.asarray(weights, dtype=float))
        coef, *_ = np.linalg.lstsq(design * w[:, None], values * w, rcond=None)

    pred = design @ coef
    residuals = values - pred
    ss_res = float(np.sum(residuals**2))
    ss_tot = float(np.sum((values - values.mean()) ** 2))
    r2 = 0.0 if ss_tot == 0 else 1.0 - ss_res / ss_tot
    return TrendFit(coef=coef, residuals=residuals, r2=r2)
