"""Empirical (sample) variograms.

Every unordered pair of observations is visited once, so the cost is
O(n**2) in time. This is inherent to the estimator and is the scaling limit
of the module; distances are computed one observation row at a time so
memory stays O(n).
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .cancellation import CancellationToken, check_cancelled
from .errors import InsufficientData
from .geometry import GeometryProvider, SpaceTimeGeometry
from .observations import Observation, observation_values, validate_observations
from .trending import TrendSpec, fit_trend

logger = logging.getLogger(__name__)

DEFAULT_CUTOFF_FRACTION = 1.0 / 3.0
DEFAULT_N_BINS = 15


@dataclass(frozen=True)
class DistanceBin:
    """One row of an empirical variogram.

    ``gamma`` is the mean of half squared differences of the pairs whose
    distance falls in ``[lag_lower, lag_upper)``; ``mean_lag`` is the mean of
    those distances. Space-time bins also carry a time-lag interval.
    """

    lag_lower: float
    lag_upper: float
    mean_lag: float
    pair_count: int
    gamma: float
    time_lower: Optional[float] = None
    time_upper: Optional[float] = None
    mean_time_lag: Optional[float] = None

    def __post_init__(self) -> None:
        if not self.lag_lower < self.lag_upper:
            raise ValueError(f"lag_lower ({self.lag_lower}) must be < lag_upper ({self.lag_upper})")
        if self.pair_count < 0:
            raise ValueError("pair_count must be >= 0")


@dataclass(frozen=True)
class EmpiricalVariogram:
    bins: Tuple[DistanceBin, ...]
    cutoff: float
    width: float
    time_lags: Optional[Tuple[float, ...]] = None

    @property
    def is_spacetime(self) -> bool:
        return self.time_lags is not None

    @property
    def lags(self) -> np.ndarray:
        return np.array([b.mean_lag for b in self.bins], dtype=float)

    @property
    def gamma(self) -> np.ndarray:
        return np.array([b.gamma for b in self.bins], dtype=float)

    @property
    def counts(self) -> np.ndarray:
        return np.array([b.pair_count for b in self.bins], dtype=np.int64)

    @property
    def time_lags_mean(self) -> np.ndarray:
        return np.array([np.nan if b.mean_time_lag is None else b.mean_time_lag for b in self.bins], dtype=float)

    @property
    def upper_edges(self) -> np.ndarray:
        return np.array([b.lag_upper for b in self.bins], dtype=float)

    def nonempty(self) -> "EmpiricalVariogram":
        kept = tuple(b for b in self.bins if b.pair_count > 0)
        return EmpiricalVariogram(kept, self.cutoff, self.width, self.time_lags)

    def __len__(self) -> int:
        return len(self.bins)

    def to_frame(self) -> pd.DataFrame:
        columns = ["lag_lower", "lag_upper", "mean_lag", "pair_count", "gamma"]
        if self.is_spacetime:
            columns += ["time_lower", "time_upper", "mean_time_lag"]
        rows = [{col: getattr(b, col) for col in columns} for b in self.bins]
        return pd.DataFrame(rows, columns=columns)


def default_cutoff(locations: Sequence, geometry: GeometryProvider) -> float:
    """One third of the bounding diagonal of the observation set."""
    return DEFAULT_CUTOFF_FRACTION * geometry.bounding_diagonal(locations)


def _resolve_lags(locations: Sequence, geometry: GeometryProvider, cutoff: Optional[float], width: Optional[float]) -> Tuple[float, float]:
    if cutoff is None:
        cutoff = default_cutoff(locations, geometry)
    if width is None:
        width = cutoff / DEFAULT_N_BINS
    cutoff = float(cutoff)
    width = float(width)
    if not (np.isfinite(cutoff) and cutoff > 0):
        raise InsufficientData(
            f"Variogram cutoff must be positive, got {cutoff}",
            suggestion="Supply a cutoff explicitly when all observations share one location.",
        )
    if not (np.isfinite(width) and width > 0):
        raise ValueError(f"Variogram bin width must be positive, got {width}")
    return cutoff, width


def _analysis_values(observations: Sequence[Observation], trend: Optional[TrendSpec]) -> np.ndarray:
    if trend is None or trend.is_intercept_only:
        return observation_values(observations)
    fit = fit_trend(observations, trend)
    logger.info("Variogram computed on trend residuals (r2=%.4f, %d terms)", fit.r2, trend.n_terms)
    return fit.residuals


def _bin_edges(k: int, width: float, cutoff: float) -> Tuple[float, float]:
    return k * width, min((k + 1) * width, cutoff)


def compute_empirical_variogram(
    observations: Sequence[Observation],
    geometry: GeometryProvider,
    cutoff: Optional[float] = None,
    width: Optional[float] = None,
    trend: Optional[TrendSpec] = None,
    cancel: Optional[CancellationToken] = None,
) -> EmpiricalVariogram:
    """Bin half squared differences of all pairs closer than ``cutoff``.

    Args:
        observations: Point observations.
        geometry: Distance provider.
        cutoff: Maximum pair distance (default: a third of the bounding diagonal).
        width: Bin width (default: ``cutoff / 15``).
        trend: Mean model; when it has non-intercept terms the variogram is
            computed on least-squares residuals.
        cancel: Optional token checked once per observation row.

    Returns:
        EmpiricalVariogram with non-empty bins ordered by lag.
    """
    items = validate_observations(observations)
    if len(items) < 2:
        raise InsufficientData(f"Need at least 2 observations for a variogram, got {len(items)}")
    locations = [obs.location for obs in items]
    cutoff, width = _resolve_lags(locations, geometry, cutoff, width)
    values = _analysis_values(items, trend)

    n_bins = int(math.ceil(cutoff / width))
    sums = np.zeros(n_bins)
    dist_sums = np.zeros(n_bins)
    counts = np.zeros(n_bins, dtype=np.int64)

    for i in range(len(items) - 1):
        check_cancelled(cancel, stage="variogram", row=i)
        dist = geometry.distance_matrix([locations[i]], locations[i + 1 :])[0]
        keep = dist < cutoff
        if not np.any(keep):
            continue
        dist = dist[keep]
        semivar = 0.5 * (values[i + 1 :][keep] - values[i]) ** 2
        idx = np.minimum((dist // width).astype(np.int64), n_bins - 1)
        sums += np.bincount(idx, weights=semivar, minlength=n_bins)
        dist_sums += np.bincount(idx, weights=dist, minlength=n_bins)
        counts += np.bincount(idx, minlength=n_bins)

    bins: List[DistanceBin] = []
    for k in range(n_bins):
        if counts[k] == 0:
            continue
        lower, upper = _bin_edges(k, width, cutoff)
        bins.append(
            DistanceBin(
                lag_lower=lower,
                lag_upper=upper,
                mean_lag=float(dist_sums[k] / counts[k]),
                pair_count=int(counts[k]),
                gamma=float(sums[k] / counts[k]),
            )
        )
    logger.debug("Empirical variogram: %d non-empty bins, cutoff=%.4g, width=%.4g", len(bins), cutoff, width)
    return EmpiricalVariogram(tuple(bins), cutoff, width)


def default_time_lags(observations: Sequence[Observation], geometry: SpaceTimeGeometry) -> Tuple[float, ...]:
    """Integer time lags ``0..T`` with ``T`` the floor of the time span."""
    span = geometry.time_span([obs.location for obs in observations])
    return tuple(float(t) for t in range(int(math.floor(span)) + 1))


def _time_edges(time_lags: Sequence[float]) -> np.ndarray:
    lags = np.asarray(time_lags, dtype=float)
    if lags.size == 0 or np.any(np.diff(lags) <= 0) or lags[0] < 0:
        raise ValueError("time_lags must be non-negative and strictly increasing")
    if lags.size == 1:
        return np.array([0.0, max(lags[0] * 2.0, 0.5) if lags[0] > 0 else 0.5])
    mids = 0.5 * (lags[:-1] + lags[1:])
    last = lags[-1] + 0.5 * (lags[-1] - lags[-2])
    return np.concatenate([[0.0], mids, [last]])


def compute_spacetime_variogram(
    observations: Sequence[Observation],
    geometry: SpaceTimeGeometry,
    cutoff: Optional[float] = None,
    width: Optional[float] = None,
    time_lags: Optional[Sequence[float]] = None,
    trend: Optional[TrendSpec] = None,
    cancel: Optional[CancellationToken] = None,
) -> EmpiricalVariogram:
    """Bin pairs on a (space lag, time lag) grid.

    Time-lag bin ``j`` covers the midpoints between consecutive entries of
    ``time_lags``; the first starts at 0. Bins are returned ordered by time
    lag, then space lag, with empty cells dropped.
    """
    items = validate_observations(observations)
    if len(items) < 2:
        raise InsufficientData(f"Need at least 2 observations for a variogram, got {len(items)}")
    locations = [obs.location for obs in items]
    cutoff, width = _resolve_lags(locations, geometry, cutoff, width)
    if time_lags is None:
        time_lags = default_time_lags(items, geometry)
    time_lags = tuple(float(t) for t in time_lags)
    t_edges = _time_edges(time_lags)
    values = _analysis_values(items, trend)

    n_space = int(math.ceil(cutoff / width))
    n_time = len(time_lags)
    shape = n_time * n_space
    sums = np.zeros(shape)
    dist_sums = np.zeros(shape)
    time_sums = np.zeros(shape)
    counts = np.zeros(shape, dtype=np.int64)

    for i in range(len(items) - 1):
        check_cancelled(cancel, stage="spacetime_variogram", row=i)
        rest = locations[i + 1 :]
        h = geometry.spatial_lags([locations[i]], rest)[0]
        u = geometry.time_lags([locations[i]], rest)[0]
        keep = (h < cutoff) & (u < t_edges[-1])
        if not np.any(keep):
            continue
        h = h[keep]
        u = u[keep]
        semivar = 0.5 * (values[i + 1 :][keep] - values[i]) ** 2
        s_idx = np.minimum((h // width).astype(np.int64), n_space - 1)
        t_idx = np.clip(np.searchsorted(t_edges, u, side="right") - 1, 0, n_time - 1)
        idx = t_idx * n_space + s_idx
        sums += np.bincount(idx, weights=semivar, minlength=shape)
        dist_sums += np.bincount(idx, weights=h, minlength=shape)
        time_sums += np.bincount(idx, weights=u, minlength=shape)
        counts += np.bincount(idx, minlength=shape)

    bins: List[DistanceBin] = []
    for j in range(n_time):
        for k in range(n_space):
            cell = j * n_space + k
            if counts[cell] == 0:
                continue
            lower, upper = _bin_edges(k, width, cutoff)
            bins.append(
                DistanceBin(
                    lag_lower=lower,
                    lag_upper=upper,
                    mean_lag=float(dist_sums[cell] / counts[cell]),
                    pair_count=int(counts[cell]),
                    gamma=float(sums[cell] / counts[cell]),
                    time_lower=float(t_edges[j]),
                    time_upper=float(t_edges[j + 1]),
                    mean_time_lag=float(time_sums[cell] / counts[cell]),
                )
            )
    logger.debug("Space-time variogram: %d non-empty cells over %d time lags", len(bins), n_time)
    return EmpiricalVariogram(tuple(bins), cutoff, width, time_lags=time_lags)
