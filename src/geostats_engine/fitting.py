"""Weighted least-squares fitting of variogram models to empirical bins.

The optimiser is ``scipy.optimize.least_squares`` (trust region reflective)
with native box constraints, so no parameter ever goes negative. Ranges are
bounded below by a tiny positive value because a basic structure with zero
range is degenerate.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy.optimize import least_squares

from .cancellation import CancellationToken, check_cancelled
from .errors import FitDivergence, InsufficientData, InvalidModel
from .models import SpaceTimeVariogramModel, VariogramModel
from .variography import DistanceBin, EmpiricalVariogram

logger = logging.getLogger(__name__)

_MAX_REWEIGHTS = 20
_REWEIGHT_TOL = 1e-6


class WeightingScheme(enum.Enum):
    UNIFORM = "uniform"
    PAIRS = "pairs"
    PAIRS_OVER_LAG_SQUARED = "pairs_over_lag_squared"
    PAIRS_OVER_MODEL_SQUARED = "pairs_over_model_squared"

    @classmethod
    def parse(cls, value: Union["WeightingScheme", str, int]) -> "WeightingScheme":
        """Accept an enum member, its value, its name, or a gstat fit.method number."""
        if isinstance(value, cls):
            return value
        gstat_methods = {1: cls.PAIRS, 2: cls.PAIRS_OVER_MODEL_SQUARED, 6: cls.UNIFORM, 7: cls.PAIRS_OVER_LAG_SQUARED}
        if isinstance(value, int):
            if value in gstat_methods:
                return gstat_methods[value]
        else:
            key = str(value).strip().lower()
            for member in cls:
                if key in (member.value, member.name.lower()):
                    return member
            aliases = {"ols": cls.UNIFORM, "npairs": cls.PAIRS, "cressie": cls.PAIRS_OVER_MODEL_SQUARED}
            if key in aliases:
                return aliases[key]
        raise ValueError(f"Unknown weighting scheme: {value}")


def _effective_lags(lags: np.ndarray, upper: np.ndarray) -> np.ndarray:
    # Zero-distance bins (duplicate locations) fall back to half their upper edge.
    return np.where(lags > 0, lags, 0.5 * upper)


def _weights(
    scheme: WeightingScheme,
    counts: np.ndarray,
    lags: np.ndarray,
    upper: np.ndarray,
    model_gamma: Optional[np.ndarray] = None,
) -> np.ndarray:
    counts = counts.astype(float)
    if scheme is WeightingScheme.UNIFORM:
        return np.ones_like(counts)
    if scheme is WeightingScheme.PAIRS:
        return counts
    if scheme is WeightingScheme.PAIRS_OVER_LAG_SQUARED:
        return counts / _effective_lags(lags, upper) ** 2
    if model_gamma is None:
        raise ValueError("model_gamma is required for the model-based weighting scheme")
    floor = max(float(np.max(np.abs(model_gamma))) * 1e-12, np.finfo(float).tiny)
    return counts / np.maximum(np.abs(model_gamma), floor) ** 2


@dataclass(frozen=True)
class _Slot:
    component: Optional[str]
    structure: int
    attr: str


class _Problem:
    """Maps a model onto a flat parameter vector and back."""

    def __init__(self, slots: List[_Slot], x0: np.ndarray, lower: np.ndarray, upper: np.ndarray, build: Callable[[np.ndarray], object]):
        self.slots = slots
        self.x0 = x0
        self.lower = lower
        self.upper = upper
        self.build = build


def _structure_slots(model: VariogramModel, component: Optional[str], fit_nugget: bool, fit_ranges: bool, fit_sills: bool = True) -> List[_Slot]:
    slots: List[_Slot] = []
    for idx, structure in enumerate(model.structures):
        if structure.kind == "nugget":
            if fit_nugget and fit_sills:
                slots.append(_Slot(component, idx, "partial_sill"))
            continue
        if fit_sills:
            slots.append(_Slot(component, idx, "partial_sill"))
        if fit_ranges:
            slots.append(_Slot(component, idx, "range"))
    return slots


def _apply_slots(model: VariogramModel, slots: Sequence[_Slot], values: Sequence[float]) -> VariogramModel:
    structures = list(model.structures)
    for slot, value in zip(slots, values):
        structures[slot.structure] = replace(structures[slot.structure], **{slot.attr: float(value)})
    return VariogramModel(tuple(structures))


def _range_floor(empirical: EmpiricalVariogram) -> float:
    scale = float(np.max(empirical.upper_edges)) if len(empirical) else 1.0
    return max(scale, 1.0) * 1e-9


def _bounds_for(slots: Sequence[_Slot], range_floor: float) -> Tuple[np.ndarray, np.ndarray]:
    lower = np.array([range_floor if s.attr == "range" else 0.0 for s in slots], dtype=float)
    upper = np.full(len(slots), np.inf)
    return lower, upper


def _initial_values(model: VariogramModel, slots: Sequence[_Slot]) -> List[float]:
    return [getattr(model.structures[s.structure], s.attr) for s in slots]


def _run_least_squares(
    problem: _Problem,
    gamma_of: Callable[[object], np.ndarray],
    empirical: EmpiricalVariogram,
    scheme: WeightingScheme,
    lag_axis: np.ndarray,
    max_iterations: int,
    cancel: Optional[CancellationToken],
) -> Tuple[object, float]:
    counts = empirical.counts
    observed = empirical.gamma
    upper = empirical.upper_edges
    x = np.clip(problem.x0, problem.lower, problem.upper)

    passes = _MAX_REWEIGHTS if scheme is WeightingScheme.PAIRS_OVER_MODEL_SQUARED else 1
    cost = np.inf
    for outer in range(passes):
        check_cancelled(cancel, stage="fit", reweight_pass=outer)
        model_gamma = gamma_of(problem.build(x)) if scheme is WeightingScheme.PAIRS_OVER_MODEL_SQUARED else None
        weights = _weights(scheme, counts, lag_axis, upper, model_gamma)
        if not np.all(np.isfinite(weights)) or np.max(weights) <= 0:
            raise FitDivergence("Fit weights are not finite or all zero.", details={"weighting": scheme.value})
        sqrt_w = np.sqrt(weights / np.max(weights))

        def residuals(params: np.ndarray) -> np.ndarray:
            check_cancelled(cancel, stage="fit")
            return sqrt_w * (gamma_of(problem.build(params)) - observed)

        start = residuals(x)
        start_cost = 0.5 * float(np.dot(start, start))
        result = least_squares(
            residuals,
            x,
            bounds=(problem.lower, problem.upper),
            method="trf",
            x_scale="jac",
            max_nfev=max_iterations,
        )
        details = {"status": int(result.status), "evaluations": int(result.nfev), "reweight_pass": outer}
        if result.status <= 0:
            raise FitDivergence(
                f"Variogram fit did not converge: {result.message}",
                suggestion="Provide better initial ranges/sills or raise max_iterations.",
                details=details,
            )
        if not (np.all(np.isfinite(result.x)) and np.isfinite(result.cost)):
            raise FitDivergence("Variogram fit produced non-finite parameters.", details=details)
        if result.cost > start_cost * (1.0 + 1e-12) + 1e-300:
            raise FitDivergence(
                "Weighted residual sum did not decrease during the fit.",
                details={**details, "start_cost": start_cost, "final_cost": float(result.cost)},
            )
        change = np.max(np.abs(result.x - x) / np.maximum(np.abs(x), 1e-12)) if x.size else 0.0
        x = result.x
        cost = float(result.cost)
        if change < _REWEIGHT_TOL:
            break
    return problem.build(x), cost


def fit_variogram(
    initial_model: VariogramModel,
    empirical: EmpiricalVariogram,
    weighting: Union[WeightingScheme, str, int] = WeightingScheme.PAIRS_OVER_LAG_SQUARED,
    fit_nugget: bool = True,
    fit_ranges: bool = True,
    max_iterations: int = 200,
    cancel: Optional[CancellationToken] = None,
) -> VariogramModel:
    """Fit partial sills and ranges of ``initial_model`` to the empirical bins.

    Minimises ``sum(w_i * (gamma_model(h_i) - gamma_hat_i) ** 2)`` subject to
    every parameter being non-negative. The structure list (kinds, count,
    Matérn smoothness) is taken from ``initial_model``.

    Raises:
        InsufficientData: fewer than ``2 * len(structures)`` non-empty bins.
        FitDivergence: the optimiser hit ``max_iterations`` evaluations,
            failed, or did not reduce the weighted residual sum.
    """
    scheme = WeightingScheme.parse(weighting)
    if not isinstance(initial_model, VariogramModel):
        raise InvalidModel("fit_variogram expects a VariogramModel as initial model.")
    bins = empirical.nonempty()
    needed = 2 * len(initial_model.structures)
    if len(bins) < needed:
        raise InsufficientData(
            f"Need at least {needed} non-empty bins to fit {len(initial_model.structures)} structures, got {len(bins)}",
            suggestion="Increase the cutoff or the bin width, or simplify the model.",
        )

    slots = _structure_slots(initial_model, None, fit_nugget, fit_ranges)
    if not slots:
        return initial_model
    lower, upper = _bounds_for(slots, _range_floor(bins))
    x0 = np.array(_initial_values(initial_model, slots), dtype=float)
    problem = _Problem(slots, x0, lower, upper, lambda x: _apply_slots(initial_model, slots, x))

    lags = bins.lags
    fitted, cost = _run_least_squares(
        problem,
        lambda model: model.gamma(lags),
        bins,
        scheme,
        lags,
        max_iterations,
        cancel,
    )
    logger.info(
        "Fitted variogram (%s weights, cost=%.6g): %s",
        scheme.value,
        cost,
        ", ".join(f"{s.kind}(psill={s.partial_sill:.4g}, range={s.range:.4g})" for s in fitted.structures),
    )
    return fitted


def weighted_sse(
    model: Union[VariogramModel, SpaceTimeVariogramModel],
    empirical: EmpiricalVariogram,
    weighting: Union[WeightingScheme, str, int] = WeightingScheme.PAIRS_OVER_LAG_SQUARED,
) -> float:
    """Weighted residual sum of squares of ``model`` against the bins."""
    scheme = WeightingScheme.parse(weighting)
    bins = empirical.nonempty()
    if isinstance(model, SpaceTimeVariogramModel):
        predicted = model.gamma_st(bins.lags, bins.time_lags_mean)
        lag_axis = _metric_lags(bins, model.anisotropy_ratio or 1.0)
    else:
        predicted = model.gamma(bins.lags)
        lag_axis = bins.lags
    weights = _weights(scheme, bins.counts, lag_axis, bins.upper_edges, predicted)
    return float(np.sum(weights * (predicted - bins.gamma) ** 2))


def spatial_marginal(empirical: EmpiricalVariogram) -> EmpiricalVariogram:
    """Bins of the first time-lag class (pairs observed at the same time)."""
    if not empirical.is_spacetime:
        return empirical
    kept = tuple(
        DistanceBin(b.lag_lower, b.lag_upper, b.mean_lag, b.pair_count, b.gamma)
        for b in empirical.bins
        if b.time_lower == 0.0
    )
    return EmpiricalVariogram(kept, empirical.cutoff, empirical.width)


def temporal_marginal(empirical: EmpiricalVariogram) -> EmpiricalVariogram:
    """Bins of the first space-lag class, re-expressed on the time axis."""
    if not empirical.is_spacetime:
        raise ValueError("temporal_marginal needs a space-time variogram")
    kept = tuple(
        DistanceBin(b.time_lower, b.time_upper, b.mean_time_lag, b.pair_count, b.gamma)
        for b in empirical.bins
        if b.lag_lower == 0.0 and b.time_upper > b.time_lower and b.mean_time_lag > 0
    )
    width = float(np.median([b.lag_upper - b.lag_lower for b in kept])) if kept else 1.0
    cutoff = max((b.lag_upper for b in kept), default=1.0)
    return EmpiricalVariogram(kept, cutoff, width)


def _origin_slope(lags: np.ndarray, gamma: np.ndarray, counts: np.ndarray) -> float:
    positive = lags > 0
    lags, gamma, counts = lags[positive], gamma[positive], counts[positive]
    if lags.size == 0:
        return float("nan")
    near = lags <= 0.5 * lags.max()
    if np.count_nonzero(near) >= 1:
        lags, gamma, counts = lags[near], gamma[near], counts[near]
    return float(np.sum(counts * lags * gamma) / np.sum(counts * lags**2))


def estimate_anisotropy_ratio(
    empirical: EmpiricalVariogram,
    method: str = "linear",
    spatial_model: Optional[VariogramModel] = None,
    temporal_model: Optional[VariogramModel] = None,
    weighting: Union[WeightingScheme, str, int] = WeightingScheme.PAIRS_OVER_LAG_SQUARED,
) -> float:
    """Space units per time unit that make time lags commensurate with space lags.

    ``linear`` takes the ratio of the slopes of straight lines through the
    origin fitted to the short-lag part of the temporal and spatial marginal
    variograms. ``range`` fits ``spatial_model`` and ``temporal_model`` to
    the marginals and returns the ratio of their largest ranges.
    """
    spatial = spatial_marginal(empirical).nonempty()
    temporal = temporal_marginal(empirical).nonempty()
    if len(spatial) == 0 or len(temporal) == 0:
        raise InsufficientData(
            "Anisotropy estimation needs pairs at time lag 0 and pairs in the first space-lag bin.",
            details={"spatial_bins": len(spatial), "temporal_bins": len(temporal)},
        )
    method = method.lower()
    if method == "linear":
        slope_s = _origin_slope(spatial.lags, spatial.gamma, spatial.counts)
        slope_t = _origin_slope(temporal.lags, temporal.gamma, temporal.counts)
        if not (np.isfinite(slope_s) and np.isfinite(slope_t)) or slope_s <= 0 or slope_t <= 0:
            raise InsufficientData(
                "Marginal variograms do not increase; cannot estimate the anisotropy ratio.",
                details={"slope_space": slope_s, "slope_time": slope_t},
            )
        ratio = slope_t / slope_s
    elif method == "range":
        if spatial_model is None or temporal_model is None:
            raise ValueError("method='range' needs initial spatial_model and temporal_model")
        fitted_s = fit_variogram(spatial_model, spatial, weighting)
        fitted_t = fit_variogram(temporal_model, temporal, weighting)
        if fitted_t.effective_range <= 0:
            raise InsufficientData("Temporal marginal range is zero; cannot estimate the anisotropy ratio.")
        ratio = fitted_s.effective_range / fitted_t.effective_range
    else:
        raise ValueError(f"Unknown anisotropy method: {method}")
    logger.info("Estimated space-time anisotropy ratio (%s): %.6g", method, ratio)
    return float(ratio)


def _metric_lags(bins: EmpiricalVariogram, ratio: float) -> np.ndarray:
    return np.hypot(bins.lags, ratio * np.nan_to_num(bins.time_lags_mean))


def _spacetime_problem(model: SpaceTimeVariogramModel, range_floor: float, fit_nugget: bool) -> _Problem:
    slots: List[_Slot] = []
    fit_sills = model.kind != "separable"
    for name in ("space", "time", "joint"):
        part = getattr(model, name)
        if part is not None:
            slots.extend(_structure_slots(part, name, fit_nugget, True, fit_sills))
    extra: List[str] = []
    if model.kind == "product_sum":
        extra.append("k_fraction")
    if model.kind == "separable":
        extra.append("sill")

    lower, upper = _bounds_for(slots, range_floor)
    x0 = [getattr(getattr(model, s.component).structures[s.structure], s.attr) for s in slots]
    for name in extra:
        if name == "k_fraction":
            bound = SpaceTimeVariogramModel.k_upper_bound(model.space, model.time)
            x0.append(0.0 if not np.isfinite(bound) else min(model.k / bound, 1.0))
            lower = np.append(lower, 0.0)
            upper = np.append(upper, 1.0)
        else:
            x0.append(model.sill)
            lower = np.append(lower, 0.0)
            upper = np.append(upper, np.inf)

    n_struct = len(slots)

    def build(x: np.ndarray) -> SpaceTimeVariogramModel:
        parts = {}
        for name in ("space", "time", "joint"):
            part = getattr(model, name)
            if part is None:
                parts[name] = None
                continue
            mine = [(s, v) for s, v in zip(slots, x[:n_struct]) if s.component == name]
            parts[name] = _apply_slots(part, [s for s, _ in mine], [v for _, v in mine])
        kwargs = dict(parts)
        for name, value in zip(extra, x[n_struct:]):
            if name == "k_fraction":
                bound = SpaceTimeVariogramModel.k_upper_bound(parts["space"], parts["time"])
                kwargs["k"] = 0.0 if not np.isfinite(bound) else float(np.clip(value, 0.0, 1.0)) * bound
            else:
                kwargs["sill"] = float(value)
        return replace(model, **kwargs)

    return _Problem(slots, np.asarray(x0, dtype=float), lower, upper, build)


def fit_spacetime_variogram(
    initial_model: SpaceTimeVariogramModel,
    empirical: EmpiricalVariogram,
    weighting: Union[WeightingScheme, str, int] = WeightingScheme.PAIRS_OVER_LAG_SQUARED,
    anisotropy_ratio: Optional[float] = None,
    anisotropy_method: str = "linear",
    fit_nugget: bool = True,
    max_iterations: int = 400,
    cancel: Optional[CancellationToken] = None,
) -> SpaceTimeVariogramModel:
    """Fit a space-time model to a space-time empirical variogram.

    The anisotropy ratio is taken from ``anisotropy_ratio``, else from the
    initial model, else estimated with ``estimate_anisotropy_ratio``. It is
    held fixed while the joint parameters are fitted; it scales time lags in
    the metric parts and in the lag-based weights. For separable models the
    component partial sills only set the shape and are held; the ranges
    and the overall sill are fitted.
    """
    if not empirical.is_spacetime:
        raise InvalidModel("fit_spacetime_variogram needs a space-time empirical variogram.")
    scheme = WeightingScheme.parse(weighting)
    bins = empirical.nonempty()
    n_structures = sum(len(getattr(initial_model, name).structures) for name in ("space", "time", "joint") if getattr(initial_model, name) is not None)
    needed = 2 * n_structures
    if len(bins) < needed:
        raise InsufficientData(
            f"Need at least {needed} non-empty space-time bins, got {len(bins)}",
            suggestion="Widen the cutoff or add time lags.",
        )

    ratio = anisotropy_ratio if anisotropy_ratio is not None else initial_model.anisotropy_ratio
    if ratio is None:
        ratio = estimate_anisotropy_ratio(bins, method=anisotropy_method)
    model0 = initial_model.with_anisotropy(ratio)

    problem = _spacetime_problem(model0, _range_floor(bins), fit_nugget)
    h = bins.lags
    u = np.nan_to_num(bins.time_lags_mean)
    fitted, cost = _run_least_squares(
        problem,
        lambda model: model.gamma_st(h, u),
        bins,
        scheme,
        _metric_lags(bins, ratio),
        max_iterations,
        cancel,
    )
    logger.info("Fitted %s space-time variogram (anisotropy=%.4g, cost=%.6g)", fitted.kind, ratio, cost)
    return fitted
