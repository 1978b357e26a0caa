"""Point, block, simple and universal kriging.

One linear system per target::

    | K   X |   | lambda |   | k0 |
    | X'  0 | * |   mu   | = | x0 |

``K`` holds covariances between the neighbours, ``X`` the trend terms at the
neighbours (an intercept column for ordinary kriging, none for simple
kriging), ``k0`` the covariances to the target (averaged over the block
discretization for block targets) and ``x0`` the trend terms at the target.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
from scipy import linalg

from .cancellation import CancellationToken, check_cancelled
from .errors import GeostatsError, InsufficientNeighbors, InvalidObservation, OperationCancelled, SingularSystem
from .models import SpaceTimeVariogramModel, VariogramModel
from .observations import Target, as_target
from .spatial_index import SpatialIndex
from .trending import TrendSpec

logger = logging.getLogger(__name__)

CovarianceModel = Union[VariogramModel, SpaceTimeVariogramModel]


@dataclass(frozen=True)
class KrigingOptions:
    """Neighbourhood and system parameters.

    ``mean`` selects simple kriging with a known mean; otherwise ``trend``
    (default: intercept only, i.e. ordinary kriging) defines the unknown
    mean. ``condition_max`` bounds the condition number of the system with
    covariances divided by ``C(0)``. ``ridge`` is a fraction of ``C(0)``
    added to the diagonal when that bound is exceeded; with ``ridge=0`` an
    ill-conditioned system raises ``SingularSystem``.
    """

    nmax: Optional[int] = None
    max_radius: Optional[float] = None
    trend: Optional[TrendSpec] = None
    mean: Optional[float] = None
    ridge: float = 0.0
    condition_max: float = 1.0e10
    variance_tolerance: float = 1.0e-8

    def validate(self) -> None:
        if self.nmax is not None and self.nmax <= 0:
            raise ValueError("nmax must be positive")
        if self.max_radius is not None and not self.max_radius > 0:
            raise ValueError("max_radius must be positive")
        if self.ridge < 0:
            raise ValueError("ridge must be >= 0")
        if not self.condition_max > 0:
            raise ValueError("condition_max must be positive")
        if self.variance_tolerance < 0:
            raise ValueError("variance_tolerance must be >= 0")
        if self.mean is not None and not np.isfinite(self.mean):
            raise ValueError("mean must be finite for simple kriging")
        if self.mean is not None and self.trend is not None and not self.trend.is_intercept_only:
            raise ValueError("Simple kriging (mean given) cannot be combined with a trend")

    @property
    def is_simple(self) -> bool:
        return self.mean is not None

    def resolved_trend(self) -> Optional[TrendSpec]:
        if self.is_simple:
            return None
        return self.trend if self.trend is not None else TrendSpec.intercept()


@dataclass(frozen=True)
class PredictionResult:
    target: Target
    predicted_value: float
    prediction_variance: float
    n_neighbors: int
    variance_clipped: bool = False
    condition_number: float = float("nan")


@dataclass(frozen=True)
class PredictionOutcome:
    """Per-target result of a batch call: either a result or an error."""

    target_index: int
    target: Target
    result: Optional[PredictionResult] = None
    error: Optional[GeostatsError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def is_region(location: Any) -> bool:
    """Regions expose ``contains``; plain locations do not."""
    return callable(getattr(location, "contains", None))


def _validate_matrix(matrix: np.ndarray, condition_max: float) -> Tuple[bool, float]:
    cond = float(np.linalg.cond(matrix))
    return bool(np.isfinite(cond) and cond <= condition_max), cond


def _covariance_scale(model: CovarianceModel) -> float:
    c0 = float(model.point_variance())
    return c0 if np.isfinite(c0) and c0 > 0 else 1.0


def _trend_row(trend: TrendSpec, target: Target) -> np.ndarray:
    try:
        return trend.row(target)
    except (IndexError, TypeError, ValueError) as err:
        raise InvalidObservation(
            "Target does not provide the covariates required by the trend.",
            suggestion="Set Target.covariates with one value per trend covariate.",
            details={"covariates": target.covariates},
        ) from err


def _target_covariances(model: CovarianceModel, geometry: Any, locations: List[Any], target: Target) -> Tuple[np.ndarray, float]:
    if is_region(target.location):
        points = geometry.block_discretization(target.location)
        if not points:
            raise InvalidObservation("Block discretization returned no points.")
        k0 = model.covariance_matrix(geometry, locations, points).mean(axis=1)
        c0 = float(np.mean(model.covariance_matrix(geometry, points, points)))
        return k0, c0
    k0 = model.covariance_matrix(geometry, locations, [target.location])[:, 0]
    return k0, float(model.point_variance())


def predict(
    model: CovarianceModel,
    index: SpatialIndex,
    target: Any,
    options: Optional[KrigingOptions] = None,
) -> PredictionResult:
    """Krige one point or block target from the observations in ``index``.

    Raises:
        InsufficientNeighbors: fewer than ``p + 1`` neighbours in range,
            ``p`` being the number of trend terms.
        SingularSystem: the system is ill-conditioned and no ridge is set.
    """
    options = options or KrigingOptions()
    options.validate()
    target = as_target(target)
    geometry = index.geometry
    trend = options.resolved_trend()
    n_terms = 0 if trend is None else trend.n_terms

    center = geometry.region_center(target.location) if is_region(target.location) else target.location
    neighbors = index.k_nearest(center, k=options.nmax, max_radius=options.max_radius)
    n = len(neighbors)
    if n < n_terms + 1:
        raise InsufficientNeighbors(
            f"Need at least {n_terms + 1} neighbours, found {n}",
            suggestion="Increase max_radius or nmax, or reduce the trend terms.",
            details={"neighbors": n, "trend_terms": n_terms},
        )

    locations = [obs.location for obs in neighbors]
    values = np.fromiter((obs.value for obs in neighbors), dtype=float, count=n)
    cov = model.covariance_matrix(geometry, locations, locations)
    k0, c0 = _target_covariances(model, geometry, locations, target)

    # Covariances enter the system in units of C(0), so the condition number
    # does not depend on the units of the values.
    scale = _covariance_scale(model)
    size = n + n_terms
    matrix = np.zeros((size, size))
    matrix[:n, :n] = cov / scale
    rhs = np.zeros(size)
    rhs[:n] = k0 / scale
    x0 = np.zeros(0)
    if trend is not None:
        design = trend.design_matrix(neighbors)
        x0 = _trend_row(trend, target)
        matrix[:n, n:] = design
        matrix[n:, :n] = design.T
        rhs[n:] = x0

    valid, cond = _validate_matrix(matrix, options.condition_max)
    if not valid and options.ridge > 0:
        ridge = options.ridge * float(model.point_variance())
        matrix[np.arange(n), np.arange(n)] += ridge / scale
        logger.warning("Kriging matrix ill-conditioned (cond=%.3g); added ridge %.3g to the diagonal", cond, ridge)
        valid, cond = _validate_matrix(matrix, options.condition_max)
    if not valid:
        raise SingularSystem(
            f"Kriging matrix is singular or ill-conditioned (cond={cond:.3g})",
            suggestion="Remove duplicate locations, add a nugget, or set a ridge.",
            details={"condition": cond, "neighbors": n},
        )

    try:
        solution = linalg.solve(matrix, rhs, assume_a="sym")
    except linalg.LinAlgError as err:
        raise SingularSystem("Kriging system could not be solved.", details={"condition": cond, "neighbors": n}) from err
    weights = solution[:n]
    multipliers = solution[n:] * scale

    if options.is_simple:
        estimate = float(options.mean + np.dot(weights, values - options.mean))
        variance = float(c0 - np.dot(weights, k0))
    else:
        estimate = float(np.dot(weights, values))
        variance = float(c0 - np.dot(weights, k0) - np.dot(multipliers, x0))

    clipped = False
    if variance < 0:
        if -variance > options.variance_tolerance * max(abs(c0), 1.0):
            clipped = True
            logger.warning("Negative kriging variance %.3g clipped to 0 (cond=%.3g)", variance, cond)
        else:
            logger.debug("Round-off kriging variance %.3g clipped to 0", variance)
        variance = 0.0

    logger.debug("Kriged target with %d neighbours: estimate=%.6g variance=%.6g cond=%.3g", n, estimate, variance, cond)
    return PredictionResult(
        target=target,
        predicted_value=estimate,
        prediction_variance=variance,
        n_neighbors=n,
        variance_clipped=clipped,
        condition_number=cond,
    )


def predict_many(
    model: CovarianceModel,
    index: SpatialIndex,
    targets: Iterable[Any],
    options: Optional[KrigingOptions] = None,
    workers: int = 1,
    fail_fast: bool = False,
    cancel: Optional[CancellationToken] = None,
) -> List[PredictionOutcome]:
    """Krige every target; outcomes keep the input order.

    A failing target does not affect the others: its error is returned in
    its outcome with ``target_index`` attached. With ``fail_fast`` the first
    failing target (in input order) raises instead.
    """
    options = options or KrigingOptions()
    options.validate()
    items = [as_target(t) for t in targets]

    def run_one(position: int) -> PredictionOutcome:
        check_cancelled(cancel, stage="kriging", target_index=position)
        target = items[position]
        try:
            result = predict(model, index, target, options)
        except OperationCancelled:
            raise
        except GeostatsError as err:
            err.with_context(target_index=position)
            if fail_fast:
                raise
            logger.warning("Kriging failed for target %d: %s", position, err.message)
            return PredictionOutcome(position, target, error=err)
        return PredictionOutcome(position, target, result=result)

    if workers <= 1 or len(items) <= 1:
        outcomes = [run_one(i) for i in range(len(items))]
    else:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            outcomes = list(executor.map(run_one, range(len(items))))

    failed = sum(1 for o in outcomes if not o.ok)
    logger.info("Kriged %d targets (%d failed)", len(outcomes), failed)
    return outcomes


def location_columns(location: Any) -> dict:
    """Flatten a coordinate tuple (or a region centre) into x/y/z(/t) columns."""
    if hasattr(location, "region") and hasattr(location, "times"):
        columns = location_columns(location.region)
        columns["t"] = float(np.mean(location.times))
        return columns
    if hasattr(location, "space") and hasattr(location, "time"):
        columns = location_columns(location.space)
        columns["t"] = float(location.time)
        return columns
    if is_region(location):
        location = getattr(location, "center", None)
    coords = np.atleast_1d(np.asarray(location, dtype=object))
    try:
        coords = coords.astype(float)
    except (TypeError, ValueError):
        return {}
    names = ["x", "y", "z"] if coords.size <= 3 else [f"x{i}" for i in range(coords.size)]
    return {name: float(v) for name, v in zip(names, coords)}


def predictions_to_frame(outcomes: Sequence[PredictionOutcome]) -> pd.DataFrame:
    rows = []
    for outcome in outcomes:
        row = {"target_index": outcome.target_index, **location_columns(outcome.target.location)}
        if outcome.ok:
            res = outcome.result
            row.update(
                estimate=res.predicted_value,
                variance=res.prediction_variance,
                n_neighbors=res.n_neighbors,
                variance_clipped=res.variance_clipped,
                condition=res.condition_number,
                error="",
            )
        else:
            row.update(
                estimate=np.nan,
                variance=np.nan,
                n_neighbors=0,
                variance_clipped=False,
                condition=np.nan,
                error=type(outcome.error).__name__ + ": " + outcome.error.message,
            )
        rows.append(row)
    return pd.DataFrame(rows)
