"""Sequential Gaussian simulation.

Each realization owns a copy of the conditioning index, a random stream
derived from the seed and its realization number, and the shuffled queue of
target positions. Targets are visited in that order; every visit kriges the
target from the current conditioning set, draws from the normal
distribution defined by the kriging mean and variance, and inserts the draw
as a simulated observation.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .cancellation import CancellationToken, check_cancelled
from .errors import GeostatsError, OperationCancelled
from .kriging import CovarianceModel, KrigingOptions, is_region, location_columns, predict
from .observations import Observation, Target, as_target
from .spatial_index import SpatialIndex
from .transforms import NormalScoreTransform, normal_score_transform

logger = logging.getLogger(__name__)

# Bump when the seed -> draws mapping changes.
RNG_STREAM = "numpy-pcg64-seedsequence-spawn/1"


@dataclass(frozen=True)
class SimulationOptions:
    nmax: Optional[int] = None
    seed: Optional[int] = None
    max_radius: Optional[float] = None
    kriging: Optional[KrigingOptions] = None
    normal_score: bool = False
    workers: int = 1
    fail_fast: bool = False

    def validate(self) -> None:
        if self.workers <= 0:
            raise ValueError("workers must be positive")
        if self.seed is not None and self.seed < 0:
            raise ValueError("seed must be non-negative")

    def kriging_options(self) -> KrigingOptions:
        """Explicit kriging options, with ``nmax`` and ``max_radius`` from
        this object taking precedence when set; otherwise ordinary kriging,
        or simple kriging with mean 0 in normal-score space."""
        if self.kriging is not None:
            overrides = {}
            if self.nmax is not None:
                overrides["nmax"] = self.nmax
            if self.max_radius is not None:
                overrides["max_radius"] = self.max_radius
            return replace(self.kriging, **overrides)
        return KrigingOptions(
            nmax=self.nmax,
            max_radius=self.max_radius,
            mean=0.0 if self.normal_score else None,
        )


def realization_rng(seed: Optional[int], number: int) -> np.random.Generator:
    """Random stream of realization ``number`` (child ``number`` of the seed)."""
    child = np.random.SeedSequence(seed).spawn(number + 1)[number]
    return np.random.Generator(np.random.PCG64(child))


@dataclass
class SimulationState:
    realization: int
    index: SpatialIndex
    order: np.ndarray
    rng: np.random.Generator
    values: List[Optional[float]] = field(default_factory=list)
    position: int = 0

    @property
    def done(self) -> bool:
        return self.position >= len(self.order)

    def next_target(self) -> int:
        return int(self.order[self.position])

    def record(self, value: float) -> None:
        self.values[self.next_target()] = float(value)
        self.position += 1


@dataclass(frozen=True)
class Realization:
    number: int
    values: Optional[Tuple[float, ...]]
    error: Optional[GeostatsError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def as_mapping(self, targets: Sequence[Any]) -> Dict[Any, float]:
        if not self.ok:
            raise self.error
        return {as_target(t).location: v for t, v in zip(targets, self.values)}


def _transformed_index(index: SpatialIndex) -> Tuple[SpatialIndex, NormalScoreTransform]:
    observations = index.observations()
    transform = normal_score_transform(obs.value for obs in observations)
    scores = transform.transform(obs.value for obs in observations)
    scored = [obs.with_value(score) for obs, score in zip(observations, scores)]
    return SpatialIndex(index.geometry, scored, leaf_size=index.leaf_size), transform


def _coincident_value(index: SpatialIndex, location: Any) -> Optional[float]:
    nearest = index.neighbors(location, k=1)
    if nearest and nearest[0][0] == 0.0:
        return nearest[0][1].value
    return None


def _run_realization(
    model: CovarianceModel,
    base: SpatialIndex,
    targets: List[Target],
    number: int,
    seed: int,
    kriging: KrigingOptions,
    transform: Optional[NormalScoreTransform],
    fail_fast: bool,
    cancel: Optional[CancellationToken],
) -> Realization:
    rng = realization_rng(seed, number)
    state = SimulationState(
        realization=number,
        index=base.copy(),
        order=rng.permutation(len(targets)),
        rng=rng,
        values=[None] * len(targets),
    )
    position = None
    try:
        while not state.done:
            check_cancelled(cancel, stage="simulation", realization=number, step=state.position)
            position = state.next_target()
            target = targets[position]
            # A target on top of a conditioning point takes its value.
            value = _coincident_value(state.index, target.location)
            if value is not None:
                state.record(value)
                continue
            result = predict(model, state.index, target, kriging)
            value = state.rng.normal(result.predicted_value, math.sqrt(result.prediction_variance))
            state.record(value)
            state.index.insert(Observation(target.location, float(value), target.covariates, is_simulated=True))
    except OperationCancelled:
        raise
    except GeostatsError as err:
        err.with_context(realization=number, target_index=position, step=state.position)
        if fail_fast:
            raise
        logger.warning("Realization %d failed at target %s: %s", number, position, err.message)
        return Realization(number, None, err)

    values = np.asarray(state.values, dtype=float)
    if transform is not None:
        values = transform.back_transform(values)
    logger.debug("Realization %d done (%d targets)", number, len(values))
    return Realization(number, tuple(float(v) for v in values))


def simulate(
    model: CovarianceModel,
    index: SpatialIndex,
    targets: Iterable[Any],
    n_realizations: int,
    options: Optional[SimulationOptions] = None,
    cancel: Optional[CancellationToken] = None,
) -> List[Realization]:
    """Run ``n_realizations`` sequential Gaussian simulations over ``targets``.

    ``index`` is only read; every realization works on its own copy.
    Realization ``r`` uses child ``r`` of ``SeedSequence(seed)``, so the
    output does not depend on ``workers``. A kriging failure fails the
    whole realization (``values=None`` and ``error`` set) unless
    ``fail_fast`` is set, in which case it is raised.
    """
    options = options or SimulationOptions()
    options.validate()
    if n_realizations < 1:
        raise ValueError("n_realizations must be >= 1")
    items = [as_target(t) for t in targets]
    for position, target in enumerate(items):
        if is_region(target.location):
            raise ValueError(f"Sequential simulation needs point targets (target {position} is a region)")

    kriging = options.kriging_options()
    kriging.validate()
    transform = None
    base = index
    if options.normal_score:
        base, transform = _transformed_index(index)

    # Without a seed, draw fresh entropy once so all realizations share one root.
    seed = options.seed if options.seed is not None else np.random.SeedSequence().entropy
    logger.info(
        "Simulating %d realizations over %d targets (seed=%s, stream=%s)",
        n_realizations,
        len(items),
        seed,
        RNG_STREAM,
    )

    def run(number: int) -> Realization:
        return _run_realization(model, base, items, number, seed, kriging, transform, options.fail_fast, cancel)

    if options.workers <= 1 or n_realizations <= 1:
        realizations = [run(r) for r in range(n_realizations)]
    else:
        with ThreadPoolExecutor(max_workers=options.workers) as executor:
            realizations = list(executor.map(run, range(n_realizations)))

    failed = sum(1 for r in realizations if not r.ok)
    logger.info("Simulation finished: %d realizations, %d failed", len(realizations), failed)
    return realizations


def realizations_to_frame(realizations: Sequence[Realization], targets: Sequence[Any]) -> pd.DataFrame:
    """One row per target, one ``sim_XX`` column per realization (NaN if failed)."""
    items = [as_target(t) for t in targets]
    frame = pd.DataFrame([location_columns(t.location) for t in items])
    frame.insert(0, "target_index", np.arange(len(items)))
    for realization in realizations:
        column = f"sim_{realization.number + 1:02d}"
        frame[column] = realization.values if realization.ok else np.nan
    return frame


def summarize_realizations(realizations: Sequence[Realization], targets: Sequence[Any]) -> pd.DataFrame:
    """Per-target mean, standard deviation and P10/P50/P90 over successful realizations."""
    items = [as_target(t) for t in targets]
    frame = pd.DataFrame([location_columns(t.location) for t in items])
    frame.insert(0, "target_index", np.arange(len(items)))
    good = [r.values for r in realizations if r.ok]
    if not good:
        for column in ("mean", "std", "p10", "p50", "p90"):
            frame[column] = np.nan
        return frame
    simulations = np.asarray(good, dtype=float).T
    quantiles = np.percentile(simulations, [10, 50, 90], axis=1).T
    frame["mean"] = simulations.mean(axis=1)
    frame["std"] = simulations.std(axis=1)
    frame["p10"] = quantiles[:, 0]
    frame["p50"] = quantiles[:, 1]
    frame["p90"] = quantiles[:, 2]
    return frame
