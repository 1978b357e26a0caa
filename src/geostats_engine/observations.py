"""Point observations and prediction targets."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from numbers import Real
from typing import Any, Iterable, List, Sequence, Tuple

import numpy as np

from .errors import InvalidObservation


@dataclass(frozen=True)
class Observation:
    """A measured value at a location.

    ``location`` is an opaque handle understood by the geometry provider.
    ``covariates`` feed trend terms; an empty tuple means intercept only.
    """

    location: Any
    value: float
    covariates: Tuple[float, ...] = ()
    is_simulated: bool = False

    def with_value(self, value: float) -> "Observation":
        return Observation(self.location, float(value), self.covariates, self.is_simulated)


@dataclass(frozen=True)
class Target:
    """A prediction target: a location or a region plus its covariates."""

    location: Any
    covariates: Tuple[float, ...] = field(default_factory=tuple)


def as_target(item: Any) -> Target:
    if isinstance(item, Target):
        return item
    return Target(item)


def _location_is_finite(location: Any) -> bool:
    if isinstance(location, Real):
        return math.isfinite(float(location))
    if isinstance(location, tuple):
        return all(_location_is_finite(part) for part in location)
    if isinstance(location, np.ndarray) and location.dtype.kind in "fiu":
        return bool(np.all(np.isfinite(location)))
    # Opaque handle: the geometry provider owns its validity.
    return True


def check_observation(obs: Any, index: int) -> Observation:
    """Reject a non-finite value, location or covariate at position ``index``."""
    if not isinstance(obs, Observation):
        raise InvalidObservation(
            f"Expected Observation, got {type(obs).__name__}",
            details={"observation_index": index},
        )
    if not math.isfinite(float(obs.value)):
        raise InvalidObservation(
            f"Observation value is not finite: {obs.value}",
            suggestion="Drop or impute missing values before kriging or simulation.",
            details={"observation_index": index},
        )
    if not _location_is_finite(obs.location):
        raise InvalidObservation(
            f"Observation location is not finite: {obs.location}",
            details={"observation_index": index},
        )
    if any(not math.isfinite(float(c)) for c in obs.covariates):
        raise InvalidObservation(
            f"Observation covariates are not finite: {obs.covariates}",
            details={"observation_index": index},
        )
    return obs


def validate_observations(observations: Iterable[Observation]) -> List[Observation]:
    """Return the observations as a list, rejecting non-finite input."""
    items = list(observations)
    if not items:
        raise InvalidObservation(
            "No observations supplied.",
            suggestion="Pass at least one observation with a finite value.",
        )
    for idx, obs in enumerate(items):
        check_observation(obs, idx)
    return items


def observation_values(observations: Sequence[Observation]) -> np.ndarray:
    return np.fromiter((obs.value for obs in observations), dtype=float, count=len(observations))
