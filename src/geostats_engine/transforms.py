from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

import numpy as np
from scipy.stats import norm


@dataclass(frozen=True)
class NormalScoreTransform:
    """Rank-based mapping between data values and standard normal scores.

    Both directions interpolate linearly in the lookup table and clamp to
    its extremes outside the observed range.
    """

    values: np.ndarray
    scores: np.ndarray

    def transform(self, data: Iterable[float]) -> np.ndarray:
        data_arr = np.asarray(list(data), dtype=float)
        return np.interp(data_arr, self.values, self.scores)

    def back_transform(self, scores: Iterable[float]) -> np.ndarray:
        scores_arr = np.asarray(list(scores), dtype=float)
        return np.interp(scores_arr, self.scores, self.values)


def normal_score_transform(values: Iterable[float]) -> NormalScoreTransform:
    data = np.asarray(list(values), dtype=float)
    data = data[np.isfinite(data)]
    if data.size == 0:
        raise ValueError("Normal-score transform requires at least one finite value.")
    sorted_vals = np.sort(data)
    ranks = np.arange(1, len(sorted_vals) + 1, dtype=float)
    probs = (ranks - 0.5) / len(sorted_vals)
    return NormalScoreTransform(values=sorted_vals, scores=norm.ppf(probs))
