from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.cluster import KMeans

from .geometry import GeometryProvider
from .kriging import CovarianceModel, KrigingOptions, location_columns, predict_many
from .observations import Observation, Target, validate_observations
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)


@dataclass
class CVResult:
    data: pd.DataFrame
    metrics: Dict[str, float]


def spatial_kfold_indices(
    observations: Sequence[Observation],
    geometry: GeometryProvider,
    n_splits: int = 5,
    random_state: int = 13,
) -> np.ndarray:
    """Assign spatial folds using KMeans clustering on coordinates."""
    coords = geometry.coordinates([obs.location for obs in observations])
    if coords is None:
        raise ValueError("Spatial k-fold needs a geometry with a coordinate embedding")
    n_splits = max(2, min(n_splits, len(observations)))
    labels = KMeans(n_clusters=n_splits, random_state=random_state, n_init=10).fit_predict(coords)
    return labels


def cross_validate(
    model: CovarianceModel,
    observations: Sequence[Observation],
    geometry: GeometryProvider,
    options: Optional[KrigingOptions] = None,
    method: str = "loo",
    n_splits: int = 5,
    random_state: int = 13,
    workers: int = 1,
) -> CVResult:
    """Cross-validation by kriging (leave-one-out or spatial K-fold).

    Held-out observations that cannot be kriged keep NaN estimates and the
    error class in the ``failure`` column; metrics use the others.
    """
    items = validate_observations(observations)
    method = method.lower()
    if method not in {"loo", "kfold"}:
        raise ValueError("method must be 'loo' or 'kfold'")

    if method == "loo":
        labels = np.arange(len(items))
    else:
        labels = spatial_kfold_indices(items, geometry, n_splits=n_splits, random_state=random_state)

    rows: List[dict] = []
    for fold_id in np.unique(labels):
        test_idx = np.flatnonzero(labels == fold_id)
        train = [obs for obs, label in zip(items, labels) if label != fold_id]
        index = SpatialIndex(geometry, train)
        targets = [Target(items[i].location, items[i].covariates) for i in test_idx]
        outcomes = predict_many(model, index, targets, options, workers=workers)
        for i, outcome in zip(test_idx, outcomes):
            row = {"observation_index": int(i), **location_columns(items[i].location), "observed": items[i].value, "fold": int(fold_id)}
            if outcome.ok:
                row.update(estimate=outcome.result.predicted_value, variance=outcome.result.prediction_variance, failure="")
            else:
                row.update(estimate=np.nan, variance=np.nan, failure=type(outcome.error).__name__)
            rows.append(row)

    cv_df = pd.DataFrame(rows).sort_values("observation_index").reset_index(drop=True)
    cv_df["error"] = cv_df["estimate"] - cv_df["observed"]
    valid = cv_df.dropna(subset=["estimate"])
    metrics = compute_cv_metrics(valid, vcol="observed")
    metrics["n_failed"] = float(len(cv_df) - len(valid))
    logger.info("Cross-validation (%s): %s", method, ", ".join(f"{k}={v:.4g}" for k, v in metrics.items()))
    return CVResult(data=cv_df, metrics=metrics)


def compute_cv_metrics(
    df: pd.DataFrame,
    vcol: str,
    pred_col: str = "estimate",
    var_col: str = "variance",
) -> Dict[str, float]:
    """Compute validation metrics (ME, RMSE, MSE, slope/intercept, MSDR)."""
    if df.empty:
        return {name: float("nan") for name in ("ME", "MSE", "RMSE", "slope", "intercept")}
    errors = df[pred_col] - df[vcol]
    mse = float(np.mean(errors**2))
    metrics = {
        "ME": float(np.mean(errors)),
        "MSE": mse,
        "RMSE": float(np.sqrt(mse)),
    }

    if len(df) >= 2 and np.ptp(df[pred_col].to_numpy(dtype=float)) > 0:
        slope, intercept = np.polyfit(df[pred_col], df[vcol], 1)
    else:
        slope, intercept = float("nan"), float("nan")
    metrics["slope"] = float(slope)
    metrics["intercept"] = float(intercept)

    if var_col in df.columns:
        variance = df[var_col].to_numpy()
        mask = np.isfinite(variance) & (variance > 0)
        if np.any(mask):
            msdr = float(np.mean((errors.to_numpy()[mask] ** 2) / variance[mask]))
            metrics["MSDR"] = msdr
    return metrics
