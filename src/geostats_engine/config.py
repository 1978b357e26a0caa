from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .fitting import WeightingScheme
from .models import SPACETIME_KINDS

Number = (int, float)

DEFAULT_CONFIG: Dict[str, Any] = {
    "data": {
        "path": "data/observations.csv",
        "coord_cols": ["x", "y"],
        "value_col": "value",
        "time_col": None,
        "covariate_cols": [],
    },
    "variography": {
        "cutoff": None,
        "width": None,
        "time_lags": None,
        "detrend": False,
    },
    "model": {
        "structures": [
            {"kind": "nugget", "partial_sill": 0.0},
            {"kind": "exponential", "partial_sill": None, "range": None},
        ],
        "fit": True,
        "weighting": "pairs_over_lag_squared",
        "fit_nugget": True,
        "fit_ranges": True,
        "max_iterations": 200,
    },
    "spacetime": {
        "kind": "sum_metric",
        "anisotropy_ratio": None,
        "anisotropy_method": "linear",
        "time_structures": [{"kind": "exponential", "partial_sill": None, "range": None}],
        "joint_structures": [{"kind": "exponential", "partial_sill": None, "range": None}],
        "k": 0.0,
        "max_iterations": 400,
    },
    "kriging": {
        "nmax": 16,
        "max_radius": None,
        "mean": None,
        "trend": "constant",
        "ridge": 0.0,
        "condition_max": 1.0e10,
        "variance_tolerance": 1.0e-8,
        "workers": 1,
        "fail_fast": False,
    },
    "targets": {
        "cell_size": [10.0, 10.0],
        "pad": 0.0,
        "block": False,
        "discretization": [2, 2],
        "times": [],
    },
    "validation": {"cv": "loo", "kfold_splits": 5, "random_state": 13},
    "simulation": {
        "enabled": False,
        "n_realizations": 25,
        "random_seed": 42,
        "nmax": 16,
        "normal_score": True,
        "workers": 1,
        "fail_fast": False,
    },
    "outputs": {"base_dir": "outputs", "run_name": "auto"},
}

SCHEMA: Dict[str, Any] = {
    "data": {
        "path": (str,),
        "coord_cols": [str],
        "value_col": (str,),
        "time_col": (str, type(None)),
        "covariate_cols": [str],
    },
    "variography": {
        "cutoff": Number + (type(None),),
        "width": Number + (type(None),),
        "time_lags": (list, type(None)),
        "detrend": (bool,),
    },
    "model": {
        "structures": [dict],
        "fit": (bool,),
        "weighting": (str, int),
        "fit_nugget": (bool,),
        "fit_ranges": (bool,),
        "max_iterations": (int,),
    },
    "spacetime": {
        "kind": (str,),
        "anisotropy_ratio": Number + (type(None),),
        "anisotropy_method": (str,),
        "time_structures": [dict],
        "joint_structures": [dict],
        "k": Number,
        "max_iterations": (int,),
    },
    "kriging": {
        "nmax": (int, type(None)),
        "max_radius": Number + (type(None),),
        "mean": Number + (type(None),),
        "trend": (str,),
        "ridge": Number,
        "condition_max": Number,
        "variance_tolerance": Number,
        "workers": (int,),
        "fail_fast": (bool,),
    },
    "targets": {
        "cell_size": [Number],
        "pad": Number,
        "block": (bool,),
        "discretization": [int],
        "times": [Number],
    },
    "validation": {"cv": (str,), "kfold_splits": (int,), "random_state": (int,)},
    "simulation": {
        "enabled": (bool,),
        "n_realizations": (int,),
        "random_seed": (int, type(None)),
        "nmax": (int, type(None)),
        "normal_score": (bool,),
        "workers": (int,),
        "fail_fast": (bool,),
    },
    "outputs": {"base_dir": (str,), "run_name": (str,)},
}


def _deep_merge(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged: Dict[str, Any] = deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _validate_schema(cfg: Mapping[str, Any], schema: Mapping[str, Any], prefix: str = "") -> None:
    for key, expected in schema.items():
        if key not in cfg:
            continue
        value = cfg[key]
        path = f"{prefix}{key}"
        if isinstance(expected, Mapping):
            if not isinstance(value, Mapping):
                raise TypeError(f"Config key '{path}' must be a mapping, got {type(value).__name__}")
            _validate_schema(value, expected, prefix=f"{path}.")
            continue

        if isinstance(expected, list):
            if len(expected) != 1:
                raise ValueError(f"Schema for '{path}' must have a single list item type definition")
            if not isinstance(value, list):
                raise TypeError(f"Config key '{path}' must be a list, got {type(value).__name__}")
            allowed = expected[0]
            for idx, item in enumerate(value):
                if not isinstance(item, allowed):
                    raise TypeError(
                        f"Config key '{path}[{idx}]' must be {allowed}, got {type(item).__name__}"
                    )
            continue

        if not isinstance(value, expected):
            raise TypeError(f"Config key '{path}' must be {expected}, got {type(value).__name__}")


def _validate_values(cfg: Mapping[str, Any]) -> None:
    if not cfg["data"]["coord_cols"]:
        raise ValueError("data.coord_cols must name at least one coordinate column")
    if len(cfg["targets"]["cell_size"]) != len(cfg["data"]["coord_cols"]):
        raise ValueError("targets.cell_size needs one entry per coordinate column")
    if cfg["targets"]["block"] and len(cfg["targets"]["discretization"]) != len(cfg["data"]["coord_cols"]):
        raise ValueError("targets.discretization needs one entry per coordinate column")
    if cfg["validation"]["cv"] not in {"loo", "kfold"}:
        raise ValueError("validation.cv must be 'loo' or 'kfold'")
    if cfg["spacetime"]["kind"] not in SPACETIME_KINDS:
        raise ValueError(f"spacetime.kind must be one of {SPACETIME_KINDS}")
    if cfg["kriging"]["trend"] not in {"constant", "linear"}:
        raise ValueError("kriging.trend must be 'constant' or 'linear'")
    if cfg["kriging"]["trend"] == "linear" and cfg["kriging"]["mean"] is not None:
        raise ValueError("kriging.trend=linear and kriging.mean are mutually exclusive")
    WeightingScheme.parse(cfg["model"]["weighting"])


def load_config(path: str | Path) -> Dict[str, Any]:
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    data = yaml.safe_load(cfg_path.read_text(encoding="utf-8"))
    if data is None:
        data = {}
    if not isinstance(data, Mapping):
        raise TypeError("Config file must be a YAML mapping (dictionary).")

    cfg = _deep_merge(DEFAULT_CONFIG, data)
    _validate_schema(cfg, SCHEMA)
    _validate_values(cfg)
    return cfg


def save_config(config: Mapping[str, Any], path: str | Path) -> None:
    cfg_path = Path(path)
    cfg_path.parent.mkdir(parents=True, exist_ok=True)
    cfg_path.write_text(yaml.safe_dump(dict(config), sort_keys=False, allow_unicode=True), encoding="utf-8")
