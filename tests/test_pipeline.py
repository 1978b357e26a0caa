from __future__ import annotations

import json

import numpy as np
import pandas as pd
import yaml

from geostats_engine import run
from geostats_engine.simulation import RNG_STREAM
from geostats_engine.steps import run_pipeline


def _grid_data(tmp_path, times=None):
    rng = np.random.default_rng(0)
    rows = []
    for t in times or [None]:
        for x in range(0, 60, 10):
            for y in range(0, 60, 10):
                value = np.sin(x / 15.0) + np.cos(y / 12.0) + 0.1 * rng.standard_normal()
                row = {"x": float(x), "y": float(y), "value": float(value)}
                if t is not None:
                    row["t"] = float(t)
                    row["value"] += 0.2 * t
                rows.append(row)
    path = tmp_path / "points.csv"
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


def _write_config(tmp_path, payload) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return str(path)


def test_full_pipeline_writes_all_outputs(tmp_path):
    data = _grid_data(tmp_path)
    config = _write_config(
        tmp_path,
        {
            "data": {"path": str(data)},
            "variography": {"cutoff": 60.0, "width": 5.0},
            "model": {"max_iterations": 1000},
            "kriging": {"nmax": 12},
            "simulation": {"enabled": True, "n_realizations": 3, "nmax": 8},
            "outputs": {"base_dir": str(tmp_path / "outputs"), "run_name": "test"},
        },
    )
    run_paths = run_pipeline(config)

    for name in (
        "empirical_variogram.csv",
        "variogram_model.csv",
        "kriging_estimates.csv",
        "validation_predictions.csv",
        "validation_metrics.csv",
        "simulation_realizations.csv",
        "simulation_summary.csv",
    ):
        assert run_paths.table_path(name).exists(), name
    assert run_paths.model_path("variogram_model.json").exists()

    estimates = pd.read_csv(run_paths.table_path("kriging_estimates.csv"))
    assert len(estimates) == 25
    assert (estimates["variance"] >= 0).all()

    realizations = pd.read_csv(run_paths.table_path("simulation_realizations.csv"))
    assert [c for c in realizations.columns if c.startswith("sim_")] == ["sim_01", "sim_02", "sim_03"]

    manifest = json.loads((run_paths.base / "manifest.json").read_text(encoding="utf-8"))
    assert manifest["input"]["input_shape"] == [36, 3]
    assert "validation" in manifest["stages"]
    assert manifest["simulation"] == {"rng_stream": RNG_STREAM, "seed": 42}
    assert set(manifest["failures"]) == {"kriging", "validation", "simulation"}
    assert manifest["failures"]["simulation"] == 0
    model = json.loads(run_paths.model_path("variogram_model.json").read_text(encoding="utf-8"))
    assert manifest["model"] == model
    assert manifest["config"]["kriging"]["nmax"] == 12
    assert yaml.safe_load((run_paths.base / "manifest.yaml").read_text(encoding="utf-8"))["model"] == model


def test_cli_runs_single_stage(tmp_path):
    data = _grid_data(tmp_path)
    base = tmp_path / "outputs"
    config = _write_config(
        tmp_path,
        {
            "data": {"path": str(data)},
            "variography": {"cutoff": 40.0, "width": 5.0},
            "outputs": {"base_dir": str(base), "run_name": "cli"},
        },
    )
    run.main(["--config", config, "--stage", "variography"])
    (run_dir,) = list(base.iterdir())
    table = pd.read_csv(run_dir / "tables" / "empirical_variogram.csv")
    assert list(table.columns) == ["lag_lower", "lag_upper", "mean_lag", "pair_count", "gamma"]
    assert table["pair_count"].sum() > 0


def test_spacetime_kriging_stage_with_fixed_model(tmp_path):
    data = _grid_data(tmp_path, times=[0, 1, 2, 3])
    config = _write_config(
        tmp_path,
        {
            "data": {"path": str(data), "time_col": "t"},
            "variography": {"cutoff": 30.0, "width": 5.0},
            "model": {"fit": False},
            "spacetime": {"kind": "sum_metric", "anisotropy_ratio": 5.0},
            "kriging": {"nmax": 10},
            "targets": {"times": [1.5]},
            "outputs": {"base_dir": str(tmp_path / "outputs"), "run_name": "st"},
        },
    )
    run_paths = run_pipeline(config, stage="kriging")
    estimates = pd.read_csv(run_paths.table_path("kriging_estimates.csv"))
    assert len(estimates) == 25
    assert (estimates["t"] == 1.5).all()
    assert estimates["error"].isna().all()
    record = json.loads(run_paths.model_path("variogram_model.json").read_text(encoding="utf-8"))
    assert record["kind"] == "sum_metric"
    assert record["anisotropy_ratio"] == 5.0
