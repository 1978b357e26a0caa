from __future__ import annotations

import json
from datetime import datetime

from geostats_engine.reporting import create_run_dir, failure_counts, load_model_record, save_model, write_manifest


def test_run_dirs_get_suffixes_when_taken(tmp_path):
    stamp = datetime(2024, 5, 1, 9, 30)
    first = create_run_dir(tmp_path, prefix="demo", timestamp=stamp)
    second = create_run_dir(tmp_path, prefix="demo", timestamp=stamp)
    assert first.base.name == "demo_20240501_0930"
    assert second.base.name == "demo_20240501_0930_01"
    assert second.tables.is_dir() and second.models.is_dir() and second.logs.is_dir()


def test_model_records_round_trip(tmp_path):
    run_paths = create_run_dir(tmp_path)
    assert load_model_record(run_paths, "variogram_model.json") is None
    record = {"nugget": 0.1, "sill": 1.1, "structures": [{"kind": "spherical", "partial_sill": 1.0, "range": 30.0}]}
    save_model(record, run_paths, "variogram_model.json")
    assert load_model_record(run_paths, "variogram_model.json") == record


def test_failure_counts_per_stage():
    metrics = {
        "variography": {"bins": 12},
        "kriging": {"rows": 25, "failed": 2},
        "validation": {"metrics": {"RMSE": 0.4, "n_failed": 1.0}},
        "simulation": {"status": "disabled"},
    }
    assert failure_counts(metrics) == {"kriging": 2, "validation": 1}


def test_manifest_records_model_and_random_stream(tmp_path):
    run_paths = create_run_dir(tmp_path)
    record = {"nugget": 0.0, "sill": 2.0, "structures": []}
    json_path, yaml_path = write_manifest(
        run_paths,
        config={"simulation": {"random_seed": 7}},
        input_metadata={"input_shape": (10, 3)},
        stage_metrics={"simulation": {"failed": 1, "realizations": 4}},
        model_record=record,
        simulation={"rng_stream": "numpy-pcg64-seedsequence-spawn/1", "seed": 7},
    )
    manifest = json.loads(json_path.read_text(encoding="utf-8"))
    assert manifest["model"] == record
    assert manifest["simulation"]["seed"] == 7
    assert manifest["failures"] == {"simulation": 1}
    assert manifest["input"]["input_shape"] == [10, 3]
    assert "numpy" in manifest["versions"]
    assert yaml_path.exists()
