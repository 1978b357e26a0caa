from __future__ import annotations

import pytest
import yaml

from geostats_engine.config import DEFAULT_CONFIG, load_config, save_config


def _write(tmp_path, payload) -> str:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(payload), encoding="utf-8")
    return str(path)


def test_defaults_are_merged(tmp_path):
    cfg = load_config(_write(tmp_path, {"data": {"path": "points.csv"}, "kriging": {"nmax": 8}}))
    assert cfg["data"]["path"] == "points.csv"
    assert cfg["data"]["coord_cols"] == ["x", "y"]
    assert cfg["kriging"]["nmax"] == 8
    assert cfg["kriging"]["condition_max"] == DEFAULT_CONFIG["kriging"]["condition_max"]


def test_empty_file_gives_defaults(tmp_path):
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_config(path) == DEFAULT_CONFIG


@pytest.mark.parametrize(
    "payload, error",
    [
        ({"kriging": {"nmax": "many"}}, TypeError),
        ({"data": {"coord_cols": "x"}}, TypeError),
        ({"validation": {"cv": "holdout"}}, ValueError),
        ({"spacetime": {"kind": "cubic"}}, ValueError),
        ({"kriging": {"trend": "linear", "mean": 0.0}}, ValueError),
        ({"model": {"weighting": "median"}}, ValueError),
        ({"targets": {"cell_size": [5.0]}}, ValueError),
    ],
)
def test_invalid_values(tmp_path, payload, error):
    with pytest.raises(error):
        load_config(_write(tmp_path, payload))


def test_missing_and_non_mapping(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "absent.yaml")
    path = tmp_path / "list.yaml"
    path.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(TypeError):
        load_config(path)


def test_save_round_trip(tmp_path):
    cfg = load_config(_write(tmp_path, {"simulation": {"enabled": True, "n_realizations": 3}}))
    out = tmp_path / "saved" / "config.yaml"
    save_config(cfg, out)
    assert load_config(out) == cfg
