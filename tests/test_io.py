from __future__ import annotations

import logging

import pandas as pd
import pytest

from geostats_engine.geometry import SpaceTimeLocation
from geostats_engine.io import load_data, observations_from_frame


def _config(path, **data):
    cfg = {"path": str(path), "coord_cols": ["x", "y"], "value_col": "value", "time_col": None, "covariate_cols": []}
    cfg.update(data)
    return {"data": cfg}


def test_load_data_semicolon(tmp_path):
    path = tmp_path / "points.csv"
    pd.DataFrame({"x": [1.0, 2.0], "y": [3.0, 4.0], "value": [0.5, 0.7]}).to_csv(path, sep=";", index=False)
    df, metadata = load_data(_config(path))
    assert df.shape == (2, 3)
    assert list(df.columns) == ["x", "y", "value"]
    assert metadata["input_shape"] == [2, 3]
    assert len(metadata["input_hash"]) == 64


def test_missing_file_and_columns(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_data(_config(tmp_path / "absent.csv"))
    path = tmp_path / "points.csv"
    pd.DataFrame({"x": [1.0], "value": [0.5]}).to_csv(path, index=False)
    with pytest.raises(KeyError, match="Missing required columns"):
        load_data(_config(path))


def test_observations_drop_incomplete_rows(caplog):
    df = pd.DataFrame({"x": [0.0, 1.0, None], "y": [0.0, 1.0, 2.0], "value": [1.0, "n/a", 3.0], "t": [0, 1, 2]})
    caplog.set_level(logging.WARNING)
    observations = observations_from_frame(df, _config("unused")["data"])
    assert [o.location for o in observations] == [(0.0, 0.0)]
    assert "Dropped 2 rows" in caplog.text

    timed = observations_from_frame(df, _config("unused", time_col="t")["data"])
    assert timed[0].location == SpaceTimeLocation((0.0, 0.0), 0.0)
