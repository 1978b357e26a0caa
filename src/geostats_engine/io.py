from __future__ import annotations

import csv
import hashlib
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Tuple

import pandas as pd

from .geometry import SpaceTimeLocation
from .observations import Observation, validate_observations

logger = logging.getLogger(__name__)


def _sniff_dialect(sample: str) -> Tuple[str, str]:
    try:
        dialect = csv.Sniffer().sniff(sample, delimiters=[",", ";", "\t", "|"])
        return dialect.delimiter, dialect.quotechar
    except csv.Error:
        return ",", '"'


def _read_csv(path: Path) -> pd.DataFrame:
    encodings = ["utf-8-sig", "utf-8", "latin-1"]
    last_err: Exception | None = None
    for enc in encodings:
        try:
            sample = path.read_text(encoding=enc)[:4096]
            sep, quote = _sniff_dialect(sample)
            return pd.read_csv(path, encoding=enc, sep=sep, quotechar=quote, engine="python")
        except (UnicodeDecodeError, pd.errors.ParserError) as err:
            last_err = err
    raise RuntimeError(f"Failed to read CSV: {path}") from last_err


def file_hash(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(8192), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def validate_columns(df: pd.DataFrame, required: Iterable[str]) -> None:
    missing = [col for col in required if col not in df.columns]
    if missing:
        available = ", ".join(sorted(map(str, df.columns)))
        raise KeyError(
            "Missing required columns: "
            f"{missing}. Available columns: [{available}]. "
            "Revise config mapping."
        )


def required_columns(data_cfg: Dict[str, object]) -> List[str]:
    cols = list(data_cfg["coord_cols"]) + [data_cfg["value_col"]] + list(data_cfg.get("covariate_cols") or [])
    if data_cfg.get("time_col"):
        cols.append(data_cfg["time_col"])
    return cols


def load_data(config: Dict[str, object]) -> Tuple[pd.DataFrame, Dict[str, object]]:
    data_cfg = config["data"]
    path = Path(data_cfg["path"])
    if not path.exists():
        raise FileNotFoundError(f"Input data file not found: {path}")

    df = _read_csv(path)
    metadata = {
        "input_path": str(path),
        "input_hash": file_hash(path),
        "input_shape": [int(df.shape[0]), int(df.shape[1])],
        "columns": [str(col) for col in df.columns],
    }
    validate_columns(df, required_columns(data_cfg))
    return df, metadata


def observations_from_frame(df: pd.DataFrame, data_cfg: Dict[str, object]) -> List[Observation]:
    """Build observations from the mapped columns.

    Rows with a missing coordinate, value, time or covariate are dropped
    with a warning; anything else that is not finite is rejected by
    ``validate_observations``.
    """
    cols = required_columns(data_cfg)
    numeric = df[cols].apply(pd.to_numeric, errors="coerce")
    complete = numeric.dropna()
    dropped = len(numeric) - len(complete)
    if dropped:
        logger.warning("Dropped %d rows with missing or non-numeric required fields", dropped)

    coord_cols = list(data_cfg["coord_cols"])
    covariate_cols = list(data_cfg.get("covariate_cols") or [])
    time_col = data_cfg.get("time_col")
    observations = []
    for row in complete.itertuples(index=False):
        record = dict(zip(cols, row))
        space = tuple(float(record[c]) for c in coord_cols)
        location = SpaceTimeLocation(space, float(record[time_col])) if time_col else space
        observations.append(
            Observation(
                location=location,
                value=float(record[data_cfg["value_col"]]),
                covariates=tuple(float(record[c]) for c in covariate_cols),
            )
        )
    return validate_observations(observations)
