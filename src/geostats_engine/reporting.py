"""Run directories, model records and the run manifest.

A run directory holds ``tables/`` (CSV outputs), ``models/`` (JSON model
records reused by later stages) and ``logs/``. The manifest summarises what
the run produced: the variogram model in effect, the random stream and seed
behind the realizations, and how many targets, folds or realizations failed
in each stage.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

ENGINE_DISTRIBUTIONS = ("geostats-engine", "numpy", "scipy", "pandas", "scikit-learn", "PyYAML")

# Keys under which each stage reports its failure count.
_FAILURE_KEYS = {"kriging": "failed", "validation": "n_failed", "simulation": "failed"}


@dataclass(frozen=True)
class RunPaths:
    base: Path
    tables: Path
    models: Path
    logs: Path

    @classmethod
    def under(cls, run_dir: Path) -> "RunPaths":
        paths = cls(base=run_dir, tables=run_dir / "tables", models=run_dir / "models", logs=run_dir / "logs")
        for path in (paths.tables, paths.models, paths.logs):
            path.mkdir(parents=True, exist_ok=True)
        return paths

    def table_path(self, filename: str) -> Path:
        return self.tables / filename

    def model_path(self, filename: str) -> Path:
        return self.models / filename

    def log_path(self, filename: str) -> Path:
        return self.logs / filename


def save_table(df, run_paths: RunPaths, filename: str, **kwargs) -> Path:
    path = run_paths.table_path(filename)
    df.to_csv(path, **kwargs)
    logger.info("Wrote %s (%d rows)", path, len(df))
    return path


def save_model(record: Mapping[str, Any], run_paths: RunPaths, filename: str) -> Path:
    path = run_paths.model_path(filename)
    path.write_text(json.dumps(record, indent=2), encoding="utf-8")
    return path


def load_model_record(run_paths: RunPaths, filename: str) -> Optional[dict]:
    """The record written by an earlier stage of this run, if any."""
    path = run_paths.model_path(filename)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def create_run_dir(
    base_dir: str | Path = "outputs",
    prefix: str = "run",
    timestamp: Optional[datetime] = None,
) -> RunPaths:
    """``<base_dir>/<prefix>_<YYYYmmdd_HHMM>``, suffixed ``_01``, ``_02``... when taken."""
    base_dir = Path(base_dir)
    stem = f"{prefix}_{(timestamp or datetime.now()).strftime('%Y%m%d_%H%M')}"
    run_dir = base_dir / stem
    counter = 0
    while run_dir.exists():
        counter += 1
        run_dir = base_dir / f"{stem}_{counter:02d}"
    return RunPaths.under(run_dir)


def failure_counts(stage_metrics: Mapping[str, Mapping[str, Any]]) -> Dict[str, int]:
    """Failed targets, folds or realizations per stage that ran."""
    counts = {}
    for stage, key in _FAILURE_KEYS.items():
        summary = stage_metrics.get(stage)
        if isinstance(summary, Mapping) and key in summary:
            counts[stage] = int(summary[key])
        elif isinstance(summary, Mapping) and isinstance(summary.get("metrics"), Mapping):
            counts[stage] = int(summary["metrics"].get(key, 0))
    return counts


def _engine_versions() -> Dict[str, Optional[str]]:
    versions: Dict[str, Optional[str]] = {}
    for name in ENGINE_DISTRIBUTIONS:
        try:
            versions[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            versions[name] = None
    return versions


def write_manifest(
    run_paths: RunPaths,
    config: Mapping[str, Any],
    input_metadata: Mapping[str, Any],
    stage_metrics: Mapping[str, Any],
    model_record: Optional[Mapping[str, Any]] = None,
    simulation: Optional[Mapping[str, Any]] = None,
) -> tuple[Path, Path]:
    """Write ``manifest.json`` and ``manifest.yaml`` at the run root.

    ``simulation`` carries the random stream identifier and the seed the
    realizations were drawn with, so a run can be reproduced exactly.
    """
    manifest = {
        "run_dir": str(run_paths.base),
        "created_at": datetime.now(timezone.utc).isoformat(),
        "input": dict(input_metadata),
        "model": None if model_record is None else dict(model_record),
        "simulation": None if simulation is None else dict(simulation),
        "failures": failure_counts(stage_metrics),
        "stages": dict(stage_metrics),
        "config": dict(config),
        "versions": _engine_versions(),
    }

    # Round-trip through JSON so numpy scalars and paths become plain types.
    plain = json.loads(json.dumps(manifest, default=str))
    json_path = run_paths.base / "manifest.json"
    json_path.write_text(json.dumps(plain, indent=2, ensure_ascii=False), encoding="utf-8")
    yaml_path = run_paths.base / "manifest.yaml"
    yaml_path.write_text(yaml.safe_dump(plain, sort_keys=False, allow_unicode=True), encoding="utf-8")
    logger.info("Manifest written: %s", json_path)
    return json_path, yaml_path
