from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import load_config
from .errors import InsufficientData
from .fitting import fit_spacetime_variogram, fit_variogram
from .geometry import EuclideanGeometry, GeometryProvider, SpaceTimeGeometry, SpaceTimeLocation, SpaceTimeRegion
from .grid import GridSpec, block_regions, grid_from_extents, grid_locations
from .io import load_data, observations_from_frame
from .kriging import CovarianceModel, KrigingOptions, predict_many, predictions_to_frame
from .models import SpaceTimeVariogramModel, Structure, VariogramModel, normalize_kind
from .observations import Observation, observation_values
from .reporting import RunPaths, create_run_dir, load_model_record, save_model, save_table, write_manifest
from .simulation import RNG_STREAM, SimulationOptions, realizations_to_frame, simulate, summarize_realizations
from .spatial_index import SpatialIndex
from .trending import TrendSpec, spatial_point
from .validation import cross_validate
from .variography import EmpiricalVariogram, compute_empirical_variogram, compute_spacetime_variogram

logger = logging.getLogger(__name__)

STAGES = ("variography", "fit", "kriging", "validation", "simulation", "report")
MODEL_FILE = "variogram_model.json"


def _is_spacetime(config: Dict[str, Any]) -> bool:
    return bool(config["data"].get("time_col"))


def _prepare_data(config: Dict[str, Any]) -> Tuple[List[Observation], GeometryProvider, Dict[str, Any]]:
    df, metadata = load_data(config)
    observations = observations_from_frame(df, config["data"])
    geometry: GeometryProvider = EuclideanGeometry()
    if _is_spacetime(config):
        ratio = config["spacetime"]["anisotropy_ratio"]
        geometry = SpaceTimeGeometry(geometry, 1.0 if ratio is None else float(ratio))
    metadata["observations"] = len(observations)
    return observations, geometry, metadata


def _sample_variance(observations: Sequence[Observation]) -> float:
    values = observation_values(observations)
    if values.size < 2:
        raise InsufficientData("Need at least 2 observations to seed a variogram model.")
    return float(np.var(values, ddof=1))


def _seed_structures(records: Sequence[Mapping[str, Any]], sill: float, default_range: float) -> VariogramModel:
    """Structures from config records; missing sills share ``sill``, missing ranges get ``default_range``."""
    open_sills = [r for r in records if r.get("partial_sill") is None]
    fixed = sum(float(r["partial_sill"]) for r in records if r.get("partial_sill") is not None)
    share = max(sill - fixed, 0.0) / len(open_sills) if open_sills else 0.0
    structures = []
    for record in records:
        kind = normalize_kind(record["kind"])
        psill = share if record.get("partial_sill") is None else float(record["partial_sill"])
        rng = record.get("range")
        if rng is None:
            rng = 0.0 if kind == "nugget" else default_range
        structures.append(Structure(kind, psill, float(rng), float(record.get("kappa", 0.5))))
    return VariogramModel(tuple(structures))


def _empirical(config: Dict[str, Any], observations: List[Observation], geometry: GeometryProvider) -> EmpiricalVariogram:
    var_cfg = config["variography"]
    trend = TrendSpec.linear_drift(len(config["data"]["coord_cols"])) if var_cfg["detrend"] else None
    if _is_spacetime(config):
        return compute_spacetime_variogram(
            observations,
            geometry,
            cutoff=var_cfg["cutoff"],
            width=var_cfg["width"],
            time_lags=var_cfg["time_lags"],
            trend=trend,
        )
    return compute_empirical_variogram(observations, geometry, cutoff=var_cfg["cutoff"], width=var_cfg["width"], trend=trend)


def _initial_spacetime(
    config: Dict[str, Any],
    empirical: EmpiricalVariogram,
    observations: List[Observation],
    geometry: SpaceTimeGeometry,
) -> SpaceTimeVariogramModel:
    st_cfg = config["spacetime"]
    kind = st_cfg["kind"]
    variance = _sample_variance(observations)
    parts = {"separable": 1, "product_sum": 2, "metric": 1, "sum_metric": 3}[kind]
    share = variance / parts
    space_range = empirical.cutoff / 3.0
    time_range = max(geometry.time_span([o.location for o in observations]), 1.0) / 3.0

    space = time = joint = None
    if kind != "metric":
        space = _seed_structures(config["model"]["structures"], share, space_range)
        time = _seed_structures(st_cfg["time_structures"], share, time_range)
    if kind in ("metric", "sum_metric"):
        joint = _seed_structures(st_cfg["joint_structures"], share, space_range)
    return SpaceTimeVariogramModel(
        kind=kind,
        space=space,
        time=time,
        joint=joint,
        k=float(st_cfg["k"]) if kind == "product_sum" else None,
        sill=variance if kind == "separable" else None,
        anisotropy_ratio=st_cfg["anisotropy_ratio"],
    )


def _fit_model(
    config: Dict[str, Any],
    observations: List[Observation],
    geometry: GeometryProvider,
    run_paths: RunPaths,
) -> CovarianceModel:
    empirical = _empirical(config, observations, geometry)
    model_cfg = config["model"]
    if _is_spacetime(config):
        st_cfg = config["spacetime"]
        model = _initial_spacetime(config, empirical, observations, geometry)
        if model_cfg["fit"]:
            model = fit_spacetime_variogram(
                model,
                empirical,
                model_cfg["weighting"],
                anisotropy_ratio=st_cfg["anisotropy_ratio"],
                anisotropy_method=st_cfg["anisotropy_method"],
                fit_nugget=model_cfg["fit_nugget"],
                max_iterations=st_cfg["max_iterations"],
            )
        elif model.anisotropy_ratio is None:
            model = model.with_anisotropy(geometry.anisotropy_ratio)
    else:
        model = _seed_structures(model_cfg["structures"], _sample_variance(observations), empirical.cutoff / 3.0)
        if model_cfg["fit"]:
            model = fit_variogram(
                model,
                empirical,
                model_cfg["weighting"],
                fit_nugget=model_cfg["fit_nugget"],
                fit_ranges=model_cfg["fit_ranges"],
                max_iterations=model_cfg["max_iterations"],
            )
        save_table(model.to_frame(), run_paths, "variogram_model.csv", index=False)
    save_model(model.to_record(), run_paths, MODEL_FILE)
    return model


def _resolve_model(
    config: Dict[str, Any],
    observations: List[Observation],
    geometry: GeometryProvider,
    run_paths: RunPaths,
) -> CovarianceModel:
    record = load_model_record(run_paths, MODEL_FILE)
    if record is None:
        return _fit_model(config, observations, geometry, run_paths)
    if "kind" in record:
        return SpaceTimeVariogramModel.from_record(record)
    return VariogramModel.from_record(record)


def _model_geometry(geometry: GeometryProvider, model: CovarianceModel) -> GeometryProvider:
    if isinstance(geometry, SpaceTimeGeometry) and isinstance(model, SpaceTimeVariogramModel):
        if model.anisotropy_ratio is not None:
            return geometry.with_anisotropy(model.anisotropy_ratio)
    return geometry


def _kriging_options(config: Dict[str, Any]) -> KrigingOptions:
    kcfg = config["kriging"]
    trend = TrendSpec.linear_drift(len(config["data"]["coord_cols"])) if kcfg["trend"] == "linear" else None
    return KrigingOptions(
        nmax=kcfg["nmax"],
        max_radius=kcfg["max_radius"],
        trend=trend,
        mean=kcfg["mean"],
        ridge=float(kcfg["ridge"]),
        condition_max=float(kcfg["condition_max"]),
        variance_tolerance=float(kcfg["variance_tolerance"]),
    )


def _targets(config: Dict[str, Any], observations: List[Observation], points_only: bool = False) -> Tuple[GridSpec, List[Any]]:
    tcfg = config["targets"]
    coords = np.asarray([spatial_point(o.location) for o in observations], dtype=float)
    spec = grid_from_extents(coords, tcfg["cell_size"], pad=float(tcfg["pad"]))
    blocks = tcfg["block"] and not points_only
    spatial: List[Any] = block_regions(spec, tcfg["discretization"]) if blocks else grid_locations(spec)
    if not _is_spacetime(config):
        return spec, spatial
    times = [float(t) for t in tcfg["times"]] or [max(float(o.location.time) for o in observations)]
    if blocks:
        return spec, [SpaceTimeRegion(region, (t,)) for t in times for region in spatial]
    return spec, [SpaceTimeLocation(point, t) for t in times for point in spatial]


def _unit_sill(model: CovarianceModel) -> CovarianceModel:
    if not isinstance(model, VariogramModel):
        logger.warning("Normal-score simulation uses the space-time model without rescaling its sill")
        return model
    if model.sill <= 0:
        return model
    scale = 1.0 / model.sill
    return model.with_structures(
        Structure(s.kind, s.partial_sill * scale, s.range, s.kappa) for s in model.structures
    )


def run_variography(config: Dict[str, Any], run_paths: RunPaths) -> Dict[str, Any]:
    observations, geometry, _metadata = _prepare_data(config)
    empirical = _empirical(config, observations, geometry)
    save_table(empirical.to_frame(), run_paths, "empirical_variogram.csv", index=False)
    logger.info("Variography: %d bins, cutoff=%.4g, width=%.4g", len(empirical), empirical.cutoff, empirical.width)
    return {
        "bins": len(empirical),
        "pairs": int(empirical.counts.sum()),
        "cutoff": empirical.cutoff,
        "width": empirical.width,
    }


def run_fit(config: Dict[str, Any], run_paths: RunPaths) -> Dict[str, Any]:
    observations, geometry, _metadata = _prepare_data(config)
    model = _fit_model(config, observations, geometry, run_paths)
    return {"model": model.to_record()}


def run_kriging(config: Dict[str, Any], run_paths: RunPaths) -> Dict[str, Any]:
    observations, geometry, _metadata = _prepare_data(config)
    model = _resolve_model(config, observations, geometry, run_paths)
    geometry = _model_geometry(geometry, model)
    index = SpatialIndex(geometry, observations)
    spec, targets = _targets(config, observations)

    kcfg = config["kriging"]
    outcomes = predict_many(
        model,
        index,
        targets,
        _kriging_options(config),
        workers=kcfg["workers"],
        fail_fast=kcfg["fail_fast"],
    )
    out = predictions_to_frame(outcomes)
    save_table(out, run_paths, "kriging_estimates.csv", index=False)
    failed = int(sum(1 for o in outcomes if not o.ok))
    return {"rows": int(len(out)), "failed": failed, "grid": spec.to_record()}


def run_validation(config: Dict[str, Any], run_paths: RunPaths) -> Dict[str, Any]:
    observations, geometry, _metadata = _prepare_data(config)
    model = _resolve_model(config, observations, geometry, run_paths)
    geometry = _model_geometry(geometry, model)
    cv_cfg = config["validation"]
    cv_result = cross_validate(
        model,
        observations,
        geometry,
        _kriging_options(config),
        method=cv_cfg["cv"],
        n_splits=cv_cfg["kfold_splits"],
        random_state=cv_cfg["random_state"],
        workers=config["kriging"]["workers"],
    )
    save_table(cv_result.data, run_paths, "validation_predictions.csv", index=False)
    save_table(pd.DataFrame([cv_result.metrics]), run_paths, "validation_metrics.csv", index=False)
    return {"metrics": cv_result.metrics}


def run_simulation(config: Dict[str, Any], run_paths: RunPaths) -> Dict[str, Any]:
    sim_cfg = config["simulation"]
    if not sim_cfg["enabled"]:
        return {"status": "disabled"}
    observations, geometry, _metadata = _prepare_data(config)
    model = _resolve_model(config, observations, geometry, run_paths)
    geometry = _model_geometry(geometry, model)
    if sim_cfg["normal_score"]:
        model = _unit_sill(model)
    index = SpatialIndex(geometry, observations)
    _spec, targets = _targets(config, observations, points_only=True)

    seed = sim_cfg["random_seed"]
    if seed is None:
        seed = int(np.random.SeedSequence().entropy)
    options = SimulationOptions(
        nmax=sim_cfg["nmax"],
        seed=seed,
        max_radius=config["kriging"]["max_radius"],
        normal_score=sim_cfg["normal_score"],
        workers=sim_cfg["workers"],
        fail_fast=sim_cfg["fail_fast"],
    )
    realizations = simulate(model, index, targets, int(sim_cfg["n_realizations"]), options)
    save_table(realizations_to_frame(realizations, targets), run_paths, "simulation_realizations.csv", index=False)
    save_table(summarize_realizations(realizations, targets), run_paths, "simulation_summary.csv", index=False)
    failed = int(sum(1 for r in realizations if not r.ok))
    return {
        "realizations": len(realizations),
        "failed": failed,
        "targets": len(targets),
        "seed": seed,
        "rng_stream": RNG_STREAM,
    }


def run_reporting(config: Dict[str, Any], run_paths: RunPaths, metrics: Dict[str, Any]) -> Dict[str, Any]:
    _df, metadata = load_data(config)
    sim = metrics.get("simulation") or {}
    manifest_path, _ = write_manifest(
        run_paths,
        config=config,
        input_metadata=metadata,
        stage_metrics=metrics,
        model_record=load_model_record(run_paths, MODEL_FILE),
        simulation={"rng_stream": sim["rng_stream"], "seed": sim["seed"]} if "seed" in sim else None,
    )
    return {"manifest": str(manifest_path)}


def run_stages(config: Dict[str, Any], run_paths: RunPaths, stage: str = "all") -> Dict[str, Any]:
    if stage != "all" and stage not in STAGES:
        raise ValueError(f"Unknown stage: {stage}")
    metrics: Dict[str, Any] = {}

    if stage in {"all", "variography"}:
        metrics["variography"] = run_variography(config, run_paths)

    if stage in {"all", "fit"}:
        metrics["fit"] = run_fit(config, run_paths)

    if stage in {"all", "kriging"}:
        metrics["kriging"] = run_kriging(config, run_paths)

    if stage in {"all", "validation"}:
        metrics["validation"] = run_validation(config, run_paths)

    if stage in {"all", "simulation"}:
        metrics["simulation"] = run_simulation(config, run_paths)

    if stage in {"all", "report"}:
        metrics["report"] = run_reporting(config, run_paths, metrics)

    return metrics


def create_run_paths(config: Dict[str, Any]) -> RunPaths:
    run_name = config["outputs"]["run_name"]
    return create_run_dir(config["outputs"]["base_dir"], prefix="run" if run_name == "auto" else run_name)


def run_pipeline(config_path: str, stage: str = "all") -> RunPaths:
    config = load_config(config_path)
    run_paths = create_run_paths(config)
    run_stages(config, run_paths, stage)
    return run_paths
