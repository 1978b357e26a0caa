"""Geostatistics engine: variography, kriging and sequential simulation."""

from .cancellation import CancellationToken
from .errors import (
    FitDivergence,
    GeostatsError,
    InsufficientData,
    InsufficientNeighbors,
    InvalidModel,
    InvalidObservation,
    OperationCancelled,
    SingularSystem,
)
from .fitting import WeightingScheme, estimate_anisotropy_ratio, fit_spacetime_variogram, fit_variogram
from .geometry import (
    BlockRegion,
    EuclideanGeometry,
    GeometryProvider,
    SpaceTimeGeometry,
    SpaceTimeLocation,
    SpaceTimeRegion,
)
from .kriging import KrigingOptions, PredictionResult, predict, predict_many
from .models import SpaceTimeVariogramModel, Structure, VariogramModel
from .observations import Observation, Target
from .simulation import Realization, SimulationOptions, simulate
from .spatial_index import SpatialIndex
from .trending import TrendSpec, fit_trend
from .variography import DistanceBin, EmpiricalVariogram, compute_empirical_variogram, compute_spacetime_variogram

__all__ = [
    "CancellationToken",
    "FitDivergence",
    "GeostatsError",
    "InsufficientData",
    "InsufficientNeighbors",
    "InvalidModel",
    "InvalidObservation",
    "OperationCancelled",
    "SingularSystem",
    "WeightingScheme",
    "estimate_anisotropy_ratio",
    "fit_spacetime_variogram",
    "fit_variogram",
    "BlockRegion",
    "EuclideanGeometry",
    "GeometryProvider",
    "SpaceTimeGeometry",
    "SpaceTimeLocation",
    "SpaceTimeRegion",
    "KrigingOptions",
    "PredictionResult",
    "predict",
    "predict_many",
    "SpaceTimeVariogramModel",
    "Structure",
    "VariogramModel",
    "Observation",
    "Target",
    "Realization",
    "SimulationOptions",
    "simulate",
    "SpatialIndex",
    "TrendSpec",
    "fit_trend",
    "DistanceBin",
    "EmpiricalVariogram",
    "compute_empirical_variogram",
    "compute_spacetime_variogram",
]
