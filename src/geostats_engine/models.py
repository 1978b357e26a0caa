"""Parametric variogram and covariance models.

Conventions follow gstat: ``range`` is the scale parameter ``a`` of each
basic structure (exponential ``1 - exp(-h/a)``, Gaussian
``1 - exp(-(h/a)**2)``, spherical and circular reach their sill at ``a``).
All structures have ``gamma(0) = 0``; the nugget only appears for ``h > 0``,
so the covariance at distance zero is the total sill.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import special

from .errors import InvalidModel
from .geometry import GeometryProvider, SpaceTimeGeometry


def _nugget(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    return (h > 0).astype(float)


def _exponential(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    return 1.0 - np.exp(-h / a)


def _spherical(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    hr = np.clip(h / a, 0.0, 1.0)
    return 1.5 * hr - 0.5 * hr**3


def _gaussian(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    return 1.0 - np.exp(-((h / a) ** 2))


def _circular(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    hr = np.clip(h / a, 0.0, 1.0)
    return (2.0 / np.pi) * (hr * np.sqrt(1.0 - hr**2) + np.arcsin(hr))


def _linear(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    return np.clip(h / a, 0.0, 1.0)


def _matern(h: np.ndarray, a: float, kappa: float) -> np.ndarray:
    hr = h / a
    out = np.zeros_like(hr, dtype=float)
    positive = hr > 0
    if np.any(positive):
        x = hr[positive]
        corr = (x**kappa) * special.kv(kappa, x) / (2.0 ** (kappa - 1.0) * special.gamma(kappa))
        # kv underflows to 0 far beyond the range; the correlation is 0 there.
        corr = np.where(np.isfinite(corr), corr, 0.0)
        out[positive] = 1.0 - corr
    return out


STRUCTURE_KINDS: Dict[str, Callable[[np.ndarray, float, float], np.ndarray]] = {
    "nugget": _nugget,
    "exponential": _exponential,
    "spherical": _spherical,
    "gaussian": _gaussian,
    "circular": _circular,
    "linear": _linear,
    "matern": _matern,
}

_ALIASES = {"nug": "nugget", "exp": "exponential", "sph": "spherical", "gau": "gaussian", "cir": "circular", "lin": "linear", "mat": "matern"}


def normalize_kind(kind: str) -> str:
    key = str(kind).strip().lower()
    key = _ALIASES.get(key, key)
    if key not in STRUCTURE_KINDS:
        raise InvalidModel(
            f"Unknown structure kind: {kind}",
            suggestion=f"Use one of {sorted(STRUCTURE_KINDS)}",
        )
    return key


@dataclass(frozen=True)
class Structure:
    """One basic structure: a kind, its partial sill and its range."""

    kind: str
    partial_sill: float
    range: float = 0.0
    kappa: float = 0.5

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", normalize_kind(self.kind))
        psill = float(self.partial_sill)
        rng = float(self.range)
        if not np.isfinite(psill) or psill < 0:
            raise InvalidModel(f"partial_sill must be finite and >= 0, got {self.partial_sill}", details={"kind": self.kind})
        if not np.isfinite(rng) or rng < 0:
            raise InvalidModel(f"range must be finite and >= 0, got {self.range}", details={"kind": self.kind})
        if self.kind != "nugget" and rng <= 0:
            raise InvalidModel(f"range must be positive for a {self.kind} structure", details={"kind": self.kind})
        if self.kind == "matern" and not (self.kappa > 0):
            raise InvalidModel(f"kappa must be positive for a matern structure, got {self.kappa}")
        object.__setattr__(self, "partial_sill", psill)
        object.__setattr__(self, "range", rng)
        object.__setattr__(self, "kappa", float(self.kappa))

    def gamma(self, h: np.ndarray) -> np.ndarray:
        h = np.asarray(h, dtype=float)
        return self.partial_sill * STRUCTURE_KINDS[self.kind](h, self.range, self.kappa)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"kind": self.kind, "partial_sill": self.partial_sill, "range": self.range}
        if self.kind == "matern":
            record["kappa"] = self.kappa
        return record


@dataclass(frozen=True)
class VariogramModel:
    """Nested variogram: the sum of its structures."""

    structures: Tuple[Structure, ...]

    def __post_init__(self) -> None:
        structures = tuple(self.structures)
        if not structures:
            raise InvalidModel("A variogram model needs at least one structure.")
        for idx, item in enumerate(structures):
            if not isinstance(item, Structure):
                raise InvalidModel(f"Expected Structure, got {type(item).__name__}", details={"structure_index": idx})
        object.__setattr__(self, "structures", structures)

    @classmethod
    def single(cls, kind: str, partial_sill: float, range: float, nugget: Optional[float] = None, kappa: float = 0.5) -> "VariogramModel":
        structures = []
        if nugget is not None:
            structures.append(Structure("nugget", nugget))
        structures.append(Structure(kind, partial_sill, range, kappa))
        return cls(tuple(structures))

    @property
    def nugget(self) -> float:
        return float(sum(s.partial_sill for s in self.structures if s.kind == "nugget"))

    @property
    def sill(self) -> float:
        return float(sum(s.partial_sill for s in self.structures))

    @property
    def partial_sill(self) -> float:
        return self.sill - self.nugget

    @property
    def effective_range(self) -> float:
        ranges = [s.range for s in self.structures if s.kind != "nugget"]
        return max(ranges) if ranges else 0.0

    def gamma(self, h: Any) -> np.ndarray:
        h = np.asarray(h, dtype=float)
        total = np.zeros_like(h, dtype=float)
        for structure in self.structures:
            total = total + structure.gamma(h)
        return total

    def covariance(self, h: Any) -> np.ndarray:
        return self.sill - self.gamma(h)

    def point_variance(self) -> float:
        return self.sill

    def covariance_matrix(self, geometry: GeometryProvider, a: Sequence[Any], b: Sequence[Any]) -> np.ndarray:
        return self.covariance(geometry.distance_matrix(a, b))

    def with_structures(self, structures: Iterable[Structure]) -> "VariogramModel":
        return VariogramModel(tuple(structures))

    def to_record(self) -> Dict[str, Any]:
        return {
            "nugget": self.nugget,
            "sill": self.sill,
            "structures": [s.to_record() for s in self.structures],
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "VariogramModel":
        try:
            items = record["structures"]
        except (KeyError, TypeError) as err:
            raise InvalidModel("Model record must contain a 'structures' list.") from err
        structures = [
            Structure(
                item["kind"],
                item.get("partial_sill", 0.0),
                item.get("range", 0.0),
                item.get("kappa", 0.5),
            )
            for item in items
        ]
        has_nugget = any(s.kind == "nugget" for s in structures)
        nugget = float(record.get("nugget", 0.0) or 0.0)
        if nugget > 0 and not has_nugget:
            structures.insert(0, Structure("nugget", nugget))
        return cls(tuple(structures))

    def to_frame(self) -> pd.DataFrame:
        rows = [{"kappa": None, **s.to_record()} for s in self.structures]
        return pd.DataFrame(rows, columns=["kind", "partial_sill", "range", "kappa"])


SPACETIME_KINDS = ("separable", "product_sum", "metric", "sum_metric")


@dataclass(frozen=True)
class SpaceTimeVariogramModel:
    """Space-time covariance built from spatial, temporal and joint parts.

    * ``separable``: ``C(h, u) = sill * rho_s(h) * rho_t(u)``
    * ``product_sum``: ``gamma = gamma_s(h) + gamma_t(u) - k * gamma_s(h) * gamma_t(u)``
    * ``metric``: ``gamma = gamma_joint(sqrt(h**2 + (kappa * u)**2))``
    * ``sum_metric``: ``gamma_s(h) + gamma_t(u) + gamma_joint(sqrt(h**2 + (kappa * u)**2))``

    ``anisotropy_ratio`` (kappa) converts time lags into space units. When
    it is ``None`` the ratio of the ``SpaceTimeGeometry`` in use applies.
    """

    kind: str
    space: Optional[VariogramModel] = None
    time: Optional[VariogramModel] = None
    joint: Optional[VariogramModel] = None
    k: Optional[float] = None
    sill: Optional[float] = None
    anisotropy_ratio: Optional[float] = None

    def __post_init__(self) -> None:
        kind = str(self.kind).strip().lower().replace("-", "_")
        if kind not in SPACETIME_KINDS:
            raise InvalidModel(f"Unknown space-time model kind: {self.kind}", suggestion=f"Use one of {SPACETIME_KINDS}")
        object.__setattr__(self, "kind", kind)
        if kind in ("separable", "product_sum", "sum_metric") and (self.space is None or self.time is None):
            raise InvalidModel(f"A {kind} model needs both spatial and temporal components.")
        if kind in ("metric", "sum_metric") and self.joint is None:
            raise InvalidModel(f"A {kind} model needs a joint component.")
        if kind == "separable":
            if self.sill is None or not np.isfinite(self.sill) or self.sill < 0:
                raise InvalidModel(f"A separable model needs a non-negative sill, got {self.sill}")
            for name, part in (("space", self.space), ("time", self.time)):
                if part.sill <= 0:
                    raise InvalidModel(f"The {name} component of a separable model needs a positive sill.")
        if kind == "product_sum":
            if self.k is None or not np.isfinite(self.k) or self.k < 0:
                raise InvalidModel(f"A product_sum model needs k >= 0, got {self.k}")
            k_max = self.k_upper_bound(self.space, self.time)
            if self.k > k_max * (1.0 + 1e-9):
                raise InvalidModel(
                    f"k={self.k} exceeds 1/max(sill_s, sill_t)={k_max}; the covariance would not be valid."
                )
        if self.anisotropy_ratio is not None and (not np.isfinite(self.anisotropy_ratio) or self.anisotropy_ratio < 0):
            raise InvalidModel(f"anisotropy_ratio must be >= 0, got {self.anisotropy_ratio}")

    @staticmethod
    def k_upper_bound(space: VariogramModel, time: VariogramModel) -> float:
        largest = max(space.sill, time.sill)
        return np.inf if largest <= 0 else 1.0 / largest

    def with_anisotropy(self, anisotropy_ratio: float) -> "SpaceTimeVariogramModel":
        return replace(self, anisotropy_ratio=float(anisotropy_ratio))

    def _ratio(self, fallback: Optional[float]) -> float:
        if self.anisotropy_ratio is not None:
            return self.anisotropy_ratio
        return 1.0 if fallback is None else fallback

    def point_variance(self) -> float:
        if self.kind == "separable":
            return float(self.sill)
        if self.kind == "product_sum":
            ss, st = self.space.sill, self.time.sill
            return ss + st - self.k * ss * st
        if self.kind == "metric":
            return self.joint.sill
        return self.space.sill + self.time.sill + self.joint.sill

    def gamma_st(self, h: Any, u: Any, anisotropy_ratio: Optional[float] = None) -> np.ndarray:
        h = np.asarray(h, dtype=float)
        u = np.asarray(u, dtype=float)
        if self.kind == "separable":
            return self.sill - self.covariance_st(h, u, anisotropy_ratio)
        if self.kind == "product_sum":
            gs = self.space.gamma(h)
            gt = self.time.gamma(u)
            return gs + gt - self.k * gs * gt
        dist = np.hypot(h, self._ratio(anisotropy_ratio) * u)
        if self.kind == "metric":
            return self.joint.gamma(dist)
        return self.space.gamma(h) + self.time.gamma(u) + self.joint.gamma(dist)

    def covariance_st(self, h: Any, u: Any, anisotropy_ratio: Optional[float] = None) -> np.ndarray:
        h = np.asarray(h, dtype=float)
        u = np.asarray(u, dtype=float)
        if self.kind == "separable":
            rho_s = self.space.covariance(h) / self.space.sill
            rho_t = self.time.covariance(u) / self.time.sill
            return self.sill * rho_s * rho_t
        return self.point_variance() - self.gamma_st(h, u, anisotropy_ratio)

    def covariance_matrix(self, geometry: GeometryProvider, a: Sequence[Any], b: Sequence[Any]) -> np.ndarray:
        if not isinstance(geometry, SpaceTimeGeometry):
            raise InvalidModel("Space-time models need a SpaceTimeGeometry.")
        h = geometry.spatial_lags(a, b)
        u = geometry.time_lags(a, b)
        return self.covariance_st(h, u, geometry.anisotropy_ratio)

    def to_record(self) -> Dict[str, Any]:
        record: Dict[str, Any] = {"kind": self.kind, "anisotropy_ratio": self.anisotropy_ratio}
        for name in ("space", "time", "joint"):
            part = getattr(self, name)
            record[name] = part.to_record() if part is not None else None
        if self.k is not None:
            record["k"] = self.k
        if self.sill is not None:
            record["sill"] = self.sill
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "SpaceTimeVariogramModel":
        parts = {
            name: VariogramModel.from_record(record[name]) if record.get(name) else None
            for name in ("space", "time", "joint")
        }
        return cls(
            kind=record["kind"],
            k=record.get("k"),
            sill=record.get("sill"),
            anisotropy_ratio=record.get("anisotropy_ratio"),
            **parts,
        )
