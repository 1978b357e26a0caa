"""Error taxonomy for the geostatistics engine.

Every error carries a ``details`` mapping with enough context (target,
bin or realization index) to locate the failure without re-running.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class GeostatsError(Exception):
    """Base exception for engine errors."""

    def __init__(
        self,
        message: str,
        suggestion: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details: Dict[str, Any] = dict(details or {})

    def with_context(self, **details: Any) -> "GeostatsError":
        """Attach extra context (e.g. ``target_index``) and return self."""
        for key, value in details.items():
            self.details.setdefault(key, value)
        return self

    def __str__(self) -> str:
        parts = [self.message]
        if self.details:
            context = ", ".join(f"{key}={value}" for key, value in self.details.items())
            parts.append(f"Context: {context}")
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return "\n".join(parts)


class InvalidObservation(GeostatsError, ValueError):
    """Non-finite value, location or covariate in the input observations."""


class InsufficientData(GeostatsError, ValueError):
    """Too few points or bins for the requested model complexity."""


class FitDivergence(GeostatsError):
    """The variogram optimiser did not converge within its bound."""


class InsufficientNeighbors(GeostatsError):
    """Fewer usable conditioning points than the kriging system requires."""


class SingularSystem(GeostatsError):
    """Kriging matrix not invertible within numerical tolerance."""


class InvalidModel(GeostatsError, ValueError):
    """Malformed structure list or negative sill/range passed in directly."""


class OperationCancelled(GeostatsError):
    """A long-running fit or simulation was cancelled cooperatively."""
