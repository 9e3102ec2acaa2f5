"""Error taxonomy for the baseline reduction engine."""
from __future__ import annotations

__all__ = [
    "ReductionError",
    "InvalidVarianceModel",
    "SolverNonConvergence",
    "DimensionMismatch",
    "UnsupportedOperation",
]


class ReductionError(Exception):
    """Base class for all engine errors."""


class InvalidVarianceModel(ReductionError, ValueError):
    """Variance inputs that cannot produce a non-negative variance model."""


class SolverNonConvergence(ReductionError):
    """The nonlinear solver produced no usable parameter covariance."""


class DimensionMismatch(ReductionError, ValueError):
    """Jacobian or covariance operands with incompatible shapes."""


class UnsupportedOperation(ReductionError, NotImplementedError):
    """Accessor that does not apply to intensity models."""
