"""Measurement covariance over concatenated background + on-peak samples.

Full propagation keeps the complete symmetric matrix; fast propagation keeps
only its diagonal.  Both implement :class:`VarianceModel` so that fitting and
propagation code runs unchanged in either mode.
"""
from __future__ import annotations

import logging
from typing import Callable, Optional, Tuple, Union

import numpy as np
from scipy import linalg

from .collectors import CollectorModel
from .errors import DimensionMismatch, InvalidVarianceModel
from .series import AcquisitionSeries

__all__ = [
    "ZERO_BACKGROUND_VARIANCE_FLOOR",
    "VarianceModel",
    "FullCovariance",
    "DiagonalVariance",
    "as_variance_model",
    "prepare",
    "background_block",
    "apply_degenerate_background_guard",
    "active_indices",
    "expand",
]

log = logging.getLogger(__name__)

# Diagonal written into an all-zero background block so the solvers stay
# well posed.  Outputs depend on this exact value.
ZERO_BACKGROUND_VARIANCE_FLOOR = 1e-10


class VarianceModel:
    """Common algebra over a covariance matrix or a variance vector."""

    full = False

    @property
    def size(self) -> int:
        raise NotImplementedError

    def diagonal(self) -> np.ndarray:
        raise NotImplementedError

    def mean_diagonal(self) -> float:
        d = self.diagonal()
        return float(np.mean(d)) if d.size else 0.0

    def leading(self, n: int) -> "VarianceModel":
        """Return the leading principal ``n`` x ``n`` block."""

        if not 0 <= n <= self.size:
            raise DimensionMismatch(f"leading block {n} of a size-{self.size} model")
        return self.extract(np.arange(n))

    def extract(self, indices) -> "VarianceModel":
        raise NotImplementedError

    def plus(self, other) -> "VarianceModel":
        raise NotImplementedError

    def with_diagonal(self, values) -> "VarianceModel":
        raise NotImplementedError

    def plus_identity(self, value: float) -> "VarianceModel":
        """Return ``S + value * I``."""

        return self.with_diagonal(self.diagonal() + float(value))

    def sandwich(self, jac) -> np.ndarray:
        """Return ``J S J^T``."""

        raise NotImplementedError

    def solve(self, rhs) -> np.ndarray:
        """Return ``S^-1 rhs``; raises ``LinAlgError`` when ``S`` is singular."""

        raise NotImplementedError

    def spectral(self) -> Tuple[np.ndarray, Callable[[np.ndarray], np.ndarray]]:
        """Return eigenvalues and a callable projecting onto the eigenbasis."""

        raise NotImplementedError

    def is_positive_definite(self) -> bool:
        raise NotImplementedError

    def dense(self) -> np.ndarray:
        raise NotImplementedError

    def _check_indices(self, indices) -> np.ndarray:
        idx = np.asarray(indices, dtype=int).reshape(-1)
        if idx.size and (idx.min() < 0 or idx.max() >= self.size):
            raise DimensionMismatch(f"indices out of range for a size-{self.size} model")
        return idx


class FullCovariance(VarianceModel):
    """Symmetric covariance matrix (full propagation)."""

    full = True

    def __init__(self, matrix) -> None:
        m = np.array(matrix, dtype=float)
        if m.ndim != 2 or m.shape[0] != m.shape[1]:
            raise DimensionMismatch(f"covariance must be square, got shape {m.shape}")
        self.matrix = m

    @property
    def size(self) -> int:
        return self.matrix.shape[0]

    def diagonal(self) -> np.ndarray:
        return np.diag(self.matrix).copy()

    def extract(self, indices) -> "FullCovariance":
        idx = self._check_indices(indices)
        return FullCovariance(self.matrix[np.ix_(idx, idx)])

    def plus(self, other) -> "FullCovariance":
        if isinstance(other, VarianceModel):
            other = other.dense()
        o = np.asarray(other, dtype=float)
        if o.ndim == 1:
            if o.size != self.size:
                raise DimensionMismatch(f"cannot add {o.size} variances to a size-{self.size} matrix")
            out = self.matrix.copy()
            out[np.diag_indices(self.size)] += o
            return FullCovariance(out)
        if o.shape != self.matrix.shape:
            raise DimensionMismatch(f"cannot add shape {o.shape} to {self.matrix.shape}")
        return FullCovariance(self.matrix + o)

    def with_diagonal(self, values) -> "FullCovariance":
        v = np.asarray(values, dtype=float).reshape(-1)
        if v.size != self.size:
            raise DimensionMismatch(f"{v.size} diagonal values for a size-{self.size} matrix")
        out = self.matrix.copy()
        out[np.diag_indices(self.size)] = v
        return FullCovariance(out)

    def sandwich(self, jac) -> np.ndarray:
        J = np.atleast_2d(np.asarray(jac, dtype=float))
        if J.shape[1] != self.size:
            raise DimensionMismatch(
                f"Jacobian with {J.shape[1]} columns against a size-{self.size} covariance"
            )
        return J @ self.matrix @ J.T

    def solve(self, rhs) -> np.ndarray:
        factor = linalg.cho_factor(self.matrix, lower=True)
        return linalg.cho_solve(factor, np.asarray(rhs, dtype=float))

    def spectral(self):
        lam, Q = linalg.eigh(self.matrix)
        return lam, lambda v: Q.T @ v

    def is_positive_definite(self) -> bool:
        if self.size == 0 or not np.all(np.isfinite(self.matrix)):
            return False
        try:
            linalg.cho_factor(self.matrix, lower=True)
        except linalg.LinAlgError:
            return False
        return True

    def dense(self) -> np.ndarray:
        return self.matrix.copy()

    def __repr__(self) -> str:
        return f"FullCovariance(size={self.size})"


class DiagonalVariance(VarianceModel):
    """Variance vector standing in for a diagonal matrix (fast propagation)."""

    def __init__(self, vector) -> None:
        v = np.array(vector, dtype=float)
        if v.ndim != 1:
            raise DimensionMismatch(f"variance vector must be 1-D, got shape {v.shape}")
        self.vector = v

    @property
    def size(self) -> int:
        return self.vector.size

    def diagonal(self) -> np.ndarray:
        return self.vector.copy()

    def extract(self, indices) -> "DiagonalVariance":
        idx = self._check_indices(indices)
        return DiagonalVariance(self.vector[idx])

    def plus(self, other) -> "DiagonalVariance":
        # fast propagation carries no correlations, so only diagonals combine
        if isinstance(other, VarianceModel):
            o = other.diagonal()
        else:
            o = np.asarray(other, dtype=float)
            if o.ndim == 2:
                if o.shape != (self.size, self.size):
                    raise DimensionMismatch(f"cannot add shape {o.shape} to {self.size} variances")
                o = np.diag(o)
        if o.size != self.size:
            raise DimensionMismatch(f"cannot add {o.size} variances to {self.size}")
        return DiagonalVariance(self.vector + o.reshape(-1))

    def with_diagonal(self, values) -> "DiagonalVariance":
        v = np.asarray(values, dtype=float).reshape(-1)
        if v.size != self.size:
            raise DimensionMismatch(f"{v.size} diagonal values for {self.size} variances")
        return DiagonalVariance(v)

    def sandwich(self, jac) -> np.ndarray:
        J = np.atleast_2d(np.asarray(jac, dtype=float))
        if J.shape[1] != self.size:
            raise DimensionMismatch(
                f"Jacobian with {J.shape[1]} columns against {self.size} variances"
            )
        return (J * self.vector) @ J.T

    def solve(self, rhs) -> np.ndarray:
        if np.any(self.vector <= 0.0):
            raise linalg.LinAlgError("variance vector is not positive")
        b = np.asarray(rhs, dtype=float)
        if b.ndim == 1:
            return b / self.vector
        return b / self.vector[:, None]

    def spectral(self):
        return self.vector.copy(), lambda v: np.asarray(v, dtype=float)

    def is_positive_definite(self) -> bool:
        v = self.vector
        return bool(v.size) and bool(np.all(np.isfinite(v))) and bool(np.all(v > 0.0))

    def dense(self) -> np.ndarray:
        return np.diag(self.vector)

    def __repr__(self) -> str:
        return f"DiagonalVariance(size={self.size})"


CorrectionLike = Union[VarianceModel, np.ndarray, None]


def as_variance_model(values, full: bool) -> VarianceModel:
    """Wrap a matrix or vector in the model matching ``full``."""

    if isinstance(values, VarianceModel):
        return values
    arr = np.asarray(values, dtype=float)
    if full:
        return FullCovariance(np.diag(arr) if arr.ndim == 1 else arr)
    return DiagonalVariance(np.diag(arr) if arr.ndim == 2 else arr)


def prepare(
    background: AcquisitionSeries,
    on_peak: AcquisitionSeries,
    collector: CollectorModel,
    full_propagation: bool,
    integration_time: float,
    correction: CorrectionLike = None,
    diagonal: Optional[np.ndarray] = None,
) -> VarianceModel:
    """Build the variance model over background followed by on-peak samples.

    Parameters
    ----------
    background, on_peak:
        Series whose intensities and analog correction factors are
        concatenated in that order.
    collector:
        Supplies the noise law and the off-diagonal expansion.
    full_propagation:
        ``True`` for a :class:`FullCovariance`, ``False`` for a
        :class:`DiagonalVariance`.
    integration_time:
        Seconds per sample, forwarded to the collector.
    correction:
        Optional interference-correction covariance added once to the result.
    diagonal:
        Optional externally computed variance diagonal replacing the
        collector's own.
    """

    all_intensities = np.concatenate([background.intensities, on_peak.intensities])
    if diagonal is None:
        acfs = np.concatenate(
            [background.analog_correction_factors, on_peak.analog_correction_factors]
        )
        diagonal = collector.build_variance_diagonal(
            len(background), acfs, all_intensities, integration_time
        )
    else:
        diagonal = np.asarray(diagonal, dtype=float).reshape(-1)
        if diagonal.size != all_intensities.size:
            raise InvalidVarianceModel(
                f"variance diagonal of {diagonal.size} for {all_intensities.size} samples"
            )
        if np.any(diagonal < 0.0) or not np.all(np.isfinite(diagonal)):
            raise InvalidVarianceModel("variance diagonal must be finite and non-negative")

    if full_propagation:
        model: VarianceModel = FullCovariance(
            collector.build_covariance_matrix(diagonal, all_intensities)
        )
    else:
        model = DiagonalVariance(collector.build_variance_vector(diagonal, all_intensities))

    if correction is not None:
        log.debug("adding interference correction to %r", model)
        model = model.plus(correction)
    return model


def background_block(model: VarianceModel, n_background: int) -> VarianceModel:
    """Background-only covariance: the leading principal block."""

    return model.leading(n_background)


def apply_degenerate_background_guard(
    block: VarianceModel, signal_variance=None
) -> Tuple[VarianceModel, bool]:
    """Floor an all-zero background diagonal.

    Returns the (possibly replaced) block and whether the guard fired.  The
    guard fires when the mean of the diagonal is exactly zero, or when
    ``signal_variance`` (the counting-statistics part of the background
    variance, before any constant instrument noise) is zero everywhere.
    Every diagonal entry then becomes :data:`ZERO_BACKGROUND_VARIANCE_FLOOR`.
    """

    if not block.size:
        return block, False
    no_signal = signal_variance is not None and not np.any(np.asarray(signal_variance, dtype=float) > 0.0)
    if no_signal or block.mean_diagonal() == 0.0:
        return block.with_diagonal(np.full(block.size, ZERO_BACKGROUND_VARIANCE_FLOOR)), True
    return block, False


def active_indices(n_background: int, on_peak_active) -> np.ndarray:
    """Rows (and columns) of the concatenated model kept for propagation.

    Background samples are always kept; on-peak samples occupy the trailing
    block, offset by ``n_background``, and are kept only when active.
    """

    mask = np.asarray(on_peak_active, dtype=bool).reshape(-1)
    return np.concatenate(
        [np.arange(int(n_background)), int(n_background) + np.flatnonzero(mask)]
    ).astype(int)


def expand(block, indices, size: int) -> np.ndarray:
    """Embed ``block`` at ``indices`` of a zero ``size`` x ``size`` matrix."""

    b = block.dense() if isinstance(block, VarianceModel) else np.asarray(block, dtype=float)
    idx = np.asarray(indices, dtype=int).reshape(-1)
    if b.ndim == 1:
        b = np.diag(b)
    if b.shape != (idx.size, idx.size):
        raise DimensionMismatch(f"block of shape {b.shape} for {idx.size} indices")
    out = np.zeros((int(size), int(size)))
    out[np.ix_(idx, idx)] = b
    return out
