"""First-order propagation of intensity covariance through the background fit.

The concatenated measurement covariance ``S`` (background then on-peak) is
mapped onto the baseline-corrected on-peak intensities with::

    JOnPeak = [J21 @ J11 | J22]
    Sopbc   = JOnPeak @ S_active @ JOnPeak.T

and onto their logarithms with the delta method::

    Jlogr   = 1 / corrected            (column, active samples only)
    Sopbclr = (Jlogr @ Jlogr.T) * Sopbc  (elementwise)

Inactive on-peak samples are removed from ``S`` by one index set applied to
rows and columns alike.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

import numpy as np
from scipy import linalg

from core.errors import DimensionMismatch
from core.variance import VarianceModel, active_indices
from fit.functions import FitFunction, FitFunctionType

if TYPE_CHECKING:  # pragma: no cover
    from core.intensity_model import RawIntensityModel

__all__ = [
    "PropagationResult",
    "needed_values",
    "compose_on_peak_jacobian",
    "masked_covariance",
    "log_ratio_covariance",
    "propagate_chain",
    "propagate",
    "cleanup",
]

log = logging.getLogger(__name__)


@dataclass
class PropagationResult:
    """Jacobian chain and covariances from one propagation call."""

    j11: np.ndarray
    j21: np.ndarray
    j22: np.ndarray
    j_on_peak: np.ndarray
    indices: np.ndarray
    sopbc: np.ndarray
    jlogr: np.ndarray
    jmat: np.ndarray
    sopbclr: np.ndarray

    @property
    def active_count(self) -> int:
        return self.j22.shape[0]


def needed_values(fn: FitFunction, normalized_on_peak_times, on_peak_intensities) -> np.ndarray:
    """Values J21 is evaluated at.

    Mean-family fits take the normalized on-peak times; LINE takes the raw
    on-peak intensities.
    """

    if fn.fit_type is FitFunctionType.LINE:
        return np.asarray(on_peak_intensities, dtype=float)
    return np.asarray(normalized_on_peak_times, dtype=float)


def compose_on_peak_jacobian(j11, j21, j22) -> np.ndarray:
    """Return ``[J21 @ J11 | J22]``."""

    j11 = np.atleast_2d(np.asarray(j11, dtype=float))
    j21 = np.atleast_2d(np.asarray(j21, dtype=float))
    j22 = np.atleast_2d(np.asarray(j22, dtype=float))
    if j21.shape[0] == 0:
        raise DimensionMismatch("no active on-peak samples")
    if j21.shape[1] != j11.shape[0]:
        raise DimensionMismatch(f"J21 {j21.shape} cannot multiply J11 {j11.shape}")
    if j22.shape != (j21.shape[0], j21.shape[0]):
        raise DimensionMismatch(f"J22 {j22.shape} does not match {j21.shape[0]} active samples")
    return np.hstack([j21 @ j11, j22])


def masked_covariance(
    variance: VarianceModel, n_background: int, on_peak_active
) -> Tuple[np.ndarray, VarianceModel]:
    """Index set of kept samples and the matching symmetric sub-block."""

    mask = np.asarray(on_peak_active, dtype=bool).reshape(-1)
    if variance.size != int(n_background) + mask.size:
        raise DimensionMismatch(
            f"variance model of {variance.size} for {n_background} + {mask.size} samples"
        )
    idx = active_indices(n_background, mask)
    return idx, variance.extract(idx)


def log_ratio_covariance(sopbc, corrected_active) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Return ``(Jlogr, Jmat, Sopbclr)`` for the log of corrected intensities."""

    sopbc = np.asarray(sopbc, dtype=float)
    c = np.asarray(corrected_active, dtype=float).reshape(-1)
    if sopbc.shape != (c.size, c.size):
        raise DimensionMismatch(f"Sopbc {sopbc.shape} for {c.size} corrected intensities")
    if np.any(c == 0.0) or not np.all(np.isfinite(c)):
        raise ValueError("corrected on-peak intensities must be finite and non-zero")
    jlogr = (1.0 / c)[:, None]
    jmat = jlogr @ jlogr.T
    return jlogr, jmat, jmat * sopbc


def propagate_chain(
    fn: FitFunction,
    variance: VarianceModel,
    n_background: int,
    on_peak_active,
    normalized_on_peak_times,
    on_peak_intensities,
    corrected,
) -> PropagationResult:
    """Build the full Jacobian chain for one fitted function.

    Raises :class:`DimensionMismatch` when the fit has no J11 or the shapes
    do not line up.
    """

    j11 = fn.matrix_j11()
    if j11 is None:
        raise DimensionMismatch(f"no J11 for {fn.short_name} fit")
    mask = np.asarray(on_peak_active, dtype=bool).reshape(-1)
    n_active = int(mask.sum())

    j21 = fn.make_j21(n_active, mask, needed_values(fn, normalized_on_peak_times, on_peak_intensities))
    j22 = fn.make_j22(n_active, mask, normalized_on_peak_times)
    j_on_peak = compose_on_peak_jacobian(j11, j21, j22)

    idx, s_active = masked_covariance(variance, n_background, mask)
    sopbc = s_active.sandwich(j_on_peak)

    corrected_active = np.asarray(corrected, dtype=float).reshape(-1)[mask]
    jlogr, jmat, sopbclr = log_ratio_covariance(sopbc, corrected_active)
    return PropagationResult(
        j11=j11,
        j21=j21,
        j22=j22,
        j_on_peak=j_on_peak,
        indices=idx,
        sopbc=sopbc,
        jlogr=jlogr,
        jmat=jmat,
        sopbclr=sopbclr,
    )


def propagate(model: "RawIntensityModel") -> Optional[PropagationResult]:
    """Propagate uncertainty into the model's baseline-corrected on-peak data.

    Returns ``None`` (and leaves ``model.sopbclr`` empty) when no fit is
    selected or the algebra fails; failures are logged, never raised.
    """

    model.propagation_result = None
    fn = model.selected_fit_function
    if fn is None:
        return None
    variance = model.variance_model
    if variance is None:
        log.warning("%s: no variance model; run generate before propagating", model.channel)
        return None

    on_peak = model.on_peak
    try:
        result = propagate_chain(
            fn,
            variance,
            len(model.background),
            on_peak.active,
            model.normalized_on_peak_times(),
            on_peak.intensities,
            on_peak.corrected,
        )
    except (DimensionMismatch, ValueError, linalg.LinAlgError) as exc:
        log.warning("%s: on-peak uncertainty propagation failed: %s", model.channel, exc)
        return None

    model.propagation_result = result
    return result


def cleanup(model: "RawIntensityModel") -> None:
    """Release the variance model and every propagated matrix."""

    model.variance_model = None
    model.propagation_result = None
