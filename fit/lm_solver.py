"""Levenberg-Marquardt mean with and without overdispersion.

Both variants fit ``f(t) = a`` to the active background samples through
lmfit's MINPACK ``leastsq`` driver.  With the background covariance
decomposed as ``S = Q diag(lam) Q^T`` the residual vectors are

* no overdispersion: ``lam^-1/2 Q^T (y - a)``;
* overdispersion ``xi``: ``(lam + xi^2)^-1/2 Q^T (y - a)`` followed by
  ``sqrt(log(1 + xi^2 / lam))``.

The second sum of squares equals twice the Gaussian negative log-likelihood
of ``N(a, S + xi^2 I)`` up to a constant, so minimising it estimates the
overdispersion jointly with the mean.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import lmfit
import numpy as np
from scipy import linalg

from core.errors import DimensionMismatch, SolverNonConvergence
from core.variance import VarianceModel
from .functions import MeanFitFunction
from .result import FitResult

__all__ = ["solve_no_od", "solve_with_od", "solve_mean"]

log = logging.getLogger(__name__)


def _minimize(residual, params: lmfit.Parameters, maxfev: int, solver: str) -> FitResult:
    minimizer = lmfit.Minimizer(residual, params, scale_covar=False, nan_policy="raise")
    try:
        out = minimizer.minimize(method="leastsq", max_nfev=int(maxfev))
    except (ValueError, linalg.LinAlgError) as exc:
        raise SolverNonConvergence(f"{solver}: {exc}") from exc
    theta = np.array([out.params[name].value for name in out.var_names], dtype=float)
    if not np.all(np.isfinite(theta)):
        raise SolverNonConvergence(f"{solver}: non-finite parameters")
    covar = getattr(out, "covar", None)
    if covar is None:
        raise SolverNonConvergence(f"{solver}: no covariance estimate ({out.message})")
    resid = np.asarray(out.residual, dtype=float)
    return FitResult(
        success=bool(out.success),
        solver=solver,
        theta=theta,
        covariance=np.asarray(covar, dtype=float),
        cost=0.5 * float(resid @ resid),
        nfev=int(out.nfev),
        message=str(out.message),
        diagnostics={"var_names": list(out.var_names), "ier": getattr(out, "ier", None)},
    )


def _active_problem(intensities, active, block: VarianceModel):
    y = np.asarray(intensities, dtype=float).reshape(-1)
    mask = np.asarray(active, dtype=bool).reshape(-1)
    if mask.size != y.size or block.size != y.size:
        raise DimensionMismatch(
            f"{y.size} intensities, {mask.size} flags, covariance of {block.size}"
        )
    idx = np.flatnonzero(mask)
    if idx.size == 0:
        raise SolverNonConvergence("no active background samples")
    lam, project = block.extract(idx).spectral()
    if not np.all(np.isfinite(lam)) or np.any(lam <= 0.0):
        raise SolverNonConvergence("background covariance is not positive definite")
    return y[idx], lam, project(y[idx]), project(np.ones(idx.size))


def solve_no_od(
    intensities, active, block: VarianceModel, maxfev: int = 2000
) -> MeanFitFunction:
    """Weighted mean by LM; J11 holds the generalised least-squares weights."""

    y_a, lam, y_proj, one_proj = _active_problem(intensities, active, block)
    scale = 1.0 / np.sqrt(lam)

    params = lmfit.Parameters()
    params.add("a", value=float(np.mean(y_a)))

    def residual(p: lmfit.Parameters) -> np.ndarray:
        return (y_proj - p["a"].value * one_proj) * scale

    res = _minimize(residual, params, maxfev, "lm_mean")
    try:
        w, _ = MeanFitFunction.gls_weights(block, active)
    except linalg.LinAlgError as exc:
        raise SolverNonConvergence(f"lm_mean: {exc}") from exc
    log.debug("lm_mean a=%.6g nfev=%d", res.theta[0], res.nfev)
    return MeanFitFunction(res.theta[:1], res.covariance[:1, :1], w[None, :])


def solve_with_od(
    intensities, active, block: VarianceModel, maxfev: int = 2000
) -> MeanFitFunction:
    """Mean plus overdispersion ``xi^2`` by LM on the likelihood residuals."""

    y_a, lam, y_proj, one_proj = _active_problem(intensities, active, block)

    excess = float(np.var(y_a) - np.mean(lam)) if y_a.size > 1 else 0.0
    xi0 = float(np.sqrt(max(excess, 0.01 * float(np.mean(lam)))))

    params = lmfit.Parameters()
    params.add("a", value=float(np.mean(y_a)))
    params.add("xi", value=xi0)

    def residual(p: lmfit.Parameters) -> np.ndarray:
        xi2 = p["xi"].value ** 2
        whitened = (y_proj - p["a"].value * one_proj) / np.sqrt(lam + xi2)
        penalty = np.sqrt(np.log1p(xi2 / lam))
        return np.concatenate([whitened, penalty])

    res = _minimize(residual, params, maxfev, "lm_mean_od")
    a, xi = res.theta
    xi2 = float(xi * xi)
    try:
        w, _ = MeanFitFunction.gls_weights(block.plus_identity(xi2), active)
    except linalg.LinAlgError as exc:
        raise SolverNonConvergence(f"lm_mean_od: {exc}") from exc
    log.debug("lm_mean_od a=%.6g xi=%.6g nfev=%d", a, xi, res.nfev)
    return MeanFitFunction(
        [a],
        res.covariance[:1, :1],
        w[None, :],
        overdispersion=xi2,
        overdispersion_variant=True,
        overdispersion_variance=float(res.covariance[1, 1]),
    )


def solve_mean(
    intensities, active, block: VarianceModel, maxfev: int = 2000
) -> Tuple[Optional[MeanFitFunction], Optional[MeanFitFunction]]:
    """Run both LM variants; a variant that cannot be solved comes back as None."""

    results = []
    for solver in (solve_no_od, solve_with_od):
        try:
            results.append(solver(intensities, active, block, maxfev))
        except SolverNonConvergence as exc:
            log.debug("%s", exc)
            results.append(None)
    return results[0], results[1]
