"""Background fit generation for one channel.

``generate`` walks a model through ``RAW -> VARIANCE_PREPARED ->
FIT_SELECTED -> FIT_EVALUATED -> READY``.  A mean fit the LM solver cannot
support is replaced by the arithmetic-mean fallback; the model is then flagged
``degraded_fit`` and passes through ``DEGRADED_FIT`` on its way to ``READY``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

import numpy as np
from scipy import linalg

from core.errors import DimensionMismatch
from core.variance import apply_degenerate_background_guard, background_block
from . import lm_solver
from .functions import (
    ConstantFitFunction,
    FitFunction,
    FitFunctionType,
    LineFitFunction,
    MeanFitFunction,
)

if TYPE_CHECKING:  # pragma: no cover
    from core.intensity_model import RawIntensityModel

__all__ = [
    "FitState",
    "GenerationResult",
    "normalized_on_peak_times",
    "normalized_background_times",
    "generate",
    "evaluate_fit",
]

log = logging.getLogger(__name__)


class FitState(str, Enum):
    RAW = "RAW"
    VARIANCE_PREPARED = "VARIANCE_PREPARED"
    FIT_SELECTED = "FIT_SELECTED"
    DEGRADED_FIT = "DEGRADED_FIT"
    FIT_EVALUATED = "FIT_EVALUATED"
    READY = "READY"


@dataclass
class GenerationResult:
    """Summary of one ``generate`` run."""

    fit_type: FitFunctionType
    fit_function: Optional[FitFunction]
    degraded: bool
    degenerate_background: bool
    background_variance: np.ndarray
    full_propagation: bool


def normalized_on_peak_times(acquire_times_ms, period_ms: float) -> np.ndarray:
    """On-peak acquisition times in units of the sampling period."""

    return np.asarray(acquire_times_ms, dtype=float) / float(period_ms)


def normalized_background_times(acquire_times_ms, period_ms: float) -> np.ndarray:
    """Background times shifted so the last sample sits one period before zero."""

    t = np.asarray(acquire_times_ms, dtype=float) / float(period_ms)
    if t.size == 0:
        return t
    return t - (t[-1] + 1.0)


def _fallback(model: "RawIntensityModel", reason: str) -> FitFunction:
    log.warning(
        "%s: %s; using arithmetic mean fallback (forced value %g)",
        model.channel,
        reason,
        model.forced_mean_value,
    )
    fn = MeanFitFunction.forced(model.forced_mean_value, model.background.active)
    model.registry.replace(fn)
    model.selected_fit_type = FitFunctionType.MEAN
    model.degraded_fit = True
    model.state = FitState.DEGRADED_FIT
    return fn


def _generate_constant(model: "RawIntensityModel") -> bool:
    bg = model.background
    try:
        fn = ConstantFitFunction.from_background(bg.intensities, bg.active)
    except DimensionMismatch as exc:
        _fallback(model, f"constant fit failed ({exc})")
        return False
    model.registry.replace(fn)
    return True


def _generate_mean(model: "RawIntensityModel", block) -> bool:
    bg = model.background
    if model.mean_solver == "closed_form":
        try:
            fn = MeanFitFunction.from_background(bg.intensities, bg.active, block)
        except (DimensionMismatch, linalg.LinAlgError) as exc:
            _fallback(model, f"weighted mean failed ({exc})")
            return False
        model.registry.store(fn)
        return True

    no_od, with_od = lm_solver.solve_mean(bg.intensities, bg.active, block, model.maxfev)
    if no_od is None or not no_od.verify_positive_variances():
        _fallback(model, "LM would not fit mean")
        return False
    if with_od is not None and not with_od.verify_positive_variances():
        log.debug("%s: overdispersion variant rejected", model.channel)
        with_od = None
    model.registry.store(no_od, with_od)
    return True


def _generate_line(model: "RawIntensityModel", block, times: np.ndarray) -> bool:
    bg = model.background
    try:
        fn = LineFitFunction.from_background(times, bg.intensities, bg.active, block)
    except (DimensionMismatch, linalg.LinAlgError) as exc:
        _fallback(model, f"line fit failed ({exc})")
        return False
    if not fn.verify_positive_variances():
        _fallback(model, "line fit has non-positive parameter variances")
        return False
    model.registry.store(fn)
    return True


def evaluate_fit(model: "RawIntensityModel") -> None:
    """Write the selected fit, evaluated at every sample time, onto both series."""

    fn = model.selected_fit_function
    t_bg = model.normalized_background_times()
    t_on = model.normalized_on_peak_times()
    if fn is None:
        model.background.fitted_background = np.zeros(t_bg.size)
        model.on_peak.fitted_background = np.zeros(t_on.size)
        return
    log.debug("%s: evaluating %s background fit", model.channel, fn.short_name)
    model.background.fitted_background = fn.evaluate(t_bg)
    model.on_peak.fitted_background = fn.evaluate(t_on)


def generate(
    model: "RawIntensityModel",
    full_propagation: Optional[bool] = None,
    apply_masking: bool = False,
) -> GenerationResult:
    """Prepare the variance model, fit the selected function and evaluate it.

    Parameters
    ----------
    model:
        Channel model; mutated in place.
    full_propagation:
        Overrides the model's propagation mode when given.
    apply_masking:
        AND the model's masking array into the on-peak active flags first.
    """

    if full_propagation is not None:
        model.full_propagation = bool(full_propagation)
    if apply_masking:
        model.apply_masking_array()

    model.reset_cycle()
    log.info(
        "calculating fit functions for intensity %s using %s propagation",
        model.channel,
        "full" if model.full_propagation else "fast",
    )

    variance = model.prepare_variance()
    model.state = FitState.VARIANCE_PREPARED

    n_bg = len(model.background)
    block, degenerate = apply_degenerate_background_guard(
        background_block(variance, n_bg), model.background_signal_variance()
    )
    if degenerate:
        log.warning("%s: background variance is all zero; forcing CONSTANT fit", model.channel)
        model.selected_fit_type = FitFunctionType.CONSTANT

    fit_type = model.selected_fit_type
    model.state = FitState.FIT_SELECTED
    if fit_type is FitFunctionType.CONSTANT:
        _generate_constant(model)
    elif fit_type is FitFunctionType.MEAN:
        _generate_mean(model, block)
    elif fit_type is FitFunctionType.LINE:
        _generate_line(model, block, model.normalized_background_times())

    evaluate_fit(model)
    model.state = FitState.FIT_EVALUATED
    model.calculated_initial_fit_functions = True
    model.state = FitState.READY

    return GenerationResult(
        fit_type=model.selected_fit_type,
        fit_function=model.selected_fit_function,
        degraded=model.degraded_fit,
        degenerate_background=degenerate,
        background_variance=block.diagonal(),
        full_propagation=model.full_propagation,
    )
