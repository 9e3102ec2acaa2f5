"""Per-channel intensity model: raw data, variance, fits and propagated covariance.

A :class:`RawIntensityModel` owns one channel's background and on-peak
series for one acquisition.  Fitting is delegated to
:mod:`fit.orchestrator` and covariance propagation to
:mod:`uncertainty.propagation`; this module keeps the state both of them
read and write, plus the accessors callers use to inspect it.
"""
from __future__ import annotations

from typing import Dict, Optional, Union

import numpy as np

from .channels import Channel
from .collectors import CollectorModel, make_collector
from .errors import InvalidVarianceModel, UnsupportedOperation
from .series import AcquisitionSeries
from .variance import VarianceModel, prepare
from fit import FitFunction, FitFunctionRegistry, FitFunctionType
from fit import orchestrator
from fit.orchestrator import FitState, GenerationResult
from uncertainty import propagation
from uncertainty.propagation import PropagationResult

__all__ = ["RawIntensityModel"]

MEAN_SOLVERS = ("lm", "closed_form")


class RawIntensityModel:
    """State of one channel through fitting and propagation.

    Parameters
    ----------
    channel:
        Channel name or :class:`~core.channels.Channel`.
    background, on_peak:
        Acquisition series; intensities are expected in counts per second
        once :meth:`convert_raw_intensities_to_counts_per_second` has run.
    sampling_period_ms:
        Collector data period used to normalize acquisition times.
    collector:
        Noise model of the detector that recorded the channel.
    full_propagation:
        Keep the full covariance matrix (``True``) or only its diagonal.
    fit_type:
        Initially selected background fit.
    overdispersion_selected:
        Read fits back from the overdispersion map.
    forced_mean_value:
        Parameter (and covariance seed) of the arithmetic-mean fallback.
    integration_time:
        Seconds per sample; defaults to the sampling period.
    maxfev:
        Function evaluation budget of the LM mean solver.
    mean_solver:
        ``"lm"`` (default) or ``"closed_form"`` for the weighted mean.
    """

    def __init__(
        self,
        channel: Union[Channel, str],
        background: AcquisitionSeries,
        on_peak: AcquisitionSeries,
        sampling_period_ms: float,
        collector: CollectorModel,
        *,
        full_propagation: bool = True,
        fit_type: Union[FitFunctionType, str] = FitFunctionType.MEAN,
        overdispersion_selected: bool = True,
        force_mean_for_common_lead_ratios: bool = False,
        forced_mean_value: float = 0.0,
        integration_time: Optional[float] = None,
        maxfev: int = 2000,
        mean_solver: str = "lm",
    ) -> None:
        if float(sampling_period_ms) <= 0.0:
            raise ValueError("sampling_period_ms must be positive")
        if mean_solver not in MEAN_SOLVERS:
            raise ValueError(f"unknown mean solver '{mean_solver}'")
        self.channel = channel if isinstance(channel, Channel) else Channel(str(channel))
        self.background = background
        self.on_peak = on_peak
        self.sampling_period_ms = float(sampling_period_ms)
        self.collector = collector

        self.full_propagation = bool(full_propagation)
        self._selected_fit_type = FitFunctionType.parse(fit_type)
        self.overdispersion_selected = bool(overdispersion_selected)
        self.force_mean_for_common_lead_ratios = bool(force_mean_for_common_lead_ratios)
        self.forced_mean_value = float(forced_mean_value)
        self.integration_time = (
            self.sampling_period_ms / 1000.0 if integration_time is None else float(integration_time)
        )
        self.maxfev = int(maxfev)
        self.mean_solver = mean_solver

        self.registry = FitFunctionRegistry()
        self.state = FitState.RAW
        self.degraded_fit = False
        self.below_detection = False
        self.calculated_initial_fit_functions = False
        self.masking_array: Optional[np.ndarray] = None

        self.variance_model: Optional[VarianceModel] = None
        self.propagation_result: Optional[PropagationResult] = None
        self._variance_diagonal: Optional[np.ndarray] = None
        self._diagonal_override: Optional[np.ndarray] = None
        self._correction = None

    @classmethod
    def from_options(cls, channel, background, on_peak, options) -> "RawIntensityModel":
        """Build a model from a :class:`infra.config.ReductionOptions`."""

        collector = make_collector(options.collector_type, **dict(options.collector_params))
        return cls(
            channel,
            background,
            on_peak,
            options.sampling_period_ms,
            collector,
            full_propagation=options.full_propagation,
            fit_type=options.fit_type,
            overdispersion_selected=options.overdispersion_selected,
            force_mean_for_common_lead_ratios=options.force_mean_for_common_lead_ratios,
            forced_mean_value=options.forced_mean_value,
            integration_time=options.integration_time_s,
            maxfev=options.maxfev,
            mean_solver=options.mean_solver,
        )

    # ------------------------------------------------------------------
    # identity
    @property
    def data_model_name(self) -> str:
        return self.channel.name

    @property
    def raw_ratio_model_name(self) -> None:
        return None

    def __lt__(self, other: "RawIntensityModel") -> bool:
        return self.channel < other.channel

    def __repr__(self) -> str:
        return (
            f"RawIntensityModel({self.channel.name!r}, {self.collector.collector_type}, "
            f"{self.selected_fit_type.value}, state={self.state.value})"
        )

    # ------------------------------------------------------------------
    # fit selection
    @property
    def selected_fit_type(self) -> FitFunctionType:
        return self._selected_fit_type

    @selected_fit_type.setter
    def selected_fit_type(self, value) -> None:
        self._selected_fit_type = FitFunctionType.parse(value)

    @property
    def fit_functions(self) -> Dict[str, FitFunction]:
        return self.registry.functions(self.overdispersion_selected)

    @property
    def selected_fit_function(self) -> Optional[FitFunction]:
        if self._selected_fit_type is FitFunctionType.NONE:
            return None
        return self.registry.selected(self._selected_fit_type, self.overdispersion_selected)

    def contains_fit_function(self, fit_type) -> bool:
        return self.registry.contains(fit_type, self.overdispersion_selected)

    def does_fit_function_type_have_od(self, fit_type) -> bool:
        return self.registry.has_overdispersion(fit_type)

    def xi_for_fit_function(self, fit_type) -> float:
        """Square root of the fitted overdispersion, 0.0 without one."""

        if not self.does_fit_function_type_have_od(fit_type):
            return 0.0
        fn = self.registry.with_od[FitFunctionType.parse(fit_type).value]
        return float(np.sqrt(fn.overdispersion))

    @property
    def is_calculated_initial_fit_functions(self) -> bool:
        return self.calculated_initial_fit_functions

    # ------------------------------------------------------------------
    # data preparation
    def correct_intensities_for_resistor(self) -> None:
        self.background.intensities = self.collector.correct_for_resistor(self.background.intensities)
        self.on_peak.intensities = self.collector.correct_for_resistor(self.on_peak.intensities)

    def convert_raw_intensities_to_counts_per_second(self) -> None:
        self.background.intensities = self.collector.to_counts_per_second(self.background.intensities)
        self.on_peak.intensities = self.collector.to_counts_per_second(self.on_peak.intensities)

    def toggle_one_data_acquisition(self, index: int, included: bool) -> None:
        self.on_peak.toggle(index, included)

    def apply_masking_array(self) -> None:
        """AND the masking array (when set) into the on-peak active flags."""

        if self.masking_array is not None:
            self.on_peak.apply_mask(self.masking_array)

    @property
    def data_active_map(self) -> np.ndarray:
        return self.on_peak.active.copy()

    def normalized_on_peak_times(self) -> np.ndarray:
        return orchestrator.normalized_on_peak_times(self.on_peak.acquire_times, self.sampling_period_ms)

    def normalized_background_times(self) -> np.ndarray:
        return orchestrator.normalized_background_times(
            self.background.acquire_times, self.sampling_period_ms
        )

    def on_peak_acquire_times_in_seconds(self) -> np.ndarray:
        return self.on_peak.acquire_times / 1000.0

    # ------------------------------------------------------------------
    # variance
    @property
    def all_intensities(self) -> np.ndarray:
        return np.concatenate([self.background.intensities, self.on_peak.intensities])

    @property
    def variance_diagonal(self) -> Optional[np.ndarray]:
        """Diagonal used by the last variance build, if any."""

        return None if self._variance_diagonal is None else self._variance_diagonal.copy()

    @variance_diagonal.setter
    def variance_diagonal(self, values) -> None:
        self._diagonal_override = None if values is None else np.asarray(values, dtype=float)

    def calculate_variance_diagonal(self, integration_time: Optional[float] = None) -> np.ndarray:
        """Per-sample variance of background followed by on-peak intensities."""

        t = self.integration_time if integration_time is None else float(integration_time)
        acfs = np.concatenate(
            [self.background.analog_correction_factors, self.on_peak.analog_correction_factors]
        )
        self._variance_diagonal = self.collector.build_variance_diagonal(
            len(self.background), acfs, self.all_intensities, t
        )
        return self._variance_diagonal.copy()

    def background_signal_variance(self) -> np.ndarray:
        """Counting-statistics part of the background variance.

        Taken from the variance diagonal override when one is set; otherwise
        computed by the collector without its constant noise floor.
        """

        n = len(self.background)
        if self._diagonal_override is not None:
            return self._diagonal_override[:n].copy()
        return self.collector.counting_variance(
            self.background.analog_correction_factors,
            self.background.intensities,
            self.integration_time,
        )

    def set_correction_covariance(self, correction) -> None:
        """Covariance added once to the next variance build, then dropped."""

        self._correction = correction

    @property
    def correction_covariance(self):
        return self._correction

    def prepare_variance(self) -> VarianceModel:
        if self._diagonal_override is not None:
            self._variance_diagonal = self._diagonal_override.copy()
        else:
            self.calculate_variance_diagonal()
        correction, self._correction = self._correction, None
        self.variance_model = prepare(
            self.background,
            self.on_peak,
            self.collector,
            self.full_propagation,
            self.integration_time,
            correction=correction,
            diagonal=self._variance_diagonal,
        )
        return self.variance_model

    def build_full_covariance(self) -> np.ndarray:
        """Full covariance matrix of this channel regardless of propagation mode.

        Used to carry one channel's uncertainty into another channel's model
        as an interference correction.
        """

        diagonal = self._variance_diagonal
        if diagonal is None:
            diagonal = self.calculate_variance_diagonal()
        if diagonal.size != len(self.background) + len(self.on_peak):
            raise InvalidVarianceModel("variance diagonal is stale; recalculate it first")
        return self.collector.build_covariance_matrix(diagonal, self.all_intensities)

    # ------------------------------------------------------------------
    # lifecycle
    def reset_cycle(self) -> None:
        self.propagation_result = None
        self.degraded_fit = False
        self.state = FitState.RAW

    def generate(self, full_propagation: Optional[bool] = None, apply_masking: bool = False) -> GenerationResult:
        return orchestrator.generate(self, full_propagation=full_propagation, apply_masking=apply_masking)

    def propagate(self) -> Optional[PropagationResult]:
        return propagation.propagate(self)

    def cleanup(self) -> None:
        propagation.cleanup(self)

    @property
    def sopbclr(self) -> Optional[np.ndarray]:
        res = self.propagation_result
        return None if res is None else res.sopbclr

    @property
    def sopbc(self) -> Optional[np.ndarray]:
        res = self.propagation_result
        return None if res is None else res.sopbc

    def column_vector_of_corrected_on_peak_intensities(self) -> np.ndarray:
        return self.on_peak.active_values(self.on_peak.corrected)[:, None]

    # ------------------------------------------------------------------
    # values in raw detector units
    def _as_raw(self, cps) -> np.ndarray:
        return self.collector.from_counts_per_second(cps)

    def background_cps_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.background.intensities)

    def background_cps_corrections_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.background.intensity_corrections)

    def background_fit_cps_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.background.fitted_background)

    def on_peak_cps_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.on_peak.intensities)

    def on_peak_cps_corrections_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.on_peak.intensity_corrections)

    def on_peak_fit_cps_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.on_peak.fitted_background)

    def on_peak_corrected_cps_as_raw_intensities(self) -> np.ndarray:
        return self._as_raw(self.on_peak.corrected)

    # ------------------------------------------------------------------
    # not meaningful for a raw intensity channel
    @property
    def selected_downhole_fit_function(self):
        raise UnsupportedOperation("raw intensity models have no down-hole fit")

    def calculate_corrected_ratio_statistics(self) -> None:
        raise UnsupportedOperation("raw intensity models carry no ratio statistics")

    @property
    def standard_value(self) -> float:
        raise UnsupportedOperation("raw intensity models have no standard value")

    @property
    def is_used_for_common_lead_corrections(self) -> bool:
        raise UnsupportedOperation("common lead corrections are decided on ratio models")
