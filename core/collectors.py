"""Collector noise models.

Each collector converts raw detector readings to counts per second (and
back), applies its gain correction and builds the per-sample variance
diagonal used by :mod:`core.variance`.  All transforms are pure: they return
new arrays and never touch the acquisition series they were computed from.
"""
from __future__ import annotations

import logging
from typing import Dict, Type

import numpy as np

from .errors import InvalidVarianceModel

__all__ = [
    "ELEMENTARY_CHARGE",
    "BOLTZMANN",
    "CollectorModel",
    "FaradayCollector",
    "IonCounterCollector",
    "make_collector",
]

log = logging.getLogger(__name__)

ELEMENTARY_CHARGE = 1.602176634e-19  # coulomb
BOLTZMANN = 1.380649e-23  # joule / kelvin


class CollectorModel:
    """Base class for detector-specific transforms."""

    collector_type = "abstract"

    def __init__(self, gain_uncertainty: float = 0.0) -> None:
        if gain_uncertainty < 0.0 or not np.isfinite(gain_uncertainty):
            raise ValueError("gain_uncertainty must be a finite non-negative number")
        self.gain_uncertainty = float(gain_uncertainty)

    # -- unit conversion ------------------------------------------------
    def to_counts_per_second(self, raw) -> np.ndarray:
        raise NotImplementedError

    def from_counts_per_second(self, cps) -> np.ndarray:
        raise NotImplementedError

    def correct_for_resistor(self, raw) -> np.ndarray:
        raise NotImplementedError

    # -- noise model ----------------------------------------------------
    def _noise_floor(self, integration_time: float) -> float:
        """Variance (cps^2) present regardless of signal level."""

        return 0.0

    def build_variance_diagonal(
        self,
        background_length: int,
        analog_correction_factors,
        all_intensities,
        integration_time: float,
    ) -> np.ndarray:
        """Return one variance per sample of the concatenated series.

        Parameters
        ----------
        background_length:
            Number of leading samples that belong to the background series.
        analog_correction_factors:
            Multiplicative factors applied to the counting-statistics term.
        all_intensities:
            Background followed by on-peak intensities in counts per second.
        integration_time:
            Integration time per sample in seconds.

        Negative intensities carry no counting variance and are clamped to
        zero in that term, so the returned diagonal is never negative.
        """

        y = np.asarray(all_intensities, dtype=float).reshape(-1)
        acf = np.asarray(analog_correction_factors, dtype=float).reshape(-1)
        if acf.size != y.size:
            raise InvalidVarianceModel(
                f"{acf.size} analog correction factors for {y.size} intensities"
            )
        if not 0 <= int(background_length) <= y.size:
            raise InvalidVarianceModel(
                f"background length {background_length} exceeds {y.size} samples"
            )
        if not np.all(np.isfinite(y)) or not np.all(np.isfinite(acf)):
            raise InvalidVarianceModel("non-finite intensity or correction factor")
        if np.any(acf < 0.0):
            raise InvalidVarianceModel("analog correction factors must be non-negative")
        t = float(integration_time)
        if not np.isfinite(t) or t <= 0.0:
            raise InvalidVarianceModel("integration time must be positive")

        return self.counting_variance(acf, y, t) + self._noise_floor(t)

    def counting_variance(self, analog_correction_factors, intensities, integration_time: float) -> np.ndarray:
        """Signal-dependent part of the variance, without the instrument floor.

        Zero wherever the intensity is zero or negative.
        """

        y = np.asarray(intensities, dtype=float).reshape(-1)
        acf = np.asarray(analog_correction_factors, dtype=float).reshape(-1)
        if acf.size != y.size:
            raise InvalidVarianceModel(
                f"{acf.size} analog correction factors for {y.size} intensities"
            )
        negative = y < 0.0
        if np.any(negative):
            log.debug("clamping %d negative intensities in counting variance", int(negative.sum()))
        return acf * np.clip(y, 0.0, None) / float(integration_time)

    def build_covariance_matrix(self, diagonal, all_intensities) -> np.ndarray:
        """Expand ``diagonal`` into a full covariance matrix.

        Off-diagonal terms come from the shared relative gain uncertainty of
        the collector: every pair of samples is correlated through it.
        """

        d = np.asarray(diagonal, dtype=float).reshape(-1)
        y = np.asarray(all_intensities, dtype=float).reshape(-1)
        if d.size != y.size:
            raise InvalidVarianceModel(f"diagonal of {d.size} for {y.size} intensities")
        g2 = self.gain_uncertainty ** 2
        return np.diag(d) + g2 * np.outer(y, y)

    def build_variance_vector(self, diagonal, all_intensities) -> np.ndarray:
        """Diagonal-only counterpart of :meth:`build_covariance_matrix`."""

        d = np.asarray(diagonal, dtype=float).reshape(-1)
        y = np.asarray(all_intensities, dtype=float).reshape(-1)
        if d.size != y.size:
            raise InvalidVarianceModel(f"diagonal of {d.size} for {y.size} intensities")
        return d + self.gain_uncertainty ** 2 * y * y

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class FaradayCollector(CollectorModel):
    """Faraday cup read through a feedback resistor (raw unit: volts)."""

    collector_type = "faraday"

    def __init__(
        self,
        resistance_ohms: float = 1e11,
        reference_resistance_ohms: float = 1e11,
        relative_gain: float = 1.0,
        temperature_kelvin: float = 290.0,
        gain_uncertainty: float = 0.0,
    ) -> None:
        super().__init__(gain_uncertainty)
        if resistance_ohms <= 0.0 or reference_resistance_ohms <= 0.0:
            raise ValueError("resistances must be positive")
        if relative_gain <= 0.0:
            raise ValueError("relative_gain must be positive")
        self.resistance_ohms = float(resistance_ohms)
        self.reference_resistance_ohms = float(reference_resistance_ohms)
        self.relative_gain = float(relative_gain)
        self.temperature_kelvin = float(temperature_kelvin)

    def to_counts_per_second(self, raw) -> np.ndarray:
        volts = np.asarray(raw, dtype=float)
        return volts / (self.resistance_ohms * ELEMENTARY_CHARGE)

    def from_counts_per_second(self, cps) -> np.ndarray:
        counts = np.asarray(cps, dtype=float)
        return counts * (self.resistance_ohms * ELEMENTARY_CHARGE)

    def correct_for_resistor(self, raw) -> np.ndarray:
        volts = np.asarray(raw, dtype=float)
        return volts * self.relative_gain * (self.reference_resistance_ohms / self.resistance_ohms)

    def _noise_floor(self, integration_time: float) -> float:
        # Johnson-Nyquist noise of the feedback resistor expressed in cps^2
        return (
            4.0
            * BOLTZMANN
            * self.temperature_kelvin
            / (self.resistance_ohms * ELEMENTARY_CHARGE ** 2 * integration_time)
        )

    def __repr__(self) -> str:
        return f"FaradayCollector(resistance_ohms={self.resistance_ohms:g})"


class IonCounterCollector(CollectorModel):
    """Pulse-counting detector (raw unit: counts per dwell)."""

    collector_type = "ion_counter"

    def __init__(
        self,
        dwell_seconds: float = 1.0,
        dead_time_seconds: float = 0.0,
        relative_yield: float = 1.0,
        dark_noise_cps: float = 0.0,
        gain_uncertainty: float = 0.0,
    ) -> None:
        super().__init__(gain_uncertainty)
        if dwell_seconds <= 0.0:
            raise ValueError("dwell_seconds must be positive")
        if dead_time_seconds < 0.0:
            raise ValueError("dead_time_seconds must be non-negative")
        if relative_yield <= 0.0:
            raise ValueError("relative_yield must be positive")
        if dark_noise_cps < 0.0:
            raise ValueError("dark_noise_cps must be non-negative")
        self.dwell_seconds = float(dwell_seconds)
        self.dead_time_seconds = float(dead_time_seconds)
        self.relative_yield = float(relative_yield)
        self.dark_noise_cps = float(dark_noise_cps)

    def to_counts_per_second(self, raw) -> np.ndarray:
        return np.asarray(raw, dtype=float) / self.dwell_seconds

    def from_counts_per_second(self, cps) -> np.ndarray:
        return np.asarray(cps, dtype=float) * self.dwell_seconds

    def correct_for_resistor(self, raw) -> np.ndarray:
        """Dead-time and yield correction of count rates."""

        rate = np.asarray(raw, dtype=float)
        denom = 1.0 - rate * self.dead_time_seconds
        if np.any(denom <= 0.0):
            raise InvalidVarianceModel("count rate saturates the dead-time correction")
        return rate / denom / self.relative_yield

    def _noise_floor(self, integration_time: float) -> float:
        return self.dark_noise_cps / integration_time

    def __repr__(self) -> str:
        return f"IonCounterCollector(dead_time_seconds={self.dead_time_seconds:g})"


_COLLECTORS: Dict[str, Type[CollectorModel]] = {
    "faraday": FaradayCollector,
    "ion_counter": IonCounterCollector,
}


def make_collector(kind: str, **params) -> CollectorModel:
    """Instantiate a collector by type name."""

    cls = _COLLECTORS.get(str(kind).lower())
    if cls is None:
        raise ValueError(f"unknown collector type '{kind}'")
    return cls(**params)
