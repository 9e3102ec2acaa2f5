"""Acquisition series holding one collector's background or on-peak samples."""
from __future__ import annotations

from typing import Optional

import numpy as np

__all__ = ["AcquisitionSeries"]


class AcquisitionSeries:
    """Parallel per-sample arrays for one phase of an acquisition.

    ``intensities``, ``acquire_times`` (milliseconds) and ``active`` share one
    length for the lifetime of the series.  Derived arrays (fitted background,
    corrected and log-corrected intensities) are recomputed whenever the fitted
    background or the intensities change.
    """

    def __init__(
        self,
        intensities,
        acquire_times,
        active=None,
        analog_correction_factors=None,
        intensity_corrections=None,
    ) -> None:
        y = np.asarray(intensities, dtype=float).reshape(-1)
        t = np.asarray(acquire_times, dtype=float).reshape(-1)
        if y.size != t.size:
            raise ValueError(
                f"intensities and acquire_times differ in length ({y.size} != {t.size})"
            )
        self._n = y.size
        self._intensities = y.copy()
        self._acquire_times = t.copy()
        self._active = self._checked(
            np.ones(self._n, bool) if active is None else active, "active", bool
        )
        self._acfs = self._checked(
            np.ones(self._n) if analog_correction_factors is None else analog_correction_factors,
            "analog_correction_factors",
        )
        self._corrections = self._checked(
            np.zeros(self._n) if intensity_corrections is None else intensity_corrections,
            "intensity_corrections",
        )
        self._fitted = np.zeros(self._n)

    def _checked(self, values, name: str, dtype=float) -> np.ndarray:
        arr = np.asarray(values, dtype=dtype).reshape(-1)
        if arr.size != self._n:
            raise ValueError(f"{name} has length {arr.size}, series has {self._n}")
        return arr.copy()

    def __len__(self) -> int:
        return self._n

    # ------------------------------------------------------------------
    # raw data
    @property
    def intensities(self) -> np.ndarray:
        return self._intensities

    @intensities.setter
    def intensities(self, values) -> None:
        self._intensities = self._checked(values, "intensities")

    @property
    def acquire_times(self) -> np.ndarray:
        return self._acquire_times

    @property
    def analog_correction_factors(self) -> np.ndarray:
        return self._acfs

    @analog_correction_factors.setter
    def analog_correction_factors(self, values) -> None:
        self._acfs = self._checked(values, "analog_correction_factors")

    @property
    def intensity_corrections(self) -> np.ndarray:
        return self._corrections

    @intensity_corrections.setter
    def intensity_corrections(self, values) -> None:
        self._corrections = self._checked(values, "intensity_corrections")

    # ------------------------------------------------------------------
    # active mask
    @property
    def active(self) -> np.ndarray:
        return self._active

    @active.setter
    def active(self, values) -> None:
        self._active = self._checked(values, "active", bool)

    @property
    def active_count(self) -> int:
        return int(np.count_nonzero(self._active))

    def toggle(self, index: int, included: bool) -> None:
        """Include or exclude one sample without changing the mask length."""

        if not -self._n <= index < self._n:
            raise IndexError(f"sample index {index} out of range for {self._n} samples")
        self._active[index] = bool(included)

    def apply_mask(self, mask) -> None:
        """Deactivate every sample where ``mask`` is False."""

        self._active &= self._checked(mask, "mask", bool)

    # ------------------------------------------------------------------
    # derived data
    @property
    def fitted_background(self) -> np.ndarray:
        return self._fitted

    @fitted_background.setter
    def fitted_background(self, values) -> None:
        self._fitted = self._checked(values, "fitted_background")

    @property
    def corrected(self) -> np.ndarray:
        return self._intensities - self._fitted

    @property
    def log_corrected(self) -> np.ndarray:
        corrected = self.corrected
        out = np.full(self._n, np.nan)
        positive = corrected > 0.0
        out[positive] = np.log(corrected[positive])
        return out

    def active_values(self, values: Optional[np.ndarray] = None) -> np.ndarray:
        """Return ``values`` (default: intensities) at active samples only."""

        arr = self._intensities if values is None else np.asarray(values, float)
        return arr[self._active]

    def __repr__(self) -> str:
        return f"AcquisitionSeries(n={self._n}, active={self.active_count})"
