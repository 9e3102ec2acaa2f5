"""Background fit functions and their propagation Jacobian blocks.

Every function ``f(t)`` describes the background under the on-peak window.
Baseline-corrected on-peak values are ``c_i = y_i - f(t_i)``, so the blocks
used downstream are::

    J11  d(theta) / d(background intensities)   (n_params x n_background)
    J21  d(c) / d(theta) = -df/dtheta           (n_active x n_params)
    J22  d(c) / d(on-peak intensities) = I      (n_active x n_active)
"""
from __future__ import annotations

import copy
from enum import Enum
from typing import Optional, Sequence

import numpy as np
from scipy import linalg

from core.errors import DimensionMismatch
from core.variance import VarianceModel

__all__ = [
    "FitFunctionType",
    "FitFunction",
    "ConstantFitFunction",
    "MeanFitFunction",
    "LineFitFunction",
]


class FitFunctionType(str, Enum):
    NONE = "NONE"
    CONSTANT = "CONSTANT"
    MEAN = "MEAN"
    LINE = "LINE"

    @classmethod
    def parse(cls, value) -> "FitFunctionType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            raise ValueError(f"unknown fit function type '{value}'") from None


def _active_index(active, n: Optional[int] = None) -> np.ndarray:
    mask = np.asarray(active, dtype=bool).reshape(-1)
    if n is not None and mask.size != n:
        raise DimensionMismatch(f"active mask of {mask.size} for {n} samples")
    idx = np.flatnonzero(mask)
    if idx.size == 0:
        raise DimensionMismatch("no active background samples")
    return idx


class FitFunction:
    """Base class; subclasses set ``fit_type`` and implement ``_design``."""

    fit_type = FitFunctionType.NONE
    parameter_names: Sequence[str] = ()

    def __init__(
        self,
        parameters,
        parameter_covariance,
        j11=None,
        *,
        overdispersion: float = 0.0,
        overdispersion_variant: bool = False,
        overdispersion_variance: Optional[float] = None,
    ) -> None:
        self.parameters = np.asarray(parameters, dtype=float).reshape(-1)
        cov = np.atleast_2d(np.asarray(parameter_covariance, dtype=float))
        if cov.shape != (self.parameters.size, self.parameters.size):
            raise DimensionMismatch(
                f"parameter covariance {cov.shape} for {self.parameters.size} parameters"
            )
        self.parameter_covariance = cov
        self._j11 = None if j11 is None else np.atleast_2d(np.asarray(j11, dtype=float))
        if self._j11 is not None and self._j11.shape[0] != self.parameters.size:
            raise DimensionMismatch(
                f"J11 has {self._j11.shape[0]} rows for {self.parameters.size} parameters"
            )
        self.overdispersion = float(overdispersion)
        self.is_overdispersion_variant = bool(overdispersion_variant)
        self.overdispersion_variance = overdispersion_variance

    @property
    def short_name(self) -> str:
        return self.fit_type.value

    # ------------------------------------------------------------------
    def _design(self, x: np.ndarray) -> np.ndarray:
        """Return ``df/dtheta`` at ``x`` as an ``(len(x), n_params)`` array."""

        raise NotImplementedError

    def evaluate(self, t):
        x = np.asarray(t, dtype=float)
        values = self._design(x.reshape(-1)) @ self.parameters
        return float(values[0]) if x.ndim == 0 else values.reshape(x.shape)

    __call__ = evaluate

    def matrix_j11(self) -> Optional[np.ndarray]:
        return None if self._j11 is None else self._j11.copy()

    @staticmethod
    def _selected(active_count: int, active_mask, values) -> np.ndarray:
        mask = np.asarray(active_mask, dtype=bool).reshape(-1)
        v = np.asarray(values, dtype=float).reshape(-1)
        if v.size != mask.size:
            raise DimensionMismatch(f"{v.size} values for an active mask of {mask.size}")
        if int(mask.sum()) != int(active_count):
            raise DimensionMismatch(
                f"active count {active_count} disagrees with mask ({int(mask.sum())} active)"
            )
        return v[mask]

    def make_j21(self, active_count: int, active_mask, needed_values) -> np.ndarray:
        x = self._selected(active_count, active_mask, needed_values)
        return -self._design(x)

    def make_j22(self, active_count: int, active_mask, normalized_times) -> np.ndarray:
        self._selected(active_count, active_mask, normalized_times)
        return np.eye(int(active_count))

    # ------------------------------------------------------------------
    def verify_positive_variances(self) -> bool:
        """True when every parameter variance is finite and strictly positive."""

        variances = list(np.diag(self.parameter_covariance))
        if self.is_overdispersion_variant:
            variances.append(
                np.nan if self.overdispersion_variance is None else self.overdispersion_variance
            )
        v = np.asarray(variances, dtype=float)
        return bool(v.size) and bool(np.all(np.isfinite(v))) and bool(np.all(v > 0.0))

    def copy_values_from(self, other: "FitFunction") -> None:
        if type(other) is not type(self):
            raise TypeError(f"cannot copy {type(other).__name__} into {type(self).__name__}")
        state = copy.deepcopy(other.__dict__)
        self.__dict__.clear()
        self.__dict__.update(state)

    def parameter_sigmas(self) -> np.ndarray:
        return np.sqrt(np.clip(np.diag(self.parameter_covariance), 0.0, None))

    def show_parameters(self) -> str:
        sig = self.parameter_sigmas()
        parts = [
            f"{name} = {val:.6g} +/- {s:.3g}"
            for name, val, s in zip(self.parameter_names, self.parameters, sig)
        ]
        text = f"{self.short_name}: " + ", ".join(parts)
        if self.is_overdispersion_variant:
            text += f", xi = {np.sqrt(max(self.overdispersion, 0.0)):.6g}"
        return text

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.show_parameters()})"


class _LevelFunction(FitFunction):
    parameter_names = ("a",)

    def _design(self, x: np.ndarray) -> np.ndarray:
        return np.ones((x.size, 1))


class ConstantFitFunction(_LevelFunction):
    """``f(t) = a`` with ``a`` the arithmetic mean of active samples."""

    fit_type = FitFunctionType.CONSTANT

    @classmethod
    def from_background(cls, intensities, active) -> "ConstantFitFunction":
        y = np.asarray(intensities, dtype=float).reshape(-1)
        idx = _active_index(active, y.size)
        j11 = np.zeros((1, y.size))
        j11[0, idx] = 1.0 / idx.size
        value = float(np.mean(y[idx]))
        var = float(np.var(y[idx], ddof=1) / idx.size) if idx.size > 1 else 0.0
        return cls([value], [[var]], j11)


class MeanFitFunction(_LevelFunction):
    """Variance-weighted mean ``f(t) = a``."""

    fit_type = FitFunctionType.MEAN

    covariance_seed: Optional[np.ndarray] = None

    @staticmethod
    def gls_weights(block: VarianceModel, active) -> tuple[np.ndarray, float]:
        """Return full-length weights ``w`` with ``a = w @ y`` and ``var(a)``.

        ``block`` is the background covariance; inactive samples get zero
        weight.  Raises ``LinAlgError`` when the active block is singular.
        """

        idx = _active_index(active, block.size)
        sub = block.extract(idx)
        ones = np.ones(idx.size)
        s_inv_1 = sub.solve(ones)
        denom = float(ones @ s_inv_1)
        if not np.isfinite(denom) or denom <= 0.0:
            raise linalg.LinAlgError("background covariance is not positive definite")
        w = np.zeros(block.size)
        w[idx] = s_inv_1 / denom
        return w, 1.0 / denom

    @classmethod
    def from_background(cls, intensities, active, block: VarianceModel) -> "MeanFitFunction":
        y = np.asarray(intensities, dtype=float).reshape(-1)
        w, var = cls.gls_weights(block, active)
        return cls([float(w @ y)], [[var]], w[None, :])

    @classmethod
    def forced(cls, value: float, active, n_background: Optional[int] = None) -> "MeanFitFunction":
        """Arithmetic-mean fallback seeded with a caller-configured value.

        The parameter is ``value`` and its covariance seed holds ``value`` in
        both diagonal entries; J11 spreads equal weight over active samples.
        """

        mask = np.asarray(active, dtype=bool).reshape(-1)
        n = mask.size if n_background is None else int(n_background)
        j11 = np.zeros((1, n))
        n_active = int(mask.sum())
        if n_active:
            j11[0, np.flatnonzero(mask)] = 1.0 / n_active
        fn = cls([float(value)], [[float(value)]], j11)
        fn.covariance_seed = np.array([float(value), float(value)])
        return fn


class LineFitFunction(FitFunction):
    """``f(t) = a + b t`` fitted by generalised least squares."""

    fit_type = FitFunctionType.LINE
    parameter_names = ("a", "b")

    def _design(self, x: np.ndarray) -> np.ndarray:
        return np.column_stack([np.ones(x.size), x])

    @classmethod
    def from_background(
        cls, times, intensities, active, block: VarianceModel
    ) -> "LineFitFunction":
        t = np.asarray(times, dtype=float).reshape(-1)
        y = np.asarray(intensities, dtype=float).reshape(-1)
        if t.size != y.size:
            raise DimensionMismatch(f"{t.size} times for {y.size} intensities")
        idx = _active_index(active, y.size)
        if idx.size < 2:
            raise DimensionMismatch("a line needs at least two active samples")
        X = np.column_stack([np.ones(idx.size), t[idx]])
        s_inv_x = block.extract(idx).solve(X)
        cov = linalg.inv(X.T @ s_inv_x)
        B = cov @ s_inv_x.T
        j11 = np.zeros((2, y.size))
        j11[:, idx] = B
        return cls(B @ y[idx], cov, j11)
