"""Background fit functions for intensity reduction.

Fit functions are kept per fit type in two parallel maps: one holding the
variant that accounts for overdispersion and one without.  Both are filled on
every generation run and the model's ``overdispersion_selected`` flag decides
which one is read back.
"""
from __future__ import annotations

import copy
from typing import Dict, Optional, Union

from .functions import (
    ConstantFitFunction,
    FitFunction,
    FitFunctionType,
    LineFitFunction,
    MeanFitFunction,
)
from .result import FitResult
from . import lm_solver

__all__ = [
    "FitFunction",
    "FitFunctionType",
    "ConstantFitFunction",
    "MeanFitFunction",
    "LineFitFunction",
    "FitFunctionRegistry",
    "FitResult",
    "lm_solver",
]

TypeKey = Union[FitFunctionType, str]


def _key(fit_type: TypeKey) -> str:
    return FitFunctionType.parse(fit_type).value


class FitFunctionRegistry:
    """Two maps keyed by fit-type short name: with and without overdispersion."""

    def __init__(self) -> None:
        self.with_od: Dict[str, FitFunction] = {}
        self.no_od: Dict[str, FitFunction] = {}

    @staticmethod
    def _merge(table: Dict[str, FitFunction], fn: FitFunction) -> None:
        existing = table.get(fn.short_name)
        if existing is not None and type(existing) is type(fn):
            existing.copy_values_from(fn)
        else:
            table[fn.short_name] = fn

    def store(self, no_od: FitFunction, with_od: Optional[FitFunction] = None) -> None:
        """Record a fit; the overdispersion map falls back to ``no_od``."""

        self._merge(self.no_od, no_od)
        # the maps never share objects so in-place updates stay independent
        self._merge(self.with_od, with_od if with_od is not None else copy.deepcopy(no_od))

    def replace(self, fn: FitFunction) -> None:
        """Put ``fn`` (and a copy of it) in the two maps, discarding earlier entries."""

        self.no_od[fn.short_name] = fn
        self.with_od[fn.short_name] = copy.deepcopy(fn)

    def functions(self, overdispersion_selected: bool) -> Dict[str, FitFunction]:
        return self.with_od if overdispersion_selected else self.no_od

    def selected(self, fit_type: TypeKey, overdispersion_selected: bool) -> Optional[FitFunction]:
        return self.functions(overdispersion_selected).get(_key(fit_type))

    def contains(self, fit_type: TypeKey, overdispersion_selected: bool) -> bool:
        return self.selected(fit_type, overdispersion_selected) is not None

    def has_overdispersion(self, fit_type: TypeKey) -> bool:
        fn = self.with_od.get(_key(fit_type))
        return fn is not None and fn.is_overdispersion_variant

    def clear(self) -> None:
        self.with_od.clear()
        self.no_od.clear()

    def __len__(self) -> int:
        return len(set(self.with_od) | set(self.no_od))
