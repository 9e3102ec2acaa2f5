"""Core data structures for intensity reduction.

This package exposes the leaf modules so that callers can simply
``from core import channels, collectors, series, variance`` without needing
to know the submodule structure.  ``core.intensity_model`` depends on the
``fit`` and ``uncertainty`` packages and is imported explicitly.
"""

from . import channels, collectors, data_io, errors, series, variance

__all__ = ["channels", "collectors", "data_io", "errors", "series", "variance"]
