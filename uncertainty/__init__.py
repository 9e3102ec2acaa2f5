"""Uncertainty propagation for baseline-corrected intensities."""

from . import propagation
from .propagation import PropagationResult, cleanup, propagate

__all__ = ["propagation", "PropagationResult", "propagate", "cleanup"]
