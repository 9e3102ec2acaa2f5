"""Data I/O helpers for intensity reduction.

This module loads acquisition samples from delimited text files and builds
text and tabular (pandas) views of reduced channel models.  Model arguments
are duck-typed so that this module stays free of the fit and propagation
packages.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Tuple

import numpy as np
import pandas as pd

from .channels import intuitive_key
from .series import AcquisitionSeries

REQUIRED_COLUMNS = ("channel", "phase", "time_ms", "intensity")

_PHASES = {
    "background": "background",
    "bg": "background",
    "baseline": "background",
    "on_peak": "on_peak",
    "onpeak": "on_peak",
    "peak": "on_peak",
}


def _as_bool(values: pd.Series) -> np.ndarray:
    if values.dtype == bool:
        return values.to_numpy()
    text = values.astype(str).str.strip().str.lower()
    return ~text.isin(["0", "false", "no", "n", "f", ""]).to_numpy()


def load_acquisition_csv(path: str | Path) -> Dict[str, Tuple[AcquisitionSeries, AcquisitionSeries]]:
    """Load background and on-peak series per channel from ``path``.

    The file is long-format with columns ``channel, phase, time_ms,
    intensity`` and optionally ``active`` and ``acf`` (analog correction
    factor).  ``phase`` is ``background`` or ``on_peak``.  Lines starting with
    ``#`` are ignored.  Samples are ordered by time within each phase and
    channels are returned in intuitive order.
    """

    df = pd.read_csv(path, comment="#", skipinitialspace=True)
    df.columns = [str(c).strip().lower() for c in df.columns]
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"{path}: missing columns {', '.join(missing)}")

    df["phase"] = df["phase"].astype(str).str.strip().str.lower().map(_PHASES)
    if df["phase"].isna().any():
        raise ValueError(f"{path}: phase must be 'background' or 'on_peak'")
    df["channel"] = df["channel"].astype(str).str.strip()

    out: Dict[str, Tuple[AcquisitionSeries, AcquisitionSeries]] = {}
    for name in sorted(df["channel"].unique(), key=intuitive_key):
        chan = df[df["channel"] == name]
        pair = []
        for phase in ("background", "on_peak"):
            part = chan[chan["phase"] == phase].sort_values("time_ms", kind="stable")
            if part.empty:
                raise ValueError(f"{path}: channel {name} has no {phase} samples")
            pair.append(
                AcquisitionSeries(
                    part["intensity"].to_numpy(dtype=float),
                    part["time_ms"].to_numpy(dtype=float),
                    active=_as_bool(part["active"]) if "active" in part else None,
                    analog_correction_factors=(
                        part["acf"].to_numpy(dtype=float) if "acf" in part else None
                    ),
                )
            )
        out[name] = (pair[0], pair[1])
    return out


def derive_export_paths(user_path: str | Path) -> dict:
    """Return export file paths based on ``user_path``.

    ``user_path`` may have any extension; the returned paths drop the
    extension and append ``_summary.csv``, ``_series.csv`` and
    ``_report.txt``.
    """

    p = Path(user_path)
    base = p.with_suffix("")
    return {
        "summary": base.with_name(base.name + "_summary.csv"),
        "series": base.with_name(base.name + "_series.csv"),
        "report": base.with_name(base.name + "_report.txt"),
    }


def write_dataframe(df: pd.DataFrame, path: Path) -> None:
    """Write ``df`` to ``path`` without introducing extra blank lines."""

    with Path(path).open("w", newline="", encoding="utf-8") as fh:
        df.to_csv(fh, index=False, lineterminator="\n")


# --- text reports -----------------------------------------------------------

def _header(model) -> str:
    return f"{model.channel.name} [{model.collector.collector_type}]\n"


def _values(values) -> str:
    return ", ".join(repr(float(v)) for v in np.asarray(values, dtype=float))


def format_intensities(model) -> str:
    return (
        _header(model)
        + "\tBack:\t" + _values(model.background.intensities) + "\n"
        + "\tPeak:\t" + _values(model.on_peak.intensities)
    )


def format_corrected_intensities(model) -> str:
    return _header(model) + "\tPeak:\t" + _values(model.on_peak.corrected)


def format_corrected_intensities_as_logs(model) -> str:
    return _header(model) + "\tPeak:\t" + _values(model.on_peak.log_corrected)


def format_fit_parameters(model) -> str:
    fn = model.selected_fit_function
    text = "no fit function" if fn is None else fn.show_parameters()
    return f"{model.channel.name}\n{text}\n"


# --- tabular views ----------------------------------------------------------

def series_frame(model, which: str = "on_peak") -> pd.DataFrame:
    """One row per sample of the background or on-peak series."""

    if which == "background":
        series = model.background
        normalized = model.normalized_background_times()
    elif which == "on_peak":
        series = model.on_peak
        normalized = model.normalized_on_peak_times()
    else:
        raise ValueError(f"unknown series '{which}'")
    return pd.DataFrame(
        {
            "channel": model.channel.name,
            "phase": which,
            "time_ms": series.acquire_times,
            "normalized_time": normalized,
            "intensity": series.intensities,
            "active": series.active,
            "fitted_background": series.fitted_background,
            "corrected": series.corrected,
            "log_corrected": series.log_corrected,
        }
    )


def fit_summary_frame(models: Iterable) -> pd.DataFrame:
    """One row per channel with the selected fit and propagation outcome."""

    rows = []
    for model in models:
        fn = model.selected_fit_function
        params = [] if fn is None else list(fn.parameters)
        sigmas = [] if fn is None else list(fn.parameter_sigmas())
        sopbclr = model.sopbclr
        rows.append(
            {
                "channel": model.channel.name,
                "collector": model.collector.collector_type,
                "fit_type": model.selected_fit_type.value,
                "overdispersion_selected": bool(model.overdispersion_selected),
                "degraded_fit": bool(model.degraded_fit),
                "a": params[0] if params else np.nan,
                "a_sigma": sigmas[0] if sigmas else np.nan,
                "b": params[1] if len(params) > 1 else np.nan,
                "b_sigma": sigmas[1] if len(sigmas) > 1 else np.nan,
                "xi": model.xi_for_fit_function(model.selected_fit_type),
                "n_active": model.on_peak.active_count,
                "has_covariance": sopbclr is not None,
                "mean_log_sigma": (
                    float(np.sqrt(np.mean(np.diag(sopbclr)))) if sopbclr is not None else np.nan
                ),
            }
        )
    return pd.DataFrame(rows)
