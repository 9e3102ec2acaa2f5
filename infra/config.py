"""Configuration handling for intensity reduction."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_CONFIG: Dict[str, Any] = {
    "version": "1.0",
    "propagation": {
        "full": True,
    },
    "fit": {
        "type": "MEAN",
        "overdispersion_selected": True,
        "force_mean_for_common_lead_ratios": False,
        "forced_mean_value": 0.0,
        "maxfev": 2000,
        "mean_solver": "lm",
    },
    "collector": {
        "type": "faraday",
        "params": {},
    },
    "acquisition": {
        "sampling_period_ms": 1000.0,
        "integration_time_s": None,
        "raw_units": False,
    },
    "interference": {
        "source": "Hg202",
        "target": "Pb204",
    },
}


@dataclass
class ReductionOptions:
    """Settings shared by every channel of one reduction run."""

    full_propagation: bool = True
    fit_type: str = "MEAN"
    overdispersion_selected: bool = True
    force_mean_for_common_lead_ratios: bool = False
    forced_mean_value: float = 0.0
    maxfev: int = 2000
    mean_solver: str = "lm"
    collector_type: str = "faraday"
    collector_params: Dict[str, Any] = field(default_factory=dict)
    sampling_period_ms: float = 1000.0
    integration_time_s: Optional[float] = None
    raw_units: bool = False
    interference_source: Optional[str] = "Hg202"
    interference_target: Optional[str] = "Pb204"


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into ``base`` and return ``base``."""

    for key, val in override.items():
        if (
            isinstance(val, dict)
            and key in base
            and isinstance(base[key], dict)
        ):
            _merge(base[key], val)
        else:
            base[key] = val
    return base


def _migrate(cfg: Dict[str, Any], data: Dict[str, Any]) -> None:
    """Map legacy top-level keys onto their current location."""

    propagation = cfg.setdefault("propagation", {})
    explicit = isinstance(data.get("propagation"), dict) and "full" in data["propagation"]
    if "using_full_propagation" in cfg:
        legacy = bool(cfg.pop("using_full_propagation"))
        if not explicit:
            propagation["full"] = legacy
    if "fast_propagation" in cfg:
        legacy = not bool(cfg.pop("fast_propagation"))
        if not explicit:
            propagation["full"] = legacy
    fit = cfg.setdefault("fit", {})
    if "fit_function" in cfg and "type" not in (data.get("fit") or {}):
        fit["type"] = cfg.pop("fit_function")
    cfg.pop("fit_function", None)
    if "forced_mean" in fit and "forced_mean_value" not in (data.get("fit") or {}):
        fit["forced_mean_value"] = fit.pop("forced_mean")
    fit.pop("forced_mean", None)


def load(path: str | Path) -> Dict[str, Any]:
    """Load configuration from *path* or return defaults if missing."""

    p = Path(path)
    cfg = json.loads(json.dumps(DEFAULT_CONFIG))  # deep copy
    if not p.exists():
        return cfg
    try:
        with p.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError:
        return cfg
    if isinstance(data, dict):
        _merge(cfg, data)
        _migrate(cfg, data)
    return cfg


def save(path: str | Path, cfg: Dict[str, Any]) -> None:
    """Persist ``cfg`` to ``path``."""

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as fh:
        json.dump(cfg, fh, indent=2, sort_keys=True)


def options_from_config(cfg: Dict[str, Any]) -> ReductionOptions:
    """Flatten a configuration dict into :class:`ReductionOptions`."""

    merged = _merge(json.loads(json.dumps(DEFAULT_CONFIG)), cfg)
    fit = merged["fit"]
    collector = merged["collector"]
    acq = merged["acquisition"]
    interference = merged.get("interference") or {}
    integration = acq.get("integration_time_s")
    return ReductionOptions(
        full_propagation=bool(merged["propagation"]["full"]),
        fit_type=str(fit["type"]).upper(),
        overdispersion_selected=bool(fit["overdispersion_selected"]),
        force_mean_for_common_lead_ratios=bool(fit["force_mean_for_common_lead_ratios"]),
        forced_mean_value=float(fit["forced_mean_value"]),
        maxfev=int(fit["maxfev"]),
        mean_solver=str(fit["mean_solver"]),
        collector_type=str(collector["type"]),
        collector_params=dict(collector.get("params") or {}),
        sampling_period_ms=float(acq["sampling_period_ms"]),
        integration_time_s=None if integration is None else float(integration),
        raw_units=bool(acq.get("raw_units", False)),
        interference_source=interference.get("source"),
        interference_target=interference.get("target"),
    )
