"""Batch reduction of multi-channel acquisitions.

This module loads acquisition files matching glob patterns, fits the
background of every channel, propagates on-peak uncertainties and writes a
combined summary CSV.  Optionally, per-sample series tables are emitted as
well.  A channel that fails is logged and recorded; the remaining channels of
the acquisition are still reduced.
"""

from __future__ import annotations

import glob
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import pandas as pd

import core.data_io as data_io
from core.channels import intuitive_key
from core.errors import ReductionError
from core.intensity_model import RawIntensityModel
from core.series import AcquisitionSeries
from infra.config import ReductionOptions, options_from_config


logger = logging.getLogger(__name__)


@dataclass
class ChannelOutcome:
    """Result of reducing one channel."""

    channel: str
    ok: bool
    model: Optional[RawIntensityModel] = None
    degraded: bool = False
    has_covariance: bool = False
    error: str = ""


def build_models(
    acquisitions: Mapping[str, Tuple[AcquisitionSeries, AcquisitionSeries]],
    options: ReductionOptions,
) -> List[RawIntensityModel]:
    """One model per channel, in intuitive channel order."""

    models = []
    for name in sorted(acquisitions, key=intuitive_key):
        background, on_peak = acquisitions[name]
        models.append(RawIntensityModel.from_options(name, background, on_peak, options))
    return models


def hand_off_interference(source: RawIntensityModel, target: RawIntensityModel) -> bool:
    """Queue ``source``'s full covariance as a correction on ``target``.

    Returns False (and leaves ``target`` untouched) when the two channels do
    not share a sample layout.
    """

    if (len(source.background), len(source.on_peak)) != (len(target.background), len(target.on_peak)):
        logger.warning(
            "%s: sample layout differs from %s; interference correction skipped",
            target.channel,
            source.channel,
        )
        return False
    target.set_correction_covariance(source.build_full_covariance())
    logger.debug("%s: queued interference correction from %s", target.channel, source.channel)
    return True


def reduce_channel(model: RawIntensityModel, options: ReductionOptions) -> ChannelOutcome:
    """Prepare, fit and propagate one channel; errors are returned, not raised."""

    name = model.channel.name
    try:
        if options.raw_units:
            model.correct_intensities_for_resistor()
            model.convert_raw_intensities_to_counts_per_second()
        model.generate(apply_masking=True)
        result = model.propagate()
    except (ReductionError, ValueError) as exc:
        logger.warning("%s: reduction failed: %s", name, exc)
        return ChannelOutcome(channel=name, ok=False, model=model, error=str(exc))
    return ChannelOutcome(
        channel=name,
        ok=True,
        model=model,
        degraded=model.degraded_fit,
        has_covariance=result is not None,
    )


def reduce_acquisition(
    acquisitions: Mapping[str, Tuple[AcquisitionSeries, AcquisitionSeries]],
    options: ReductionOptions,
    *,
    log=None,
) -> List[ChannelOutcome]:
    """Reduce every channel of one acquisition.

    When both the interference source and target channels are present the
    source is reduced first and its covariance is added once to the target's
    variance model.
    """

    models = build_models(acquisitions, options)
    by_name: Dict[str, RawIntensityModel] = {m.channel.name: m for m in models}
    source = by_name.get(options.interference_source or "")
    target = by_name.get(options.interference_target or "")
    if source is not None and target is not None and source is not target:
        models.remove(source)
        models.insert(0, source)

    outcomes: List[ChannelOutcome] = []
    for model in models:
        outcome = reduce_channel(model, options)
        outcomes.append(outcome)
        if model is source and target is not None and target is not source and outcome.ok:
            try:
                hand_off_interference(source, target)
            except (ReductionError, ValueError) as exc:
                logger.warning("%s: interference correction failed: %s", target.channel, exc)
        if log:
            state = "ok" if outcome.ok else f"fail ({outcome.error})"
            if outcome.degraded:
                state += " degraded"
            log(f"{outcome.channel}: {state}")
    outcomes.sort(key=lambda o: intuitive_key(o.channel))
    return outcomes


def run_batch(
    patterns: Iterable[str],
    config: dict,
    *,
    output_dir: Optional[str | Path] = None,
    save_series: bool = False,
    progress=None,
    log=None,
) -> Tuple[int, int]:
    """Run the reduction pipeline over matching files.

    Parameters
    ----------
    patterns:
        Iterable of glob patterns. All matching files are processed.
    config:
        Configuration dictionary in the layout of
        :data:`infra.config.DEFAULT_CONFIG`; missing keys take defaults.
    output_dir:
        Directory for ``<stem>_summary.csv`` (and ``<stem>_series.csv`` when
        ``save_series``).  Defaults to each input file's directory.
    progress:
        Optional callable receiving ``(index, total, path)``.
    log:
        Optional callable receiving one status line per channel.

    Returns ``(ok, processed)``: channels reduced without error and channels
    attempted.
    """

    files: list[str] = []
    for pattern in patterns:
        files.extend(sorted(glob.glob(pattern)))
    if not files:
        raise FileNotFoundError("no files matched patterns")
    total = len(files)
    options = options_from_config(config)

    ok = 0
    processed = 0
    for i, path in enumerate(files, start=1):
        if progress:
            progress(i, total, path)
        try:
            acquisitions = data_io.load_acquisition_csv(path)
        except (OSError, ValueError, pd.errors.ParserError) as exc:
            logger.warning("%s: could not load acquisition: %s", path, exc)
            if log:
                log(f"{Path(path).name}: load failed ({exc})")
            continue

        outcomes = reduce_acquisition(acquisitions, options, log=log)
        processed += len(outcomes)
        ok += sum(1 for o in outcomes if o.ok)

        out_dir = Path(output_dir) if output_dir is not None else Path(path).parent
        out_dir.mkdir(parents=True, exist_ok=True)
        paths = data_io.derive_export_paths(out_dir / Path(path).name)
        models = [o.model for o in outcomes if o.model is not None]

        summary = data_io.fit_summary_frame(models)
        if not summary.empty:
            status = {o.channel: o for o in outcomes}
            summary.insert(0, "file", Path(path).name)
            summary["ok"] = [status[c].ok for c in summary["channel"]]
            summary["error"] = [status[c].error for c in summary["channel"]]
        data_io.write_dataframe(summary, paths["summary"])

        if save_series and models:
            frames = [
                data_io.series_frame(m, which) for m in models for which in ("background", "on_peak")
            ]
            data_io.write_dataframe(pd.concat(frames, ignore_index=True), paths["series"])

        for model in models:
            model.cleanup()

    return ok, processed
