from __future__ import annotations
import argparse
import copy
import sys

from batch.runner import run_batch
from infra import config as config_mod
from infra.logging import get_logger


def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Background fit and uncertainty propagation over acquisition files.")
    p.add_argument("--patterns", required=True, help="Glob(s) for input files; separate multiple with ';'")
    p.add_argument("--outdir", default=None, help="Output directory (default: beside each input)")
    p.add_argument("--config", default=None, help="JSON configuration file")
    p.add_argument("--fit-type", default=None, choices=["NONE", "CONSTANT", "MEAN", "LINE"])
    p.add_argument("--collector", default=None, choices=["faraday", "ion_counter"])
    p.add_argument("--sampling-period-ms", type=float, default=None)
    # Propagation mode
    p.add_argument("--full-propagation", dest="full_propagation", action="store_true", default=None)
    p.add_argument("--fast-propagation", dest="full_propagation", action="store_false")
    # Overdispersion map selection
    p.add_argument("--no-overdispersion", dest="overdispersion", action="store_false", default=None)
    p.add_argument("--forced-mean", type=float, default=None, help="Parameter of the mean fallback")
    p.add_argument("--raw-units", action="store_true", default=False,
                   help="Inputs are raw detector units; convert to counts per second first")
    p.add_argument("--save-series", action="store_true", default=False)
    p.add_argument("--log-level", default="INFO")
    return p.parse_args(argv)


def build_config(args) -> dict:
    cfg = config_mod.load(args.config) if args.config else copy.deepcopy(config_mod.DEFAULT_CONFIG)
    if args.fit_type is not None:
        cfg["fit"]["type"] = args.fit_type
    if args.collector is not None:
        cfg["collector"]["type"] = args.collector
    if args.sampling_period_ms is not None:
        cfg["acquisition"]["sampling_period_ms"] = args.sampling_period_ms
    if args.full_propagation is not None:
        cfg["propagation"]["full"] = bool(args.full_propagation)
    if args.overdispersion is not None:
        cfg["fit"]["overdispersion_selected"] = bool(args.overdispersion)
    if args.forced_mean is not None:
        cfg["fit"]["forced_mean_value"] = float(args.forced_mean)
    if args.raw_units:
        cfg["acquisition"]["raw_units"] = True
    return cfg


def main(argv=None):
    args = parse_args(argv)
    log = get_logger("reduce_cli", args.log_level)
    patterns = [s.strip() for s in args.patterns.split(";") if s.strip()]
    cfg = build_config(args)
    try:
        ok, processed = run_batch(
            patterns,
            cfg,
            output_dir=args.outdir,
            save_series=args.save_series,
            log=log.info,
        )
    except FileNotFoundError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    print(f"{ok}/{processed} channels reduced")
    return 0 if ok == processed else 1


if __name__ == "__main__":
    sys.exit(main())
