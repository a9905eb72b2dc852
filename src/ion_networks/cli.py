import argparse
import logging
import sys
from dataclasses import replace

from .config import IonNetworkConfig
from .errors import ConfigurationError
from .io import load_dataframe, read_feature_table, write_results
from .ion_types import IonTypeLibrary
from .pipeline import IonNetworkPipeline


def _add_run_parser(sub):
    p = sub.add_parser("run", help="Correlate, group and annotate a peak table into ion identity networks")
    p.add_argument("peaks", type=str, help="Long-format peak table (row_id, sample, mz, rt, height[, charge])")
    p.add_argument("--out-dir", type=str, required=True, help="Directory for correlations/groups/identities/networks CSV")
    p.add_argument("--profiles", type=str, default=None, help="Feature profiles (row_id, sample, scan, intensity)")
    p.add_argument("--fragments", type=str, default=None, help="MS/MS signals (row_id, sample, mz, intensity[, precursor_mz, scan])")
    p.add_argument("--config", type=str, default=None, help="JSON configuration (IonNetworkConfig fields)")
    p.add_argument("--rt-unit", type=str, default="min", choices=["min", "s", "auto"])
    # common overrides
    p.add_argument("--polarity", type=str, default=None)
    p.add_argument("--mz-tol", dest="mz_tol", type=float, default=None, help="Absolute m/z tolerance (Da)")
    p.add_argument("--ppm", type=float, default=None)
    p.add_argument("--rt-tol", dest="rt_tol", type=float, default=None, help="RT tolerance (min)")
    p.add_argument("--min-height", dest="min_height", type=float, default=None)
    p.add_argument("--check-mode", dest="check_mode", type=str, default=None)
    p.add_argument("--no-grouping", dest="no_grouping", action="store_true", help="Do not split networks by correlation group")
    p.add_argument("--msms-check", dest="msms_check", action="store_true", help="Verify identities with MS/MS (needs --fragments)")
    p.add_argument("--n-jobs", dest="n_jobs", type=int, default=None)
    return p


def _add_library_parser(sub):
    p = sub.add_parser("library", help="List the candidate ion types of a configuration")
    p.add_argument("--config", type=str, default=None, help="JSON configuration (IonNetworkConfig fields)")
    p.add_argument("--polarity", type=str, default=None)
    p.add_argument("--max-charge", dest="max_charge", type=int, default=None)
    p.add_argument("--max-molecules", dest="max_molecules", type=int, default=None)
    p.add_argument("--out", type=str, default=None, help="Output CSV (default: print to stdout)")
    return p


def _load_config(args) -> IonNetworkConfig:
    cfg = IonNetworkConfig.from_json(args.config) if args.config else IonNetworkConfig()
    overrides = {}
    for arg, name in (
        ("polarity", "polarity"),
        ("mz_tol", "mz_tolerance"),
        ("ppm", "mz_tolerance_ppm"),
        ("rt_tol", "rt_tolerance"),
        ("min_height", "min_height"),
        ("check_mode", "check_mode"),
        ("n_jobs", "n_jobs"),
        ("max_charge", "max_charge"),
        ("max_molecules", "max_molecules"),
    ):
        value = getattr(args, arg, None)
        if value is not None:
            overrides[name] = value
    if getattr(args, "no_grouping", False):
        overrides["use_grouping_constraint"] = False
    if getattr(args, "msms_check", False):
        overrides["use_msms_check"] = True
    cfg = replace(cfg, **overrides)
    cfg.validate()
    return cfg


def main(argv=None):
    argv = argv or sys.argv[1:]
    ap = argparse.ArgumentParser(prog="ion-networks", description="Feature correlation and ion identity networking for LC-MS")
    ap.add_argument("--log-level", dest="log_level", type=str, default="WARNING")
    sub = ap.add_subparsers(dest="cmd", required=True)
    _add_run_parser(sub)
    _add_library_parser(sub)
    args = ap.parse_args(argv)
    logging.basicConfig(level=getattr(logging, str(args.log_level).upper(), logging.WARNING))

    try:
        cfg = _load_config(args)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.cmd == "library":
        lib = IonTypeLibrary(cfg.to_library_config())
        df = lib.to_frame()
        if args.out:
            df.to_csv(args.out, index=False)
            print(f"wrote {args.out} with {len(df)} ion types")
        else:
            print(df.to_string(index=False))
        return 0

    if args.cmd == "run":
        peaks = load_dataframe(args.peaks)
        profiles = load_dataframe(args.profiles) if args.profiles else None
        fragments = load_dataframe(args.fragments) if args.fragments else None
        table = read_feature_table(
            peaks, profiles=profiles, fragments=fragments, mass_list=cfg.mass_list, rt_unit=args.rt_unit
        )
        result = IonNetworkPipeline(cfg).run(table)
        if result.is_error:
            print(f"error: {result.error_message}", file=sys.stderr)
            return 1
        paths = write_results(result, table, args.out_dir)
        for path in paths.values():
            print(f"wrote {path}")
        print(f"{len(result.groups)} groups, {len(result.networks)} ion networks")
        return 0

    return 1


if __name__ == "__main__":
    raise SystemExit(main())
