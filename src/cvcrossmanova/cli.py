"""CLI entry point for cvcrossmanova."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from .config import AnalysisConfig
from .core import CrossManovaStudy
from .errors import CrossManovaError
from .io.loader import export_region_results, save_searchlight_results
from .searchlight.template import searchlight_size_table


def setup_logging(verbose: bool = False):
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def cmd_region(args):
    """Run the analyses on region masks."""
    config = AnalysisConfig.from_yaml(args.config)
    study = CrossManovaStudy(config)

    print(f"Analysis: {config.name}")
    print(f"Sessions: {study.data.m}, variables: {study.data.n_variables}")

    results = study.run_regions()
    table = results.to_frame()
    out = config.output_dir / "region_results.csv"
    export_region_results(table, out)

    for _, row in table[table["permutation"] == 1].iterrows():
        print(f"  {row['region']} / {row['analysis']}: D = {row['D']:.6g} (p = {row['p']})")
    if results.advisories:
        print(f"\nAdvisories ({len(results.advisories)}):")
        for msg in results.advisories:
            print(f"  - {msg}")
    print(f"\nDone. Output: {out}")


def cmd_searchlight(args):
    """Run the analyses on a searchlight."""
    config = AnalysisConfig.from_yaml(args.config)
    if args.radius is not None:
        config.searchlight.radius = args.radius
    if args.n_jobs is not None:
        config.searchlight.n_jobs = args.n_jobs
    study = CrossManovaStudy(config)

    print(f"Analysis: {config.name}")
    print(f"Sessions: {study.data.m}, mask voxels: {study.data.n_variables}")

    try:
        result = study.run_searchlight()
    except CrossManovaError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    params = {
        "name": config.name,
        "radius": config.searchlight.radius,
        "mm_units": config.searchlight.mm_units,
        "lambda": config.lambda_,
        "seed": config.seed,
        "analyses": study.analysis_names,
        "n_perms": study.ccm.n_results,
    }
    save_searchlight_results(result, config.output_dir, params)
    for msg in result.advisories:
        print(f"  - {msg}")
    print(f"\nDone. Output: {config.output_dir}")


def cmd_validate(args):
    """Validate an analysis configuration."""
    config = AnalysisConfig.from_yaml(args.config)

    try:
        study = CrossManovaStudy(config)
    except Exception as e:
        print(f"ERROR: Failed to initialize: {e}")
        sys.exit(1)

    issues = study.validate()

    print(f"Analysis: {config.name}")
    print(f"Config: {args.config}")
    print(study.data.describe().to_string(index=False))

    print(f"\nAnalyses: {len(config.analyses)}")
    for name, analysis in zip(study.analysis_names, study.ccm.analyses):
        print(f"  {name}: {analysis!r}")

    if issues:
        print(f"\nWarnings ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
        sys.exit(1)
    else:
        print("\nValidation passed.")


def cmd_lambda(args):
    """Estimate the regularization strength by cross-validation."""
    config = AnalysisConfig.from_yaml(args.config)
    study = CrossManovaStudy(config)
    lambda_ = study.ccm.optimize_regularization()
    print(f"Cross-validated lambda: {lambda_:.6g} (upper estimate)")


def cmd_size(args):
    """Tabulate searchlight sizes."""
    table = searchlight_size_table(args.min, args.max)
    print("`radius`   `pMax`")
    print("--------  ------")
    for _, row in table.iterrows():
        print(f"{row['radius']:<8g}  {int(row['p_max']):6d}")


def main():
    parser = argparse.ArgumentParser(
        prog="cvcrossmanova",
        description="Cross-validated (cross-) MANOVA: pattern distinctness and stability",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # region
    p_reg = subparsers.add_parser("region", help="Run analyses on regions")
    p_reg.add_argument("--config", required=True, type=Path, help="Path to analysis YAML config")
    p_reg.set_defaults(func=cmd_region)

    # searchlight
    p_sl = subparsers.add_parser("searchlight", help="Run analyses on a searchlight")
    p_sl.add_argument("--config", required=True, type=Path, help="Path to analysis YAML config")
    p_sl.add_argument("--radius", type=float, help="Override searchlight radius")
    p_sl.add_argument("--n-jobs", type=int, help="Override number of worker threads")
    p_sl.set_defaults(func=cmd_searchlight)

    # validate
    p_val = subparsers.add_parser("validate", help="Validate analysis config")
    p_val.add_argument("--config", required=True, type=Path, help="Path to analysis YAML config")
    p_val.set_defaults(func=cmd_validate)

    # lambda
    p_lam = subparsers.add_parser("lambda", help="Cross-validate regularization strength")
    p_lam.add_argument("--config", required=True, type=Path, help="Path to analysis YAML config")
    p_lam.set_defaults(func=cmd_lambda)

    # size
    p_size = subparsers.add_parser("size", help="Tabulate searchlight sizes")
    p_size.add_argument("--min", type=float, default=0.0, help="Smallest radius")
    p_size.add_argument("--max", type=float, default=5.0, help="Largest radius")
    p_size.set_defaults(func=cmd_size)

    args = parser.parse_args()
    setup_logging(args.verbose)
    args.func(args)


if __name__ == "__main__":
    main()
