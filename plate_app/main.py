#!/usr/bin/env python3
"""Calibrate plate-reader absorbance plates and export a tidy results table."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Sequence

from plate_app.engine.pipeline import run_pipeline
from plate_app.engine.recipe_model import Recipe, load_recipe


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("raw_dir", help="Directory containing raw plate-reader CSV files.")
    parser.add_argument("identifier_dir", help="Directory containing identifier CSV files.")
    parser.add_argument("--recipe", help="YAML recipe overriding the default settings.")
    parser.add_argument("--output", help="Write the tidy results table to this CSV file.")
    parser.add_argument("--workbook", help="Write results, QC, calibration and audit sheets to this XLSX file.")
    parser.add_argument("--figures-dir", dest="figures_dir", help="Directory for calibration plots.")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with status 1 when any plate failed to calibrate.",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="[%(levelname)s] %(message)s")

    recipe = load_recipe(args.recipe) if args.recipe else Recipe()
    export_cfg = dict(recipe.params.get("export") or {})
    for key, value in (("csv", args.output), ("workbook", args.workbook), ("figures_dir", args.figures_dir)):
        if value:
            export_cfg[key] = value
    recipe.params["export"] = export_cfg

    try:
        result = run_pipeline(args.raw_dir, args.identifier_dir, recipe)
    except (OSError, RuntimeError, ValueError) as exc:
        raise SystemExit(f"plate-app: {exc}") from exc
    if result.report_text:
        sys.stdout.write(result.report_text + "\n")
    if args.strict and result.failed:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
