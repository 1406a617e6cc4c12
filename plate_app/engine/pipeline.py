"""Batch entry point shared by the CLI and programmatic callers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional, Tuple

from plate_app.engine.plugin_api import BatchResult
from plate_app.engine.recipe_model import Recipe
from plate_app.engine.run_controller import BatchRunner
from plate_app.plugins.plate_reader.io_plate import list_plate_files
from plate_app.plugins.plate_reader.plugin import PlateReaderPlugin

__all__ = ["discover_files", "run_pipeline"]

logger = logging.getLogger(__name__)


def discover_files(
    raw_dir: str | Path,
    identifier_dir: str | Path,
    recipe: Recipe,
) -> Tuple[List[Path], List[Path]]:
    suffixes = recipe.resolved()["files"].get("suffixes") or [".csv"]
    raw_paths = list_plate_files(raw_dir, suffixes)
    identifier_paths = list_plate_files(identifier_dir, suffixes)
    logger.info(
        "Found %d raw file(s) in %s and %d identifier file(s) in %s",
        len(raw_paths),
        raw_dir,
        len(identifier_paths),
        identifier_dir,
    )
    return raw_paths, identifier_paths


def run_pipeline(
    raw_dir: str | Path,
    identifier_dir: str | Path,
    recipe: Recipe | Mapping[str, Any] | None = None,
    *,
    plugin: Optional[PlateReaderPlugin] = None,
    on_progress: Optional[Callable[[int], None]] = None,
    on_message: Optional[Callable[[str], None]] = None,
) -> BatchResult:
    if not isinstance(recipe, Recipe):
        recipe = Recipe(params=dict(recipe or {}))
    errs = recipe.validate()
    if errs:
        raise ValueError("Invalid recipe: " + "; ".join(errs))
    raw_paths, identifier_paths = discover_files(raw_dir, identifier_dir, recipe)
    runner = BatchRunner(
        plugin or PlateReaderPlugin(),
        [str(p) for p in raw_paths],
        [str(p) for p in identifier_paths],
        recipe,
        on_progress=on_progress,
        on_message=on_message,
    )
    return runner.run()
