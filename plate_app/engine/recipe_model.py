from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Mapping

import yaml

# Raw files: ``2021-06-14_NH4-01.csv``; identifier files: ``2021-06-14_ids.csv``.
DEFAULT_RAW_PATTERN = r"^(?P<date>\d{4}-\d{2}-\d{2})_(?P<plate_id>[A-Za-z0-9-]+)\.csv$"
DEFAULT_IDENTIFIER_PATTERN = r"^(?P<date>\d{4}-\d{2}-\d{2})_(?P<label>[^.]+)\.csv$"

DEFAULT_PARAMS: Dict[str, Any] = {
    "files": {
        "raw_pattern": DEFAULT_RAW_PATTERN,
        "identifier_pattern": DEFAULT_IDENTIFIER_PATTERN,
        "date_format": "%Y-%m-%d",
        "suffixes": [".csv"],
    },
    "plate": {
        "rows": 8,
        "columns": 12,
        "scan_order": "column",
        "label_column": True,
    },
    "identifiers": {
        "position": "position",
        "standard": "std",
        "concentration": "std_conc_NH4",
        "plate": "ammonium_id",
    },
    "join": {
        "on_missing": "warn",
        "on_duplicate": "warn",
    },
    "calibration": {
        "enabled": True,
        "min_points": 2,
        "r2_threshold": None,
    },
    "export": {
        "csv": None,
        "workbook": None,
        "figures_dir": None,
        "formats": ["png"],
    },
}

SCAN_ORDERS = ("column", "row")
JOIN_POLICIES = ("warn", "error")


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


@dataclass
class Recipe:
    module: str = "plate_reader"
    params: Dict[str, Any] = field(default_factory=dict)
    version: str = "0.1.0"

    def resolved(self) -> Dict[str, Any]:
        """Return ``params`` layered over :data:`DEFAULT_PARAMS`."""
        return _merge(DEFAULT_PARAMS, self.params or {})

    def validate(self) -> list[str]:
        errs = []
        params = self.resolved()

        files = params.get("files", {})
        for key, required in (
            ("raw_pattern", ("date", "plate_id")),
            ("identifier_pattern", ("date",)),
        ):
            pattern = files.get(key)
            try:
                compiled = re.compile(str(pattern))
            except re.error as exc:
                errs.append(f"Filename pattern {key} does not compile: {exc}")
                continue
            for group in required:
                if group not in compiled.groupindex:
                    errs.append(f"Filename pattern {key} must define a '{group}' group")
        if not files.get("date_format"):
            errs.append("Date format must not be empty")

        plate = params.get("plate", {})
        for key in ("rows", "columns"):
            try:
                if int(plate.get(key)) <= 0:
                    errs.append(f"Plate {key} must be positive")
            except (TypeError, ValueError):
                errs.append(f"Plate {key} must be an integer")
        if plate.get("scan_order") not in SCAN_ORDERS:
            errs.append(f"Scan order must be one of {', '.join(SCAN_ORDERS)}")

        join_cfg = params.get("join", {})
        for key in ("on_missing", "on_duplicate"):
            if join_cfg.get(key) not in JOIN_POLICIES:
                errs.append(f"Join policy {key} must be 'warn' or 'error'")

        calibration_cfg = params.get("calibration", {})
        if calibration_cfg.get("enabled"):
            try:
                if int(calibration_cfg.get("min_points", 2)) < 2:
                    errs.append("Calibration needs at least two points")
            except (TypeError, ValueError):
                errs.append("Calibration min_points must be an integer")
            threshold = calibration_cfg.get("r2_threshold")
            if threshold is not None:
                try:
                    if not 0 < float(threshold) <= 1:
                        errs.append("Calibration R^2 threshold must be within (0, 1]")
                except (TypeError, ValueError):
                    errs.append("Calibration R^2 threshold must be numeric")
        return errs


def load_recipe(path: str | Path) -> Recipe:
    recipe_path = Path(path)
    with recipe_path.open("r", encoding="utf-8") as handle:
        content = yaml.safe_load(handle) or {}
    if not isinstance(content, dict):
        raise ValueError(f"Recipe {recipe_path} must contain a mapping")
    if "params" in content:
        return Recipe(
            module=str(content.get("module", "plate_reader")),
            params=dict(content.get("params") or {}),
            version=str(content.get("version", "0.1.0")),
        )
    return Recipe(params=content)
