"""Quality control helpers for plate batches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from plate_app.engine.plugin_api import PlateRecord


@dataclass
class CoverageResult:
    expected: int
    present: int
    missing_identifiers: List[int]
    duplicated: List[int]

    @property
    def complete(self) -> bool:
        return self.present == self.expected and not self.missing_identifiers and not self.duplicated


@dataclass
class RangeResult:
    minimum: float
    maximum: float
    non_finite: int


def check_positions(
    readings: Optional[pd.DataFrame],
    joined: Optional[pd.DataFrame],
    expected: int,
    plate_column: str,
) -> CoverageResult:
    if readings is None:
        return CoverageResult(expected=expected, present=0, missing_identifiers=[], duplicated=[])
    positions = readings["position"]
    duplicated = sorted(positions[positions.duplicated()].unique().tolist())
    missing: List[int] = []
    if joined is not None and plate_column in joined.columns:
        missing = sorted(joined.loc[joined[plate_column].isna(), "position"].astype(int).tolist())
    elif joined is not None:
        missing = sorted(joined["position"].astype(int).tolist())
    return CoverageResult(
        expected=expected,
        present=int(positions.nunique()),
        missing_identifiers=missing,
        duplicated=[int(pos) for pos in duplicated],
    )


def absorbance_range(readings: Optional[pd.DataFrame]) -> RangeResult:
    if readings is None or readings.empty:
        return RangeResult(minimum=float("nan"), maximum=float("nan"), non_finite=0)
    values = readings["absorbance"].to_numpy(dtype=float)
    finite = values[np.isfinite(values)]
    return RangeResult(
        minimum=float(finite.min()) if finite.size else float("nan"),
        maximum=float(finite.max()) if finite.size else float("nan"),
        non_finite=int(values.size - finite.size),
    )


def plate_qc_row(record: PlateRecord, expected_positions: int, plate_column: str) -> Dict[str, Any]:
    """Summarise one plate's processing outcome as a flat QC row."""

    coverage = check_positions(record.readings, record.joined, expected_positions, plate_column)
    value_range = absorbance_range(record.readings)
    model = record.calibration
    flags: List[str] = []
    if record.identifiers is None:
        flags.append("no_identifiers")
    if coverage.missing_identifiers:
        flags.append("missing_identifiers")
    if coverage.duplicated or coverage.present != coverage.expected:
        flags.append("position_coverage")
    if model is None:
        flags.append("not_calibrated")
    elif not model.ok:
        flags.append("calibration_failed")
    if model is not None and model.ok and model.warnings:
        flags.append("calibration_warning")
    if record.errors:
        flags.append("errors")

    row: Dict[str, Any] = {
        "plate_key": record.key,
        "filename": record.measurement.filename,
        "identifier_file": record.identifiers.filename if record.identifiers else None,
        "date": record.measurement.date.isoformat(),
        "plate_id": record.measurement.plate_id,
        "status": record.status,
        "positions": coverage.present,
        "missing_identifier_positions": len(coverage.missing_identifiers),
        "absorbance_min": value_range.minimum,
        "absorbance_max": value_range.maximum,
        "standards": model.points if model is not None else 0,
        "calibration_status": model.status if model is not None else "not_computed",
        "slope": model.slope if model is not None else float("nan"),
        "intercept": model.intercept if model is not None else float("nan"),
        "r_squared": model.r_squared if model is not None else float("nan"),
        "residual_std": model.residual_std if model is not None else float("nan"),
        "flags": flags,
        "errors": list(record.errors) + (list(model.errors) if model is not None else []),
        "warnings": list(record.warnings) + (list(model.warnings) if model is not None else []),
    }
    row["summary"] = _summarise(row)
    return row


def _summarise(row: Dict[str, Any]) -> str:
    parts = [f"{row['plate_key']}: {row['status']}"]
    r_squared = row.get("r_squared")
    if isinstance(r_squared, float) and np.isfinite(r_squared):
        parts.append(f"R^2={r_squared:.4f} over {row['standards']} standards")
    if row["flags"]:
        parts.append("flags=" + ",".join(row["flags"]))
    if row["errors"]:
        parts.append("; ".join(row["errors"]))
    return " | ".join(parts)
