"""Reshaping and joining helpers for plate-reader batches.

Positions follow the plate reader's column-major scan by default: position 1
is A1, 2 is B1, ... 8 is H1, 9 is A2 and 96 is H12. Identifier tables must
number their wells with the same convention (``scan_order`` in the recipe
switches both the reshaper and :func:`well_positions` to row-major).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from plate_app.engine.plugin_api import IdentifierTable, PlateMeasurement, PlateRecord
from .io_plate import default_row_labels

__all__ = [
    "JoinReport",
    "well_positions",
    "reshape_grid",
    "join_by_date",
    "cross_match",
    "flatten_records",
    "LEADING_COLUMNS",
    "TRAILING_COLUMNS",
]

logger = logging.getLogger(__name__)

LEADING_COLUMNS: Tuple[str, ...] = (
    "filename",
    "identifier_file",
    "date",
    "plate_id",
    "position",
    "well",
    "absorbance",
)
TRAILING_COLUMNS: Tuple[str, ...] = ("predicted_concentration", "calibration_status")


def _ravel_order(scan_order: str) -> str:
    if scan_order == "column":
        return "F"
    if scan_order == "row":
        return "C"
    raise ValueError(f"Unknown scan order: {scan_order!r}")


def well_positions(
    rows: int = 8,
    columns: int = 12,
    scan_order: str = "column",
    row_labels: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Return the position numbering table for a ``rows`` x ``columns`` plate."""

    order = _ravel_order(scan_order)
    labels = list(row_labels) if row_labels else default_row_labels(rows)
    if len(labels) != rows:
        raise ValueError(f"Expected {rows} row labels, got {len(labels)}")
    row_idx, col_idx = np.meshgrid(np.arange(rows), np.arange(columns), indexing="ij")
    row_flat = row_idx.ravel(order=order)
    col_flat = col_idx.ravel(order=order)
    return pd.DataFrame(
        {
            "position": np.arange(1, rows * columns + 1, dtype=int),
            "row_index": row_flat,
            "column_index": col_flat,
            "well": [f"{labels[r]}{c + 1}" for r, c in zip(row_flat, col_flat)],
        }
    )


def reshape_grid(
    grid: np.ndarray,
    scan_order: str = "column",
    row_labels: Optional[Sequence[str]] = None,
) -> pd.DataFrame:
    """Flatten a plate grid into ``(position, well, absorbance)`` rows."""

    arr = np.asarray(grid, dtype=float)
    if arr.ndim != 2:
        raise ValueError(f"Plate grid must be two-dimensional, got shape {arr.shape}")
    layout = well_positions(arr.shape[0], arr.shape[1], scan_order, row_labels)
    readings = layout[["position", "well"]].copy()
    readings["absorbance"] = arr.ravel(order=_ravel_order(scan_order))
    return readings


@dataclass
class JoinReport:
    pairs: List[Tuple[PlateMeasurement, Optional[IdentifierTable]]] = field(default_factory=list)
    unmatched: List[str] = field(default_factory=list)
    duplicated: Dict[str, List[str]] = field(default_factory=dict)
    unused: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.unmatched and not self.duplicated

    def messages(self) -> List[str]:
        lines: List[str] = []
        for filename in self.unmatched:
            lines.append(f"No identifier table matches the date of {filename}")
        for filename, matches in self.duplicated.items():
            lines.append(f"{filename} matches {len(matches)} identifier tables: {', '.join(matches)}")
        for filename in self.unused:
            lines.append(f"Identifier table {filename} matches no raw plate")
        return lines


def join_by_date(
    measurements: Sequence[PlateMeasurement],
    identifiers: Sequence[IdentifierTable],
) -> JoinReport:
    """Left-join raw plates to identifier tables on their filename date.

    One pair per match; a plate whose date matches ``m`` identifier tables
    yields ``m`` pairs, and a plate with no match yields one pair with
    ``None``.
    """

    raw_index = pd.DataFrame(
        {"raw_idx": pd.Series(range(len(measurements)), dtype=int),
         "date": pd.Series([m.date for m in measurements], dtype=object)}
    )
    id_index = pd.DataFrame(
        {"id_idx": pd.Series(range(len(identifiers)), dtype=int),
         "date": pd.Series([t.date for t in identifiers], dtype=object)}
    )
    merged = raw_index.merge(id_index, on="date", how="left", sort=False)

    report = JoinReport()
    for raw_idx, id_idx in merged[["raw_idx", "id_idx"]].itertuples(index=False, name=None):
        table = None if pd.isna(id_idx) else identifiers[int(id_idx)]
        report.pairs.append((measurements[int(raw_idx)], table))

    counts = merged.groupby("raw_idx")["id_idx"].count()
    for raw_idx, count in counts.items():
        measurement = measurements[int(raw_idx)]
        if count == 0:
            report.unmatched.append(measurement.filename)
        elif count > 1:
            matched = merged.loc[merged["raw_idx"] == raw_idx, "id_idx"].astype(int)
            report.duplicated[measurement.filename] = [identifiers[idx].filename for idx in matched]

    used = set(merged["id_idx"].dropna().astype(int))
    report.unused = [table.filename for idx, table in enumerate(identifiers) if idx not in used]

    for message in report.messages():
        logger.warning(message)
    return report


def cross_match(
    readings: pd.DataFrame,
    identifiers: pd.DataFrame,
    plate_id: str,
    plate_column: str,
) -> Tuple[pd.DataFrame, List[str]]:
    """Join a plate's readings to the identifier rows of that plate by position."""

    warnings: List[str] = []
    subset = identifiers.loc[identifiers[plate_column] == str(plate_id)]
    if subset.empty:
        warnings.append(f"No identifier rows for plate {plate_id}")
    joined = readings.merge(
        subset,
        on="position",
        how="left",
        validate="one_to_one",
        indicator=True,
        suffixes=("", "_identifier"),
    )
    unmatched = joined.loc[joined["_merge"] == "left_only", "position"]
    if not subset.empty and not unmatched.empty:
        warnings.append(
            f"{len(unmatched)} position(s) of plate {plate_id} have no identifier row"
        )
    joined = joined.drop(columns="_merge")
    return joined, warnings


def flatten_records(records: Sequence[PlateRecord]) -> pd.DataFrame:
    """Stack per-plate rows into one table, replicating plate-level columns.

    The column set is the union across plates; cells a plate does not carry
    are NaN.
    """

    frames: List[pd.DataFrame] = []
    for record in records:
        source = record.predicted if record.predicted is not None else record.joined
        if source is None:
            continue
        frame = source.copy()
        clashes = {col: f"{col}_identifier" for col in LEADING_COLUMNS[:4] if col in frame.columns}
        frame = frame.rename(columns=clashes)
        measurement = record.measurement
        frame.insert(0, "plate_id", measurement.plate_id)
        frame.insert(0, "date", measurement.date)
        frame.insert(0, "identifier_file", record.identifiers.filename if record.identifiers else np.nan)
        frame.insert(0, "filename", measurement.filename)
        frames.append(frame)

    if not frames:
        return pd.DataFrame(columns=list(LEADING_COLUMNS + TRAILING_COLUMNS))

    table = pd.concat(frames, ignore_index=True, sort=False)
    middle = [col for col in table.columns if col not in LEADING_COLUMNS and col not in TRAILING_COLUMNS]
    ordered = list(LEADING_COLUMNS) + middle + list(TRAILING_COLUMNS)
    return table.reindex(columns=ordered)
