from __future__ import annotations

import io
import logging
import string
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
import pandas as pd

from plate_app.engine.audit import source_hash
from plate_app.engine.io_common import parse_plate_filename, sniff_locale
from plate_app.engine.plugin_api import IdentifierTable, PlateMeasurement

logger = logging.getLogger(__name__)


def list_plate_files(directory: Path | str, suffixes: Sequence[str] = (".csv",)) -> List[Path]:
    """Return the plate files of ``directory`` sorted by name."""

    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Plate directory not found: {root}")
    allowed = {suffix.lower() for suffix in suffixes}
    return sorted(
        path for path in root.iterdir()
        if path.is_file() and path.suffix.lower() in allowed and not path.name.startswith(".")
    )


def default_row_labels(rows: int) -> List[str]:
    letters = string.ascii_uppercase
    return [letters[idx] if idx < len(letters) else f"R{idx + 1}" for idx in range(rows)]


def _read_text(path: Path) -> str:
    text = path.read_text(encoding="utf-8-sig")
    if not text.strip():
        raise ValueError(f"{path.name}: file is empty")
    return text


def _is_number(token: str, decimal: str) -> bool:
    token = token.strip()
    if not token:
        return False
    if decimal != ".":
        token = token.replace(decimal, ".")
    try:
        float(token)
    except ValueError:
        return False
    return True


def _is_header_row(tokens: Sequence[str], columns: int, decimal: str) -> bool:
    cleaned = [tok.strip() for tok in tokens if tok.strip()]
    if not cleaned:
        return True
    if not any(_is_number(tok, decimal) for tok in cleaned):
        return True
    # Column-number header ("1,2,...,12") written above the grid by most readers.
    try:
        numbers = [float(tok) for tok in cleaned]
    except ValueError:
        return False
    return numbers == [float(idx) for idx in range(1, columns + 1)]


def _drop_unlabelled_header(text: str, locale: Mapping[str, str], columns: int) -> str:
    """Remove a column-number header written without the label cell.

    Some readers emit ``1,2,...,12`` above rows of ``A,v1,...,v12``; the
    header is one field short and would break the parser.
    """

    lines = text.splitlines()
    content = [idx for idx, line in enumerate(lines) if line.strip()]
    if len(content) < 2:
        return text
    first, second = (lines[idx].rstrip().rstrip(locale["delimiter"]) for idx in content[:2])
    header = first.split(locale["delimiter"])
    if len(header) != columns or len(second.split(locale["delimiter"])) != columns + 1:
        return text
    if not _is_header_row(header, columns, locale["decimal"]):
        return text
    del lines[content[0]]
    return "\n".join(lines) + "\n"


def read_plate_grid(
    path: Path | str,
    rows: int = 8,
    columns: int = 12,
    label_column: bool = True,
) -> tuple[np.ndarray, List[str]]:
    """Parse a plate-reader CSV into a ``(rows, columns)`` float grid.

    Returns the grid and the row labels. The first column is discarded as a
    row label when ``label_column`` is set; a column-number header row is
    skipped. Any other deviation (shape, non-numeric cell) raises
    ``ValueError``.
    """

    path = Path(path)
    text = _read_text(path)
    locale = sniff_locale(text)
    if label_column:
        text = _drop_unlabelled_header(text, locale, columns)
    try:
        df = pd.read_csv(
            io.StringIO(text),
            sep=locale["delimiter"],
            header=None,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
        )
    except pd.errors.ParserError as exc:
        raise ValueError(f"{path.name}: malformed plate grid ({exc})") from exc
    df = df.apply(lambda col: col.str.strip())
    # Trailing delimiters produce empty columns.
    df = df.loc[:, (df != "").any(axis=0)]
    df.columns = range(df.shape[1])

    if df.shape[0] and _is_header_row(
        df.iloc[0, 1:].tolist() if label_column else df.iloc[0].tolist(), columns, locale["decimal"]
    ):
        df = df.iloc[1:].reset_index(drop=True)

    if label_column:
        labels = [str(value) for value in df.iloc[:, 0].tolist()]
        values = df.iloc[:, 1:]
    else:
        labels = []
        values = df

    if values.shape != (rows, columns):
        raise ValueError(
            f"{path.name}: expected a {rows}x{columns} grid, found {values.shape[0]}x{values.shape[1]}"
        )

    if locale["decimal"] != ".":
        values = values.apply(lambda col: col.str.replace(locale["decimal"], ".", regex=False))
    numeric = values.apply(pd.to_numeric, errors="coerce")
    bad = numeric.isna().to_numpy()
    if bad.any():
        row_idx, col_idx = (int(v) for v in np.argwhere(bad)[0])
        raise ValueError(
            f"{path.name}: non-numeric reading {values.iat[row_idx, col_idx]!r} "
            f"at row {row_idx + 1}, column {col_idx + 1}"
        )

    if not labels or any(not label for label in labels):
        labels = default_row_labels(rows)
    return numeric.to_numpy(dtype=float), labels


def read_identifier_table(
    path: Path | str,
    columns: Mapping[str, str],
    n_positions: Optional[int] = None,
) -> pd.DataFrame:
    """Parse an identifier CSV (one row per well position).

    The configured position column is renamed to ``position``; the standard
    flag, concentration and plate columns keep their configured names.
    """

    position_col = columns["position"]
    standard_col = columns["standard"]
    conc_col = columns["concentration"]
    plate_col = columns["plate"]

    path = Path(path)
    text = _read_text(path)
    locale = sniff_locale(text)
    try:
        frame = pd.read_csv(
            io.StringIO(text),
            sep=locale["delimiter"],
            decimal=locale["decimal"],
            skipinitialspace=True,
            # Plate ids are labels: "01" must not become 1, nor 1.0 next to a blank.
            dtype={plate_col: str},
            engine="python",
        )
    except pd.errors.ParserError as exc:
        raise ValueError(f"{path.name}: malformed identifier table ({exc})") from exc
    frame.columns = [str(col).strip() for col in frame.columns]
    frame = frame.dropna(how="all").reset_index(drop=True)

    missing = [name for name in (position_col, standard_col, plate_col) if name not in frame.columns]
    if missing:
        raise ValueError(f"{path.name}: missing identifier column(s): {', '.join(missing)}")
    if position_col != "position":
        if "position" in frame.columns:
            raise ValueError(f"{path.name}: both {position_col!r} and 'position' columns present")
        frame = frame.rename(columns={position_col: "position"})

    positions = pd.to_numeric(frame["position"], errors="coerce")
    if positions.isna().any() or not np.all(np.mod(positions, 1) == 0):
        raise ValueError(f"{path.name}: positions must be integers")
    frame["position"] = positions.astype(int)
    if n_positions is not None:
        out_of_range = frame.loc[(frame["position"] < 1) | (frame["position"] > n_positions), "position"]
        if not out_of_range.empty:
            raise ValueError(
                f"{path.name}: positions outside 1..{n_positions}: {sorted(out_of_range.unique().tolist())}"
            )

    flags = pd.to_numeric(frame[standard_col], errors="coerce").fillna(0)
    if not flags.isin([0, 1]).all():
        raise ValueError(f"{path.name}: standard flag column {standard_col!r} must hold 0/1")
    frame[standard_col] = flags.astype(int)

    if conc_col in frame.columns:
        frame[conc_col] = pd.to_numeric(frame[conc_col], errors="coerce")
    else:
        logger.warning("%s: no %s column; standards have no known concentration", path.name, conc_col)
        frame[conc_col] = np.nan

    frame[plate_col] = frame[plate_col].map(lambda value: "" if pd.isna(value) else str(value).strip())

    duplicated = frame.duplicated([plate_col, "position"], keep=False)
    if duplicated.any():
        dupes = frame.loc[duplicated, [plate_col, "position"]].drop_duplicates()
        pairs = ", ".join(f"{plate}:{pos}" for plate, pos in dupes.itertuples(index=False, name=None))
        raise ValueError(f"{path.name}: duplicated plate positions: {pairs}")
    return frame


def load_measurements(paths: Iterable[Path | str], params: Dict[str, Any]) -> List[PlateMeasurement]:
    files_cfg = params["files"]
    plate_cfg = params["plate"]
    rows = int(plate_cfg["rows"])
    columns = int(plate_cfg["columns"])
    measurements: List[PlateMeasurement] = []
    for raw_path in paths:
        path = Path(raw_path)
        fields = parse_plate_filename(path, files_cfg["raw_pattern"], files_cfg["date_format"])
        grid, labels = read_plate_grid(path, rows, columns, bool(plate_cfg.get("label_column", True)))
        measurements.append(
            PlateMeasurement(
                filename=fields.filename,
                date=fields.date,
                plate_id=str(fields.plate_id),
                grid=grid,
                meta={
                    "source_file": str(path),
                    "source_hash": source_hash(path),
                    "row_labels": labels,
                    "filename_fields": dict(fields.groups),
                },
            )
        )
        logger.debug("Loaded plate %s (%s) from %s", fields.plate_id, fields.date, path)
    return measurements


def load_identifiers(paths: Iterable[Path | str], params: Dict[str, Any]) -> List[IdentifierTable]:
    files_cfg = params["files"]
    plate_cfg = params["plate"]
    n_positions = int(plate_cfg["rows"]) * int(plate_cfg["columns"])
    tables: List[IdentifierTable] = []
    for raw_path in paths:
        path = Path(raw_path)
        fields = parse_plate_filename(path, files_cfg["identifier_pattern"], files_cfg["date_format"])
        frame = read_identifier_table(path, params["identifiers"], n_positions)
        tables.append(
            IdentifierTable(
                filename=fields.filename,
                date=fields.date,
                frame=frame,
                meta={
                    "source_file": str(path),
                    "source_hash": source_hash(path),
                    "filename_fields": dict(fields.groups),
                },
            )
        )
    return tables
