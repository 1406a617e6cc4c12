from __future__ import annotations

import json
import math
import os
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd
from openpyxl import Workbook

from plate_app.engine.plugin_api import PlateRecord


def _ensure_parent(path: Path) -> None:
    if not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)


def _clean_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, np.ndarray):
        value = value.tolist()
    elif isinstance(value, np.generic):
        value = value.item()
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return value
    if value is pd.NA or value is pd.NaT:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set)):
        return json.dumps([_clean_value(v) for v in value])
    if isinstance(value, dict):
        return json.dumps({str(k): _clean_value(v) for k, v in value.items()})
    if isinstance(value, (Path, os.PathLike)):
        value = os.fspath(value)
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        # Spreadsheet apps evaluate cells starting with these characters.
        if value and value[0] in "=+-@" and not value.startswith("'"):
            return "'" + value
        return value
    return value


def _flatten_dict(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat: Dict[str, Any] = {}
    for key, value in data.items():
        safe_key = str(key).replace(" ", "_").replace("/", "_")
        new_key = safe_key if not prefix else f"{prefix}.{safe_key}"
        if isinstance(value, dict):
            flat.update(_flatten_dict(value, new_key))
        else:
            flat[new_key] = _clean_value(value)
    return flat


def _write_dict_rows(ws, rows: List[Dict[str, Any]]):
    if not rows:
        return
    headers: List[str] = []
    for row in rows:
        headers.extend(key for key in row.keys() if key not in headers)
    ws.append(headers)
    for row in rows:
        ws.append([_clean_value(row.get(header)) for header in headers])


def _write_frame(ws, frame: pd.DataFrame) -> None:
    ws.append([str(col) for col in frame.columns])
    for values in frame.itertuples(index=False, name=None):
        ws.append([_clean_value(value) for value in values])


def _write_calibration_sheet(ws, records: Sequence[PlateRecord]) -> None:
    calibrated = [record for record in records if record.calibration is not None]
    if not calibrated:
        ws.append(["Section", "Details"])
        ws.append(["Status", "No calibration performed"])
        return

    ws.append(
        [
            "Plate",
            "Status",
            "Slope",
            "Intercept",
            "R^2",
            "Adjusted R^2",
            "Residual Std",
            "Residual DoF",
            "Slope StdErr",
            "Intercept StdErr",
            "p-value",
            "Points",
        ]
    )
    for record in calibrated:
        model = record.calibration
        ws.append(
            [
                _clean_value(record.key),
                _clean_value(model.status),
                _clean_value(model.slope),
                _clean_value(model.intercept),
                _clean_value(model.r_squared),
                _clean_value(model.adj_r_squared),
                _clean_value(model.residual_std),
                _clean_value(model.residual_dof),
                _clean_value(model.slope_stderr),
                _clean_value(model.intercept_stderr),
                _clean_value(model.p_value),
                _clean_value(model.points),
            ]
        )

    for record in calibrated:
        model = record.calibration
        ws.append([])
        ws.append([f"Plate: {record.key}"])
        for error in model.errors:
            ws.append(["Error", _clean_value(error)])
        for warning in model.warnings:
            ws.append(["Warning", _clean_value(warning)])
        if model.residuals:
            ws.append(["Residuals"] + [name for name in model.residuals])
            ws.append([""] + [_clean_value(value) for value in model.residuals.values()])
        standards = model.standards
        if standards is not None and not standards.empty:
            ws.append(["Standards"])
            _write_frame(ws, standards)
        else:
            ws.append(["Standards", "None"])


def write_results_csv(out_path: str | Path, table: pd.DataFrame) -> Path:
    csv_path = Path(out_path)
    _ensure_parent(csv_path)
    table.to_csv(csv_path, index=False, na_rep="NA")
    return csv_path


def write_workbook(
    out_path: str | Path,
    table: pd.DataFrame,
    qc_table: Iterable[Dict[str, Any]],
    audit: Iterable[str],
    records: Sequence[PlateRecord] = (),
) -> str:
    workbook_path = Path(out_path)
    _ensure_parent(workbook_path)

    wb = Workbook()
    ws_results = wb.active
    ws_results.title = "Results"
    _write_frame(ws_results, table)

    ws_qc = wb.create_sheet("QC_Flags")
    _write_dict_rows(ws_qc, [_flatten_dict(dict(row)) for row in qc_table])

    ws_calibration = wb.create_sheet("Calibration")
    _write_calibration_sheet(ws_calibration, records)

    ws_audit = wb.create_sheet("Audit_Log")
    ws_audit.append(["Index", "Entry"])
    for idx, entry in enumerate(audit or [], start=1):
        ws_audit.append([idx, _clean_value(entry)])

    wb.save(workbook_path)
    return str(workbook_path)
