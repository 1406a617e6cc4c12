"""Plate-reader absorbance plugin.

Stages mirror the plugin API: ``load`` parses the raw grids and identifier
tables, ``preprocess`` joins them by date and flattens each grid,
``analyze`` fits one calibration curve per plate and predicts
concentrations, ``export`` stacks the plates into a tidy table and writes
the optional CSV, workbook and figure outputs.
"""

from __future__ import annotations

import io
import math
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging

import numpy as np
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
from matplotlib.figure import Figure

from plate_app.engine import qc as qc_engine
from plate_app.engine.audit import log_step, start_audit
from plate_app.engine.excel_writer import write_results_csv, write_workbook
from plate_app.engine.plugin_api import (
    BatchResult,
    IdentifierTable,
    JoinCardinalityError,
    PlateMeasurement,
    PlatePlugin,
    PlateRecord,
)
from plate_app.engine.recipe_model import Recipe
from .calibration import calibrate_plate, predict_concentrations
from .io_plate import load_identifiers, load_measurements
from .pipeline import JoinReport, cross_match, flatten_records, join_by_date, reshape_grid

logger = logging.getLogger(__name__)


def resolve_params(recipe: Recipe | Mapping[str, Any] | None) -> Dict[str, Any]:
    if isinstance(recipe, Recipe):
        return recipe.resolved()
    return Recipe(params=dict(recipe or {})).resolved()


class PlateReaderPlugin(PlatePlugin):
    id = "plate_reader"
    label = "Plate reader (absorbance)"

    def __init__(self) -> None:
        self._last_join_report: Optional[JoinReport] = None

    @property
    def last_join_report(self) -> Optional[JoinReport]:
        """Return the join report of the most recent ``preprocess`` call."""

        return self._last_join_report

    def detect(self, paths):
        return any(Path(p).suffix.lower() == ".csv" for p in paths)

    def load(
        self,
        raw_paths: Iterable[str],
        identifier_paths: Iterable[str],
        recipe,
    ) -> Tuple[List[PlateMeasurement], List[IdentifierTable]]:
        params = resolve_params(recipe)
        measurements = load_measurements(raw_paths, params)
        identifiers = load_identifiers(identifier_paths, params)
        logger.info("Loaded %d plate(s) and %d identifier table(s)", len(measurements), len(identifiers))
        return measurements, identifiers

    def validate(self, measurements, identifiers, recipe) -> List[str]:
        recipe_obj = recipe if isinstance(recipe, Recipe) else Recipe(params=dict(recipe or {}))
        errs = recipe_obj.validate()
        if not measurements:
            errs.append("No raw plate files were found")
        return errs

    def preprocess(
        self,
        measurements: Sequence[PlateMeasurement],
        identifiers: Sequence[IdentifierTable],
        recipe,
    ) -> List[PlateRecord]:
        params = resolve_params(recipe)
        join_cfg = params["join"]
        scan_order = params["plate"]["scan_order"]
        plate_column = params["identifiers"]["plate"]

        report = join_by_date(measurements, identifiers)
        self._last_join_report = report

        problems: List[str] = []
        if report.unmatched and join_cfg.get("on_missing") == "error":
            problems.extend(f"no identifier table for {name}" for name in report.unmatched)
        if report.duplicated and join_cfg.get("on_duplicate") == "error":
            problems.extend(
                f"{name} matches {', '.join(matches)}" for name, matches in report.duplicated.items()
            )
        if problems:
            raise JoinCardinalityError("Date join is not one-to-one: " + "; ".join(problems))

        records: List[PlateRecord] = []
        for measurement, table in report.pairs:
            key = measurement.filename
            if measurement.filename in report.duplicated and table is not None:
                key = f"{measurement.filename}::{table.filename}"
            record = PlateRecord(key=key, measurement=measurement, identifiers=table)
            record.readings = reshape_grid(
                measurement.grid,
                scan_order,
                row_labels=measurement.meta.get("row_labels"),
            )
            if table is None:
                record.errors.append(
                    f"No identifier table dated {measurement.date.isoformat()} for {measurement.filename}"
                )
                record.joined = record.readings.copy()
                records.append(record)
                continue
            if measurement.filename in report.duplicated:
                record.warnings.append(
                    f"Date {measurement.date.isoformat()} matches several identifier tables; "
                    f"this row set uses {table.filename}"
                )
            try:
                joined, warnings = cross_match(record.readings, table.frame, measurement.plate_id, plate_column)
            except ValueError as exc:
                record.errors.append(f"Cross-match with {table.filename} failed: {exc}")
                logger.warning("Plate %s: %s", key, record.errors[-1])
                records.append(record)
                continue
            record.joined = joined
            record.warnings.extend(warnings)
            for message in warnings:
                logger.warning("Plate %s: %s", key, message)
            records.append(record)
        return records

    def analyze(self, records, recipe):
        params = resolve_params(recipe)
        calibration_cfg = params["calibration"]
        columns = params["identifiers"]
        expected = int(params["plate"]["rows"]) * int(params["plate"]["columns"])

        qc_rows: List[Dict[str, Any]] = []
        for record in records:
            if record.joined is not None:
                if calibration_cfg.get("enabled", True) and record.identifiers is not None:
                    record.calibration = calibrate_plate(
                        record.joined,
                        record.key,
                        standard_column=columns["standard"],
                        concentration_column=columns["concentration"],
                        min_points=int(calibration_cfg.get("min_points", 2)),
                        r2_threshold=calibration_cfg.get("r2_threshold"),
                    )
                record.predicted = predict_concentrations(record.joined, record.calibration)
            qc_rows.append(qc_engine.plate_qc_row(record, expected, columns["plate"]))
        return records, qc_rows

    def export(self, records, qc, recipe):
        params = resolve_params(recipe)
        export_cfg = dict(params.get("export") or {})
        table = flatten_records(records)

        figure_objs: List[Tuple[str, Figure]] = []
        try:
            figures = self._generate_figures(records, figure_objs, formats=export_cfg.get("formats"))
            audit_entries = self._build_audit_entries(records, figures)

            csv_target = export_cfg.get("csv")
            if csv_target:
                path = write_results_csv(csv_target, table)
                log_step(audit_entries, f"Results table written to {path}")

            figures_dir = export_cfg.get("figures_dir")
            if figures_dir and figures:
                target_dir = Path(figures_dir)
                target_dir.mkdir(parents=True, exist_ok=True)
                for name, payload in figures.items():
                    (target_dir / name).write_bytes(payload)
                log_step(audit_entries, f"{len(figures)} figure(s) written to {target_dir}")

            workbook_target = export_cfg.get("workbook")
            if workbook_target:
                # The workbook carries the audit log, so its own entry is recorded before the save.
                log_step(audit_entries, f"Writing workbook to {workbook_target}")
                path = write_workbook(workbook_target, table, qc, audit_entries, records)
                log_step(audit_entries, f"Workbook written to {path}")
        finally:
            for _, fig in figure_objs:
                plt.close(fig)

        return BatchResult(
            processed=list(records),
            table=table,
            qc_table=qc,
            figures=figures,
            audit=audit_entries,
            report_text=self._build_text_report(records, qc),
        )

    def _build_audit_entries(self, records: Sequence[PlateRecord], figures: Mapping[str, bytes]) -> List[str]:
        entries = start_audit()
        entries.extend(self._runtime_audit_tokens())
        seen = set()
        for record in records:
            for source in (record.measurement, record.identifiers):
                if source is None or source.filename in seen:
                    continue
                seen.add(source.filename)
                digest = source.meta.get("source_hash")
                if digest:
                    entries.append(f"Input {source.filename} source_hash=sha256:{digest}")
        if self._last_join_report is not None:
            entries.extend(f"Join: {message}" for message in self._last_join_report.messages())
        for record in records:
            model = record.calibration
            if model is None:
                entries.append(f"Plate {record.key}: status={record.status} calibration=not_computed")
                continue
            slope_str = f"{model.slope:.4f}" if math.isfinite(model.slope) else "nan"
            r2_str = f"{model.r_squared:.4f}" if math.isfinite(model.r_squared) else "nan"
            entries.append(
                f"Plate {record.key}: status={record.status} calibration={model.status} "
                f"slope={slope_str} r2={r2_str} points={model.points}"
            )
        if figures:
            entries.append(f"Generated plots: {', '.join(sorted(figures))}")
        return entries

    @staticmethod
    def _runtime_audit_tokens() -> List[str]:
        version = "unknown"
        try:
            version = metadata.version("plate-app")
        except metadata.PackageNotFoundError:
            pass
        return [f"Runtime library plate-app=={version}"]

    @staticmethod
    def _build_text_report(records: Sequence[PlateRecord], qc_rows: Sequence[Mapping[str, Any]]) -> str:
        ok = sum(1 for record in records if record.status == "ok")
        lines = [f"Processed {len(records)} plate(s): {ok} calibrated, {len(records) - ok} with problems."]
        lines.extend(str(row.get("summary", "")) for row in qc_rows)
        return "\n".join(lines)

    @staticmethod
    def _sanitise_figure_name(*parts: str, ext: str = "png") -> str:
        tokens: List[str] = []
        for part in parts:
            if part is None:
                continue
            cleaned = "".join(ch if ch.isalnum() or ch in {"-", "_"} else "_" for ch in str(part)).strip("_")
            if cleaned:
                tokens.append(cleaned)
        if not tokens:
            tokens.append("figure")
        return f"{'_'.join(tokens)}.{ext.lstrip('.')}"

    @staticmethod
    def _normalise_figure_formats(formats: object = None) -> Tuple[str, ...]:
        if formats is None:
            return ("png",)
        if isinstance(formats, str):
            formats = [formats]
        normalised: List[str] = []
        for raw in formats:
            token = str(raw).strip().lower().lstrip(".")
            if token in {"png", "svg"} and token not in normalised:
                normalised.append(token)
        return tuple(normalised) if normalised else ("png",)

    def _render_calibration_figure(self, record: PlateRecord) -> Optional[Figure]:
        model = record.calibration
        if model is None or model.standards is None or model.standards.empty:
            return None
        standards = model.standards
        absorbance = standards["absorbance"].to_numpy(dtype=float)
        concentration = standards["concentration"].to_numpy(dtype=float)
        included = standards["included"].to_numpy(dtype=bool)
        if not np.any(included):
            return None

        fig, (ax_fit, ax_resid) = plt.subplots(2, 1, figsize=(6, 6), sharex=True)
        ax_fit.scatter(absorbance[included], concentration[included], label="Standards", color="tab:blue")
        if model.ok:
            x_span = np.linspace(float(np.nanmin(absorbance[included])), float(np.nanmax(absorbance[included])), 100)
            ax_fit.plot(x_span, model.intercept + model.slope * x_span, color="tab:green", label="Fit")
            ax_fit.text(
                0.02,
                0.95,
                f"Slope: {model.slope:.4f}\nIntercept: {model.intercept:.4f}\nR$^2$: {model.r_squared:.4f}",
                transform=ax_fit.transAxes,
                va="top",
                ha="left",
                fontsize=9,
                bbox={"boxstyle": "round", "facecolor": "white", "alpha": 0.6},
            )
        else:
            ax_fit.text(0.02, 0.95, "Calibration failed", transform=ax_fit.transAxes, va="top", color="tab:red")
        ax_fit.set_ylabel("Concentration")
        ax_fit.set_title(f"Calibration: {record.key}")
        ax_fit.grid(True, alpha=0.2)
        ax_fit.legend(loc="lower right")

        if "residual" in standards.columns:
            residuals = standards["residual"].to_numpy(dtype=float)
            ax_resid.axhline(0.0, color="tab:gray", linestyle="--", linewidth=1.0)
            ax_resid.scatter(absorbance[included], residuals[included], color="tab:blue")
        ax_resid.set_xlabel("Absorbance")
        ax_resid.set_ylabel("Residual")
        ax_resid.grid(True, alpha=0.2)
        fig.tight_layout()
        return fig

    def _generate_figures(
        self,
        records: Sequence[PlateRecord],
        figure_objs: List[Tuple[str, Figure]],
        formats: object = None,
    ) -> Dict[str, bytes]:
        """Render one calibration figure per plate; ``figure_objs`` collects them for closing."""

        figure_formats = self._normalise_figure_formats(formats)
        figures: Dict[str, bytes] = {}
        for record in records:
            fig = self._render_calibration_figure(record)
            if fig is None:
                continue
            figure_objs.append((self._sanitise_figure_name("calibration", record.key, ext=figure_formats[0]), fig))
            for fmt in figure_formats:
                filename = self._sanitise_figure_name("calibration", record.key, ext=fmt)
                buf = io.BytesIO()
                save_kwargs = {"format": fmt}
                if fmt == "png":
                    save_kwargs["dpi"] = 150
                fig.savefig(buf, **save_kwargs)
                figures[filename] = buf.getvalue()
        return figures
