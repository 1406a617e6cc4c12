from __future__ import annotations

import logging
import math
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from scipy import stats

from plate_app.engine.plugin_api import CalibrationError, CalibrationModel

logger = logging.getLogger(__name__)

# Predictions this close to the standards' range still count as within it.
RANGE_TOLERANCE = 1e-9


def select_standards(
    joined: pd.DataFrame,
    standard_column: str,
    concentration_column: str,
) -> pd.DataFrame:
    """Return the wells flagged as standards with an ``included`` column.

    A standard is included when both its absorbance and its known
    concentration are finite.
    """

    if standard_column not in joined.columns:
        raise CalibrationError(f"Standard flag column {standard_column!r} is missing")
    flags = pd.to_numeric(joined[standard_column], errors="coerce") == 1
    keep = [col for col in ("position", "well", "absorbance") if col in joined.columns]
    standards = joined.loc[flags, keep].copy()
    if concentration_column in joined.columns:
        standards["concentration"] = pd.to_numeric(joined.loc[flags, concentration_column], errors="coerce")
    else:
        standards["concentration"] = np.nan
    absorbance = standards["absorbance"].to_numpy(dtype=float)
    concentration = standards["concentration"].to_numpy(dtype=float)
    standards["included"] = np.isfinite(absorbance) & np.isfinite(concentration)
    return standards.reset_index(drop=True)


def fit_linear(
    absorbance: Sequence[float],
    concentration: Sequence[float],
    *,
    min_points: int = 2,
) -> Dict[str, Any]:
    """Least-squares fit of concentration on absorbance.

    Raises :class:`CalibrationError` when the fit is undefined: fewer than
    ``min_points`` points, zero variance in absorbance, or non-finite
    coefficients.
    """

    x = np.asarray(absorbance, dtype=float)
    y = np.asarray(concentration, dtype=float)
    if x.shape != y.shape:
        raise ValueError("absorbance and concentration must have the same length")
    n = int(x.size)
    if n < max(min_points, 2):
        raise CalibrationError(
            f"At least {max(min_points, 2)} calibration standards with valid readings are required, found {n}."
        )
    if float(np.ptp(x)) == 0.0:
        raise CalibrationError("Standard absorbances have zero variance; the regression is undefined.")

    result = stats.linregress(x, y)
    slope = float(result.slope)
    intercept = float(result.intercept)
    if not (math.isfinite(slope) and math.isfinite(intercept)):
        raise CalibrationError("Calibration regression could not be computed.")

    fitted = intercept + slope * x
    residuals = y - fitted
    ss_res = float(np.sum(residuals**2))
    ss_tot = float(np.sum((y - float(np.mean(y))) ** 2))
    if ss_tot <= 0:
        # Identical standard concentrations: R^2 is undefined.
        r_squared = float("nan")
    else:
        r_squared = max(0.0, 1.0 - ss_res / ss_tot)

    dof = n - 2
    if dof > 0:
        residual_std = math.sqrt(ss_res / dof)
        adj_r_squared = 1.0 - (1.0 - r_squared) * (n - 1) / dof
        slope_stderr = float(result.stderr)
        intercept_stderr = float(result.intercept_stderr)
    else:
        # Two points: the line is exact and the error terms are undefined.
        residual_std = adj_r_squared = slope_stderr = intercept_stderr = float("nan")

    quantiles = np.percentile(residuals, [0, 25, 50, 75, 100])
    return {
        "slope": slope,
        "intercept": intercept,
        "r_squared": float(r_squared),
        "adj_r_squared": float(adj_r_squared),
        "residual_std": float(residual_std),
        "residual_dof": dof,
        "slope_stderr": slope_stderr,
        "intercept_stderr": intercept_stderr,
        "p_value": float(result.pvalue),
        "residuals": dict(zip(("min", "q1", "median", "q3", "max"), (float(q) for q in quantiles))),
        "fitted": fitted,
        "residual_values": residuals,
    }


def calibrate_plate(
    joined: pd.DataFrame,
    plate_key: str,
    *,
    standard_column: str = "std",
    concentration_column: str = "std_conc_NH4",
    min_points: int = 2,
    r2_threshold: Optional[float] = None,
) -> CalibrationModel:
    """Fit the calibration curve of one plate.

    Never raises for a singular fit; the returned model carries
    ``status="failed"`` and the reasons in ``errors`` instead.
    """

    model = CalibrationModel(plate_key=plate_key)
    try:
        standards = select_standards(joined, standard_column, concentration_column)
        model.standards = standards
        included = standards.loc[standards["included"]]
        model.points = int(len(included))
        if model.points:
            model.min_concentration = float(included["concentration"].min())
            model.max_concentration = float(included["concentration"].max())
        excluded = int(len(standards) - len(included))
        if excluded:
            model.warnings.append(f"{excluded} standard(s) without a finite absorbance or concentration were excluded")
        fit = fit_linear(included["absorbance"], included["concentration"], min_points=min_points)
    except CalibrationError as exc:
        model.status = "failed"
        model.errors.append(str(exc))
        logger.warning("Calibration failed for plate %s: %s", plate_key, exc)
        return model

    for key in (
        "slope",
        "intercept",
        "r_squared",
        "adj_r_squared",
        "residual_std",
        "residual_dof",
        "slope_stderr",
        "intercept_stderr",
        "p_value",
        "residuals",
    ):
        setattr(model, key, fit[key])

    fitted = pd.Series(np.nan, index=standards.index, dtype=float)
    residual = pd.Series(np.nan, index=standards.index, dtype=float)
    fitted.loc[included.index] = fit["fitted"]
    residual.loc[included.index] = fit["residual_values"]
    standards["fitted_concentration"] = fitted
    standards["residual"] = residual

    model.status = "ok"
    if model.slope <= 0:
        model.warnings.append("Calibration slope is not positive; absorbance should rise with concentration.")
    if r2_threshold is not None and not model.r_squared >= float(r2_threshold):
        model.status = "failed"
        model.errors.append(
            f"Calibration R^2 {model.r_squared:.4f} is below threshold {float(r2_threshold):.4f}."
        )
        logger.warning("Calibration rejected for plate %s: %s", plate_key, model.errors[-1])
    return model


def predict_concentrations(joined: pd.DataFrame, model: Optional[CalibrationModel]) -> pd.DataFrame:
    """Attach ``predicted_concentration`` and ``calibration_status`` to every row.

    Rows of a plate without a usable model get NaN and ``no_model``;
    predictions outside the standards' range are marked ``extrapolated``.
    """

    frame = joined.copy()
    if model is None or not model.ok:
        frame["predicted_concentration"] = np.nan
        frame["calibration_status"] = "no_model"
        return frame

    predicted = model.predict(frame["absorbance"].to_numpy(dtype=float))
    span = abs(model.max_concentration - model.min_concentration)
    tolerance = RANGE_TOLERANCE * max(1.0, span)
    within = (predicted >= model.min_concentration - tolerance) & (predicted <= model.max_concentration + tolerance)
    status = np.where(within, "ok", "extrapolated")
    status = np.where(np.isfinite(predicted), status, "invalid")
    frame["predicted_concentration"] = predicted
    frame["calibration_status"] = status
    return frame
