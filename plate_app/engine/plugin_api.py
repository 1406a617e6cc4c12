from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Any, Iterable, List, Optional, Sequence, Tuple
import math

import numpy as np
import pandas as pd


class FilenameFormatError(ValueError):
    """Raised when a filename does not match the configured pattern."""


class JoinCardinalityError(ValueError):
    """Raised when the date join finds zero or several identifier tables."""


class CalibrationError(ValueError):
    """Raised when a calibration regression is singular or rejected."""


@dataclass
class PlateMeasurement:
    filename: str
    date: date
    plate_id: str
    grid: np.ndarray                # (rows, columns) absorbance readings
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class IdentifierTable:
    filename: str
    date: date
    frame: pd.DataFrame             # one row per position, normalised columns
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CalibrationModel:
    plate_key: str
    status: str = "not_computed"
    slope: float = float("nan")
    intercept: float = float("nan")
    r_squared: float = float("nan")
    adj_r_squared: float = float("nan")
    residual_std: float = float("nan")
    residual_dof: int = 0
    slope_stderr: float = float("nan")
    intercept_stderr: float = float("nan")
    p_value: float = float("nan")
    residuals: Dict[str, float] = field(default_factory=dict)
    points: int = 0
    min_concentration: float = float("nan")
    max_concentration: float = float("nan")
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    standards: Optional[pd.DataFrame] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok" and math.isfinite(self.slope) and math.isfinite(self.intercept)

    def predict(self, absorbance) -> np.ndarray:
        if not self.ok:
            raise CalibrationError(f"No usable calibration model for plate {self.plate_key}")
        values = np.asarray(absorbance, dtype=float)
        return self.intercept + self.slope * values

    def summary(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "slope": self.slope,
            "intercept": self.intercept,
            "r_squared": self.r_squared,
            "adj_r_squared": self.adj_r_squared,
            "residual_std": self.residual_std,
            "residual_dof": self.residual_dof,
            "slope_stderr": self.slope_stderr,
            "intercept_stderr": self.intercept_stderr,
            "p_value": self.p_value,
            "points": self.points,
            "min_concentration": self.min_concentration,
            "max_concentration": self.max_concentration,
        }


@dataclass
class PlateRecord:
    key: str
    measurement: PlateMeasurement
    identifiers: Optional[IdentifierTable] = None
    readings: Optional[pd.DataFrame] = None
    joined: Optional[pd.DataFrame] = None
    calibration: Optional[CalibrationModel] = None
    predicted: Optional[pd.DataFrame] = None
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.errors or self.joined is None:
            return "failed"
        if self.calibration is None or not self.calibration.ok:
            return "no_model"
        return "ok"


@dataclass
class BatchResult:
    processed: List[PlateRecord]
    table: pd.DataFrame
    qc_table: List[Dict[str, Any]]
    figures: Dict[str, bytes]       # PNG/SVG bytes
    audit: List[str]
    report_text: Optional[str] = None

    @property
    def failed(self) -> List[PlateRecord]:
        return [record for record in self.processed if record.status != "ok"]


class PlatePlugin:
    id: str = "base"
    label: str = "Base"

    def detect(self, paths: Iterable[str]) -> bool:
        return False

    def load(
        self,
        raw_paths: Iterable[str],
        identifier_paths: Iterable[str],
        recipe: Dict[str, Any],
    ) -> Tuple[List[PlateMeasurement], List[IdentifierTable]]:
        raise NotImplementedError

    def validate(
        self,
        measurements: Sequence[PlateMeasurement],
        identifiers: Sequence[IdentifierTable],
        recipe: Dict[str, Any],
    ) -> List[str]:
        return []

    def preprocess(
        self,
        measurements: Sequence[PlateMeasurement],
        identifiers: Sequence[IdentifierTable],
        recipe: Dict[str, Any],
    ) -> List[PlateRecord]:
        raise NotImplementedError

    def analyze(self, records: List[PlateRecord], recipe: Dict[str, Any]) -> Tuple[List[PlateRecord], List[Dict[str, Any]]]:
        return records, []

    def export(self, records: List[PlateRecord], qc: List[Dict[str, Any]], recipe: Dict[str, Any]) -> BatchResult:
        return BatchResult(processed=records, table=pd.DataFrame(), qc_table=qc, figures={}, audit=[])
