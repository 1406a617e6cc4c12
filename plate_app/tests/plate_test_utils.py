from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional

import numpy as np

ROW_LABELS = "ABCDEFGH"


def ramp_grid(step: float = 0.01) -> np.ndarray:
    """Grid whose column-major position ``p`` reads ``p * step``."""
    return np.arange(1, 97, dtype=float).reshape((8, 12), order="F") * step


def write_grid_csv(
    path: Path,
    grid: np.ndarray,
    *,
    header: bool = True,
    delimiter: str = ",",
    decimal: str = ".",
) -> Path:
    rows, cols = grid.shape
    lines = []
    if header:
        lines.append(delimiter.join([""] + [str(col) for col in range(1, cols + 1)]))
    for r in range(rows):
        values = [f"{value:.4f}".replace(".", decimal) for value in grid[r]]
        lines.append(delimiter.join([ROW_LABELS[r]] + values))
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def write_identifier_csv(
    path: Path,
    plates: Dict[str, Dict[int, float]],
    *,
    positions: Optional[Iterable[int]] = None,
) -> Path:
    """Write an identifier table; ``plates`` maps plate id to {position: conc}."""
    lines = ["position,std,std_conc_NH4,ammonium_id,sample_name"]
    for plate_id, standards in plates.items():
        for pos in positions or range(1, 97):
            if pos in standards:
                conc = standards[pos]
                lines.append(f"{pos},1,{conc},{plate_id},std_{conc}")
            else:
                lines.append(f"{pos},0,,{plate_id},sample_{pos}")
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def make_batch(
    tmp_path: Path,
    plates: Dict[str, np.ndarray],
    identifiers: Dict[str, Dict[str, Dict[int, float]]],
) -> tuple[Path, Path]:
    """Create ``raw``/``ids`` directories.

    ``plates`` maps raw filenames to grids; ``identifiers`` maps identifier
    filenames to the ``plates`` argument of :func:`write_identifier_csv`.
    """
    raw_dir = tmp_path / "raw"
    id_dir = tmp_path / "ids"
    raw_dir.mkdir()
    id_dir.mkdir()
    for name, grid in plates.items():
        write_grid_csv(raw_dir / name, grid)
    for name, spec in identifiers.items():
        write_identifier_csv(id_dir / name, spec)
    return raw_dir, id_dir
