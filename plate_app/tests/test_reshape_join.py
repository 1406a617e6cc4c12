from datetime import date

import numpy as np
import pandas as pd
import pytest

from plate_app.engine.plugin_api import IdentifierTable, PlateMeasurement, PlateRecord
from plate_app.plugins.plate_reader.pipeline import (
    cross_match,
    flatten_records,
    join_by_date,
    reshape_grid,
    well_positions,
)
from plate_app.tests.plate_test_utils import ramp_grid


def _measurement(name: str, day: int, plate_id: str = "P1") -> PlateMeasurement:
    return PlateMeasurement(filename=name, date=date(2021, 6, day), plate_id=plate_id, grid=ramp_grid())


def _identifiers(name: str, day: int, plate_id: str = "P1") -> IdentifierTable:
    frame = pd.DataFrame(
        {
            "position": range(1, 97),
            "std": [1 if pos <= 4 else 0 for pos in range(1, 97)],
            "std_conc_NH4": [pos * 0.1 if pos <= 4 else np.nan for pos in range(1, 97)],
            "ammonium_id": plate_id,
        }
    )
    return IdentifierTable(filename=name, date=date(2021, 6, day), frame=frame)


def test_reshape_yields_96_unique_positions():
    readings = reshape_grid(np.random.default_rng(0).random((8, 12)))

    assert len(readings) == 96
    assert sorted(readings["position"]) == list(range(1, 97))
    assert readings["position"].is_unique


def test_reshape_is_column_major_by_default():
    grid = ramp_grid()
    readings = reshape_grid(grid)

    assert readings["well"].tolist()[:10] == ["A1", "B1", "C1", "D1", "E1", "F1", "G1", "H1", "A2", "B2"]
    assert readings["well"].iloc[-1] == "H12"
    assert np.allclose(readings["absorbance"], np.arange(1, 97) * 0.01)
    assert readings.loc[readings["position"] == 9, "absorbance"].item() == pytest.approx(grid[0, 1])


def test_reshape_is_stable():
    grid = np.random.default_rng(1).random((8, 12))
    first = reshape_grid(grid)
    second = reshape_grid(grid)
    pd.testing.assert_frame_equal(first, second)


def test_reshape_row_major_option():
    grid = ramp_grid()
    readings = reshape_grid(grid, scan_order="row")

    assert readings["well"].tolist()[:3] == ["A1", "A2", "A3"]
    assert readings.loc[readings["position"] == 2, "absorbance"].item() == pytest.approx(grid[0, 1])


def test_well_positions_match_reshape_numbering():
    layout = well_positions(8, 12, "column")
    readings = reshape_grid(ramp_grid())
    assert layout["well"].tolist() == readings["well"].tolist()
    assert layout.loc[layout["position"] == 12, "well"].item() == "D2"


def test_reshape_rejects_unknown_order():
    with pytest.raises(ValueError):
        reshape_grid(ramp_grid(), scan_order="diagonal")


def test_join_one_to_one_preserves_rows():
    measurements = [_measurement("a.csv", 14), _measurement("b.csv", 15)]
    identifiers = [_identifiers("ids_15.csv", 15), _identifiers("ids_14.csv", 14)]

    report = join_by_date(measurements, identifiers)

    assert report.ok
    assert len(report.pairs) == len(measurements)
    assert [(m.filename, t.filename) for m, t in report.pairs] == [("a.csv", "ids_14.csv"), ("b.csv", "ids_15.csv")]
    assert report.unused == []


def test_join_duplicated_keys_multiply_rows():
    measurements = [_measurement("a.csv", 14), _measurement("b.csv", 14), _measurement("c.csv", 14)]
    identifiers = [_identifiers("x.csv", 14), _identifiers("y.csv", 14)]

    report = join_by_date(measurements, identifiers)

    assert len(report.pairs) == 3 * 2
    assert not report.ok
    assert report.duplicated["a.csv"] == ["x.csv", "y.csv"]


def test_join_missing_key_keeps_plate_with_no_table():
    report = join_by_date([_measurement("a.csv", 14)], [_identifiers("ids.csv", 20)])

    assert len(report.pairs) == 1
    assert report.pairs[0][1] is None
    assert report.unmatched == ["a.csv"]
    assert report.unused == ["ids.csv"]
    assert any("a.csv" in message for message in report.messages())


def test_join_with_no_identifiers():
    report = join_by_date([_measurement("a.csv", 14)], [])
    assert report.pairs[0][1] is None
    assert report.unmatched == ["a.csv"]


def test_cross_match_filters_plate_and_joins_by_position():
    frame = pd.concat(
        [_identifiers("i.csv", 14, "P1").frame, _identifiers("i.csv", 14, "P2").frame], ignore_index=True
    )
    frame.loc[frame["ammonium_id"] == "P2", "std"] = 0
    readings = reshape_grid(ramp_grid())

    joined, warnings = cross_match(readings, frame, "P1", "ammonium_id")

    assert warnings == []
    assert len(joined) == 96
    assert (joined["ammonium_id"] == "P1").all()
    assert joined["std"].sum() == 4


def test_cross_match_reports_missing_plate():
    readings = reshape_grid(ramp_grid())
    joined, warnings = cross_match(readings, _identifiers("i.csv", 14, "P1").frame, "P9", "ammonium_id")

    assert len(joined) == 96
    assert joined["ammonium_id"].isna().all()
    assert warnings == ["No identifier rows for plate P9"]


def test_cross_match_reports_partial_coverage():
    frame = _identifiers("i.csv", 14).frame
    frame = frame[frame["position"] > 6]
    joined, warnings = cross_match(reshape_grid(ramp_grid()), frame, "P1", "ammonium_id")

    assert len(joined) == 96
    assert "6 position(s)" in warnings[0]


def test_flatten_replicates_plate_columns_and_unions_columns():
    first = PlateRecord(key="a.csv", measurement=_measurement("a.csv", 14))
    first.joined = reshape_grid(ramp_grid())
    first.joined["operator"] = "jk"
    second = PlateRecord(key="b.csv", measurement=_measurement("b.csv", 15, "P2"))
    second.joined = reshape_grid(ramp_grid())
    second.joined["dilution"] = 2.0

    table = flatten_records([first, second])

    assert len(table) == 192
    assert list(table.columns[:7]) == ["filename", "identifier_file", "date", "plate_id", "position", "well", "absorbance"]
    assert {"operator", "dilution", "predicted_concentration"} <= set(table.columns)
    assert (table.loc[table["filename"] == "a.csv", "plate_id"] == "P1").all()
    assert table.loc[table["filename"] == "a.csv", "dilution"].isna().all()
    assert table.loc[table["filename"] == "b.csv", "operator"].isna().all()


def test_flatten_empty():
    table = flatten_records([])
    assert table.empty
    assert "filename" in table.columns
