from datetime import date

import numpy as np
import pytest

from plate_app.engine.io_common import parse_plate_filename, sniff_locale
from plate_app.engine.plugin_api import FilenameFormatError
from plate_app.engine.recipe_model import DEFAULT_IDENTIFIER_PATTERN, DEFAULT_PARAMS, DEFAULT_RAW_PATTERN
from plate_app.plugins.plate_reader.io_plate import (
    list_plate_files,
    load_measurements,
    read_identifier_table,
    read_plate_grid,
)
from plate_app.tests.plate_test_utils import ramp_grid, write_grid_csv, write_identifier_csv

COLUMNS = DEFAULT_PARAMS["identifiers"]


def test_sniff_locale_semicolon_with_decimal_comma():
    sample = ";1;2\nA;0,123;0,456\nB;0,789;1,000\n"
    assert sniff_locale(sample) == {"decimal": ",", "delimiter": ";"}


def test_sniff_locale_integer_csv_keeps_dot_decimal():
    sample = "position,std,std_conc_NH4\n1,1,5\n2,0,\n"
    assert sniff_locale(sample) == {"decimal": ".", "delimiter": ","}


def test_parse_raw_filename():
    fields = parse_plate_filename("2021-06-14_NH4-01.csv", DEFAULT_RAW_PATTERN)
    assert fields.date == date(2021, 6, 14)
    assert fields.plate_id == "NH4-01"
    assert fields.filename == "2021-06-14_NH4-01.csv"


def test_parse_filename_mismatch_fails_loudly():
    with pytest.raises(FilenameFormatError):
        parse_plate_filename("plate_june.csv", DEFAULT_RAW_PATTERN)


def test_parse_filename_invalid_date():
    with pytest.raises(FilenameFormatError, match="invalid date"):
        parse_plate_filename("2021-13-40_ids.csv", DEFAULT_IDENTIFIER_PATTERN)


def test_read_grid_with_column_header(tmp_path):
    grid = ramp_grid()
    path = write_grid_csv(tmp_path / "2021-06-14_P1.csv", grid)

    values, labels = read_plate_grid(path)

    assert values.shape == (8, 12)
    assert np.allclose(values, grid)
    assert labels == list("ABCDEFGH")


def test_read_grid_without_header_and_locale(tmp_path):
    grid = ramp_grid(0.005)
    path = write_grid_csv(tmp_path / "plate.csv", grid, header=False, delimiter=";", decimal=",")

    values, _ = read_plate_grid(path)

    assert np.allclose(values, np.round(grid, 4))


def test_read_grid_wrong_shape_raises(tmp_path):
    path = write_grid_csv(tmp_path / "plate.csv", np.zeros((7, 12)))
    with pytest.raises(ValueError, match="8x12"):
        read_plate_grid(path)


def test_read_grid_non_numeric_cell_raises(tmp_path):
    path = write_grid_csv(tmp_path / "plate.csv", np.full((8, 12), 0.5))
    text = path.read_text().replace("0.5000", "OVER", 1)
    path.write_text(text)
    with pytest.raises(ValueError, match="non-numeric"):
        read_plate_grid(path)


def test_read_identifier_table_normalises_columns(tmp_path):
    path = write_identifier_csv(tmp_path / "ids.csv", {"P1": {1: 5.0, 2: 2.5}})

    frame = read_identifier_table(path, COLUMNS, 96)

    assert len(frame) == 96
    assert frame["position"].dtype.kind == "i"
    assert frame.loc[frame["position"] == 1, "std"].item() == 1
    assert frame.loc[frame["position"] == 3, "std"].item() == 0
    assert frame.loc[frame["position"] == 2, "std_conc_NH4"].item() == pytest.approx(2.5)
    assert np.isnan(frame.loc[frame["position"] == 3, "std_conc_NH4"].item())
    assert set(frame["ammonium_id"]) == {"P1"}


def test_read_identifier_table_missing_column(tmp_path):
    path = tmp_path / "ids.csv"
    path.write_text("position,std\n1,0\n")
    with pytest.raises(ValueError, match="ammonium_id"):
        read_identifier_table(path, COLUMNS)


def test_read_identifier_table_duplicated_positions(tmp_path):
    path = tmp_path / "ids.csv"
    path.write_text("position,std,std_conc_NH4,ammonium_id\n1,0,,P1\n1,1,5,P1\n")
    with pytest.raises(ValueError, match="duplicated"):
        read_identifier_table(path, COLUMNS)


def test_read_identifier_table_position_out_of_range(tmp_path):
    path = tmp_path / "ids.csv"
    path.write_text("position,std,std_conc_NH4,ammonium_id\n97,0,,P1\n")
    with pytest.raises(ValueError, match="outside"):
        read_identifier_table(path, COLUMNS, 96)


def test_list_plate_files_missing_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        list_plate_files(tmp_path / "absent")


def test_list_plate_files_sorted_and_filtered(tmp_path):
    for name in ("b.csv", "a.csv", "notes.txt", ".hidden.csv"):
        (tmp_path / name).write_text("x")
    assert [p.name for p in list_plate_files(tmp_path)] == ["a.csv", "b.csv"]


def test_load_measurements_tags_date_and_plate(tmp_path):
    path = write_grid_csv(tmp_path / "2021-06-14_NH4-01.csv", ramp_grid())

    (measurement,) = load_measurements([path], DEFAULT_PARAMS)

    assert measurement.date == date(2021, 6, 14)
    assert measurement.plate_id == "NH4-01"
    assert measurement.meta["source_hash"]
    assert measurement.grid.shape == (8, 12)


def test_load_measurements_rejects_bad_filename(tmp_path):
    path = write_grid_csv(tmp_path / "june_plate.csv", ramp_grid())
    with pytest.raises(FilenameFormatError):
        load_measurements([path], DEFAULT_PARAMS)


def test_read_grid_with_unlabelled_column_header(tmp_path):
    grid = ramp_grid()
    path = write_grid_csv(tmp_path / "plate.csv", grid)
    lines = path.read_text().splitlines()
    lines[0] = ",".join(str(col) for col in range(1, 13))
    path.write_text("\n".join(lines) + "\n")

    values, labels = read_plate_grid(path)

    assert np.allclose(values, grid)
    assert labels[0] == "A"


def test_read_grid_ragged_rows_name_the_file(tmp_path):
    path = write_grid_csv(tmp_path / "ragged.csv", ramp_grid())
    lines = path.read_text().splitlines()
    lines[3] += ",0.1,0.2"
    path.write_text("\n".join(lines) + "\n")

    with pytest.raises(ValueError, match="ragged.csv"):
        read_plate_grid(path)


def test_read_identifier_table_keeps_plate_ids_as_text(tmp_path):
    path = write_identifier_csv(tmp_path / "ids.csv", {"01": {1: 5.0}, "007": {}}, positions=[1, 2])

    frame = read_identifier_table(path, COLUMNS, 96)

    assert sorted(set(frame["ammonium_id"])) == ["007", "01"]


def test_read_identifier_table_numeric_plate_ids_with_blank(tmp_path):
    path = tmp_path / "ids.csv"
    path.write_text("position,std,std_conc_NH4,ammonium_id\n1,1,5,1\n2,0,,1\n3,0,,\n")

    frame = read_identifier_table(path, COLUMNS, 96)

    assert frame["ammonium_id"].tolist() == ["1", "1", ""]
