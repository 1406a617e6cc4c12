import pandas as pd
import pytest
import yaml

from plate_app import main as cli
from plate_app.tests.plate_test_utils import make_batch, ramp_grid

STANDARDS = {1: 0.1, 2: 0.2, 3: 0.3, 4: 0.4}


def test_cli_writes_results_table(tmp_path, capsys):
    raw_dir, id_dir = make_batch(
        tmp_path,
        plates={"2021-06-14_P1.csv": ramp_grid()},
        identifiers={"2021-06-14_ids.csv": {"P1": STANDARDS}},
    )
    output = tmp_path / "results.csv"

    code = cli.main([str(raw_dir), str(id_dir), "--output", str(output), "--log-level", "WARNING"])

    assert code == 0
    frame = pd.read_csv(output)
    assert len(frame) == 96
    assert frame.loc[frame["position"] == 3, "predicted_concentration"].item() == pytest.approx(0.3)
    assert "Processed 1 plate(s)" in capsys.readouterr().out


def test_cli_strict_flags_failed_plates(tmp_path):
    raw_dir, id_dir = make_batch(
        tmp_path,
        plates={"2021-06-14_P1.csv": ramp_grid(), "2021-06-15_P2.csv": ramp_grid()},
        identifiers={"2021-06-14_ids.csv": {"P1": STANDARDS}},
    )

    assert cli.main([str(raw_dir), str(id_dir)]) == 0
    assert cli.main([str(raw_dir), str(id_dir), "--strict"]) == 1


def test_cli_recipe_file(tmp_path):
    raw_dir, id_dir = make_batch(
        tmp_path,
        plates={"2021-06-14_P1.csv": ramp_grid()},
        identifiers={"2021-06-14_ids.csv": {"P1": STANDARDS}},
    )
    recipe_path = tmp_path / "recipe.yaml"
    recipe_path.write_text(yaml.safe_dump({"calibration": {"enabled": False}}), encoding="utf-8")
    output = tmp_path / "results.csv"

    code = cli.main([str(raw_dir), str(id_dir), "--recipe", str(recipe_path), "--output", str(output), "--strict"])

    assert code == 1
    frame = pd.read_csv(output)
    assert (frame["calibration_status"] == "no_model").all()


def test_cli_missing_directory_exits(tmp_path):
    with pytest.raises(SystemExit, match="plate-app"):
        cli.main([str(tmp_path / "absent"), str(tmp_path)])
