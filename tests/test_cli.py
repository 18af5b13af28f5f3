from __future__ import annotations

import json
from pathlib import Path

from typer.testing import CliRunner

from o2mon.cli import app

runner = CliRunner()


def test_calibration_compute_prints_coefficients() -> None:
    result = runner.invoke(app, ["calibration", "compute", "0", "5000", "23809.52", "--raw", "5000"])
    assert result.exit_code == 0, result.output
    assert "Slope: 0.004200" in result.output
    assert "Offset: 0.000000" in result.output
    assert "5000 -> 21.00%" in result.output


def test_calibration_compute_rejects_unordered_points() -> None:
    result = runner.invoke(app, ["calibration", "compute", "5000", "100", "200"])
    assert result.exit_code != 0


def test_plc_read_demo() -> None:
    result = runner.invoke(app, ["plc", "read", "--demo", "-n", "3"])
    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip().splitlines()[-1])
    assert payload["count"] == 3


def test_plc_write_demo() -> None:
    result = runner.invoke(app, ["plc", "write", "M00407", "1", "--demo"])
    assert result.exit_code == 0, result.output
    assert "Wrote 1 to M00407" in result.output


def test_export_demo(tmp_path: Path) -> None:
    out_dir = tmp_path / "out"
    result = runner.invoke(
        app,
        ["export", "--demo", "--duration", "0.3", "--out", str(out_dir), "--set", "snapshot.enabled=false"],
    )
    assert result.exit_code == 0, result.output
    assert (out_dir / "report.md").exists()
