from __future__ import annotations

import csv
import json
import os
import tempfile
import unittest

from typer.testing import CliRunner


import gp_cli


PROFILE_CSV = """time_s,depth_mm,cylinder,pressure_mbar
0,0,0,200000
30,10000,0,200000
60,20000,0,
90,20000,0,
120,20000,0,
150,10000,0,180000
180,5000,0,179000
"""


class TestInterpolateCommand(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.tmpdir = self._tmp.name
        self.profile = os.path.join(self.tmpdir, "dive.csv")
        with open(self.profile, "w", newline="") as fh:
            fh.write(PROFILE_CSV)
        self.runner = CliRunner()
        self.app = gp_cli._build_typer_app()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_writes_filled_profile_and_sidecar(self) -> None:
        out = os.path.join(self.tmpdir, "filled.csv")
        result = self.runner.invoke(self.app, ["interpolate", self.profile, "-o", out, "--json"])
        self.assertEqual(result.exit_code, 0, result.output)
        with open(out, newline="") as fh:
            rows = list(csv.DictReader(fh))
        filled = [int(r["interpolated_mbar"]) for r in rows[2:5]]
        self.assertEqual(filled, sorted(filled, reverse=True))
        self.assertTrue(all(180000 <= v <= 200000 for v in filled))
        with open(os.path.join(self.tmpdir, "filled.json"), encoding="utf-8") as fh:
            report = json.load(fh)
        self.assertEqual(report["meta"]["interpolated"]["main"], 3)
        self.assertEqual(report["cylinders"][0]["label"], "cyl0")

    def test_default_output_name(self) -> None:
        result = self.runner.invoke(self.app, ["interpolate", self.profile])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertTrue(os.path.exists(os.path.join(self.tmpdir, "dive_filled.csv")))

    def test_bad_profile_exits_2(self) -> None:
        bad = os.path.join(self.tmpdir, "bad.csv")
        with open(bad, "w") as fh:
            fh.write("time_s,depth_mm\n0,0\n")
        result = self.runner.invoke(self.app, ["interpolate", bad])
        self.assertEqual(result.exit_code, 2)

    def test_first_row_without_reading_is_filled(self) -> None:
        profile = os.path.join(self.tmpdir, "late_sensor.csv")
        with open(profile, "w", newline="") as fh:
            fh.write("time_s,depth_mm,cylinder,pressure_mbar\n0,5000,0,\n30,20000,0,200000\n60,20000,0,\n90,20000,0,190000\n")
        out = os.path.join(self.tmpdir, "late_sensor_out.csv")
        result = self.runner.invoke(self.app, ["interpolate", profile, "-o", out])
        self.assertEqual(result.exit_code, 0, result.output)
        with open(out, newline="") as fh:
            rows = list(csv.DictReader(fh))
        self.assertEqual(rows[0]["interpolated_mbar"], "200000")
        self.assertNotEqual(rows[2]["interpolated_mbar"], "")

    def test_infinite_cell_exits_2(self) -> None:
        bad = os.path.join(self.tmpdir, "inf.csv")
        with open(bad, "w") as fh:
            fh.write("time_s,depth_mm,cylinder,pressure_mbar\n0,inf,0,200000\n")
        result = self.runner.invoke(self.app, ["interpolate", bad])
        self.assertEqual(result.exit_code, 2)

    def test_missing_file_exits_2(self) -> None:
        result = self.runner.invoke(self.app, ["interpolate", os.path.join(self.tmpdir, "nope.csv")])
        self.assertEqual(result.exit_code, 2)


class TestSegmentsCommand(unittest.TestCase):
    def test_prints_reconciled_chain(self) -> None:
        runner = CliRunner()
        app = gp_cli._build_typer_app()
        with tempfile.TemporaryDirectory() as tmpdir:
            profile = os.path.join(tmpdir, "dive.csv")
            with open(profile, "w", newline="") as fh:
                fh.write(PROFILE_CSV)
            result = runner.invoke(app, ["segments", profile])
        self.assertEqual(result.exit_code, 0, result.output)
        lines = [line for line in result.output.splitlines() if line.startswith("cyl0:")]
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[0].startswith("cyl0: start 200000 end 180000 t_start 0 t_end 150"))
        self.assertTrue(lines[1].startswith("cyl0: start 180000 end 179000 t_start 150 t_end 180"))

    def test_surface_pressure_changes_pressure_time(self) -> None:
        runner = CliRunner()
        app = gp_cli._build_typer_app()
        with tempfile.TemporaryDirectory() as tmpdir:
            profile = os.path.join(tmpdir, "dive.csv")
            with open(profile, "w", newline="") as fh:
                fh.write(PROFILE_CSV)
            sea_level = runner.invoke(app, ["segments", profile])
            altitude = runner.invoke(app, ["segments", profile, "--surface-pressure", "700"])
        self.assertEqual(altitude.exit_code, 0, altitude.output)
        sea_lines = [line for line in sea_level.output.splitlines() if line.startswith("cyl0:")]
        alt_lines = [line for line in altitude.output.splitlines() if line.startswith("cyl0:")]
        self.assertEqual(len(alt_lines), 2)
        self.assertNotEqual(sea_lines[0].split(" pt ")[1], alt_lines[0].split(" pt ")[1])


if __name__ == "__main__":
    unittest.main()
