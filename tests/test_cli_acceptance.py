from __future__ import annotations

import io
import json
import os
import sys
import tempfile
import unittest
import xml.etree.ElementTree as ET
from pathlib import Path
from unittest import mock

TESTS_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = TESTS_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from processgraph import cli

BPMN = "{http://www.omg.org/spec/BPMN/20100524/MODEL}"

SNAPSHOT = json.dumps(
    {
        "version": 1,
        "processId": "Review_Process",
        "processName": "Review",
        "nodes": [
            {"id": "1", "type": "start", "name": "Start", "position": {"x": -4, "y": 0, "z": 0}},
            {"id": "2", "type": "userTask", "name": "Review", "position": {"x": 0, "y": 0, "z": 0}},
            {"id": "3", "type": "terminal", "name": "Done", "position": {"x": 4, "y": 0, "z": 0}},
        ],
        "connections": [
            {"id": "Flow_1_1_2", "sourceId": "1", "targetId": "2"},
            {"id": "Flow_2_2_3", "sourceId": "2", "targetId": "3"},
        ],
    }
)


class _StdoutCapture:
    def __init__(self) -> None:
        self._text = io.StringIO()
        self.buffer = io.BytesIO()

    def write(self, value: str) -> int:
        return self._text.write(value)

    def flush(self) -> None:
        pass

    def get_text(self) -> str:
        return self._text.getvalue()


class CLIAcceptanceTests(unittest.TestCase):
    @staticmethod
    def _png_size(blob: bytes) -> tuple[int, int]:
        # PNG IHDR width/height are big-endian u32 at fixed offsets.
        if len(blob) < 24 or blob[:8] != b"\x89PNG\r\n\x1a\n":
            raise AssertionError("not a PNG payload")
        width = int.from_bytes(blob[16:20], "big")
        height = int.from_bytes(blob[20:24], "big")
        return width, height

    def run_cli(self, argv: list[str], stdin_text: str = "") -> tuple[int, str, bytes, str]:
        stdout = _StdoutCapture()
        stderr = io.StringIO()
        stdin = io.StringIO(stdin_text)
        with mock.patch("sys.stdout", stdout), mock.patch("sys.stderr", stderr), mock.patch("sys.stdin", stdin):
            code = cli.main(argv)
        return code, stdout.get_text(), stdout.buffer.getvalue(), stderr.getvalue()

    def test_requires_subcommand(self) -> None:
        code, _out, _png, err = self.run_cli([])
        self.assertEqual(code, 2)
        self.assertIn("E_ARGS", err)
        self.assertIn("subcommand", err)

    def test_convert_snapshot_file_writes_bpmn(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "review.json"
            src.write_text(SNAPSHOT)
            code, out, _png, err = self.run_cli(["convert", str(src)])
            self.assertEqual(code, 0, err)
            target = Path(td) / "review.bpmn"
            self.assertTrue(target.exists())
            self.assertIn("Wrote", out)
            root = ET.fromstring(target.read_text())
            process = root.find(f"{BPMN}process")
            self.assertEqual(process.get("id"), "Review_Process")
            self.assertEqual(len(process.findall(f"{BPMN}sequenceFlow")), 2)
            self.assertEqual(process.find(f"{BPMN}endEvent").get("name"), "Done")

    def test_convert_round_trip_through_stdout(self) -> None:
        code, xml_text, _png, err = self.run_cli(["convert", "--text", SNAPSHOT])
        self.assertEqual(code, 0, err)
        self.assertIn("bpmn:definitions", xml_text)

        code, json_text, _png, err = self.run_cli(["convert", "--stdout"], stdin_text=xml_text)
        self.assertEqual(code, 0, err)
        payload = json.loads(json_text)
        self.assertEqual(payload["processName"], "Review")
        self.assertEqual([n["id"] for n in payload["nodes"]], ["1", "2", "3"])
        self.assertEqual(
            [(c["sourceId"], c["targetId"]) for c in payload["connections"]],
            [("1", "2"), ("2", "3")],
        )
        self.assertAlmostEqual(payload["nodes"][0]["position"]["x"], -4.0)

    def test_convert_explicit_format_and_output(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "review.json"
            src.write_text(SNAPSHOT)
            code, _out, _png, err = self.run_cli(["convert", str(src), "--to", "json"])
            self.assertEqual(code, 2)
            self.assertIn("E_ARGS", err)

            out_path = Path(td) / "copy.json"
            code, _out, _png, err = self.run_cli(["convert", str(src), "--to", "json", "-o", str(out_path)])
            self.assertEqual(code, 0, err)
            self.assertEqual(len(json.loads(out_path.read_text())["nodes"]), 3)

    def test_stdout_and_output_are_exclusive(self) -> None:
        code, _out, _png, err = self.run_cli(["convert", "--text", SNAPSHOT, "--stdout", "-o", "x.bpmn"])
        self.assertEqual(code, 2)
        self.assertIn("mutually exclusive", err)

    def test_route_prints_geometry(self) -> None:
        code, out, _png, err = self.run_cli(["route", "--text", SNAPSHOT])
        self.assertEqual(code, 0, err)
        payload = json.loads(out)
        self.assertTrue(payload["ok"])
        self.assertEqual(payload["processId"], "Review_Process")
        first = payload["connections"][0]
        self.assertEqual(first["id"], "Flow_1_1_2")
        start, end = first["points"][0], first["points"][-1]
        for actual, expected in zip(start, [-3.25, -1.4, 0.0]):
            self.assertAlmostEqual(actual, expected)
        for actual, expected in zip(end, [-0.75, -1.4, 0.0]):
            self.assertAlmostEqual(actual, expected)
        self.assertAlmostEqual(first["length"], 2.5)
        self.assertEqual(first["arrow"]["position"], end)
        self.assertAlmostEqual(first["arrow"]["orientation"][3], 0.5 ** 0.5)
        self.assertAlmostEqual(first["tubeRadius"], 0.3)

    def test_route_single_connection_and_missing_id(self) -> None:
        code, out, _png, err = self.run_cli(["route", "--text", SNAPSHOT, "--connection", "Flow_2_2_3"])
        self.assertEqual(code, 0, err)
        self.assertEqual([c["id"] for c in json.loads(out)["connections"]], ["Flow_2_2_3"])

        code, _out, _png, err = self.run_cli(["route", "--text", SNAPSHOT, "--connection", "Flow_9"])
        self.assertEqual(code, 4)
        self.assertIn("E_NOT_FOUND", err)

        code, _out, _png, err = self.run_cli(["route", "--text", SNAPSHOT, "--divisions", "0"])
        self.assertEqual(code, 2)
        self.assertIn("E_ARGS", err)

    def test_render_writes_png_file(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "review.json"
            src.write_text(SNAPSHOT)
            code, out, _png, err = self.run_cli(["render", str(src)])
            self.assertEqual(code, 0, err)
            target = Path(td) / "review.png"
            self.assertTrue(target.exists())
            self.assertIn("Wrote", out)
            width, height = self._png_size(target.read_bytes())
            self.assertGreater(width, height)

    def test_render_stdout_and_scale(self) -> None:
        code, _out, png1, err = self.run_cli(["render", "--text", SNAPSHOT, "--stdout", "--scale", "10", "--padding", "0"])
        self.assertEqual(code, 0, err)
        w1, h1 = self._png_size(png1)
        self.assertAlmostEqual(w1, 95, delta=1)
        self.assertAlmostEqual(h1, 15, delta=1)

        code, _out, png2, err = self.run_cli(["render", "--text", SNAPSHOT, "--stdout", "--scale", "20", "--padding", "0"])
        self.assertEqual(code, 0, err)
        w2, h2 = self._png_size(png2)
        self.assertAlmostEqual(w2, 2 * w1, delta=2)
        self.assertAlmostEqual(h2, 2 * h1, delta=2)

    def test_render_rejects_bad_scale(self) -> None:
        code, _out, _png, err = self.run_cli(["render", "--text", SNAPSHOT, "--scale", "0"])
        self.assertEqual(code, 2)
        self.assertIn("--scale must be > 0", err)

    def test_render_nested_diagram_from_bpmn(self) -> None:
        xml_text = f"""<definitions xmlns="{BPMN[1:-1]}">
  <process id="P">
    <subProcess id="S"><userTask id="A" /><userTask id="B" /><sequenceFlow id="F" sourceRef="A" targetRef="B" /></subProcess>
  </process>
</definitions>"""
        code, _out, png, err = self.run_cli(["render", "--stdout"], stdin_text=xml_text)
        self.assertEqual(code, 0, err)
        self.assertGreater(self._png_size(png)[0], 0)

    def test_input_errors(self) -> None:
        code, _out, _png, err = self.run_cli(["convert", "/definitely/missing.json"])
        self.assertEqual(code, 2)
        self.assertIn("E_IO_READ", err)

        code, _out, _png, err = self.run_cli(["convert", "x.json", "--text", SNAPSHOT])
        self.assertEqual(code, 2)
        self.assertIn("--text cannot be combined", err)

        code, _out, _png, err = self.run_cli(["convert"], stdin_text="   ")
        self.assertEqual(code, 2)
        self.assertIn("stdin was empty", err)

    def test_parse_and_codec_errors(self) -> None:
        code, _out, _png, err = self.run_cli(["convert", "--text", "{not json"])
        self.assertEqual(code, 2)
        self.assertIn("error[E_PARSE]", err)

        code, _out, _png, err = self.run_cli(["--error-format", "json", "convert", "--text", "{\n  not json"])
        self.assertEqual(code, 2)
        payload = json.loads(err.strip().splitlines()[-1])
        self.assertEqual(payload["code"], "E_PARSE")
        self.assertEqual((payload["line"], payload["column"]), (2, 3))

        code, _out, _png, err = self.run_cli(["--error-format", "json", "convert", "--text", '{"nodes": []}'])
        self.assertEqual(code, 3)
        payload = json.loads(err.strip().splitlines()[-1])
        self.assertEqual(payload["code"], "E_CODEC")
        self.assertEqual(payload["message"], "Invalid file: missing connections.")

        code, _out, _png, err = self.run_cli(["route", "--text", f'<definitions xmlns="{BPMN[1:-1]}"/>'])
        self.assertEqual(code, 3)
        self.assertIn("E_CODEC", err)

    def test_write_failure(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            src = Path(td) / "review.json"
            src.write_text(SNAPSHOT)
            code, _out, _png, err = self.run_cli(["render", str(src), "-o", str(Path(td) / "missing" / "out.png")])
            self.assertEqual(code, 4)
            self.assertIn("E_IO_WRITE", err)

    def test_error_format_json_shape(self) -> None:
        code, _out, _png, err = self.run_cli(["--error-format", "json"])
        self.assertEqual(code, 2)
        payload = json.loads(err)
        self.assertEqual(payload["code"], "E_ARGS")
        self.assertFalse(payload["ok"])

    def test_unknown_subcommand_is_usage_error(self) -> None:
        code, _out, _png, err = self.run_cli(["explode"])
        self.assertEqual(code, 2)
        self.assertIn("E_ARGS", err)

    def test_debug_traceback_gate(self) -> None:
        with mock.patch("processgraph.cli.export_interchange_xml", side_effect=RuntimeError("boom")):
            code, _out, _png, err = self.run_cli(["convert", "--text", SNAPSHOT])
            self.assertEqual(code, 1)
            self.assertIn("E_INTERNAL", err)
            self.assertNotIn("Traceback", err)

        with mock.patch("processgraph.cli.export_interchange_xml", side_effect=RuntimeError("boom")):
            code, _out, _png, err = self.run_cli(["--debug", "convert", "--text", SNAPSHOT])
            self.assertEqual(code, 1)
            self.assertIn("Traceback", err)

        with mock.patch("processgraph.cli.export_interchange_xml", side_effect=RuntimeError("boom")), mock.patch.dict(
            os.environ, {"PROCESSGRAPH_DEBUG": "1"}
        ):
            code, _out, _png, err = self.run_cli(["convert", "--text", SNAPSHOT])
            self.assertEqual(code, 1)
            self.assertIn("Traceback", err)


if __name__ == "__main__":
    unittest.main()
