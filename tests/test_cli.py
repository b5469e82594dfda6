import orjson
import pytest
from typer.testing import CliRunner

import cleanshare.cli as cli
from cleanshare.audit import audit_path_for
from cleanshare.models import DetectionKind, OcrBBox, RegionHint

from conftest import FakeOcr, line_words, png_bytes

runner = CliRunner()


@pytest.fixture
def fake_ocr(monkeypatch):
    engine = FakeOcr([line_words(["alice@example.com", "4532", "0151", "1283", "0366"], char_width=6)])
    monkeypatch.setattr(cli, "_ocr_engine", lambda cfg: engine)
    return engine


def _png(tmp_path, name="shot.png"):
    path = tmp_path / name
    path.write_bytes(png_bytes(size=(600, 120)))
    return path


def test_presets_list():
    result = runner.invoke(cli.app, ["presets", "list"])
    assert result.exit_code == 0, result.output
    for preset_id in ("all", "developer", "work"):
        assert preset_id in result.output


def test_presets_import_then_export(tmp_path):
    src = tmp_path / "team.yaml"
    src.write_text("presets:\n  - id: team\n    name: Team\n    enabledKinds: [EMAIL]\n")
    result = runner.invoke(cli.app, ["presets", "import", str(src)])
    assert result.exit_code == 0, result.output
    assert "team" in result.output

    out = tmp_path / "export.json"
    result = runner.invoke(cli.app, ["presets", "export", "-o", str(out), "--id", "team"])
    assert result.exit_code == 0, result.output
    assert [p["id"] for p in orjson.loads(out.read_bytes())["presets"]] == ["team"]


def test_presets_import_reports_bad_document(tmp_path):
    src = tmp_path / "bad.json"
    src.write_text('{"id": "x", "confidenceThreshold": "high"}')
    result = runner.invoke(cli.app, ["presets", "import", str(src)])
    assert result.exit_code == 1
    assert "confidenceThreshold" in result.output


def test_analyze_writes_json(tmp_path, fake_ocr):
    src = _png(tmp_path)
    out = tmp_path / "analysis.json"
    result = runner.invoke(cli.app, ["analyze", "-i", str(src), "-p", "developer", "--json", str(out)])
    assert result.exit_code == 0, result.output
    payload = orjson.loads(out.read_bytes())
    assert [d["kind"] for d in payload["detections"]] == ["EMAIL", "PAN"]
    assert payload["detections"][0]["id"] == "det-00001"


def test_redact_writes_output_and_audit(tmp_path, fake_ocr):
    src = _png(tmp_path)
    out = tmp_path / "clean.png"
    result = runner.invoke(cli.app, ["redact", "-i", str(src), "-o", str(out), "-p", "all"])
    assert result.exit_code == 0, result.output
    assert "2/2" in result.output
    assert out.exists()
    audit = orjson.loads(audit_path_for(out).read_bytes())
    assert audit["result"]["byStyle"] == {"BOX": 1, "MASK_LAST4": 1}


def test_redact_forced_style_reports_reversible(tmp_path, fake_ocr):
    src = _png(tmp_path)
    out = tmp_path / "clean.png"
    result = runner.invoke(
        cli.app, ["redact", "-i", str(src), "-o", str(out), "-p", "developer", "--style", "BLUR"]
    )
    assert result.exit_code == 0, result.output
    assert "Reversible" in result.output


def test_unknown_preset_fails(tmp_path, fake_ocr):
    src = _png(tmp_path)
    result = runner.invoke(cli.app, ["redact", "-i", str(src), "-o", str(tmp_path / "o.png"), "-p", "nope"])
    assert result.exit_code == 1
    assert "Unknown preset" in result.output


def test_batch_and_history_export(tmp_path, fake_ocr):
    in_dir = tmp_path / "in"
    in_dir.mkdir()
    _png(in_dir, "a.png")
    _png(in_dir, "b.png")
    (in_dir / "notes.txt").write_text("skip me")
    out_dir = tmp_path / "out"

    result = runner.invoke(
        cli.app,
        ["batch", "--input-dir", str(in_dir), "--output-dir", str(out_dir), "-p", "developer", "--workers", "2"],
    )
    assert result.exit_code == 0, result.output
    assert "Completed 2/2" in result.output
    assert (out_dir / "a.redacted.png").exists()

    report = tmp_path / "history.csv"
    result = runner.invoke(cli.app, ["history", "export", "-o", str(report), "--format", "csv"])
    assert result.exit_code == 0, result.output
    lines = report.read_text().splitlines()
    assert lines[0].startswith('"Session ID"')
    assert len(lines) == 3


def test_batch_without_inputs(tmp_path):
    result = runner.invoke(cli.app, ["batch", "--input-dir", str(tmp_path / "*.png"), "--output-dir", str(tmp_path)])
    assert result.exit_code == 1


class _StaticQr:
    def detect(self, image, page):
        return [
            RegionHint(
                kind=DetectionKind.BARCODE,
                bbox=OcrBBox(x0=400, y0=10, x1=500, y1=110),
                reason="Detected QR code",
                page=page,
            )
        ]


@pytest.mark.parametrize("flag, kinds", [([], ["EMAIL", "PAN", "BARCODE"]), (["--no-regions"], ["EMAIL", "PAN"])])
def test_analyze_region_detectors_flag(tmp_path, fake_ocr, monkeypatch, flag, kinds):
    monkeypatch.setattr(cli, "default_region_detectors", lambda: [_StaticQr()])
    out = tmp_path / "analysis.json"
    result = runner.invoke(
        cli.app, ["analyze", "-i", str(_png(tmp_path)), "-p", "all", "--json", str(out), *flag]
    )
    assert result.exit_code == 0, result.output
    assert [d["kind"] for d in orjson.loads(out.read_bytes())["detections"]] == kinds
