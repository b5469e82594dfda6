import hashlib

import orjson

import cleanshare.settings as settings
from cleanshare.audit import audit_path_for, verify_audit, write_audit
from cleanshare.models import ApplyResult, RedactionReport
from cleanshare.pipeline.config import RunConfig
from cleanshare.presets import PresetStore


def _result(data=b"redacted"):
    return ApplyResult(
        data=data,
        media_type="image/png",
        report=RedactionReport.from_outcomes([], total_detections=2, metadata_stripped=True),
    )


def _write(tmp_path):
    out = tmp_path / "shot.redacted.png"
    out.write_bytes(b"redacted")
    return write_audit(
        "shot.png",
        b"original",
        out,
        _result(),
        PresetStore().require("work"),
        config=RunConfig(),
    )


def test_audit_record_contents(tmp_path):
    path = _write(tmp_path)
    assert path == audit_path_for(tmp_path / "shot.redacted.png")
    record = orjson.loads(path.read_bytes())
    assert record["input"] == {
        "name": "shot.png",
        "size": 8,
        "sha256": hashlib.sha256(b"original").hexdigest(),
    }
    assert record["output"]["sha256"] == hashlib.sha256(b"redacted").hexdigest()
    assert record["preset"]["id"] == "work"
    assert record["result"]["totalDetections"] == 2
    assert record["result"]["redactedCount"] == 0
    assert "hmac" not in record


def test_hmac_signature_round_trip(tmp_path, monkeypatch):
    monkeypatch.setenv("CLEANSHARE_HMAC_KEY", "k3y")
    settings.reset_settings_cache()
    path = _write(tmp_path)
    record = orjson.loads(path.read_bytes())
    assert record["hmac"]["alg"] == "HMAC-SHA256"
    assert verify_audit(path, "k3y")
    assert not verify_audit(path, "other")

    record["input"]["name"] = "tampered.png"
    path.write_bytes(orjson.dumps(record))
    assert not verify_audit(path, "k3y")


def test_unsigned_audit_does_not_verify(tmp_path):
    assert not verify_audit(_write(tmp_path), "k3y")


def test_audit_path_keeps_the_output_suffix(tmp_path):
    png = audit_path_for(tmp_path / "scan.redacted.png")
    pdf = audit_path_for(tmp_path / "scan.redacted.pdf")
    assert png.name == "scan.redacted.png.audit.json"
    assert png != pdf
