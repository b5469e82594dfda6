"""Audit records for CleanShare runs.

Produces an audit JSON alongside the redacted output including input/output
hashes, version, a preset snapshot, the redaction report summary and an
optional HMAC signature when ``CLEANSHARE_HMAC_KEY`` is present.
"""

from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Optional, Union
from pathlib import Path
import getpass
import hashlib
import hmac
import socket
import time

import orjson
from pydantic import BaseModel

from .models import AnalyzeResult, ApplyResult
from .presets import Preset
from .settings import get_settings

HMAC_ALG = "HMAC-SHA256"


def _sha256_file(path: Union[str, Path]) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    return str(value)


def _snapshot(config: Any) -> Optional[Dict[str, Any]]:
    if config is None:
        return None
    return orjson.loads(orjson.dumps(asdict(config), default=_jsonable))


def _user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def audit_path_for(output_path: Union[str, Path]) -> Path:
    out = Path(output_path)
    return out.with_name(out.name + ".audit.json")


def _sign(record: Dict[str, Any], key: str) -> str:
    return hmac.new(key.encode("utf-8"), orjson.dumps(record), hashlib.sha256).hexdigest()


def write_audit(
    input_name: str,
    input_data: bytes,
    output_path: Union[str, Path],
    result: ApplyResult,
    preset: Preset,
    *,
    config: Optional[Any] = None,
    analysis: Optional[AnalyzeResult] = None,
    errors: Optional[List[str]] = None,
) -> Path:
    """Write an audit JSON next to ``output_path`` and return its path."""
    from cleanshare import __version__ as version

    out = Path(output_path)
    audit_path = audit_path_for(out)
    report = result.report

    record: Dict[str, Any] = {
        "version": version,
        "timestamp": int(time.time()),
        "user": _user(),
        "host": socket.gethostname(),
        "input": {
            "name": input_name,
            "size": len(input_data),
            "sha256": hashlib.sha256(input_data).hexdigest(),
        },
        "output": {
            "path": str(out),
            "mediaType": result.media_type,
            "sha256": _sha256_file(out) if out.exists() else None,
        },
        "preset": preset.to_dict(),
        "config": _snapshot(config),
        "result": {
            "pages": analysis.pages if analysis is not None else None,
            "totalDetections": report.total_detections,
            "redactedCount": report.redacted_count,
            "byKind": report.by_kind,
            "byStyle": report.by_style,
            "reversible": [o.detection_id for o in report.outcomes if o.reversible],
            "metadataStripped": report.metadata_stripped,
        },
        "errors": errors or [],
    }

    # Optional HMAC signature for tamper detection
    key = get_settings().hmac_key
    if key:
        record["hmac"] = {
            "alg": HMAC_ALG,
            "key_hint": "env:CLEANSHARE_HMAC_KEY",
            "value": _sign(record, key),
        }

    audit_path.write_bytes(orjson.dumps(record, option=orjson.OPT_INDENT_2))
    return audit_path


def verify_audit(path: Union[str, Path], key: str) -> bool:
    """Check the HMAC of an audit file written by :func:`write_audit`."""
    record = orjson.loads(Path(path).read_bytes())
    sig = record.pop("hmac", None)
    if not sig:
        return False
    return hmac.compare_digest(sig.get("value", ""), _sign(record, key))


__all__ = ["write_audit", "verify_audit", "audit_path_for"]
