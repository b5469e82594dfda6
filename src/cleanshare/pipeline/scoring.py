"""Confidence scoring.

A score blends the kind's certainty (how strongly a match implies the kind)
with the upstream OCR confidence. The only hard contract is ordering:
checksummed kinds score at or above heuristic kinds for the same OCR
confidence, which holds because every heuristic certainty plus its largest
adjustment stays below ``CHECKSUM_FLOOR``.
"""

from __future__ import annotations

import math
from typing import Optional

from cleanshare import validators as v
from cleanshare.models import DetectionKind

CHECKSUMMED_KINDS = frozenset({DetectionKind.PAN, DetectionKind.IBAN, DetectionKind.SSN})
HEURISTIC_KINDS = frozenset({DetectionKind.NAME, DetectionKind.ADDRESS})

KIND_CERTAINTY = {
    DetectionKind.PAN: 0.98,
    DetectionKind.IBAN: 0.98,
    DetectionKind.SSN: 0.95,
    DetectionKind.API_KEY: 0.95,
    DetectionKind.EMAIL: 0.95,
    DetectionKind.JWT: 0.92,
    DetectionKind.BARCODE: 0.95,
    DetectionKind.FACE: 0.9,
    DetectionKind.PHONE: 0.75,
    DetectionKind.PASSPORT: 0.7,
    DetectionKind.NAME: 0.6,
    DetectionKind.ADDRESS: 0.55,
    DetectionKind.OTHER: 0.5,
}
CHECKSUM_FLOOR = 0.95
MAX_HEURISTIC_BOOST = 0.1

# Portion of the score kept even at zero OCR confidence.
OCR_FLOOR = 0.6

COMMON_WORD_PENALTY = -0.25
JWT_HEADER_BOOST = 0.05
FORMATTED_PHONE_BOOST = 0.05


def _unit(value: Optional[float], default: float = 0.0) -> float:
    try:
        f = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if math.isnan(f):
        return default
    return min(1.0, max(0.0, f))


def token_adjustment(kind: DetectionKind, token: str) -> float:
    """Small evidence-based tweak on top of the kind certainty."""
    raw = (token or "").strip()
    if not raw:
        return 0.0
    if kind == DetectionKind.NAME:
        cue = v.name_cue(raw)
        return cue.strength if cue else COMMON_WORD_PENALTY
    if kind == DetectionKind.ADDRESS:
        return 0.05 if v.ZIP_RE.match(raw) and "-" in raw else 0.0
    if kind == DetectionKind.JWT:
        return JWT_HEADER_BOOST if raw.startswith("eyJ") else 0.0
    if kind == DetectionKind.PHONE:
        return FORMATTED_PHONE_BOOST if raw.startswith("+") or "(" in raw else 0.0
    return 0.0


def score(
    kind: DetectionKind,
    token: str,
    ocr_confidence: Optional[float],
    certainty: Optional[float] = None,
    adjustment: Optional[float] = None,
) -> float:
    """Return a confidence in [0, 1] for ``token`` classified as ``kind``.

    ``certainty`` replaces the table value (custom patterns carry their own);
    ``adjustment`` replaces the token-derived tweak when the classifier already
    computed it. Out-of-range or NaN inputs are clamped.
    """
    base = KIND_CERTAINTY.get(kind, KIND_CERTAINTY[DetectionKind.OTHER])
    if certainty is not None:
        base = _unit(certainty, base)
    tweak = token_adjustment(kind, token) if adjustment is None else float(adjustment)
    if kind in HEURISTIC_KINDS:
        tweak = min(tweak, MAX_HEURISTIC_BOOST)
    base = _unit(base + tweak)
    ocr = _unit(ocr_confidence)
    return _unit(base * (OCR_FLOOR + (1.0 - OCR_FLOOR) * ocr))


def confidence_bucket(confidence: float) -> str:
    if confidence < 0.5:
        return "low"
    if confidence < 0.8:
        return "medium"
    return "high"


__all__ = [
    "CHECKSUMMED_KINDS",
    "HEURISTIC_KINDS",
    "KIND_CERTAINTY",
    "OCR_FLOOR",
    "score",
    "token_adjustment",
    "confidence_bucket",
]
