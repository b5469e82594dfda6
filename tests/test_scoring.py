import math

import pytest

from cleanshare.models import DetectionKind
from cleanshare.pipeline.scoring import (
    CHECKSUMMED_KINDS,
    HEURISTIC_KINDS,
    confidence_bucket,
    score,
)


def test_pan_at_full_ocr_confidence():
    assert score(DetectionKind.PAN, "4532015112830366", 1.0) == pytest.approx(0.98)


def test_ocr_confidence_scales_score():
    high = score(DetectionKind.EMAIL, "alice@example.com", 0.95)
    low = score(DetectionKind.EMAIL, "alice@example.com", 0.2)
    assert high == pytest.approx(0.95 * 0.98)
    assert low < high


@pytest.mark.parametrize("ocr", [0.0, 0.3, 0.7, 1.0])
def test_checksummed_kinds_outscore_heuristics(ocr):
    worst_checksum = min(score(k, "x", ocr) for k in CHECKSUMMED_KINDS)
    best_heuristic = max(
        max(score(k, "Alice", ocr, adjustment=1.0), score(k, "Alice", ocr)) for k in HEURISTIC_KINDS
    )
    assert worst_checksum >= best_heuristic


@pytest.mark.parametrize("ocr", [-3.0, 7.0, float("nan"), None])
def test_out_of_range_inputs_are_clamped(ocr):
    value = score(DetectionKind.PHONE, "555 123 4567", ocr)
    assert 0.0 <= value <= 1.0
    assert not math.isnan(value)


def test_custom_certainty_replaces_table():
    assert score(DetectionKind.OTHER, "EMP-1", 1.0, certainty=0.9, adjustment=0.0) == pytest.approx(0.9)


def test_name_adjustments():
    given = score(DetectionKind.NAME, "Alice", 1.0)
    common = score(DetectionKind.NAME, "Invoice", 1.0)
    plain = score(DetectionKind.NAME, "Kowalski", 1.0)
    assert given == pytest.approx(0.7)
    assert plain == pytest.approx(0.6)
    assert common == pytest.approx(0.35)


def test_jwt_header_boost():
    assert score(DetectionKind.JWT, "eyJabc.def.ghi", 1.0) == pytest.approx(0.97)
    assert score(DetectionKind.JWT, "abc.def.ghi", 1.0) == pytest.approx(0.92)


@pytest.mark.parametrize(
    "value,bucket", [(0.0, "low"), (0.49, "low"), (0.5, "medium"), (0.79, "medium"), (0.8, "high"), (1.0, "high")]
)
def test_confidence_bucket_edges(value, bucket):
    assert confidence_bucket(value) == bucket
