import pytest

from cleanshare.errors import AnalysisError
from cleanshare.models import Box, CustomPattern, DetectionKind, OcrBBox, RegionHint
from cleanshare.pipeline.config import RunConfig
from cleanshare.pipeline.detection import Candidate, assemble, assemble_page, resolve_overlaps
from cleanshare.presets import Preset, PresetStore

from conftest import JWT, line_words, make_page


def _preset(preset_id):
    return PresetStore().require(preset_id)


def test_developer_preset_keeps_email_and_jwt_only():
    words = line_words(["Contact", "alice@example.com", "token", JWT, "Alice"])
    result = assemble([make_page(words, width=4000)], _preset("developer"))

    assert [d.kind for d in result.detections] == [DetectionKind.EMAIL, DetectionKind.JWT]
    assert [d.id for d in result.detections] == ["det-00001", "det-00002"]
    assert all(d.confidence >= 0.5 for d in result.detections)
    assert result.pages == 1
    assert result.ocr_stats["droppedKind"] == 2
    assert result.ocr_stats["detections"] == 2


def test_split_card_number_is_joined():
    words = line_words(["4532", "0151", "1283", "0366"])
    page = make_page(words)
    result = assemble([page], _preset("developer"))

    assert len(result.detections) == 1
    det = result.detections[0]
    assert det.kind == DetectionKind.PAN
    assert det.preview == "4532 0151 1283 0366"
    assert det.confidence == pytest.approx(0.98 * (0.6 + 0.4 * 0.95))
    first, last = words[0].bbox, words[-1].bbox
    assert det.box.x == pytest.approx(first.x0 / page.size.width)
    assert det.box.x + det.box.w == pytest.approx(last.x1 / page.size.width)


def test_distant_groups_are_not_joined():
    words = line_words(["4532", "0151"]) + line_words(["1283", "0366"], x=1500)
    candidates = assemble_page(make_page(words))
    assert all(c.kind != DetectionKind.PAN for c in candidates)


def test_grouped_phone():
    words = line_words(["555", "123", "4567"])
    [cand] = assemble_page(make_page(words))
    assert cand.kind == DetectionKind.PHONE
    assert (cand.first, cand.last) == (0, 2)


def test_adjacent_names_are_merged():
    words = line_words(["Alice", "Kowalski"])
    [cand] = assemble_page(make_page(words))
    assert cand.kind == DetectionKind.NAME
    assert cand.preview == "Alice Kowalski"
    assert cand.reason.endswith("(merged 2 tokens)")
    assert cand.confidence == pytest.approx(0.7 * (0.6 + 0.4 * 0.95))


def test_merging_can_be_disabled():
    words = line_words(["Alice", "Kowalski"])
    assert len(assemble_page(make_page(words), merge_tokens=False)) == 2


def test_run_config_threshold_overrides_preset():
    words = line_words(["Kowalski"])
    preset = _preset("all")
    assert len(assemble([make_page(words)], preset).detections) == 1
    strict = RunConfig(confidence_threshold=0.9)
    result = assemble([make_page(words)], preset, config=strict)
    assert result.detections == []
    assert result.ocr_stats["droppedThreshold"] == 1


def test_custom_patterns_from_preset_and_config():
    words = line_words(["EMP-123456", "TKT-42"])
    preset = Preset(
        id="emp",
        enabled_kinds=[DetectionKind.OTHER],
        custom_patterns=[CustomPattern(id="emp", pattern=r"EMP-\d{6}", confidence=0.9)],
    )
    cfg = RunConfig(custom_patterns=[CustomPattern(id="tkt", pattern=r"TKT-\d+", confidence=0.7)])
    result = assemble([make_page(words)], preset, config=cfg)
    assert [d.preview for d in result.detections] == ["EMP-123456", "TKT-42"]


def test_region_hints_become_detections():
    page = make_page(line_words(["hello"]), width=1000, height=1000)
    hint = RegionHint(kind=DetectionKind.FACE, bbox=OcrBBox(x0=100, y0=200, x1=300, y1=400), confidence=1.0)
    result = assemble([page], _preset("all"), hints=[hint])
    [face] = result.detections
    assert face.kind == DetectionKind.FACE
    assert face.confidence == pytest.approx(0.9)
    assert (face.box.x, face.box.y, face.box.w, face.box.h) == pytest.approx((0.1, 0.2, 0.2, 0.2))


def test_hint_without_page_geometry_raises():
    hint = RegionHint(kind=DetectionKind.FACE, bbox=OcrBBox(x0=0, y0=0, x1=1, y1=1), page=3)
    with pytest.raises(AnalysisError):
        assemble([make_page([])], _preset("all"), hints=[hint])


def test_page_outside_document_raises():
    with pytest.raises(AnalysisError):
        assemble([make_page([], index=2)], _preset("all"), page_count=2)


def test_ids_follow_page_order():
    p0 = make_page(line_words(["alice@example.com"]), index=0)
    p1 = make_page(line_words(["bob@example.com"]), index=1)
    result = assemble([p1, p0], _preset("developer"), page_count=2)
    assert [(d.id, d.page) for d in result.detections] == [("det-00001", 0), ("det-00002", 1)]


def _cand(conf, x, w, page=0, kind=DetectionKind.NAME):
    return Candidate(kind=kind, box=Box(x=x, y=0.1, w=w, h=0.1, page=page), confidence=conf, reason="r")


def test_overlap_keeps_highest_confidence():
    weak = _cand(0.6, 0.1, 0.2)
    strong = _cand(0.9, 0.11, 0.2, kind=DetectionKind.EMAIL)
    assert resolve_overlaps([weak, strong]) == [strong]


def test_overlap_tie_prefers_smaller_then_earlier():
    outer = _cand(0.8, 0.1, 0.4)
    inner = _cand(0.8, 0.15, 0.1)
    assert resolve_overlaps([outer, inner]) == [inner]
    a = _cand(0.8, 0.1, 0.2)
    b = _cand(0.8, 0.1, 0.2)
    assert resolve_overlaps([a, b]) == [a]


def test_overlap_ignores_other_pages_and_keeps_order():
    first = _cand(0.6, 0.1, 0.2, page=0)
    second = _cand(0.9, 0.1, 0.2, page=1)
    apart = _cand(0.7, 0.6, 0.2, page=0)
    assert resolve_overlaps([first, second, apart]) == [first, second, apart]


def test_street_address_merges_into_one_detection():
    preset = Preset(id="addr", enabled_kinds=[DetectionKind.ADDRESS], confidence_threshold=0.3)
    words = line_words(["Ship", "to", "123", "Main", "Street"])
    [det] = assemble([make_page(words)], preset).detections
    assert det.kind == DetectionKind.ADDRESS
    assert det.preview == "123 Main Street"
