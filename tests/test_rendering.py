import io

import fitz
import pytest
from PIL import Image, ImageOps

from cleanshare.errors import RedactionError
from cleanshare.models import (
    AnalyzeResult,
    Box,
    Detection,
    DetectionKind,
    InputFile,
    PatternType,
    RedactionAction,
    RedactionConfig,
    RedactionStyle,
)
import cleanshare.pipeline.rendering as rendering
from cleanshare.pipeline.config import RunConfig
from cleanshare.pipeline.rendering import (
    PRODUCER,
    PyMuPdfBackend,
    apply_redactions,
    is_reversible,
    redacted_name,
    to_pdf_rect,
)
from cleanshare.redact import box_to_pixels, mask_last4

from conftest import FakePdfBackend, png_bytes

BOX = Box(x=0.1, y=0.2, w=0.3, h=0.4, page=0)


def _analysis(*dets):
    return AnalyzeResult(detections=list(dets), pages=max([d.page for d in dets] + [0]) + 1)


def _det(det_id="det-00001", kind=DetectionKind.EMAIL, box=BOX, preview=None):
    return Detection(id=det_id, kind=kind, box=box, confidence=0.9, reason="r", preview=preview)


def _open(data):
    img = Image.open(io.BytesIO(data))
    img.load()
    return img


def test_opaque_box_covers_region():
    det = _det()
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    result = apply_redactions(file, [RedactionAction(detection_id=det.id)], _analysis(det))

    assert result.media_type == "image/png"
    assert result.file_name == "shot.redacted.png"
    img = _open(result.data).convert("RGB")
    x, y, w, h = box_to_pixels(BOX, 200, 100, 1)
    for px in (x, x + w - 1):
        for py in (y, y + h - 1):
            assert img.getpixel((px, py)) == (0, 0, 0)
    assert img.getpixel((2, 2)) == (255, 255, 255)

    [outcome] = result.report.outcomes
    assert outcome.status == "applied"
    assert outcome.reversible is False
    assert outcome.rect == (x, y, w, h)
    assert result.report.by_kind == {"EMAIL": 1}
    assert result.report.by_style == {"BOX": 1}
    assert result.report.metadata_stripped is True


def test_later_actions_paint_over_earlier_ones():
    a = _det("det-00001")
    b = _det("det-00002", box=Box(x=0.2, y=0.3, w=0.3, h=0.4, page=0))
    actions = [
        RedactionAction(detection_id=a.id, config=RedactionConfig(color="#ff0000")),
        RedactionAction(detection_id=b.id, config=RedactionConfig(color="#0000ff")),
    ]
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    img = _open(apply_redactions(file, actions, _analysis(a, b)).data).convert("RGB")
    assert img.getpixel((45, 45)) == (0, 0, 255)
    assert img.getpixel((22, 22)) == (255, 0, 0)


def test_exif_is_not_carried_over():
    exif = Image.Exif()
    exif[0x010E] = "GPS home address"
    exif[0x0112] = 1
    det = _det()
    file = InputFile(name="photo.jpg", data=png_bytes(exif=exif), media_type="image")
    assert _open(file.data).getexif()

    for fmt in ("PNG", "JPEG"):
        result = apply_redactions(
            file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(image_format=fmt)
        )
        out = _open(result.data)
        assert not out.getexif()
        assert "exif" not in out.info


def test_jpeg_output_media_type():
    det = _det()
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    result = apply_redactions(
        file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(image_format="JPEG")
    )
    assert result.media_type == "image/jpeg"
    assert result.file_name == "shot.redacted.jpg"
    assert _open(result.data).format == "JPEG"


@pytest.mark.parametrize(
    "style,opacity,reversible",
    [
        (RedactionStyle.BOX, 0.3, False),
        (RedactionStyle.SOLID_COLOR, None, False),
        (RedactionStyle.LABEL, None, False),
        (RedactionStyle.MASK_LAST4, None, False),
        (RedactionStyle.BLUR, None, True),
        (RedactionStyle.PIXELATE, None, True),
        (RedactionStyle.PATTERN, 1.0, False),
        (RedactionStyle.PATTERN, 0.5, True),
        (RedactionStyle.GRADIENT, 0.4, True),
    ],
)
def test_every_style_renders_and_reports_reversibility(style, opacity, reversible):
    det = _det(kind=DetectionKind.PAN, preview="4532 0151 1283 0366")
    file = InputFile(name="shot.png", data=png_bytes(color="gray"), media_type="image")
    action = RedactionAction(detection_id=det.id, style=style, config=RedactionConfig(opacity=opacity))
    result = apply_redactions(file, [action], _analysis(det))
    [outcome] = result.report.outcomes
    assert outcome.style == style
    assert outcome.reversible is reversible
    assert is_reversible(style, RedactionConfig(opacity=opacity)) is reversible


@pytest.mark.parametrize("pattern", list(PatternType))
def test_pattern_types(pattern):
    det = _det()
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    action = RedactionAction(
        detection_id=det.id, style=RedactionStyle.PATTERN, config=RedactionConfig(pattern_type=pattern)
    )
    img = _open(apply_redactions(file, [action], _analysis(det)).data).convert("RGB")
    x, y, w, h = box_to_pixels(BOX, 200, 100, 1)
    region = img.crop((x, y, x + w, y + h))
    assert region.getcolors(maxcolors=100000) != [(w * h, (255, 255, 255))]


def test_mask_last4_keeps_separators():
    assert mask_last4("4532 0151 1283 0366") == "**** **** **** 0366"
    assert mask_last4("ab") == "ab"
    assert mask_last4(None) == ""


def test_unknown_detection_in_action_raises():
    det = _det()
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    with pytest.raises(RedactionError) as err:
        apply_redactions(file, [RedactionAction(detection_id="det-09999")], _analysis(det))
    assert err.value.detection_id == "det-09999"
    assert err.value.file_name == "shot.png"


def test_undecodable_image_raises_redaction_error():
    det = _det()
    file = InputFile(name="broken.png", data=b"not an image", media_type="image")
    with pytest.raises(RedactionError):
        apply_redactions(file, [RedactionAction(detection_id=det.id)], _analysis(det))


def test_image_can_be_wrapped_in_pdf():
    det = _det()
    file = InputFile(name="shot.png", data=png_bytes(), media_type="image")
    result = apply_redactions(
        file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(output="pdf")
    )
    assert result.media_type == "application/pdf"
    assert result.data.startswith(b"%PDF")
    assert result.file_name == "shot.redacted.pdf"


def test_to_pdf_rect_flips_y_axis():
    assert to_pdf_rect(Box(x=0.1, y=0.1, w=0.2, h=0.05), 612, 792) == pytest.approx(
        (61.2, 792 - 0.15 * 792, 122.4, 39.6)
    )


def test_vector_pdf_draws_in_user_space():
    backend = FakePdfBackend()
    box = Box(x=0.1, y=0.1, w=0.2, h=0.05, page=0)
    det = _det(box=box)
    file = InputFile(name="doc.pdf", data=b"%PDF-1.4 original", media_type="pdf")
    result = apply_redactions(
        file,
        [RedactionAction(detection_id=det.id)],
        _analysis(det),
        RunConfig(box_inflation_px=0),
        backend,
    )

    assert result.media_type == "application/pdf"
    assert result.data == b"%PDF-1.7 fake"
    assert backend.loaded == b"%PDF-1.4 original"
    [(page, x, y, w, h, color, opacity)] = backend.rectangles
    assert page == 0
    assert (x, y, w, h) == pytest.approx(to_pdf_rect(box, 612, 792))
    assert color == (0.0, 0.0, 0.0)
    assert opacity == 1.0
    assert backend.metadata["producer"] == PRODUCER
    assert backend.closed

    [outcome] = result.report.outcomes
    assert outcome.reversible is True
    assert outcome.rect == pytest.approx(to_pdf_rect(box, 612, 792))
    assert result.report.metadata_stripped is True


def test_vector_label_draws_text_and_blur_falls_back_to_fill():
    backend = FakePdfBackend()
    label = _det("det-00001", kind=DetectionKind.PAN, preview="4532 0151 1283 0366")
    blur = _det("det-00002", box=Box(x=0.5, y=0.5, w=0.2, h=0.1, page=0))
    actions = [
        RedactionAction(detection_id=label.id, style=RedactionStyle.MASK_LAST4),
        RedactionAction(detection_id=blur.id, style=RedactionStyle.BLUR),
    ]
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    result = apply_redactions(file, actions, _analysis(label, blur), RunConfig(), backend)

    assert len(backend.rectangles) == 2
    assert backend.texts and backend.texts[0][3].endswith("0366")
    assert [o.detection_id for o in result.report.outcomes] == ["det-00001", "det-00002"]


def test_vector_pdf_keeps_metadata_when_asked():
    backend = FakePdfBackend()
    det = _det()
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    result = apply_redactions(
        file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(strip_metadata=False), backend
    )
    assert backend.metadata == {}
    assert result.report.metadata_stripped is False


def test_raster_pdf_rebuilds_pages():
    backend = FakePdfBackend(pages=2)
    det0 = _det("det-00001")
    det1 = _det("det-00002", box=Box(x=0.1, y=0.2, w=0.3, h=0.4, page=1))
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    result = apply_redactions(
        file,
        [RedactionAction(detection_id=det1.id), RedactionAction(detection_id=det0.id)],
        _analysis(det0, det1),
        RunConfig(pdf_mode="raster", dpi=72),
        backend,
    )
    assert result.data.startswith(b"%PDF")
    assert backend.rectangles == []
    assert [o.detection_id for o in result.report.outcomes] == ["det-00002", "det-00001"]
    assert [o.page for o in result.report.outcomes] == [1, 0]
    assert all(not o.reversible for o in result.report.outcomes)
    assert result.report.metadata_stripped is True


def test_pdf_detection_beyond_last_page_raises():
    backend = FakePdfBackend(pages=1)
    det = _det(box=Box(x=0.1, y=0.1, w=0.1, h=0.1, page=1))
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    with pytest.raises(RedactionError):
        apply_redactions(file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(), backend)
    assert backend.closed


def test_backend_failure_produces_no_artifact():
    backend = FakePdfBackend(fail_on_draw=True)
    det = _det()
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    with pytest.raises(RedactionError) as err:
        apply_redactions(file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(), backend)
    assert "content stream locked" in str(err.value)
    assert backend.closed


def test_pdf_cannot_be_written_as_image(fake_backend):
    det = _det()
    file = InputFile(name="doc.pdf", data=b"%PDF", media_type="pdf")
    with pytest.raises(RedactionError):
        apply_redactions(
            file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(output="image"), fake_backend
        )


def test_redacted_name():
    assert redacted_name("scan.final.pdf", "application/pdf") == "scan.final.redacted.pdf"
    assert redacted_name("shot.PNG", "image/jpeg") == "shot.redacted.jpg"


def _dark_bbox(img):
    return ImageOps.invert(img.convert("L")).point(lambda v: 255 if v > 128 else 0).getbbox()


def _raster(data, dpi=72):
    backend = PyMuPdfBackend()
    try:
        backend.load_document(data)
        return backend.render_page_to_raster(0, dpi)
    finally:
        backend.close()


@pytest.mark.parametrize("rotation", [0, 90, 180, 270])
def test_vector_pdf_covers_text_on_rotated_pages(rotation):
    doc = fitz.open()
    page = doc.new_page(width=612, height=792)
    page.insert_text((72, 144), "SECRET 4532015112830366", fontsize=14)
    page.set_rotation(rotation)
    data = doc.tobytes()
    doc.close()

    before = _raster(data)
    x0, y0, x1, y1 = _dark_bbox(before)
    width, height = before.size
    box = Box(x=x0 / width, y=y0 / height, w=(x1 - x0) / width, h=(y1 - y0) / height, page=0)
    det = _det(kind=DetectionKind.PAN, box=box)
    file = InputFile(name="doc.pdf", data=data, media_type="pdf")

    result = apply_redactions(
        file, [RedactionAction(detection_id=det.id)], _analysis(det), RunConfig(pdf_mode="vector")
    )

    after = _raster(result.data).convert("L")
    assert after.size == before.size
    assert after.crop((x0, y0, x1, y1)).getextrema()[1] < 64
    # Nothing is painted far away from the target.
    assert after.getpixel((width - 5, height - 5)) == 255


def test_vector_label_text_reads_inside_rotated_box():
    doc = fitz.open()
    doc.new_page(width=612, height=792).set_rotation(90)
    data = doc.tobytes()
    doc.close()
    box = Box(x=0.2, y=0.2, w=0.5, h=0.1, page=0)
    det = _det(kind=DetectionKind.PAN, box=box, preview="4532 0151 1283 0366")
    file = InputFile(name="doc.pdf", data=data, media_type="pdf")
    action = RedactionAction(
        detection_id=det.id,
        style=RedactionStyle.LABEL,
        config=RedactionConfig(color="#000000", secondary_color="#ffffff", font_size=24),
    )

    result = apply_redactions(file, [action], _analysis(det), RunConfig())

    img = _raster(result.data).convert("L")
    width, height = img.size
    x, y, w, h = box_to_pixels(box, width, height)
    # White label glyphs land inside the black box, nowhere else.
    lo, hi = img.crop((x, y, x + w, y + h)).getextrema()
    assert lo == 0
    assert hi > 200
    assert img.crop((0, 0, width, max(1, y - 2))).getextrema() == (255, 255)
    assert img.crop((0, min(height - 1, y + h + 2), width, height)).getextrema() == (255, 255)


def test_pymupdf_calls_are_serialized(monkeypatch):
    held = []

    class Doc:
        page_count = 3

        def close(self):
            held.append(rendering.PDF_LOCK.locked())

    def fake_open(**kwargs):
        held.append(rendering.PDF_LOCK.locked())
        return Doc()

    monkeypatch.setattr(rendering.fitz, "open", fake_open)
    backend = PyMuPdfBackend()
    assert backend.load_document(b"%PDF") == 3
    backend.close()

    assert held == [True, True]
    assert not rendering.PDF_LOCK.locked()
