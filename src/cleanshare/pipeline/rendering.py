"""Rendering: apply planned redactions to an image or a PDF.

Images are painted with the primitives in :mod:`cleanshare.redact` and
re-encoded from raw pixels, which drops EXIF and every other metadata chunk.
PDFs go through a :class:`PdfBackend`; ``vector`` mode draws filled shapes on
top of the page content, ``raster`` mode rebuilds every page from redacted
images so nothing of the original content stream survives.
"""

from __future__ import annotations

import functools
import io
import threading
import time
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePath
from typing import List, Mapping, Optional, Protocol, Sequence, Tuple

import fitz
from PIL import Image, ImageOps

from cleanshare import redact as rd
from cleanshare.errors import RedactionError
from cleanshare.logging import get_logger
from cleanshare.models import (
    ActionOutcome,
    AnalyzeResult,
    ApplyResult,
    Box,
    Detection,
    InputFile,
    PageSize,
    PatternType,
    RedactionAction,
    RedactionConfig,
    RedactionReport,
    RedactionStyle,
)

from .config import RunConfig
from .planning import DEFAULT_CONFIG

logger = get_logger(__name__)

PRODUCER = "CleanShare"
PDF_MEDIA_TYPE = "application/pdf"
IMAGE_MEDIA_TYPES = {"PNG": "image/png", "JPEG": "image/jpeg"}
GRADIENT_STEPS = 16

RGBf = Tuple[float, float, float]


class PdfBackend(Protocol):
    """PDF collaborator. Coordinates are PDF user space, origin bottom-left."""

    def load_document(self, data: bytes) -> int: ...

    def get_page_size(self, index: int) -> PageSize: ...

    def render_page_to_raster(self, index: int, dpi: int = 150) -> Image.Image: ...

    def draw_rectangle(
        self, page: int, x: float, y: float, w: float, h: float, color: RGBf, opacity: float = 1.0
    ) -> None: ...

    def draw_line(
        self, page: int, x0: float, y0: float, x1: float, y1: float, color: RGBf, width: float = 1.0
    ) -> None: ...

    def draw_text(
        self, page: int, x: float, y: float, text: str, size: float, color: RGBf
    ) -> None: ...

    def clear_metadata(self, producer: str, when: datetime) -> None: ...

    def save(self) -> bytes: ...

    def close(self) -> None: ...


# PyMuPDF is not thread-safe, even across separate documents.
PDF_LOCK = threading.Lock()


def _serialized(method):
    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        with PDF_LOCK:
            return method(*args, **kwargs)

    return wrapper


class PyMuPdfBackend:
    """:class:`PdfBackend` on top of PyMuPDF.

    Callers work in the visible (rotated) page with a bottom-left origin.
    PyMuPDF draws in the unrotated page with a top-left origin, so every
    coordinate is flipped and then mapped through ``derotation_matrix``.
    All fitz calls are serialized through :data:`PDF_LOCK`.
    """

    def __init__(self) -> None:
        self._doc: Optional[fitz.Document] = None

    @property
    def doc(self) -> fitz.Document:
        if self._doc is None:
            raise RuntimeError("No PDF loaded")
        return self._doc

    @_serialized
    def load_document(self, data: bytes) -> int:
        self._close()
        self._doc = fitz.open(stream=data, filetype="pdf")
        return self._doc.page_count

    @_serialized
    def get_page_size(self, index: int) -> PageSize:
        rect = self.doc[index].rect
        return PageSize(width=rect.width, height=rect.height)

    @_serialized
    def render_page_to_raster(self, index: int, dpi: int = 150) -> Image.Image:
        pix = self.doc[index].get_pixmap(dpi=dpi, alpha=False)
        return Image.frombytes("RGB", (pix.width, pix.height), pix.samples)

    @staticmethod
    def _point(page: fitz.Page, x: float, y: float) -> fitz.Point:
        return fitz.Point(x, page.rect.height - y) * page.derotation_matrix

    @_serialized
    def draw_rectangle(self, page, x, y, w, h, color, opacity=1.0) -> None:
        pg = self.doc[page]
        rect = fitz.Rect(self._point(pg, x, y + h), self._point(pg, x + w, y))
        rect.normalize()
        pg.draw_rect(rect, color=None, fill=color, fill_opacity=opacity, width=0, overlay=True)

    @_serialized
    def draw_line(self, page, x0, y0, x1, y1, color, width=1.0) -> None:
        pg = self.doc[page]
        pg.draw_line(
            self._point(pg, x0, y0),
            self._point(pg, x1, y1),
            color=color,
            width=width,
            overlay=True,
        )

    @_serialized
    def draw_text(self, page, x, y, text, size, color) -> None:
        pg = self.doc[page]
        pg.insert_text(
            self._point(pg, x, y),
            text,
            fontsize=size,
            color=color,
            rotate=pg.rotation,
            overlay=True,
        )

    @_serialized
    def clear_metadata(self, producer: str, when: datetime) -> None:
        stamp = when.strftime("D:%Y%m%d%H%M%S+00'00'")
        self.doc.set_metadata(
            {
                "title": "",
                "author": "",
                "subject": "",
                "keywords": "",
                "creator": "",
                "producer": producer,
                "creationDate": stamp,
                "modDate": stamp,
            }
        )
        self.doc.del_xml_metadata()

    @_serialized
    def save(self) -> bytes:
        try:
            return self.doc.tobytes(garbage=4, deflate=True, clean=True)
        finally:
            self._close()

    @_serialized
    def close(self) -> None:
        self._close()

    def _close(self) -> None:
        if self._doc is not None:
            self._doc.close()
            self._doc = None


@dataclass
class _Step:
    index: int
    action: RedactionAction
    detection: Detection
    config: RedactionConfig


def _resolve(
    actions: Sequence[RedactionAction], detections: Mapping[str, Detection]
) -> List[_Step]:
    steps = []
    for i, action in enumerate(actions):
        det = detections.get(action.detection_id)
        if det is None:
            raise RedactionError(
                f"Action references unknown detection id {action.detection_id!r}",
                detection_id=action.detection_id,
            )
        steps.append(_Step(i, action, det, RedactionConfig.merge(DEFAULT_CONFIG, action.config)))
    return steps


def is_reversible(style: RedactionStyle, config: RedactionConfig) -> bool:
    """Whether the original content may be recoverable from the output."""
    if style in (RedactionStyle.BLUR, RedactionStyle.PIXELATE):
        return True
    if style in (RedactionStyle.PATTERN, RedactionStyle.GRADIENT):
        return (config.opacity if config.opacity is not None else 1.0) < 1.0
    return False


def _label_text(det: Detection, style: RedactionStyle, cfg: RedactionConfig) -> str:
    if style == RedactionStyle.MASK_LAST4:
        masked = rd.mask_last4(det.preview)
        return masked or cfg.label_text or det.kind.value
    return cfg.label_text or det.kind.value


def paint(img: Image.Image, rect: rd.Rect, det: Detection, style: RedactionStyle, cfg: RedactionConfig) -> None:
    """Draw one redaction in ``style`` over ``rect`` of ``img``."""
    color = rd.parse_color(cfg.color)
    secondary = rd.parse_color(cfg.secondary_color, "#ffffff")
    border = rd.parse_color(cfg.border_color) if cfg.border_color else None
    shape = dict(
        corner_radius=cfg.corner_radius or 0,
        border_width=cfg.border_width or 0,
        border_color=border,
    )
    opacity = cfg.opacity if cfg.opacity is not None else 1.0
    if style == RedactionStyle.BLUR:
        rd.blur_region(img, rect)
    elif style == RedactionStyle.PIXELATE:
        rd.pixelate_region(img, rect)
    elif style in (RedactionStyle.LABEL, RedactionStyle.MASK_LAST4):
        rd.draw_label(
            img,
            rect,
            _label_text(det, style, cfg),
            fill=color,
            text_color=secondary,
            font_size=cfg.font_size or 14,
            font_family=cfg.font_family,
            shadow=cfg.shadow,
            **shape,
        )
    elif style == RedactionStyle.PATTERN:
        rd.pattern_fill(
            img,
            rect,
            cfg.pattern_type or PatternType.DIAGONAL,
            color,
            secondary,
            opacity,
            seed=zlib.crc32(det.id.encode("utf-8")),
        )
    elif style == RedactionStyle.GRADIENT:
        rd.gradient_fill(img, rect, color, secondary, opacity)
    else:
        # BOX, SOLID_COLOR, VECTOR_OVERLAY and REMOVE_METADATA ignore opacity.
        rd.fill_box(img, rect, color, **shape)


def redact_image(
    img: Image.Image, steps: Sequence[_Step], inflate_px: int = 1
) -> List[Tuple[int, ActionOutcome]]:
    """Apply ``steps`` in order; later actions paint over earlier ones."""
    W, H = img.size
    outcomes = []
    for step in steps:
        rect = rd.box_to_pixels(step.detection.box, W, H, inflate_px)
        paint(img, rect, step.detection, step.action.style, step.config)
        outcomes.append(
            (
                step.index,
                ActionOutcome(
                    detection_id=step.detection.id,
                    kind=step.detection.kind,
                    style=step.action.style,
                    page=step.detection.page,
                    reversible=is_reversible(step.action.style, step.config),
                    rect=tuple(float(v) for v in rect),
                ),
            )
        )
    return outcomes


def _working_mode(img: Image.Image) -> Image.Image:
    if "A" in img.getbands() or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB") if img.mode != "RGB" else img


def _pdf_metadata() -> dict:
    now = datetime.now(timezone.utc)
    return {"producer": PRODUCER, "creator": PRODUCER, "creationdate": now, "moddate": now}


def render_image(
    data: bytes,
    actions: Sequence[RedactionAction],
    detections: Mapping[str, Detection],
    config: Optional[RunConfig] = None,
) -> Tuple[bytes, str, List[ActionOutcome]]:
    """Redact an encoded image and return ``(bytes, media_type, outcomes)``."""
    cfg = config or RunConfig()
    steps = _resolve(actions, detections)
    with Image.open(io.BytesIO(data)) as src:
        src.load()
        img = ImageOps.exif_transpose(src)
    img = _working_mode(img)
    outcomes = [o for _, o in redact_image(img, steps, cfg.box_inflation_px)]
    clean = rd.strip_metadata(img)
    if cfg.output == "pdf":
        return rd.save_pdf([clean], **_pdf_metadata()), PDF_MEDIA_TYPE, outcomes
    buf = io.BytesIO()
    if cfg.image_format == "JPEG":
        clean.convert("RGB").save(buf, format="JPEG", quality=cfg.jpeg_quality)
    else:
        clean.save(buf, format="PNG")
    return buf.getvalue(), IMAGE_MEDIA_TYPES[cfg.image_format], outcomes


def to_pdf_rect(box: Box, page_width: float, page_height: float) -> Tuple[float, float, float, float]:
    """Normalized top-left box to PDF user space ``(x, y, w, h)``, origin bottom-left."""
    return (
        box.x * page_width,
        page_height - (box.y + box.h) * page_height,
        box.w * page_width,
        box.h * page_height,
    )


def _unit_rgb(value: Optional[str], default: str = "#000000") -> RGBf:
    r, g, b = rd.parse_color(value, default)
    return (r / 255.0, g / 255.0, b / 255.0)


def _grow(rect, px: float, size: PageSize):
    x, y, w, h = rect
    x0 = max(0.0, x - px)
    y0 = max(0.0, y - px)
    x1 = min(size.width, x + w + px)
    y1 = min(size.height, y + h + px)
    return (x0, y0, x1 - x0, y1 - y0)


def _paint_vector(backend: PdfBackend, page: int, rect, det: Detection, style: RedactionStyle, cfg: RedactionConfig) -> None:
    x, y, w, h = rect
    color = _unit_rgb(cfg.color)
    secondary = _unit_rgb(cfg.secondary_color, "#ffffff")
    opacity = cfg.opacity if cfg.opacity is not None else 1.0
    if style == RedactionStyle.PATTERN:
        backend.draw_rectangle(page, x, y, w, h, secondary, opacity)
        step = max(4.0, min(w, h) / 4)
        pattern = cfg.pattern_type or PatternType.DIAGONAL
        if pattern in (PatternType.DIAGONAL, PatternType.CROSS_HATCH):
            off = 0.0
            while off < w + h:
                # Segment of the 45 degree line through (x + off, y), clipped to the box.
                sx, sy = x + min(off, w), y + max(0.0, off - w)
                ex, ey = x + max(0.0, off - h), y + min(off, h)
                backend.draw_line(page, sx, sy, ex, ey, color, 1.0)
                if pattern == PatternType.CROSS_HATCH:
                    backend.draw_line(page, x + w - (sx - x), sy, x + w - (ex - x), ey, color, 1.0)
                off += step
        else:
            ly = y + step / 2
            while ly < y + h:
                backend.draw_line(page, x, ly, x + w, ly, color, 1.0)
                ly += step
        return
    if style == RedactionStyle.GRADIENT:
        strip = w / GRADIENT_STEPS
        for i in range(GRADIENT_STEPS):
            t = i / (GRADIENT_STEPS - 1)
            shade = tuple(c + (s - c) * t for c, s in zip(color, secondary))
            backend.draw_rectangle(page, x + i * strip, y, strip, h, shade, opacity)
        return
    # Vector content cannot be blurred; BLUR and PIXELATE fall back to a fill.
    backend.draw_rectangle(page, x, y, w, h, color, 1.0)
    if cfg.border_width and cfg.border_color:
        edge = _unit_rgb(cfg.border_color)
        bw = float(cfg.border_width)
        for sx, sy, ex, ey in (
            (x, y, x + w, y),
            (x + w, y, x + w, y + h),
            (x + w, y + h, x, y + h),
            (x, y + h, x, y),
        ):
            backend.draw_line(page, sx, sy, ex, ey, edge, bw)
    if style in (RedactionStyle.LABEL, RedactionStyle.MASK_LAST4):
        text = _label_text(det, style, cfg)
        size = max(4.0, min(float(cfg.font_size or 14), h * 0.8))
        # Helvetica averages about half an em per glyph.
        max_chars = max(1, int(w / (size * 0.5)))
        if len(text) > max_chars:
            text = text[: max(0, max_chars - len(rd.ELLIPSIS))] + rd.ELLIPSIS
        tx = x + max(1.0, (w - len(text) * size * 0.5) / 2)
        ty = y + (h - size) / 2 + size * 0.2
        backend.draw_text(page, tx, ty, text, size, secondary)


def render_pdf(
    data: bytes,
    actions: Sequence[RedactionAction],
    detections: Mapping[str, Detection],
    backend: PdfBackend,
    config: Optional[RunConfig] = None,
) -> Tuple[bytes, List[ActionOutcome]]:
    cfg = config or RunConfig()
    steps = _resolve(actions, detections)
    page_count = backend.load_document(data)
    for step in steps:
        if step.detection.page >= page_count:
            raise RedactionError(
                f"Detection {step.detection.id!r} is on page {step.detection.page} "
                f"but the PDF has {page_count} page(s)",
                detection_id=step.detection.id,
            )
    if cfg.pdf_mode == "raster":
        return _render_pdf_raster(backend, page_count, steps, cfg)

    outcomes = []
    for step in steps:
        page = step.detection.page
        size = backend.get_page_size(page)
        rect = _grow(
            to_pdf_rect(step.detection.box, size.width, size.height), cfg.box_inflation_px, size
        )
        _paint_vector(backend, page, rect, step.detection, step.action.style, step.config)
        outcomes.append(
            ActionOutcome(
                detection_id=step.detection.id,
                kind=step.detection.kind,
                style=step.action.style,
                page=page,
                # Page text stays in the content stream underneath the overlay.
                reversible=True,
                rect=rect,
            )
        )
    if cfg.strip_metadata:
        backend.clear_metadata(PRODUCER, datetime.now(timezone.utc))
    return backend.save(), outcomes


def _render_pdf_raster(
    backend: PdfBackend, page_count: int, steps: Sequence[_Step], cfg: RunConfig
) -> Tuple[bytes, List[ActionOutcome]]:
    images = []
    indexed: List[Tuple[int, ActionOutcome]] = []
    for page in range(page_count):
        img = _working_mode(backend.render_page_to_raster(page, cfg.dpi))
        on_page = [s for s in steps if s.detection.page == page]
        indexed.extend(redact_image(img, on_page, cfg.box_inflation_px))
        images.append(rd.strip_metadata(img))
    indexed.sort(key=lambda item: item[0])
    return rd.save_pdf(images, dpi=cfg.dpi, **_pdf_metadata()), [o for _, o in indexed]


def redacted_name(name: str, media_type: str) -> str:
    stem = PurePath(name).stem or "output"
    ext = {"application/pdf": ".pdf", "image/png": ".png", "image/jpeg": ".jpg"}[media_type]
    return f"{stem}.redacted{ext}"


def apply_redactions(
    file: InputFile,
    actions: Sequence[RedactionAction],
    analysis: AnalyzeResult,
    config: Optional[RunConfig] = None,
    pdf_backend: Optional[PdfBackend] = None,
) -> ApplyResult:
    """Render ``actions`` onto ``file``; all or nothing.

    Any failure raises ``RedactionError`` for this file and no artifact is
    returned.
    """
    cfg = config or RunConfig()
    detections = analysis.by_id()
    start = time.perf_counter()
    try:
        if file.media_type == "image":
            data, media_type, outcomes = render_image(file.data, actions, detections, cfg)
            stripped = True
        else:
            if cfg.output == "image":
                raise RedactionError("PDF input can only be written as PDF", file_name=file.name)
            backend = pdf_backend if pdf_backend is not None else PyMuPdfBackend()
            try:
                data, outcomes = render_pdf(file.data, actions, detections, backend, cfg)
            finally:
                backend.close()
            media_type = PDF_MEDIA_TYPE
            stripped = cfg.strip_metadata or cfg.pdf_mode == "raster"
        report = RedactionReport.from_outcomes(
            outcomes, total_detections=len(analysis.detections), metadata_stripped=stripped
        )
    except RedactionError as exc:
        if exc.file_name is None:
            exc.file_name = file.name
        raise
    except Exception as exc:
        raise RedactionError(f"Rendering failed: {exc}", file_name=file.name) from exc
    logger.info(
        "Redactions applied",
        extra={
            "file": file.name,
            "actions": report.redacted_count,
            "media_type": media_type,
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        },
    )
    return ApplyResult(
        data=data, media_type=media_type, report=report, file_name=redacted_name(file.name, media_type)
    )


__all__ = [
    "PdfBackend",
    "PyMuPdfBackend",
    "PRODUCER",
    "is_reversible",
    "paint",
    "redact_image",
    "render_image",
    "to_pdf_rect",
    "render_pdf",
    "redacted_name",
    "apply_redactions",
]
