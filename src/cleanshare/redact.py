"""Redaction drawing primitives.

Every routine here works in pixel space on a Pillow image and mutates it in
place. Rectangles are ``(x, y, w, h)`` tuples; :func:`box_to_pixels` converts a
page-relative :class:`~cleanshare.models.Box` into one. Opaque fills make the
content beneath unrecoverable; blur, pixelate and translucent fills do not and
callers report them as reversible.
"""

from __future__ import annotations

import io
import math
import random
from typing import List, Optional, Sequence, Tuple

import img2pdf
from PIL import Image, ImageColor, ImageDraw, ImageFilter, ImageFont

from .models import Box, PatternType, Shadow

Rect = Tuple[int, int, int, int]
RGB = Tuple[int, int, int]

ELLIPSIS = "..."
MASK_CHAR = "*"


def _inflate(
    box: Rect, px: int, W: int, H: int
) -> Rect:
    """Inflate a rectangle while clamping to image bounds.

    Parameters
    ----------
    box:
        Rectangle as ``(x, y, w, h)``.
    px:
        Pixels to inflate on all sides.
    W:
        Image width.
    H:
        Image height.

    Returns
    -------
    tuple
        Clamped rectangle ``(x, y, w, h)`` after inflation.
    """
    x, y, w, h = box
    x2 = max(0, x - px)
    y2 = max(0, y - px)
    w2 = min(W - x2, w + (x - x2) + px)
    h2 = min(H - y2, h + (y - y2) + px)
    return (x2, y2, max(0, w2), max(0, h2))


def box_to_pixels(box: Box, W: int, H: int, inflate_px: int = 0) -> Rect:
    """Map a normalized box onto an image of ``W`` x ``H`` pixels.

    Edges are rounded outwards so a redaction never falls short of the region.
    """
    x0 = int(box.x * W)
    y0 = int(box.y * H)
    x1 = min(W, math.ceil((box.x + box.w) * W))
    y1 = min(H, math.ceil((box.y + box.h) * H))
    return _inflate((x0, y0, max(0, x1 - x0), max(0, y1 - y0)), inflate_px, W, H)


def parse_color(value: Optional[str], default: str = "#000000") -> RGB:
    r, g, b = ImageColor.getrgb(value or default)[:3]
    return (r, g, b)


def _corners(rect: Rect) -> Tuple[int, int, int, int]:
    x, y, w, h = rect
    return (x, y, x + max(0, w - 1), y + max(0, h - 1))


def _corners_box(rect: Rect) -> Tuple[int, int, int, int]:
    x, y, w, h = rect
    return (x, y, x + w, y + h)


def _composite(img: Image.Image, rect: Rect, layer: Image.Image) -> None:
    """Alpha-composite an RGBA ``layer`` the size of ``rect`` onto ``img``."""
    x, y, _, _ = rect
    base = img.convert("RGBA") if img.mode != "RGBA" else img
    region = base.crop(_corners_box(rect))
    region = Image.alpha_composite(region, layer)
    if img.mode == "RGBA":
        img.paste(region, (x, y))
    else:
        img.paste(region.convert(img.mode), (x, y))


def fill_box(
    img: Image.Image,
    rect: Rect,
    color: RGB = (0, 0, 0),
    *,
    corner_radius: float = 0,
    border_width: float = 0,
    border_color: Optional[RGB] = None,
) -> None:
    """Paint an opaque rectangle, optionally rounded and outlined.

    Rounded corners are painted over the full rectangle first so no source
    pixel survives at the corners.
    """
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return
    draw = ImageDraw.Draw(img)
    corners = _corners(rect)
    draw.rectangle(corners, fill=color)
    radius = int(min(corner_radius, w / 2, h / 2))
    width = int(border_width)
    if width > 0 and border_color is not None:
        if radius > 0:
            draw.rounded_rectangle(corners, radius=radius, outline=border_color, width=width)
        else:
            draw.rectangle(corners, outline=border_color, width=width)


def blur_region(img: Image.Image, rect: Rect, radius: Optional[float] = None) -> None:
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return
    radius = radius if radius is not None else max(4.0, min(w, h) / 3.0)
    region = img.crop(_corners_box(rect)).filter(ImageFilter.GaussianBlur(radius))
    img.paste(region, (x, y))


def pixelate_region(img: Image.Image, rect: Rect, block: Optional[int] = None) -> None:
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return
    block = block or max(4, min(w, h) // 4)
    region = img.crop(_corners_box(rect))
    small = region.resize(
        (max(1, w // block), max(1, h // block)), resample=Image.Resampling.BILINEAR
    )
    img.paste(small.resize((w, h), resample=Image.Resampling.NEAREST), (x, y))


def load_font(size: int, family: Optional[str] = None) -> ImageFont.ImageFont:
    """Return a TrueType font for ``family`` or Pillow's bundled default."""
    if family and family not in {"sans-serif", "serif", "monospace"}:
        try:
            return ImageFont.truetype(family, size)
        except OSError:
            pass
    return ImageFont.load_default(size=size)


def fit_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> str:
    """Shorten ``text`` with a trailing ellipsis until it fits ``max_width``."""
    if draw.textlength(text, font=font) <= max_width:
        return text
    while text and draw.textlength(text + ELLIPSIS, font=font) > max_width:
        text = text[:-1]
    return text + ELLIPSIS if text else ""


def draw_label(
    img: Image.Image,
    rect: Rect,
    text: str,
    *,
    fill: RGB = (0, 0, 0),
    text_color: RGB = (255, 255, 255),
    font_size: int = 14,
    font_family: Optional[str] = None,
    shadow: Optional[Shadow] = None,
    corner_radius: float = 0,
    border_width: float = 0,
    border_color: Optional[RGB] = None,
) -> None:
    """Opaque box with ``text`` centered inside it."""
    fill_box(
        img,
        rect,
        fill,
        corner_radius=corner_radius,
        border_width=border_width,
        border_color=border_color,
    )
    x, y, w, h = rect
    if w <= 4 or h <= 4 or not text:
        return
    size = max(6, min(int(font_size), int(h * 0.8)))
    font = load_font(size, font_family)
    draw = ImageDraw.Draw(img)
    label = fit_text(draw, text, font, w - 4)
    if not label:
        return
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    tx = x + (w - (right - left)) / 2 - left
    ty = y + (h - (bottom - top)) / 2 - top
    if shadow is not None:
        layer = Image.new("RGBA", (w, h), (0, 0, 0, 0))
        ImageDraw.Draw(layer).text(
            (tx - x + shadow.offset_x, ty - y + shadow.offset_y),
            label,
            font=font,
            fill=parse_color(shadow.color) + (255,),
        )
        if shadow.blur > 0:
            layer = layer.filter(ImageFilter.GaussianBlur(shadow.blur))
        _composite(img, rect, layer)
        draw = ImageDraw.Draw(img)
    draw.text((tx, ty), label, font=font, fill=text_color)


def mask_last4(text: Optional[str]) -> str:
    """Replace every alphanumeric but the last four with ``*``.

    >>> mask_last4("4532 0151 1283 0366")
    '**** **** **** 0366'
    """
    if not text:
        return ""
    keep = 4
    out: List[str] = []
    for ch in reversed(text):
        if ch.isalnum():
            if keep > 0:
                out.append(ch)
                keep -= 1
            else:
                out.append(MASK_CHAR)
        else:
            out.append(ch)
    return "".join(reversed(out))


def _pattern_layer(
    size: Tuple[int, int],
    pattern: PatternType,
    fg: RGB,
    bg: RGB,
    alpha: int,
    seed: int = 0,
) -> Image.Image:
    w, h = size
    layer = Image.new("RGBA", (w, h), bg + (alpha,))
    draw = ImageDraw.Draw(layer)
    ink = fg + (alpha,)
    step = max(4, min(w, h) // 4 or 4)
    if pattern in (PatternType.DIAGONAL, PatternType.CROSS_HATCH):
        for off in range(-h, w + h, step):
            draw.line([(off, 0), (off + h, h)], fill=ink, width=2)
            if pattern == PatternType.CROSS_HATCH:
                draw.line([(off + h, 0), (off, h)], fill=ink, width=2)
    elif pattern == PatternType.DOTS:
        r = max(1, step // 4)
        for cy in range(step // 2, h, step):
            for cx in range(step // 2, w, step):
                draw.ellipse([cx - r, cy - r, cx + r, cy + r], fill=ink)
    elif pattern == PatternType.WAVES:
        amp = max(1, step // 3)
        for base in range(0, h + step, step):
            points = []
            for px in range(0, w + 1, 2):
                phase = (px % (2 * step)) / step
                dy = amp * (phase if phase <= 1 else 2 - phase)
                points.append((px, base + dy - amp / 2))
            if len(points) > 1:
                draw.line(points, fill=ink, width=2)
    else:
        rng = random.Random(seed)
        pixels = layer.load()
        for py in range(h):
            for px in range(w):
                t = rng.random()
                pixels[px, py] = tuple(int(b + (f - b) * t) for f, b in zip(fg, bg)) + (alpha,)
    return layer


def pattern_fill(
    img: Image.Image,
    rect: Rect,
    pattern: PatternType = PatternType.DIAGONAL,
    color: RGB = (0, 0, 0),
    background: RGB = (255, 255, 255),
    opacity: float = 1.0,
    seed: int = 0,
) -> None:
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return
    alpha = int(round(255 * max(0.0, min(1.0, opacity))))
    layer = _pattern_layer((w, h), pattern, color, background, alpha, seed)
    _composite(img, rect, layer)


def gradient_fill(
    img: Image.Image,
    rect: Rect,
    start: RGB = (0, 0, 0),
    end: RGB = (255, 255, 255),
    opacity: float = 1.0,
) -> None:
    """Left-to-right linear gradient from ``start`` to ``end``."""
    x, y, w, h = rect
    if w <= 0 or h <= 0:
        return
    alpha = int(round(255 * max(0.0, min(1.0, opacity))))
    layer = Image.new("RGBA", (w, h))
    draw = ImageDraw.Draw(layer)
    for col in range(w):
        t = col / (w - 1) if w > 1 else 0.0
        rgb = tuple(int(round(s + (e - s) * t)) for s, e in zip(start, end))
        draw.line([(col, 0), (col, h - 1)], fill=rgb + (alpha,))
    _composite(img, rect, layer)


def strip_metadata(img: Image.Image) -> Image.Image:
    """Return a copy carrying pixels only: no EXIF, ICC, XMP or text chunks."""
    mode = img.mode if img.mode in ("RGB", "RGBA", "L") else "RGB"
    src = img.convert(mode) if mode != img.mode else img
    return Image.frombytes(mode, src.size, src.tobytes())


def save_pdf(
    images: Sequence[Image.Image],
    *,
    dpi: Optional[int] = None,
    **metadata,
) -> bytes:
    """Encode page images into a compact PDF and return its bytes.

    Keyword arguments are forwarded to :func:`img2pdf.convert` as document
    metadata (``producer``, ``creationdate``, ``moddate``, ...).
    """
    pages = []
    for im in images:
        if im.mode != "RGB":
            im = im.convert("RGB")
        tmp = io.BytesIO()
        im.save(tmp, format="JPEG", quality=95)
        pages.append(tmp.getvalue())
    if dpi:
        metadata["layout_fun"] = img2pdf.get_fixed_dpi_layout_fun((dpi, dpi))
    return img2pdf.convert(pages, **metadata)


__all__ = [
    "Rect",
    "box_to_pixels",
    "parse_color",
    "fill_box",
    "blur_region",
    "pixelate_region",
    "load_font",
    "fit_text",
    "draw_label",
    "mask_last4",
    "pattern_fill",
    "gradient_fill",
    "strip_metadata",
    "save_pdf",
]
