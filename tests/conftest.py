import io
from typing import Dict, List, Optional, Sequence, Tuple

import pytest
from PIL import Image

import cleanshare.settings as settings
from cleanshare.models import OcrBBox, OcrPage, OcrResult, OcrWord, PageSize

JWT = (
    "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9"
    ".eyJzdWIiOiIxMjM0NTY3ODkwIiwibmFtZSI6IkpvaG4ifQ"
    ".SflKxwRJSMeKKF2QT4fwpMeJf36POk6yJV_adQssw5c"
)


@pytest.fixture(autouse=True)
def _isolated_settings(tmp_path, monkeypatch):
    monkeypatch.setenv("CLEANSHARE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("CLEANSHARE_HMAC_KEY", raising=False)
    settings.reset_settings_cache()
    yield
    settings.reset_settings_cache()


def line_words(
    tokens: Sequence[str],
    *,
    y: float = 10,
    height: float = 20,
    x: float = 10,
    char_width: float = 10,
    gap: float = 10,
    confidence: float = 0.95,
) -> List[OcrWord]:
    """Lay ``tokens`` out left to right on one text line."""
    words = []
    for token in tokens:
        width = char_width * len(token)
        words.append(
            OcrWord(
                text=token,
                confidence=confidence,
                bbox=OcrBBox(x0=x, y0=y, x1=x + width, y1=y + height),
            )
        )
        x += width + gap
    return words


def make_page(words: List[OcrWord], index: int = 0, width: float = 2000, height: float = 1000) -> OcrPage:
    return OcrPage(index=index, size=PageSize(width=width, height=height), words=words)


class FakeOcr:
    """Returns a canned word list per call, cycling through ``pages``."""

    def __init__(self, pages: Sequence[List[OcrWord]], fail: bool = False) -> None:
        self.pages = list(pages)
        self.fail = fail
        self.calls = 0

    def recognize(self, image: Image.Image) -> OcrResult:
        if self.fail:
            raise RuntimeError("tesseract crashed")
        words = self.pages[self.calls % len(self.pages)] if self.pages else []
        self.calls += 1
        return OcrResult(words=words)


class FakePdfBackend:
    """In-memory PdfBackend that records every drawing call."""

    def __init__(self, pages: int = 1, size: Tuple[float, float] = (612.0, 792.0), fail_on_draw: bool = False):
        self.page_count = pages
        self.size = size
        self.fail_on_draw = fail_on_draw
        self.loaded: Optional[bytes] = None
        self.rectangles: List[Tuple] = []
        self.lines: List[Tuple] = []
        self.texts: List[Tuple] = []
        self.metadata: Dict[str, object] = {}
        self.closed = False

    def load_document(self, data: bytes) -> int:
        self.loaded = data
        return self.page_count

    def get_page_size(self, index: int) -> PageSize:
        return PageSize(width=self.size[0], height=self.size[1])

    def render_page_to_raster(self, index: int, dpi: int = 150) -> Image.Image:
        scale = dpi / 72.0
        return Image.new("RGB", (int(self.size[0] * scale), int(self.size[1] * scale)), "white")

    def draw_rectangle(self, page, x, y, w, h, color, opacity=1.0) -> None:
        if self.fail_on_draw:
            raise RuntimeError("content stream locked")
        self.rectangles.append((page, x, y, w, h, color, opacity))

    def draw_line(self, page, x0, y0, x1, y1, color, width=1.0) -> None:
        self.lines.append((page, x0, y0, x1, y1, color, width))

    def draw_text(self, page, x, y, text, size, color) -> None:
        self.texts.append((page, x, y, text, size, color))

    def clear_metadata(self, producer, when) -> None:
        self.metadata = {"producer": producer, "when": when}

    def save(self) -> bytes:
        return b"%PDF-1.7 fake"

    def close(self) -> None:
        self.closed = True


def png_bytes(size=(200, 100), color="white", exif: Optional[Image.Exif] = None) -> bytes:
    img = Image.new("RGB", size, color)
    buf = io.BytesIO()
    if exif is not None:
        img.save(buf, format="JPEG", exif=exif)
    else:
        img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def fake_backend():
    return FakePdfBackend()
