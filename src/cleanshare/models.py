"""Typed data model shared by the analysis and redaction pipeline.

Every entity crossing a module or collaborator boundary is a pydantic model so
that malformed payloads (OCR output, imported presets, stored history) fail
validation instead of travelling through the pipeline as loose dicts. JSON
field names are camelCase (``enabledKinds``, ``detectionId``); Python code uses
the snake_case attribute names.
"""

from __future__ import annotations

import base64
import math
import mimetypes
from enum import Enum
from pathlib import Path
from typing import Annotated, Dict, List, Literal, Optional, Tuple, Union

from PIL import ImageColor
from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .validators import compile_pattern


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DetectionKind(str, Enum):
    FACE = "FACE"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    PAN = "PAN"
    IBAN = "IBAN"
    SSN = "SSN"
    PASSPORT = "PASSPORT"
    JWT = "JWT"
    API_KEY = "API_KEY"
    BARCODE = "BARCODE"
    NAME = "NAME"
    ADDRESS = "ADDRESS"
    OTHER = "OTHER"


class RedactionStyle(str, Enum):
    BOX = "BOX"
    SOLID_COLOR = "SOLID_COLOR"
    BLUR = "BLUR"
    PIXELATE = "PIXELATE"
    LABEL = "LABEL"
    MASK_LAST4 = "MASK_LAST4"
    PATTERN = "PATTERN"
    GRADIENT = "GRADIENT"
    VECTOR_OVERLAY = "VECTOR_OVERLAY"
    REMOVE_METADATA = "REMOVE_METADATA"


class PatternType(str, Enum):
    DIAGONAL = "diagonal"
    DOTS = "dots"
    CROSS_HATCH = "cross-hatch"
    WAVES = "waves"
    NOISE = "noise"


def _clamp01(value: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))


class Box(_Schema):
    """Rectangle in page-relative coordinates, origin at the top-left."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    w: float
    h: float
    page: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _clamp(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        x = _clamp01(float(data.get("x", 0.0)))
        y = _clamp01(float(data.get("y", 0.0)))
        w = float(data.get("w", 0.0))
        h = float(data.get("h", 0.0))
        data["x"] = x
        data["y"] = y
        data["w"] = min(_clamp01(w), 1.0 - x)
        data["h"] = min(_clamp01(h), 1.0 - y)
        return data

    @classmethod
    def from_pixels(
        cls,
        x0: float,
        y0: float,
        x1: float,
        y1: float,
        width: float,
        height: float,
        page: Optional[int] = None,
    ) -> "Box":
        """Normalize a pixel (or PDF unit) rectangle by the page dimensions."""
        if width <= 0 or height <= 0:
            raise ValueError(f"page dimensions must be positive, got {width}x{height}")
        left, right = sorted((x0, x1))
        top, bottom = sorted((y0, y1))
        return cls(
            x=left / width,
            y=top / height,
            w=(right - left) / width,
            h=(bottom - top) / height,
            page=page,
        )

    @property
    def area(self) -> float:
        return self.w * self.h

    @property
    def page_index(self) -> int:
        return self.page or 0

    def intersection_area(self, other: "Box") -> float:
        ix = max(0.0, min(self.x + self.w, other.x + other.w) - max(self.x, other.x))
        iy = max(0.0, min(self.y + self.h, other.y + other.h) - max(self.y, other.y))
        return ix * iy

    def iou(self, other: "Box") -> float:
        inter = self.intersection_area(other)
        union = self.area + other.area - inter
        return inter / union if union > 0 else 0.0

    def contains(self, other: "Box") -> bool:
        return (
            self.x <= other.x
            and self.y <= other.y
            and self.x + self.w >= other.x + other.w
            and self.y + self.h >= other.y + other.h
        )

    def union(self, other: "Box") -> "Box":
        x0 = min(self.x, other.x)
        y0 = min(self.y, other.y)
        x1 = max(self.x + self.w, other.x + other.w)
        y1 = max(self.y + self.h, other.y + other.h)
        return Box(x=x0, y=y0, w=x1 - x0, h=y1 - y0, page=self.page)


class Detection(_Schema):
    """One classified, confidence-scored finding. Immutable once assembled."""

    model_config = ConfigDict(frozen=True)

    id: str
    kind: DetectionKind
    box: Box
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str
    preview: Optional[str] = None

    @property
    def page(self) -> int:
        return self.box.page_index


class CustomPattern(_Schema):
    """User supplied regular expression mapped onto a detection kind."""

    id: str
    name: str = ""
    pattern: str
    kind: DetectionKind = DetectionKind.OTHER
    confidence: float = Field(default=0.8, ge=0.0, le=1.0)
    description: str = ""
    case_sensitive: bool = False

    @field_validator("pattern")
    @classmethod
    def _must_compile(cls, value: str) -> str:
        if not value:
            raise ValueError("pattern must not be empty")
        compile_pattern(value, True)
        return value

    def fullmatch(self, token: str) -> bool:
        return compile_pattern(self.pattern, self.case_sensitive).fullmatch(token) is not None


def _check_color(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        ImageColor.getrgb(value)
    except ValueError as exc:
        raise ValueError(f"invalid color {value!r}") from exc
    return value


Color = Annotated[Optional[str], AfterValidator(_check_color)]


class Shadow(_Schema):
    offset_x: float = 2.0
    offset_y: float = 2.0
    blur: float = 0.0
    color: Color = "#000000"


class RedactionConfig(_Schema):
    """Visual parameters of a redaction. ``None`` means "inherit"."""

    color: Color = None
    secondary_color: Color = None
    opacity: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    pattern_type: Optional[PatternType] = None
    border_width: Optional[float] = Field(default=None, ge=0.0)
    border_color: Color = None
    corner_radius: Optional[float] = Field(default=None, ge=0.0)
    label_text: Optional[str] = None
    font_size: Optional[int] = Field(default=None, gt=0)
    font_family: Optional[str] = None
    shadow: Optional[Shadow] = None

    @classmethod
    def merge(cls, *configs: Optional["RedactionConfig"]) -> "RedactionConfig":
        """Merge configs left to right; later non-null fields win."""
        data: Dict[str, object] = {}
        for cfg in configs:
            if cfg is None:
                continue
            data.update(cfg.model_dump(exclude_none=True))
        return cls(**data)


class RedactionAction(_Schema):
    model_config = ConfigDict(frozen=True)

    detection_id: str
    style: RedactionStyle = RedactionStyle.BOX
    config: RedactionConfig = Field(default_factory=RedactionConfig)


class AnalyzeResult(_Schema):
    detections: List[Detection] = Field(default_factory=list)
    pages: int = Field(default=1, ge=1)
    ocr_stats: Optional[Dict[str, float]] = None

    @model_validator(mode="after")
    def _consistent(self) -> "AnalyzeResult":
        seen = set()
        for det in self.detections:
            if det.id in seen:
                raise ValueError(f"duplicate detection id {det.id!r}")
            seen.add(det.id)
            if det.page >= self.pages:
                raise ValueError(
                    f"detection {det.id!r} is on page {det.page} but the document has {self.pages} page(s)"
                )
        return self

    def by_id(self) -> Dict[str, Detection]:
        return {det.id: det for det in self.detections}


class ActionOutcome(_Schema):
    detection_id: str
    kind: DetectionKind
    style: RedactionStyle
    page: int = 0
    status: Literal["applied"] = "applied"
    reversible: bool = False
    rect: Tuple[float, float, float, float]


class RedactionReport(_Schema):
    total_detections: int = 0
    redacted_count: int = 0
    by_kind: Dict[str, int] = Field(default_factory=dict)
    by_style: Dict[str, int] = Field(default_factory=dict)
    outcomes: List[ActionOutcome] = Field(default_factory=list)
    metadata_stripped: bool = True

    @model_validator(mode="after")
    def _one_outcome_per_action(self) -> "RedactionReport":
        if len(self.outcomes) != self.redacted_count:
            raise ValueError("report must hold exactly one outcome per applied action")
        return self

    @classmethod
    def from_outcomes(
        cls,
        outcomes: List[ActionOutcome],
        *,
        total_detections: int,
        metadata_stripped: bool,
    ) -> "RedactionReport":
        by_kind: Dict[str, int] = {}
        by_style: Dict[str, int] = {}
        for outcome in outcomes:
            by_kind[outcome.kind.value] = by_kind.get(outcome.kind.value, 0) + 1
            by_style[outcome.style.value] = by_style.get(outcome.style.value, 0) + 1
        return cls(
            total_detections=total_detections,
            redacted_count=len(outcomes),
            by_kind=by_kind,
            by_style=by_style,
            outcomes=outcomes,
            metadata_stripped=metadata_stripped,
        )


class ApplyResult(_Schema):
    data: bytes = Field(repr=False)
    media_type: str
    report: RedactionReport
    file_name: Optional[str] = None

    @property
    def file_uri(self) -> str:
        return f"data:{self.media_type};base64,{base64.b64encode(self.data).decode('ascii')}"


# --- collaborator payloads -------------------------------------------------


class OcrBBox(_Schema):
    x0: float
    y0: float
    x1: float
    y1: float

    @model_validator(mode="after")
    def _ordered(self) -> "OcrBBox":
        if self.x1 < self.x0 or self.y1 < self.y0:
            raise ValueError("bbox corners must satisfy x0 <= x1 and y0 <= y1")
        return self


class OcrWord(_Schema):
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    bbox: OcrBBox


class OcrResult(_Schema):
    words: List[OcrWord] = Field(default_factory=list)


class PageSize(_Schema):
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class OcrPage(_Schema):
    """OCR output for one page together with the raster it was computed on."""

    index: int = Field(default=0, ge=0)
    size: PageSize
    words: List[OcrWord] = Field(default_factory=list)


class RegionHint(_Schema):
    """Region reported by an external detector (faces, barcodes)."""

    kind: DetectionKind
    bbox: OcrBBox
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    reason: str = ""
    preview: Optional[str] = None
    page: int = Field(default=0, ge=0)


IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp", ".gif"}


class InputFile(_Schema):
    name: str
    data: bytes = Field(repr=False)
    media_type: Literal["image", "pdf"]

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "InputFile":
        p = Path(path)
        if not p.is_file():
            raise FileNotFoundError(f"Input not found: {path}")
        ext = p.suffix.lower()
        if ext == ".pdf":
            kind = "pdf"
        elif ext in IMAGE_SUFFIXES:
            kind = "image"
        else:
            mimetype = mimetypes.guess_type(str(p))[0] or ""
            if "pdf" in mimetype:
                kind = "pdf"
            elif mimetype.startswith("image/"):
                kind = "image"
            else:
                raise ValueError(f"Unsupported input type: {path}")
        return cls(name=p.name, data=p.read_bytes(), media_type=kind)


__all__ = [
    "DetectionKind",
    "RedactionStyle",
    "PatternType",
    "Box",
    "Detection",
    "CustomPattern",
    "Shadow",
    "RedactionConfig",
    "RedactionAction",
    "AnalyzeResult",
    "ActionOutcome",
    "RedactionReport",
    "ApplyResult",
    "OcrBBox",
    "OcrWord",
    "OcrResult",
    "PageSize",
    "OcrPage",
    "RegionHint",
    "InputFile",
]
