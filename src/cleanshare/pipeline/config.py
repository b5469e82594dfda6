"""Configuration primitives for the CleanShare pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Literal, Optional

from cleanshare.models import CustomPattern
from cleanshare.settings import get_settings


@dataclass
class RunConfig:
    """Per-run options for analysis and rendering."""

    preset_id: Optional[str] = None
    # Overrides the preset threshold when set.
    confidence_threshold: Optional[float] = None
    custom_patterns: List[CustomPattern] = field(default_factory=list)
    lang: str = field(default_factory=lambda: get_settings().ocr_lang)
    psm: int = 3
    auto_psm: bool = True
    dpi: int = field(default_factory=lambda: get_settings().pdf_dpi)
    merge_tokens: bool = True
    # None keeps the input's kind (image in, image out; pdf in, pdf out).
    output: Optional[Literal["image", "pdf"]] = None
    image_format: Literal["PNG", "JPEG"] = "PNG"
    jpeg_quality: int = 92
    pdf_mode: Literal["vector", "raster"] = "vector"
    strip_metadata: bool = True
    box_inflation_px: int = 1

    def __post_init__(self) -> None:
        if self.confidence_threshold is not None and not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be within [0, 1]")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be within [1, 100]")
        if self.dpi <= 0:
            raise ValueError("dpi must be positive")
        if self.pdf_mode not in ("vector", "raster"):
            raise ValueError(f"pdf_mode must be vector or raster, got {self.pdf_mode!r}")
        if self.image_format not in ("PNG", "JPEG"):
            raise ValueError(f"image_format must be PNG or JPEG, got {self.image_format!r}")


__all__ = ["RunConfig"]
