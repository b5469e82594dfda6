"""OCR and region-detector collaborators.

The pipeline only depends on the :class:`OcrEngine` and :class:`RegionDetector`
protocols. :class:`TesseractOcr` is the bundled engine: it extracts word-level
TSV with Tesseract and converts it into a typed :class:`OcrResult`.

Enhancements for difficult documents:
- Optional auto-PSM retry to maximize token recovery on noisy pages
"""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Protocol

import pandas as pd
import pytesseract
from PIL import Image

from .logging import get_logger
from .models import OcrBBox, OcrResult, OcrWord, RegionHint

logger = get_logger(__name__)

# Alternate page segmentation modes tried when the first pass finds little text.
ALTERNATE_PSMS = (6, 4, 11)
MIN_TOKENS = 5


class OcrEngine(Protocol):
    def recognize(self, image: Image.Image) -> OcrResult: ...


class RegionDetector(Protocol):
    """External detector reporting non-text regions such as faces or barcodes."""

    def detect(self, image: Image.Image, page: int) -> List[RegionHint]: ...


def words_from_tsv(tsv: pd.DataFrame) -> List[OcrWord]:
    """Convert a Tesseract TSV frame into typed words.

    Empty tokens and rows Tesseract marks with ``conf == -1`` are dropped;
    confidences are rescaled from 0-100 to [0, 1].
    """
    words: List[OcrWord] = []
    for row in tsv.itertuples(index=False):
        text = str(getattr(row, "text", "") or "").strip()
        if not text or text.lower() == "nan":
            continue
        conf = float(getattr(row, "conf", -1))
        if math.isnan(conf) or conf < 0:
            continue
        left, top = float(row.left), float(row.top)
        words.append(
            OcrWord(
                text=text,
                confidence=min(1.0, conf / 100.0),
                bbox=OcrBBox(x0=left, y0=top, x1=left + float(row.width), y1=top + float(row.height)),
            )
        )
    return words


class TesseractOcr:
    """:class:`OcrEngine` backed by ``pytesseract``.

    Parameters
    ----------
    lang:
        Tesseract language code.
    psm:
        Page segmentation mode (0-13).
    auto_psm:
        Re-run with alternate modes when fewer than ``MIN_TOKENS`` words come back.
    tess_configs:
        Extra ``-c key=value`` Tesseract variables.
    """

    def __init__(
        self,
        lang: str = "eng",
        psm: int = 3,
        *,
        auto_psm: bool = True,
        tess_configs: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.lang = lang
        self.psm = psm
        self.auto_psm = auto_psm
        self.tess_configs = {"preserve_interword_spaces": 1, **(tess_configs or {})}

    def _config(self, psm: int) -> str:
        parts = [f"--oem 1 --psm {psm}"]
        parts.extend(f"-c {k}={v}" for k, v in self.tess_configs.items())
        return " ".join(parts)

    def _run(self, image: Image.Image, psm: int) -> pd.DataFrame:
        tsv = pytesseract.image_to_data(
            image,
            lang=self.lang,
            config=self._config(psm),
            output_type=pytesseract.Output.DATAFRAME,
        )
        return tsv.dropna(subset=["text"]).reset_index(drop=True)

    def recognize(self, image: Image.Image) -> OcrResult:
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        tsv = self._run(image, self.psm)
        if self.auto_psm and len(tsv) < MIN_TOKENS:
            best = tsv
            for alt in ALTERNATE_PSMS:
                try:
                    alt_df = self._run(image, alt)
                except pytesseract.TesseractError as exc:
                    logger.warning("Alternate PSM failed", extra={"psm": alt, "error": str(exc)})
                    continue
                if len(alt_df) > len(best):
                    best = alt_df
            tsv = best
        words = words_from_tsv(tsv)
        logger.debug("OCR complete", extra={"words": len(words), "lang": self.lang})
        return OcrResult(words=words)


__all__ = ["OcrEngine", "RegionDetector", "TesseractOcr", "words_from_tsv"]
