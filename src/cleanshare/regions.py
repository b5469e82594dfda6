"""Region detectors for content OCR cannot read: QR codes and faces.

Both implement :class:`cleanshare.ocr.RegionDetector` with OpenCV and report
pixel boxes on the page raster they were given.
"""

from __future__ import annotations

import os
import threading
from typing import List, Optional, Tuple

import cv2
import numpy as np
from PIL import Image

from .logging import get_logger
from .models import DetectionKind, OcrBBox, RegionHint
from .ocr import RegionDetector

logger = get_logger(__name__)

MAX_PREVIEW = 64
FACE_CASCADE = "haarcascade_frontalface_default.xml"


def _gray(image: Image.Image) -> np.ndarray:
    return np.asarray(image.convert("L"))


def _clamped_bbox(corners: np.ndarray, width: int, height: int) -> OcrBBox:
    x0, y0 = corners.min(axis=0)
    x1, y1 = corners.max(axis=0)
    return OcrBBox(
        x0=float(min(max(x0, 0), width)),
        y0=float(min(max(y0, 0), height)),
        x1=float(min(max(x1, 0), width)),
        y1=float(min(max(y1, 0), height)),
    )


class QrCodeDetector:
    """Report every QR code on a page as a BARCODE region.

    Undecodable codes are still reported; only the preview is empty.
    """

    def detect(self, image: Image.Image, page: int) -> List[RegionHint]:
        gray = _gray(image)
        found, decoded, points, _ = cv2.QRCodeDetector().detectAndDecodeMulti(gray)
        if not found or points is None:
            return []
        hints = []
        for text, corners in zip(decoded, points):
            hints.append(
                RegionHint(
                    kind=DetectionKind.BARCODE,
                    bbox=_clamped_bbox(np.asarray(corners).reshape(-1, 2), image.width, image.height),
                    confidence=1.0,
                    reason="Detected QR code",
                    preview=text[:MAX_PREVIEW] or None,
                    page=page,
                )
            )
        logger.debug("QR scan complete", extra={"page": page, "codes": len(hints)})
        return hints


class FaceDetector:
    """Frontal faces via an OpenCV Haar cascade.

    Parameters
    ----------
    cascade_path:
        Cascade XML; defaults to the frontal-face model shipped with OpenCV.
    scale_factor, min_neighbors, min_size:
        Passed to ``detectMultiScale``.
    """

    def __init__(
        self,
        cascade_path: Optional[str] = None,
        *,
        scale_factor: float = 1.1,
        min_neighbors: int = 5,
        min_size: Tuple[int, int] = (24, 24),
    ) -> None:
        self.cascade_path = cascade_path or os.path.join(cv2.data.haarcascades, FACE_CASCADE)
        exists = os.path.isfile(self.cascade_path)
        self._classifier = cv2.CascadeClassifier(self.cascade_path) if exists else None
        if self._classifier is None or self._classifier.empty():
            raise ValueError(f"Cannot load face cascade: {self.cascade_path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_size = min_size
        # One classifier instance is shared by the bulk runner's worker threads.
        self._lock = threading.Lock()

    def detect(self, image: Image.Image, page: int) -> List[RegionHint]:
        gray = cv2.equalizeHist(_gray(image))
        with self._lock:
            faces = self._classifier.detectMultiScale(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=self.min_size,
            )
        hints = [
            RegionHint(
                kind=DetectionKind.FACE,
                bbox=OcrBBox(x0=float(x), y0=float(y), x1=float(x + w), y1=float(y + h)),
                confidence=1.0,
                reason="Detected frontal face",
                page=page,
            )
            for x, y, w, h in faces
        ]
        logger.debug("Face scan complete", extra={"page": page, "faces": len(hints)})
        return hints


def default_region_detectors() -> List[RegionDetector]:
    return [QrCodeDetector(), FaceDetector()]


__all__ = ["FaceDetector", "QrCodeDetector", "default_region_detectors"]
