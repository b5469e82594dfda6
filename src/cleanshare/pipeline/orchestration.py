"""High-level orchestration for CleanShare runs.

``analyze_file`` and ``apply_file`` are coroutines; collaborator work (PDF
rasterization, OCR, rendering) runs in worker threads through
``asyncio.to_thread`` so several files can be in flight on one event loop.
"""

from __future__ import annotations

import asyncio
import io
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Sequence, Union

from PIL import Image, ImageOps

from cleanshare.audit import write_audit
from cleanshare.errors import AnalysisError, CleanShareError
from cleanshare.logging import get_logger
from cleanshare.models import (
    AnalyzeResult,
    ApplyResult,
    InputFile,
    OcrPage,
    PageSize,
    RedactionAction,
    RegionHint,
)
from cleanshare.ocr import OcrEngine, RegionDetector
from cleanshare.presets import Preset
from cleanshare.settings import get_settings

from .config import RunConfig
from .detection import assemble
from .planning import ActionOverride, plan_all
from .rendering import PdfBackend, PyMuPdfBackend, apply_redactions

logger = get_logger("cleanshare")

PdfBackendFactory = Callable[[], PdfBackend]


@dataclass
class ProcessResult:
    file: InputFile
    analysis: AnalyzeResult
    actions: List[RedactionAction]
    result: ApplyResult


def load_image(data: bytes) -> Image.Image:
    """Decode an image upright (EXIF orientation applied), as RGB."""
    with Image.open(io.BytesIO(data)) as src:
        src.load()
        img = ImageOps.exif_transpose(src)
    return img.convert("RGB") if img.mode != "RGB" else img


def rasterize(
    file: InputFile, config: RunConfig, pdf_backend_factory: PdfBackendFactory = PyMuPdfBackend
) -> List[Image.Image]:
    """Page images the OCR engine will read, in page order."""
    if file.media_type == "image":
        return [load_image(file.data)]
    backend = pdf_backend_factory()
    try:
        count = backend.load_document(file.data)
        return [backend.render_page_to_raster(i, config.dpi) for i in range(count)]
    finally:
        backend.close()


async def analyze_file(
    file: InputFile,
    ocr: OcrEngine,
    preset: Preset,
    config: Optional[RunConfig] = None,
    *,
    pdf_backend_factory: PdfBackendFactory = PyMuPdfBackend,
    region_detectors: Sequence[RegionDetector] = (),
) -> AnalyzeResult:
    """OCR every page of ``file`` and assemble its detections.

    Collaborator failures (unreadable file, OCR crash, malformed OCR payload)
    raise ``AnalysisError`` naming the file.
    """
    cfg = config or RunConfig()
    start = time.perf_counter()
    try:
        images = await asyncio.to_thread(rasterize, file, cfg, pdf_backend_factory)
        if not images:
            raise AnalysisError("Document has no pages", file_name=file.name)
        pages: List[OcrPage] = []
        hints: List[RegionHint] = []
        for index, img in enumerate(images):
            recognized = await asyncio.to_thread(ocr.recognize, img)
            pages.append(
                OcrPage(
                    index=index,
                    size=PageSize(width=img.width, height=img.height),
                    words=recognized.words,
                )
            )
            for detector in region_detectors:
                found = await asyncio.to_thread(detector.detect, img, index)
                hints.extend(RegionHint.model_validate(h) for h in found)
        result = assemble(pages, preset, hints=hints, page_count=len(images), config=cfg)
    except AnalysisError as exc:
        if exc.file_name is None:
            exc.file_name = file.name
        raise
    except Exception as exc:
        raise AnalysisError(f"Analysis failed: {exc}", file_name=file.name) from exc
    logger.info(
        "File analyzed",
        extra={
            "file": file.name,
            "pages": result.pages,
            "detections": len(result.detections),
            "duration_ms": round((time.perf_counter() - start) * 1000, 2),
        },
    )
    return result


async def apply_file(
    file: InputFile,
    actions: Sequence[RedactionAction],
    analysis: AnalyzeResult,
    config: Optional[RunConfig] = None,
    *,
    pdf_backend_factory: PdfBackendFactory = PyMuPdfBackend,
) -> ApplyResult:
    backend = pdf_backend_factory() if file.media_type == "pdf" else None
    return await asyncio.to_thread(apply_redactions, file, actions, analysis, config, backend)


async def process_file(
    file: InputFile,
    ocr: OcrEngine,
    preset: Preset,
    config: Optional[RunConfig] = None,
    *,
    overrides: Optional[Mapping[str, ActionOverride]] = None,
    pdf_backend_factory: PdfBackendFactory = PyMuPdfBackend,
    region_detectors: Sequence[RegionDetector] = (),
) -> ProcessResult:
    """Analyze, redact every retained detection, render."""
    analysis = await analyze_file(
        file,
        ocr,
        preset,
        config,
        pdf_backend_factory=pdf_backend_factory,
        region_detectors=region_detectors,
    )
    actions = plan_all(analysis, preset, overrides)
    result = await apply_file(
        file, actions, analysis, config, pdf_backend_factory=pdf_backend_factory
    )
    return ProcessResult(file=file, analysis=analysis, actions=actions, result=result)


def write_output(processed: ProcessResult, output_path: Union[str, Path], preset: Preset, config: Optional[RunConfig] = None) -> Path:
    """Write the artifact and, when enabled, its audit record."""
    out = Path(output_path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(processed.result.data)
    if get_settings().write_audit:
        try:
            write_audit(
                processed.file.name,
                processed.file.data,
                out,
                processed.result,
                preset,
                config=config,
                analysis=processed.analysis,
            )
        except (OSError, CleanShareError) as exc:
            logger.warning("Audit record not written", extra={"output": str(out), "error": str(exc)})
    return out


def process_path(
    input_path: Union[str, Path],
    output_path: Union[str, Path],
    ocr: OcrEngine,
    preset: Preset,
    config: Optional[RunConfig] = None,
    **kwargs,
) -> ProcessResult:
    """Synchronous single-file entry point used by the CLI."""
    cfg = config or RunConfig()
    file = InputFile.from_path(input_path)
    processed = asyncio.run(process_file(file, ocr, preset, cfg, **kwargs))
    write_output(processed, output_path, preset, cfg)
    return processed


__all__ = [
    "ProcessResult",
    "load_image",
    "rasterize",
    "analyze_file",
    "apply_file",
    "process_file",
    "write_output",
    "process_path",
]
