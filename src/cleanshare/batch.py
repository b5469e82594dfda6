"""Bulk runner with bounded concurrency.

Files are processed in slices of ``max_concurrency``: every member of a slice
runs concurrently and the whole slice is awaited before the next one starts.
One file failing never aborts its siblings; ``stop_on_error`` only prevents
later slices from being scheduled.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, Set, TypeVar, Union

from tqdm import tqdm

from .errors import BulkSkippedError
from .history import HistoryStore
from .logging import get_logger
from .models import AnalyzeResult, InputFile
from .ocr import OcrEngine, RegionDetector
from .pipeline.config import RunConfig
from .pipeline.orchestration import (
    PdfBackendFactory,
    ProcessResult,
    analyze_file,
    apply_file,
    write_output,
)
from .pipeline.planning import plan_all
from .pipeline.rendering import PyMuPdfBackend, redacted_name
from .presets import Preset
from .settings import get_settings

logger = get_logger(__name__)

F = TypeVar("F")
A = TypeVar("A")
R = TypeVar("R")

AnalyzeFn = Callable[[F], Union[A, Awaitable[A]]]
ApplyFn = Callable[[F, A], Union[R, Awaitable[R]]]
ProgressFn = Callable[[int, int, str], None]
CompleteFn = Callable[[F, Optional[R], Optional[BaseException]], None]


@dataclass
class BulkResult(Generic[R]):
    """Outcome of a bulk run; ``results`` and ``errors`` align with the input.

    ``total`` counts scheduled files, so ``successful + failed == total``.
    Files left unscheduled by ``stop_on_error`` are counted in ``skipped`` and
    carry a :class:`BulkSkippedError`.
    """

    successful: int = 0
    failed: int = 0
    total: int = 0
    skipped: int = 0
    results: List[Optional[R]] = field(default_factory=list)
    errors: List[Optional[BaseException]] = field(default_factory=list)
    duration: float = 0.0


def _name(item: Any) -> str:
    name = getattr(item, "name", None)
    return str(name) if name else str(item)


async def _maybe_await(value):
    if inspect.isawaitable(value):
        return await value
    return value


def _notify(callback: Optional[Callable[..., None]], *args) -> None:
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        logger.exception("Bulk callback failed", extra={"callback": getattr(callback, "__name__", "")})


async def run_bulk(
    files: Sequence[F],
    analyze_fn: AnalyzeFn,
    apply_fn: ApplyFn,
    *,
    max_concurrency: Optional[int] = None,
    on_progress: Optional[ProgressFn] = None,
    on_file_complete: Optional[CompleteFn] = None,
    stop_on_error: bool = False,
) -> BulkResult:
    """Run ``apply_fn(file, await analyze_fn(file))`` for every file.

    ``on_progress(index, len(files), name)`` fires once per started file and
    ``on_file_complete(file, result, error)`` once per finished file.
    """
    limit = max(1, int(max_concurrency or get_settings().max_concurrency))
    n = len(files)
    out: BulkResult = BulkResult(results=[None] * n, errors=[None] * n)
    start = time.perf_counter()

    async def one(index: int, item: F) -> None:
        try:
            analysis = await _maybe_await(analyze_fn(item))
            result = await _maybe_await(apply_fn(item, analysis))
        except Exception as exc:
            out.errors[index] = exc
            out.failed += 1
            logger.warning("Bulk item failed", extra={"file": _name(item), "error": str(exc)})
            _notify(on_file_complete, item, None, exc)
            return
        out.results[index] = result
        out.successful += 1
        _notify(on_file_complete, item, result, None)

    for first in range(0, n, limit):
        if stop_on_error and out.failed:
            for index in range(first, n):
                out.errors[index] = BulkSkippedError(f"Not scheduled after an earlier failure: {_name(files[index])}")
            out.skipped = n - first
            break
        batch = list(range(first, min(n, first + limit)))
        for index in batch:
            _notify(on_progress, index, n, _name(files[index]))
        out.total += len(batch)
        await asyncio.gather(*(one(index, files[index]) for index in batch))

    out.duration = time.perf_counter() - start
    logger.info(
        "Bulk run finished",
        extra={
            "total": out.total,
            "successful": out.successful,
            "failed": out.failed,
            "skipped": out.skipped,
            "duration_s": round(out.duration, 3),
        },
    )
    return out


@dataclass
class _Job:
    file: InputFile
    analysis: AnalyzeResult
    record_id: Optional[str] = None


def output_stems(inputs: Sequence[Union[str, Path]]) -> List[str]:
    """Distinct output stems for ``inputs``, in input order.

    Inputs sharing a stem keep their source suffix (``scan-png``,
    ``scan-jpg``); any remaining clash gets a counter.
    """
    counts = Counter(Path(p).stem for p in inputs)
    seen: Set[str] = set()
    stems = []
    for p in inputs:
        path = Path(p)
        stem = path.stem or "output"
        if counts[path.stem] > 1 and path.suffix:
            stem = f"{stem}-{path.suffix.lstrip('.').lower()}"
        base, n = stem, 1
        while stem in seen:
            n += 1
            stem = f"{base}-{n}"
        seen.add(stem)
        stems.append(stem)
    return stems


def run_batch(
    inputs: Sequence[Union[str, Path]],
    output_dir: Union[str, Path],
    ocr: OcrEngine,
    preset: Preset,
    cfg: Optional[RunConfig] = None,
    *,
    max_concurrency: Optional[int] = None,
    stop_on_error: bool = False,
    history: Optional[HistoryStore] = None,
    pdf_backend_factory: PdfBackendFactory = PyMuPdfBackend,
    region_detectors: Sequence[RegionDetector] = (),
    show_progress: bool = True,
) -> BulkResult:
    """Process files from disk and write ``<stem>.redacted.<ext>`` outputs.

    Stems are made unique across ``inputs`` with :func:`output_stems`.

    Returns the :class:`BulkResult` whose ``results`` hold
    :class:`~cleanshare.pipeline.orchestration.ProcessResult` entries.
    """
    cfg = cfg or RunConfig()
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    session = history.start_session(len(inputs), preset.id, preset.name) if history else None
    records: Dict[str, str] = {}
    stems = dict(zip((str(p) for p in inputs), output_stems(inputs)))

    async def analyze(path) -> _Job:
        file = await asyncio.to_thread(InputFile.from_path, path)
        record_id = None
        if history is not None and session is not None:
            record_id = history.start_file(session.id, file).id
            records[str(path)] = record_id
        t0 = time.perf_counter()
        analysis = await analyze_file(
            file,
            ocr,
            preset,
            cfg,
            pdf_backend_factory=pdf_backend_factory,
            region_detectors=region_detectors,
        )
        if history is not None and record_id is not None:
            history.record_analysis(record_id, analysis, (time.perf_counter() - t0) * 1000)
        return _Job(file, analysis, record_id)

    async def apply(path, job: _Job) -> ProcessResult:
        t0 = time.perf_counter()
        actions = plan_all(job.analysis, preset)
        result = await apply_file(
            job.file, actions, job.analysis, cfg, pdf_backend_factory=pdf_backend_factory
        )
        processed = ProcessResult(file=job.file, analysis=job.analysis, actions=actions, result=result)
        name = redacted_name(stems[str(path)] + Path(job.file.name).suffix, result.media_type)
        target = await asyncio.to_thread(write_output, processed, out_dir / name, preset, cfg)
        if history is not None and job.record_id is not None:
            history.record_redaction(
                job.record_id,
                result.report,
                (time.perf_counter() - t0) * 1000,
                output_size=len(result.data),
            )
        logger.info("Batch item written", extra={"input": str(path), "output": str(target)})
        return processed

    bar = tqdm(total=len(inputs), desc="Redact", disable=not show_progress)

    def complete(path, result, error) -> None:
        bar.update(1)
        record_id = records.get(str(path))
        if error is not None and history is not None and record_id is not None:
            history.record_failure(record_id, str(error))

    try:
        result = asyncio.run(
            run_bulk(
                list(inputs),
                analyze,
                apply,
                max_concurrency=max_concurrency,
                on_file_complete=complete,
                stop_on_error=stop_on_error,
            )
        )
    finally:
        bar.close()
    if history is not None and session is not None:
        history.end_session(session.id, "failed" if result.failed else "completed")
    return result


__all__ = ["BulkResult", "output_stems", "run_bulk", "run_batch"]
