"""Command-line interface for CleanShare.

Provides:
- `analyze`: List the sensitive findings in an image or PDF.
- `redact`: Write a sanitized copy of one file.
- `batch`: Redact every supported file of a directory or glob.
- `presets list|export|import`: Manage detection presets.
- `history export`: Export the processing history as JSON or CSV.
"""

import asyncio
from glob import glob
from pathlib import Path
from typing import List, Optional

import orjson
import typer
from rich import print
from rich.console import Console
from rich.table import Table

from .batch import run_batch
from .errors import CleanShareError
from .history import HistoryStore
from .models import IMAGE_SUFFIXES, InputFile, RedactionStyle
from .ocr import OcrEngine, RegionDetector, TesseractOcr
from .pipeline.config import RunConfig
from .pipeline.orchestration import analyze_file, process_path
from .pipeline.scoring import confidence_bucket
from .presets import Preset, PresetStore, load_preset_file
from .regions import default_region_detectors
from .settings import get_settings
from .storage import JsonFileStorage

app = typer.Typer(add_completion=False, help="CleanShare sensitive-content redactor")
presets_app = typer.Typer(add_completion=False, help="Manage detection presets")
history_app = typer.Typer(add_completion=False, help="Processing history")
app.add_typer(presets_app, name="presets")
app.add_typer(history_app, name="history")

console = Console()


def _storage() -> JsonFileStorage:
    return JsonFileStorage(get_settings().data_dir / "store")


def _preset_store() -> PresetStore:
    return PresetStore(_storage())


def _history() -> HistoryStore:
    return HistoryStore(_storage())


def _ocr_engine(cfg: RunConfig) -> OcrEngine:
    return TesseractOcr(lang=cfg.lang, psm=cfg.psm, auto_psm=cfg.auto_psm)


def _region_detectors(enabled: bool) -> List[RegionDetector]:
    return default_region_detectors() if enabled else []


def _resolve_preset(ref: Optional[str]) -> Preset:
    ref = ref or get_settings().default_preset
    path = Path(ref)
    if path.suffix.lower() in {".yaml", ".yml", ".json"} and path.exists():
        return load_preset_file(path)
    return _preset_store().require(ref)


def _fail(exc: Exception) -> None:
    print(f"[red]Error:[/red] {exc}")
    raise typer.Exit(1)


@app.command()
def analyze(
    input: str = typer.Option(..., "--input", "-i", help="Input image or PDF"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset id or preset file"),
    threshold: Optional[float] = typer.Option(None, help="Override the preset confidence threshold"),
    dpi: Optional[int] = typer.Option(None, help="Rasterization DPI for PDFs"),
    psm: int = typer.Option(3, help="Tesseract PSM"),
    lang: Optional[str] = typer.Option(None, help="Tesseract language"),
    auto_psm: bool = typer.Option(
        True, "--auto-psm/--no-auto-psm", help="Auto retry PSM to maximize tokens"
    ),
    json_out: Optional[str] = typer.Option(None, "--json", help="Write the analysis as JSON"),
    regions: bool = typer.Option(True, "--regions/--no-regions", help="Detect QR codes and faces"),
):
    """Detect sensitive content and print one row per finding."""
    try:
        cfg = RunConfig(confidence_threshold=threshold, psm=psm, auto_psm=auto_psm)
        if dpi:
            cfg.dpi = dpi
        if lang:
            cfg.lang = lang
        chosen = _resolve_preset(preset)
        file = InputFile.from_path(input)
        result = asyncio.run(
            analyze_file(file, _ocr_engine(cfg), chosen, cfg, region_detectors=_region_detectors(regions))
        )
    except (CleanShareError, FileNotFoundError, ValueError) as exc:
        _fail(exc)

    table = Table(title=f"{file.name}: {len(result.detections)} detection(s), preset {chosen.id}")
    for column in ("Id", "Kind", "Page", "Confidence", "Reason", "Preview"):
        table.add_column(column)
    for det in result.detections:
        table.add_row(
            det.id,
            det.kind.value,
            str(det.page + 1),
            f"{det.confidence:.2f} ({confidence_bucket(det.confidence)})",
            det.reason,
            det.preview or "",
        )
    console.print(table)
    if json_out:
        Path(json_out).write_bytes(
            orjson.dumps(result.model_dump(mode="json", by_alias=True), option=orjson.OPT_INDENT_2)
        )
        print(f"[green]Analysis:[/green] {json_out}")


@app.command()
def redact(
    input: str = typer.Option(..., "--input", "-i", help="Input image or PDF"),
    output: str = typer.Option(..., "--output", "-o", help="Output path"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset id or preset file"),
    style: Optional[RedactionStyle] = typer.Option(None, help="Force one style for every redaction"),
    threshold: Optional[float] = typer.Option(None, help="Override the preset confidence threshold"),
    pdf_mode: str = typer.Option("vector", help="PDF mode: vector | raster"),
    image_format: str = typer.Option("PNG", help="Image output format: PNG | JPEG"),
    dpi: Optional[int] = typer.Option(None, help="Rasterization DPI for PDFs"),
    psm: int = typer.Option(3, help="Tesseract PSM"),
    lang: Optional[str] = typer.Option(None, help="Tesseract language"),
    box_inflate: int = typer.Option(1, help="Inflate redaction boxes (px)"),
    regions: bool = typer.Option(True, "--regions/--no-regions", help="Detect QR codes and faces"),
):
    """Redact every retained detection and write the sanitized file.

    Parameters
    ----------
    input:
        Image or PDF to sanitize.
    output:
        Destination; an audit JSON is written next to it unless disabled.
    style:
        Overrides the preset style map for every detection.
    pdf_mode:
        ``vector`` draws over the page content, ``raster`` rebuilds every page.
    """
    try:
        cfg = RunConfig(
            confidence_threshold=threshold,
            psm=psm,
            pdf_mode=pdf_mode.lower(),
            image_format=image_format.upper(),
            box_inflation_px=box_inflate,
        )
        if dpi:
            cfg.dpi = dpi
        if lang:
            cfg.lang = lang
        chosen = _resolve_preset(preset)
        if style is not None:
            chosen = chosen.model_copy(update={"style_map": {k: style for k in chosen.enabled_kinds}})
        processed = process_path(
            input, output, _ocr_engine(cfg), chosen, cfg, region_detectors=_region_detectors(regions)
        )
    except (CleanShareError, FileNotFoundError, ValueError) as exc:
        _fail(exc)
    report = processed.result.report
    print(
        f"[green]Redacted:[/green] {output} "
        f"({report.redacted_count}/{report.total_detections} detections)"
    )
    reversible = [o.detection_id for o in report.outcomes if o.reversible]
    if reversible:
        print(f"[yellow]Reversible redactions:[/yellow] {', '.join(reversible)}")


@app.command()
def batch(
    input_dir: str = typer.Option(..., help="Input directory or glob pattern"),
    output_dir: str = typer.Option(..., help="Output directory"),
    preset: Optional[str] = typer.Option(None, "--preset", "-p", help="Preset id or preset file"),
    workers: Optional[int] = typer.Option(None, help="Files processed concurrently"),
    stop_on_error: bool = typer.Option(False, help="Do not start new files after a failure"),
    pdf_mode: str = typer.Option("vector", help="PDF mode: vector | raster"),
    dpi: Optional[int] = typer.Option(None, help="Rasterization DPI for PDFs"),
    lang: Optional[str] = typer.Option(None, help="Tesseract language"),
    regions: bool = typer.Option(True, "--regions/--no-regions", help="Detect QR codes and faces"),
):
    """Batch process multiple inputs concurrently."""
    files: List[str] = []
    p = Path(input_dir)
    if p.exists() and p.is_dir():
        for fp in sorted(p.iterdir()):
            if fp.suffix.lower() in IMAGE_SUFFIXES | {".pdf"}:
                files.append(str(fp))
    else:
        files = sorted(glob(input_dir))
    if not files:
        print("[red]No inputs found[/red]")
        raise typer.Exit(1)
    try:
        cfg = RunConfig(pdf_mode=pdf_mode.lower())
        if dpi:
            cfg.dpi = dpi
        if lang:
            cfg.lang = lang
        chosen = _resolve_preset(preset)
    except (CleanShareError, ValueError) as exc:
        _fail(exc)
    result = run_batch(
        files,
        output_dir,
        _ocr_engine(cfg),
        chosen,
        cfg,
        max_concurrency=workers,
        stop_on_error=stop_on_error,
        history=_history(),
        region_detectors=_region_detectors(regions),
    )
    for path, error in zip(files, result.errors):
        if error is not None:
            print(f"[red]{Path(path).name}:[/red] {error}")
    print(
        f"[green]Completed {result.successful}/{result.total} files[/green]"
        + (f", {result.skipped} skipped" if result.skipped else "")
    )
    if result.failed:
        raise typer.Exit(1)


@presets_app.command("list")
def presets_list():
    """List built-in and user presets."""
    table = Table()
    for column in ("Id", "Name", "Kinds", "Threshold", "Built-in"):
        table.add_column(column)
    for preset in _preset_store().list_presets():
        table.add_row(
            preset.id,
            preset.name,
            ", ".join(k.value for k in preset.enabled_kinds),
            f"{preset.confidence_threshold:.2f}",
            "yes" if preset.builtin else "",
        )
    console.print(table)


@presets_app.command("export")
def presets_export(
    output: str = typer.Option(..., "--output", "-o", help="Destination file"),
    ids: Optional[List[str]] = typer.Option(None, "--id", help="Preset id (repeatable)"),
    fmt: str = typer.Option("json", "--format", help="json | yaml"),
):
    """Export presets to a JSON or YAML document."""
    try:
        text = _preset_store().export_presets(ids or None, fmt)
    except CleanShareError as exc:
        _fail(exc)
    Path(output).write_text(text, encoding="utf-8")
    print(f"[green]Exported presets:[/green] {output}")


@presets_app.command("import")
def presets_import(
    path: str = typer.Argument(..., help="JSON or YAML preset document"),
    fmt: Optional[str] = typer.Option(None, "--format", help="json | yaml (default: from suffix)"),
):
    """Import user presets; nothing is saved unless every preset validates."""
    src = Path(path)
    if not src.exists():
        _fail(FileNotFoundError(f"Preset file not found: {path}"))
    kind = fmt or ("yaml" if src.suffix.lower() in {".yaml", ".yml"} else "json")
    try:
        saved = _preset_store().import_presets(src.read_text(encoding="utf-8"), kind)
    except CleanShareError as exc:
        _fail(exc)
    print(f"[green]Imported {len(saved)} preset(s):[/green] {', '.join(p.id for p in saved)}")


@history_app.command("export")
def history_export(
    output: str = typer.Option(..., "--output", "-o", help="Destination file"),
    fmt: str = typer.Option("json", "--format", help="json | csv"),
):
    """Export sessions, file records and stats."""
    store = _history()
    text = store.export_csv() if fmt.lower() == "csv" else store.export_json()
    Path(output).write_text(text, encoding="utf-8")
    print(f"[green]History:[/green] {output}")


if __name__ == "__main__":
    app()
