"""Composable building blocks for the CleanShare redaction pipeline."""

from .config import RunConfig
from .classification import Classification, TokenContext, classify
from .scoring import confidence_bucket, score
from .detection import assemble, assemble_page, resolve_overlaps
from .planning import DEFAULT_CONFIG, ActionOverride, plan, plan_all
from .rendering import (
    PdfBackend,
    PyMuPdfBackend,
    apply_redactions,
    render_image,
    render_pdf,
    to_pdf_rect,
)
from .orchestration import (
    ProcessResult,
    analyze_file,
    apply_file,
    process_file,
    process_path,
)

__all__ = [
    "RunConfig",
    "Classification",
    "TokenContext",
    "classify",
    "score",
    "confidence_bucket",
    "assemble",
    "assemble_page",
    "resolve_overlaps",
    "DEFAULT_CONFIG",
    "ActionOverride",
    "plan",
    "plan_all",
    "PdfBackend",
    "PyMuPdfBackend",
    "apply_redactions",
    "render_image",
    "render_pdf",
    "to_pdf_rect",
    "ProcessResult",
    "analyze_file",
    "apply_file",
    "process_file",
    "process_path",
]
