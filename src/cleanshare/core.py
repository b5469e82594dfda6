"""Public entry points for the CleanShare pipeline.

The implementation lives in ``cleanshare.pipeline`` modules split by
responsibility (classification, scoring, detection, planning, rendering,
orchestration) plus the bulk runner in ``cleanshare.batch``. This module
re-exports the surface expected by downstream callers.
"""

from __future__ import annotations

from .batch import BulkResult, run_batch, run_bulk
from .pipeline import (
    ActionOverride,
    ProcessResult,
    RunConfig,
    analyze_file,
    apply_file,
    apply_redactions,
    assemble,
    classify,
    plan,
    plan_all,
    process_file,
    process_path,
    score,
)

__all__ = [
    "RunConfig",
    "ActionOverride",
    "ProcessResult",
    "BulkResult",
    "classify",
    "score",
    "assemble",
    "plan",
    "plan_all",
    "apply_redactions",
    "analyze_file",
    "apply_file",
    "process_file",
    "process_path",
    "run_bulk",
    "run_batch",
]
