"""Exception taxonomy for CleanShare.

Single-file calls let these propagate to the caller; the bulk runner captures
them per file (see :mod:`cleanshare.batch`).
"""

from __future__ import annotations

from typing import Optional


class CleanShareError(Exception):
    """Base class for every error raised by the package."""


class ValidationError(CleanShareError, ValueError):
    """A preset, custom pattern or other user-supplied schema is invalid.

    ``field`` names the offending location (dotted path) when known.
    """

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class PresetImportError(CleanShareError):
    """Malformed JSON/YAML text handed to a preset import."""

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        column: Optional[int] = None,
        field: Optional[str] = None,
    ) -> None:
        where = []
        if line is not None:
            where.append(f"line {line}")
        if column is not None:
            where.append(f"column {column}")
        if field:
            where.append(f"field {field!r}")
        super().__init__(f"{message} ({', '.join(where)})" if where else message)
        self.line = line
        self.column = column
        self.field = field


class PresetNotFoundError(CleanShareError, KeyError):
    def __init__(self, preset_id: str) -> None:
        super().__init__(preset_id)
        self.preset_id = preset_id

    def __str__(self) -> str:
        return f"Unknown preset: {self.preset_id}"


class AnalysisError(CleanShareError):
    """OCR or PDF collaborator failure while analysing one file."""

    def __init__(self, message: str, *, file_name: Optional[str] = None) -> None:
        super().__init__(f"{file_name}: {message}" if file_name else message)
        self.file_name = file_name


class RedactionError(CleanShareError):
    """A redaction could not be planned or rendered.

    Raised for unknown detection ids (never guessed) and for any failure while
    rendering a file; in both cases no artifact is produced for that file.
    """

    def __init__(
        self,
        message: str,
        *,
        file_name: Optional[str] = None,
        detection_id: Optional[str] = None,
    ) -> None:
        super().__init__(f"{file_name}: {message}" if file_name else message)
        self.file_name = file_name
        self.detection_id = detection_id


class BulkSkippedError(CleanShareError):
    """Marks a file that was never scheduled because an earlier slice failed."""


__all__ = [
    "CleanShareError",
    "ValidationError",
    "PresetImportError",
    "PresetNotFoundError",
    "AnalysisError",
    "RedactionError",
    "BulkSkippedError",
]
