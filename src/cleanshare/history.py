"""Processing history: sessions, per-file records, stats and report export.

History is kept in the same injected key-value storage as user presets, one
document per session and per file record, so a :class:`HistoryStore` can be
shared by the CLI, the batch runner and tests without module-level state.
"""

from __future__ import annotations

import csv
import secrets
import time
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

import orjson
import pandas as pd
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .logging import get_logger
from .models import AnalyzeResult, InputFile, RedactionReport
from .pipeline.scoring import confidence_bucket
from .storage import KeyValueStorage, MemoryStorage

logger = get_logger(__name__)

CSV_COLUMNS = [
    "Session ID",
    "File Name",
    "File Size",
    "File Type",
    "Timestamp",
    "Processing Time (ms)",
    "Status",
    "Total Detections",
    "Average Confidence",
    "High Confidence Count",
    "Medium Confidence Count",
    "Low Confidence Count",
    "Total Redactions",
    "Preset Name",
    "Error",
]


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ConfidenceDistribution(_Record):
    low: int = 0
    medium: int = 0
    high: int = 0


class RedactionStats(_Record):
    total: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)
    by_style: Dict[str, int] = Field(default_factory=dict)


class ProcessingSession(_Record):
    id: str
    start_time: datetime
    end_time: Optional[datetime] = None
    status: Literal["running", "completed", "failed"] = "running"
    total_files: int = 0
    processed_files: int = 0
    failed_files: int = 0
    preset_id: Optional[str] = None
    preset_name: Optional[str] = None


class FileRecord(_Record):
    id: str
    session_id: str
    file_name: str
    file_size: int = 0
    file_type: str = ""
    timestamp: datetime
    processing_time: float = 0.0
    status: Literal["analyzing", "applying", "completed", "failed"] = "analyzing"
    error: Optional[str] = None
    detection_counts: Dict[str, int] = Field(default_factory=dict)
    total_detections: int = 0
    average_confidence: float = 0.0
    confidence_distribution: ConfidenceDistribution = Field(default_factory=ConfidenceDistribution)
    redaction_stats: RedactionStats = Field(default_factory=RedactionStats)
    analysis_time: Optional[float] = None
    redaction_time: Optional[float] = None
    output_size: Optional[int] = None


class DailyTiming(_Record):
    date: str
    average_time: float
    file_count: int


class ProcessingStats(_Record):
    total_sessions: int = 0
    total_files: int = 0
    total_detections: int = 0
    average_processing_time: float = 0.0
    success_rate: float = 0.0
    detections_by_type: Dict[str, int] = Field(default_factory=dict)
    detections_by_confidence: ConfidenceDistribution = Field(default_factory=ConfidenceDistribution)
    redactions_by_style: Dict[str, int] = Field(default_factory=dict)
    processing_times_by_date: List[DailyTiming] = Field(default_factory=list)
    preset_usage: Dict[str, int] = Field(default_factory=dict)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    # Zero-padded clock prefix keeps ids in creation order when sorted.
    return f"{time.time_ns():020d}-{secrets.token_hex(4)}"


def _in_range(ts: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    return (start is None or ts >= start) and (end is None or ts <= end)


class HistoryStore:
    SESSION_PREFIX = "history:session:"
    RECORD_PREFIX = "history:record:"

    def __init__(self, storage: Optional[KeyValueStorage] = None) -> None:
        self._storage = storage if storage is not None else MemoryStorage()

    # -- persistence -------------------------------------------------------

    def _put_session(self, session: ProcessingSession) -> ProcessingSession:
        self._storage.set(self.SESSION_PREFIX + session.id, session.model_dump(mode="json", by_alias=True))
        return session

    def _put_record(self, record: FileRecord) -> FileRecord:
        self._storage.set(self.RECORD_PREFIX + record.id, record.model_dump(mode="json", by_alias=True))
        return record

    def session(self, session_id: str) -> Optional[ProcessingSession]:
        raw = self._storage.get(self.SESSION_PREFIX + session_id)
        return ProcessingSession.model_validate(raw) if raw is not None else None

    def record(self, record_id: str) -> Optional[FileRecord]:
        raw = self._storage.get(self.RECORD_PREFIX + record_id)
        return FileRecord.model_validate(raw) if raw is not None else None

    def _require_record(self, record_id: str) -> FileRecord:
        record = self.record(record_id)
        if record is None:
            raise KeyError(f"Unknown history record: {record_id}")
        return record

    def _bump_session(self, session_id: str, *, processed: int = 0, failed: int = 0) -> None:
        session = self.session(session_id)
        if session is None:
            return
        self._put_session(
            session.model_copy(
                update={
                    "processed_files": session.processed_files + processed,
                    "failed_files": session.failed_files + failed,
                }
            )
        )

    # -- lifecycle ---------------------------------------------------------

    def start_session(
        self,
        total_files: int,
        preset_id: Optional[str] = None,
        preset_name: Optional[str] = None,
    ) -> ProcessingSession:
        session = ProcessingSession(
            id=_new_id(),
            start_time=_now(),
            total_files=total_files,
            preset_id=preset_id,
            preset_name=preset_name,
        )
        logger.debug("History session started", extra={"session": session.id})
        return self._put_session(session)

    def end_session(
        self, session_id: str, status: Literal["completed", "failed"] = "completed"
    ) -> Optional[ProcessingSession]:
        session = self.session(session_id)
        if session is None:
            return None
        return self._put_session(session.model_copy(update={"end_time": _now(), "status": status}))

    def start_file(self, session_id: str, file: InputFile) -> FileRecord:
        return self._put_record(
            FileRecord(
                id=_new_id(),
                session_id=session_id,
                file_name=file.name,
                file_size=file.size,
                file_type=file.media_type,
                timestamp=_now(),
            )
        )

    def record_analysis(
        self, record_id: str, analysis: AnalyzeResult, analysis_time: Optional[float] = None
    ) -> FileRecord:
        record = self._require_record(record_id)
        counts: Dict[str, int] = {}
        buckets = ConfidenceDistribution()
        total_conf = 0.0
        for det in analysis.detections:
            counts[det.kind.value] = counts.get(det.kind.value, 0) + 1
            total_conf += det.confidence
            bucket = confidence_bucket(det.confidence)
            setattr(buckets, bucket, getattr(buckets, bucket) + 1)
        n = len(analysis.detections)
        return self._put_record(
            record.model_copy(
                update={
                    "status": "applying",
                    "detection_counts": counts,
                    "total_detections": n,
                    "average_confidence": total_conf / n if n else 0.0,
                    "confidence_distribution": buckets,
                    "analysis_time": analysis_time,
                }
            )
        )

    def record_redaction(
        self,
        record_id: str,
        report: RedactionReport,
        redaction_time: Optional[float] = None,
        output_size: Optional[int] = None,
    ) -> FileRecord:
        record = self._require_record(record_id)
        elapsed = (_now() - record.timestamp).total_seconds() * 1000
        updated = self._put_record(
            record.model_copy(
                update={
                    "status": "completed",
                    "processing_time": elapsed,
                    "redaction_stats": RedactionStats(
                        total=report.redacted_count,
                        by_type=dict(report.by_kind),
                        by_style=dict(report.by_style),
                    ),
                    "redaction_time": redaction_time,
                    "output_size": output_size,
                }
            )
        )
        self._bump_session(record.session_id, processed=1)
        return updated

    def record_failure(self, record_id: str, error: str) -> FileRecord:
        record = self._require_record(record_id)
        elapsed = (_now() - record.timestamp).total_seconds() * 1000
        updated = self._put_record(
            record.model_copy(update={"status": "failed", "error": error, "processing_time": elapsed})
        )
        self._bump_session(record.session_id, failed=1)
        return updated

    # -- queries -----------------------------------------------------------

    def sessions(self) -> List[ProcessingSession]:
        """All sessions, most recent first."""
        out = []
        for key in sorted(self._storage.keys(self.SESSION_PREFIX), reverse=True):
            found = self.session(key[len(self.SESSION_PREFIX) :])
            if found is not None:
                out.append(found)
        return out

    def records(self, session_id: Optional[str] = None) -> List[FileRecord]:
        """File records, most recent first, optionally for one session."""
        out = []
        for key in sorted(self._storage.keys(self.RECORD_PREFIX), reverse=True):
            found = self.record(key[len(self.RECORD_PREFIX) :])
            if found is not None and (session_id is None or found.session_id == session_id):
                out.append(found)
        return out

    def stats(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> ProcessingStats:
        sessions = {s.id: s for s in self.sessions()}
        records = [r for r in self.records() if _in_range(r.timestamp, start, end)]
        completed = [r for r in records if r.status == "completed"]

        by_type: Dict[str, int] = {}
        by_style: Dict[str, int] = {}
        usage: Dict[str, int] = {}
        buckets = ConfidenceDistribution()
        daily: Dict[str, List[float]] = {}
        for r in completed:
            for kind, n in r.detection_counts.items():
                by_type[kind] = by_type.get(kind, 0) + n
            for style, n in r.redaction_stats.by_style.items():
                by_style[style] = by_style.get(style, 0) + n
            buckets.low += r.confidence_distribution.low
            buckets.medium += r.confidence_distribution.medium
            buckets.high += r.confidence_distribution.high
            session = sessions.get(r.session_id)
            if session is not None and session.preset_name:
                usage[session.preset_name] = usage.get(session.preset_name, 0) + 1
            daily.setdefault(r.timestamp.date().isoformat(), []).append(r.processing_time)

        total_time = sum(r.processing_time for r in completed)
        return ProcessingStats(
            total_sessions=len(sessions),
            total_files=len(records),
            total_detections=sum(r.total_detections for r in completed),
            average_processing_time=total_time / len(completed) if completed else 0.0,
            success_rate=len(completed) / len(records) if records else 0.0,
            detections_by_type=by_type,
            detections_by_confidence=buckets,
            redactions_by_style=by_style,
            processing_times_by_date=[
                DailyTiming(date=day, average_time=sum(times) / len(times), file_count=len(times))
                for day, times in sorted(daily.items())
            ],
            preset_usage=usage,
        )

    def clear(self) -> None:
        for prefix in (self.SESSION_PREFIX, self.RECORD_PREFIX):
            for key in list(self._storage.keys(prefix)):
                self._storage.delete(key)

    # -- export ------------------------------------------------------------

    def export_json(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        *,
        include_records: bool = True,
    ) -> str:
        """JSON report ``{sessions, records, stats, exportedAt}``."""
        payload = {
            "sessions": [s.model_dump(mode="json", by_alias=True) for s in self.sessions()],
            "records": [
                r.model_dump(mode="json", by_alias=True)
                for r in self.records()
                if _in_range(r.timestamp, start, end)
            ]
            if include_records
            else [],
            "stats": self.stats(start, end).model_dump(mode="json", by_alias=True),
            "exportedAt": _now().isoformat(),
        }
        return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")

    def to_frame(self) -> pd.DataFrame:
        """One row per file record with the fixed report columns."""
        presets = {s.id: s.preset_name or "" for s in self.sessions()}
        rows = [
            [
                r.session_id,
                r.file_name,
                r.file_size,
                r.file_type,
                r.timestamp.isoformat(),
                round(r.processing_time),
                r.status,
                r.total_detections,
                f"{r.average_confidence:.3f}",
                r.confidence_distribution.high,
                r.confidence_distribution.medium,
                r.confidence_distribution.low,
                r.redaction_stats.total,
                presets.get(r.session_id, ""),
                r.error or "",
            ]
            for r in self.records()
        ]
        return pd.DataFrame(rows, columns=CSV_COLUMNS)

    def export_csv(self) -> str:
        return self.to_frame().to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


__all__ = [
    "CSV_COLUMNS",
    "ProcessingSession",
    "FileRecord",
    "ProcessingStats",
    "HistoryStore",
]
