"""Detection assembly: OCR words per page in, typed and scored detections out."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import regex as re

from cleanshare import validators as v
from cleanshare.errors import AnalysisError
from cleanshare.logging import get_logger
from cleanshare.models import (
    AnalyzeResult,
    Box,
    CustomPattern,
    Detection,
    DetectionKind,
    OcrPage,
    OcrWord,
    RegionHint,
)
from cleanshare.presets import Preset

from .classification import classify, context_for
from .config import RunConfig
from .scoring import score

logger = get_logger(__name__)

GROUP_RE = re.compile(r"^[A-Z0-9]{2,6}$")
# IBANs top out at 34 characters, i.e. nine printed groups of four.
MAX_GROUP_TOKENS = 9
MERGEABLE_KINDS = frozenset({DetectionKind.NAME, DetectionKind.ADDRESS})
OVERLAP_IOU = 0.5


@dataclass(frozen=True)
class Candidate:
    """Scored finding before filtering, dedup and id assignment."""

    kind: DetectionKind
    box: Box
    confidence: float
    reason: str
    preview: Optional[str] = None
    # Token span on the page; hints have none.
    first: int = -1
    last: int = -1


def _word_box(word: OcrWord, page: OcrPage) -> Box:
    return Box.from_pixels(
        word.bbox.x0,
        word.bbox.y0,
        word.bbox.x1,
        word.bbox.y1,
        page.size.width,
        page.size.height,
        page.index,
    )


def _same_line(a: OcrWord, b: OcrWord) -> bool:
    """True when ``b`` sits on the text line of ``a`` and starts to its right."""
    ha = a.bbox.y1 - a.bbox.y0
    hb = b.bbox.y1 - b.bbox.y0
    ca = (a.bbox.y0 + a.bbox.y1) / 2
    cb = (b.bbox.y0 + b.bbox.y1) / 2
    return abs(ca - cb) <= max(ha, hb) / 2 and b.bbox.x0 >= a.bbox.x0


def _adjacent(a: OcrWord, b: OcrWord) -> bool:
    if not _same_line(a, b):
        return False
    gap = b.bbox.x0 - a.bbox.x1
    height = max(a.bbox.y1 - a.bbox.y0, b.bbox.y1 - b.bbox.y0, 1.0)
    return gap <= height * 1.5


def _group_kind(groups: Sequence[str]) -> Optional[Tuple[DetectionKind, str]]:
    joined = "".join(groups)
    if len(groups[0]) == 4 and joined.isdigit() and v.is_valid_pan(joined):
        return DetectionKind.PAN, "Luhn valid primary account number (grouped)"
    if v.is_valid_iban(joined):
        return DetectionKind.IBAN, "Valid IBAN checksum (MOD-97, grouped)"
    lengths = tuple(len(g) for g in groups)
    if joined.isdigit() and lengths in {(3, 3, 4), (1, 3, 3, 4)}:
        return DetectionKind.PHONE, "Potential phone number (grouped)"
    return None


def _join_groups(
    words: Sequence[OcrWord], tokens: Sequence[str], start: int
) -> Optional[Tuple[int, DetectionKind, str]]:
    """Longest run of printed digit groups starting at ``start`` that validates.

    Returns ``(end_index, kind, reason)`` or ``None``.
    """
    if not GROUP_RE.match(tokens[start]):
        return None
    groups = [tokens[start]]
    best = None
    for end in range(start + 1, min(len(words), start + MAX_GROUP_TOKENS)):
        if not GROUP_RE.match(tokens[end]) or not _adjacent(words[end - 1], words[end]):
            break
        groups.append(tokens[end])
        found = _group_kind(groups)
        if found is not None:
            best = (end, found[0], found[1])
    return best


def _merge_runs(candidates: List[Candidate]) -> List[Candidate]:
    """Merge consecutive same-line NAME/ADDRESS tokens into one candidate."""
    merged: List[Candidate] = []
    counts: List[int] = []
    for cand in candidates:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and cand.kind in MERGEABLE_KINDS
            and prev.kind == cand.kind
            and prev.first >= 0
            and cand.first == prev.last + 1
            and _boxes_on_line(prev.box, cand.box)
        ):
            counts[-1] += 1
            merged[-1] = replace(
                prev,
                box=prev.box.union(cand.box),
                confidence=max(prev.confidence, cand.confidence),
                preview=" ".join(p for p in (prev.preview, cand.preview) if p),
                last=cand.last,
            )
            continue
        merged.append(cand)
        counts.append(1)
    return [
        replace(c, reason=f"{c.reason} (merged {n} tokens)") if n > 1 else c
        for c, n in zip(merged, counts)
    ]


def _boxes_on_line(a: Box, b: Box) -> bool:
    overlap = min(a.y + a.h, b.y + b.h) - max(a.y, b.y)
    return overlap > 0 and overlap >= 0.5 * min(a.h, b.h)


def assemble_page(
    page: OcrPage,
    patterns: Iterable[CustomPattern] = (),
    *,
    merge_tokens: bool = True,
) -> List[Candidate]:
    """Classify and score every word of one page.

    Split digit groups (``4532 0151 1283 0366``) are joined before single
    tokens are classified, and adjacent NAME/ADDRESS tokens are merged.
    """
    patterns = list(patterns)
    words = page.words
    tokens = [w.text.strip() for w in words]
    out: List[Candidate] = []
    i = 0
    while i < len(words):
        text = tokens[i]
        if not text:
            i += 1
            continue
        joined = _join_groups(words, tokens, i) if merge_tokens else None
        if joined is not None:
            end, kind, reason = joined
            span = words[i : end + 1]
            box = _word_box(span[0], page)
            for word in span[1:]:
                box = box.union(_word_box(word, page))
            preview = " ".join(tokens[i : end + 1])
            out.append(
                Candidate(
                    kind=kind,
                    box=box,
                    confidence=score(kind, preview, min(w.confidence for w in span)),
                    reason=reason,
                    preview=preview,
                    first=i,
                    last=end,
                )
            )
            i = end + 1
            continue
        found = classify(text, patterns, context_for(tokens, i))
        if found is not None:
            out.append(
                Candidate(
                    kind=found.kind,
                    box=_word_box(words[i], page),
                    confidence=score(
                        found.kind,
                        text,
                        words[i].confidence,
                        certainty=found.certainty,
                        adjustment=found.adjustment,
                    ),
                    reason=found.reason,
                    preview=text,
                    first=i,
                    last=i,
                )
            )
        i += 1
    if merge_tokens:
        out = _merge_runs(out)
    logger.debug(
        "Page assembled",
        extra={"page": page.index, "words": len(words), "candidates": len(out)},
    )
    return out


def hint_candidate(hint: RegionHint, page: OcrPage) -> Candidate:
    box = Box.from_pixels(
        hint.bbox.x0,
        hint.bbox.y0,
        hint.bbox.x1,
        hint.bbox.y1,
        page.size.width,
        page.size.height,
        page.index,
    )
    return Candidate(
        kind=hint.kind,
        box=box,
        confidence=score(hint.kind, hint.preview or "", hint.confidence),
        reason=hint.reason or f"{hint.kind.value.title()} reported by region detector",
        preview=hint.preview,
    )


def _overlaps(a: Candidate, b: Candidate) -> bool:
    if a.box.page_index != b.box.page_index:
        return False
    return a.box.iou(b.box) >= OVERLAP_IOU or a.box.contains(b.box) or b.box.contains(a.box)


def resolve_overlaps(candidates: Sequence[Candidate]) -> List[Candidate]:
    """Drop candidates overlapping a stronger one, keeping input order.

    Highest confidence wins; ties go to the smaller box, then the earlier one.
    """
    ranked = sorted(
        range(len(candidates)),
        key=lambda i: (-candidates[i].confidence, candidates[i].box.area, i),
    )
    kept: List[int] = []
    for i in ranked:
        if any(_overlaps(candidates[i], candidates[j]) for j in kept):
            continue
        kept.append(i)
    return [candidates[i] for i in sorted(kept)]


def assemble(
    pages: Sequence[OcrPage],
    preset: Preset,
    *,
    hints: Iterable[RegionHint] = (),
    page_count: Optional[int] = None,
    config: Optional[RunConfig] = None,
) -> AnalyzeResult:
    """Turn OCR pages and region hints into an :class:`AnalyzeResult`.

    Candidates outside the preset's enabled kinds or below the threshold are
    dropped before overlap resolution. Ids are ``det-00001``, ``det-00002``...
    in page order, then token order, then hint order.
    """
    cfg = config or RunConfig()
    count = page_count if page_count is not None else max(1, len(pages))
    by_index: Dict[int, OcrPage] = {}
    for page in pages:
        if page.index >= count:
            raise AnalysisError(f"OCR page {page.index} is outside a {count}-page document")
        by_index[page.index] = page

    per_page: Dict[int, List[Candidate]] = {}
    patterns = list(preset.custom_patterns) + list(cfg.custom_patterns)
    for index in sorted(by_index):
        per_page[index] = assemble_page(
            by_index[index], patterns, merge_tokens=cfg.merge_tokens
        )
    for hint in hints:
        page = by_index.get(hint.page)
        if page is None:
            raise AnalysisError(f"Region hint on page {hint.page} has no page geometry")
        per_page.setdefault(hint.page, []).append(hint_candidate(hint, page))

    threshold = (
        cfg.confidence_threshold
        if cfg.confidence_threshold is not None
        else preset.confidence_threshold
    )
    candidates = [c for index in sorted(per_page) for c in per_page[index]]
    by_kind = [c for c in candidates if preset.is_enabled(c.kind)]
    passing = [c for c in by_kind if c.confidence >= threshold]
    kept = resolve_overlaps(passing)

    detections = [
        Detection(
            id=f"det-{n:05d}",
            kind=c.kind,
            box=c.box,
            confidence=c.confidence,
            reason=c.reason,
            preview=c.preview,
        )
        for n, c in enumerate(kept, start=1)
    ]
    stats = {
        "pages": float(count),
        "words": float(sum(len(p.words) for p in by_index.values())),
        "candidates": float(len(candidates)),
        "droppedKind": float(len(candidates) - len(by_kind)),
        "droppedThreshold": float(len(by_kind) - len(passing)),
        "droppedOverlap": float(len(passing) - len(kept)),
        "detections": float(len(detections)),
    }
    logger.debug("Detections assembled", extra={"preset": preset.id, **stats})
    return AnalyzeResult(detections=detections, pages=count, ocr_stats=stats)


__all__ = [
    "Candidate",
    "assemble_page",
    "hint_candidate",
    "resolve_overlaps",
    "assemble",
]
