"""Redaction planning: approved detection ids to ordered redaction actions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional, Sequence

from cleanshare.errors import RedactionError
from cleanshare.models import (
    AnalyzeResult,
    Detection,
    PatternType,
    RedactionAction,
    RedactionConfig,
    RedactionStyle,
)
from cleanshare.presets import Preset

DEFAULT_STYLE = RedactionStyle.BOX

DEFAULT_CONFIG = RedactionConfig(
    color="#000000",
    secondary_color="#ffffff",
    opacity=1.0,
    pattern_type=PatternType.DIAGONAL,
    border_width=0.0,
    corner_radius=0.0,
    font_size=14,
    font_family="sans-serif",
)


@dataclass(frozen=True)
class ActionOverride:
    """Per-detection choice made by the user; unset fields inherit."""

    style: Optional[RedactionStyle] = None
    config: Optional[RedactionConfig] = None


def plan(
    detections: Sequence[Detection],
    selected_ids: Iterable[str],
    preset: Preset,
    overrides: Optional[Mapping[str, ActionOverride]] = None,
) -> List[RedactionAction]:
    """Build one action per selected detection, in detection order.

    Style resolves override, then the preset's style map, then BOX. Config
    merges the global defaults, the preset defaults and the override, later
    values winning. Ids that name no detection raise ``RedactionError``.
    """
    overrides = dict(overrides or {})
    known = {d.id for d in detections}
    selected = set()
    for det_id in selected_ids:
        if det_id not in known:
            raise RedactionError(f"Unknown detection id {det_id!r}", detection_id=det_id)
        selected.add(det_id)
    for det_id in overrides:
        if det_id not in known:
            raise RedactionError(
                f"Override references unknown detection id {det_id!r}", detection_id=det_id
            )

    actions: List[RedactionAction] = []
    for det in detections:
        if det.id not in selected:
            continue
        override = overrides.get(det.id) or ActionOverride()
        style = override.style or preset.style_for(det.kind) or DEFAULT_STYLE
        config = RedactionConfig.merge(DEFAULT_CONFIG, preset.default_config, override.config)
        actions.append(RedactionAction(detection_id=det.id, style=style, config=config))
    return actions


def plan_all(
    result: AnalyzeResult,
    preset: Preset,
    overrides: Optional[Mapping[str, ActionOverride]] = None,
) -> List[RedactionAction]:
    return plan(result.detections, [d.id for d in result.detections], preset, overrides)


__all__ = ["DEFAULT_CONFIG", "DEFAULT_STYLE", "ActionOverride", "plan", "plan_all"]
