"""Detection presets and their store.

A preset names the detection kinds to keep, the default redaction style per
kind, extra custom patterns and the minimum confidence. Built-in presets are
packaged as YAML under ``cleanshare/data/presets`` and are read-only; user
presets live in a :class:`PresetStore` backed by an injected
:class:`~cleanshare.storage.KeyValueStorage`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from functools import lru_cache
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import orjson
import pydantic
import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from .errors import PresetImportError, PresetNotFoundError, ValidationError
from .logging import get_logger
from .models import (
    CustomPattern,
    DetectionKind,
    RedactionConfig,
    RedactionStyle,
)
from .storage import KeyValueStorage, MemoryStorage

logger = get_logger(__name__)


class Preset(BaseModel):
    """Named detection and style policy.

    Attributes
    ----------
    enabled_kinds:
        Detection kinds kept by the assembler; every other kind is dropped.
    style_map:
        Preferred redaction style per kind. Kinds not listed fall back to BOX.
    custom_patterns:
        Extra regular expressions tried after the built-in validators.
    confidence_threshold:
        Detections scoring below this value are discarded.
    default_config:
        Redaction config merged over the global defaults for every action.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(min_length=1)
    name: str = ""
    enabled_kinds: List[DetectionKind] = Field(default_factory=lambda: list(DetectionKind))
    style_map: Dict[DetectionKind, RedactionStyle] = Field(default_factory=dict)
    custom_patterns: List[CustomPattern] = Field(default_factory=list)
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    default_config: RedactionConfig = Field(default_factory=RedactionConfig)
    builtin: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    version: int = Field(default=1, ge=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _legacy_custom_regex(cls, data):
        # Older exports carry bare regex strings under "customRegex".
        if isinstance(data, dict) and "customRegex" in data:
            data = dict(data)
            legacy = data.pop("customRegex") or []
            patterns = list(data.get("customPatterns") or data.get("custom_patterns") or [])
            for i, pattern in enumerate(legacy):
                patterns.append({"id": f"{data.get('id', 'preset')}-regex-{i}", "pattern": pattern})
            data["customPatterns"] = patterns
            data.pop("custom_patterns", None)
        return data

    def is_enabled(self, kind: DetectionKind) -> bool:
        return kind in self.enabled_kinds

    def style_for(self, kind: DetectionKind) -> Optional[RedactionStyle]:
        return self.style_map.get(kind)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _field_path(loc: Tuple[Any, ...], prefix: str = "") -> str:
    parts = [prefix] if prefix else []
    for item in loc:
        if isinstance(item, int):
            parts[-1:] = [f"{parts[-1] if parts else ''}[{item}]"]
        else:
            parts.append(str(item))
    return ".".join(parts)


def parse_preset(data: Any, *, source: str = "") -> Preset:
    """Validate a raw mapping into a :class:`Preset`.

    Raises ``ValidationError`` naming the first offending field.
    """
    if not isinstance(data, dict):
        raise ValidationError(f"Preset must be a mapping, got {type(data).__name__}", field=source or None)
    try:
        return Preset.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = exc.errors()
        first = errors[0]
        field = _field_path(tuple(first.get("loc", ())), source)
        details = "; ".join(
            f"{_field_path(tuple(e.get('loc', ())), source)}: {e.get('msg')}" for e in errors
        )
        raise ValidationError(f"Invalid preset: {details}", field=field) from exc


def _load_text(text: str, fmt: str) -> Any:
    fmt = fmt.lower()
    if fmt in {"yaml", "yml"}:
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as exc:
            mark = getattr(exc, "problem_mark", None)
            raise PresetImportError(
                f"Malformed YAML: {getattr(exc, 'problem', None) or exc}",
                line=mark.line + 1 if mark is not None else None,
                column=mark.column + 1 if mark is not None else None,
            ) from exc
    if fmt != "json":
        raise PresetImportError(f"Unsupported preset format: {fmt}")
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise PresetImportError(f"Malformed JSON: {exc.msg}", line=exc.lineno, column=exc.colno) from exc


def load_preset_file(path: Union[str, Path, Traversable]) -> Preset:
    text: str
    stem: str
    suffix: str

    if isinstance(path, Traversable):
        text = path.read_text(encoding="utf-8")
        stem = Path(path.name).stem
        suffix = Path(path.name).suffix.lower()
    else:
        p = Path(path)
        if not p.exists():
            raise FileNotFoundError(f"Preset file not found: {path}")
        text = p.read_text(encoding="utf-8")
        stem = p.stem
        suffix = p.suffix.lower()
    data = _load_text(text, "yaml" if suffix in {".yaml", ".yml"} else "json")
    if isinstance(data, dict):
        data.setdefault("id", stem)
    return parse_preset(data, source=stem)


@lru_cache(maxsize=1)
def load_builtin_presets() -> Tuple[Preset, ...]:
    """Load the packaged read-only presets, in file-name order."""
    root = resources.files("cleanshare.data").joinpath("presets")
    presets = []
    for ref in sorted(root.iterdir(), key=lambda r: r.name):
        if ref.name.endswith((".yaml", ".yml")):
            presets.append(load_preset_file(ref).model_copy(update={"builtin": True}))
    return tuple(presets)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PresetStore:
    """Built-in presets plus mutable user presets persisted in ``storage``."""

    PREFIX = "preset:"

    def __init__(
        self,
        storage: Optional[KeyValueStorage] = None,
        builtins: Optional[Iterable[Preset]] = None,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        seeds = load_builtin_presets() if builtins is None else builtins
        self._builtins: Dict[str, Preset] = {
            p.id: p if p.builtin else p.model_copy(update={"builtin": True}) for p in seeds
        }

    def _key(self, preset_id: str) -> str:
        return f"{self.PREFIX}{preset_id}"

    def _read(self, preset_id: str) -> Optional[Preset]:
        raw = self._storage.get(self._key(preset_id))
        if raw is None:
            return None
        return parse_preset(raw, source=preset_id)

    def list_presets(self) -> List[Preset]:
        user = []
        for key in self._storage.keys(self.PREFIX):
            preset = self._read(key[len(self.PREFIX) :])
            if preset is not None:
                user.append(preset)
        user.sort(key=lambda p: (p.name.lower(), p.id))
        return list(self._builtins.values()) + user

    def get(self, preset_id: str) -> Optional[Preset]:
        if preset_id in self._builtins:
            return self._builtins[preset_id]
        return self._read(preset_id)

    def require(self, preset_id: str) -> Preset:
        preset = self.get(preset_id)
        if preset is None:
            raise PresetNotFoundError(preset_id)
        return preset

    def is_builtin(self, preset_id: str) -> bool:
        return preset_id in self._builtins

    def save(self, preset: Preset) -> Preset:
        """Create or update a user preset and return the stored version."""
        if self.is_builtin(preset.id):
            raise ValidationError(f"Built-in preset {preset.id!r} is read-only", field="id")
        existing = self._read(preset.id)
        now = _now()
        stored = preset.model_copy(
            update={
                "builtin": False,
                "created_at": existing.created_at if existing and existing.created_at else now,
                "updated_at": now,
                "version": existing.version + 1 if existing else 1,
            }
        )
        self._storage.set(self._key(stored.id), stored.to_dict())
        logger.info("Preset saved", extra={"preset": stored.id, "version": stored.version})
        return stored

    def delete(self, preset_id: str) -> bool:
        if self.is_builtin(preset_id):
            raise ValidationError(f"Built-in preset {preset_id!r} is read-only", field="id")
        return self._storage.delete(self._key(preset_id))

    def export_presets(self, ids: Optional[Iterable[str]] = None, fmt: str = "json") -> str:
        presets = self.list_presets() if ids is None else [self.require(i) for i in ids]
        payload = {
            "presets": [p.to_dict() for p in presets],
            "exportedAt": _now().isoformat(),
        }
        if fmt.lower() in {"yaml", "yml"}:
            return yaml.safe_dump(payload, sort_keys=False)
        return orjson.dumps(payload, option=orjson.OPT_INDENT_2).decode("utf-8")

    def import_presets(self, text: str, fmt: str = "json") -> List[Preset]:
        """Validate every preset in ``text`` and save them as user presets.

        Nothing is written unless the whole document validates.
        """
        data = _load_text(text, fmt)
        if isinstance(data, dict) and "presets" in data:
            items = data["presets"]
            prefix = "presets"
        elif isinstance(data, list):
            items = data
            prefix = ""
        else:
            items = [data]
            prefix = ""
        if not isinstance(items, list):
            raise PresetImportError("'presets' must be a list", field="presets")
        parsed: List[Preset] = []
        for i, item in enumerate(items):
            source = f"{prefix}[{i}]" if prefix else f"[{i}]"
            if isinstance(item, dict):
                item = {k: v for k, v in item.items() if k != "builtin"}
            preset = parse_preset(item, source=source)
            if self.is_builtin(preset.id):
                raise ValidationError(
                    f"Cannot import over built-in preset {preset.id!r}", field=f"{source}.id"
                )
            parsed.append(preset)
        return [self.save(p) for p in parsed]


__all__ = [
    "Preset",
    "PresetStore",
    "parse_preset",
    "load_preset_file",
    "load_builtin_presets",
]
