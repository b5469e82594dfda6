"""Key-value storage adapters for presets and processing history.

Stores are injected into :class:`cleanshare.presets.PresetStore` and
:class:`cleanshare.history.HistoryStore`; swapping the adapter changes where
records persist without touching pipeline code.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

import orjson
import regex as re

from .logging import get_logger

logger = get_logger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_.-]")


@runtime_checkable
class KeyValueStorage(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self, prefix: str = "") -> List[str]: ...


class MemoryStorage:
    """Process-local storage; values are round-tripped through JSON on write."""

    def __init__(self) -> None:
        self._data: Dict[str, bytes] = {}

    def get(self, key: str) -> Optional[Any]:
        raw = self._data.get(key)
        return orjson.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        self._data[key] = orjson.dumps(value)

    def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class JsonFileStorage:
    """One JSON document per key inside ``directory``.

    Writes go to a temporary file that is then renamed over the target, so a
    crash never leaves a half-written document behind.
    """

    def __init__(self, directory: Union[str, Path]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.directory / f"{_UNSAFE_RE.sub('_', key)}.json"

    def get(self, key: str) -> Optional[Any]:
        path = self._path(key)
        if not path.exists():
            return None
        doc = orjson.loads(path.read_bytes())
        return doc.get("value")

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        payload = orjson.dumps({"key": key, "value": value}, option=orjson.OPT_INDENT_2)
        fd, tmp = tempfile.mkstemp(dir=self.directory, prefix=".tmp-", suffix=".json")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if path.exists():
            path.unlink()
            return True
        return False

    def keys(self, prefix: str = "") -> List[str]:
        out: List[str] = []
        for path in sorted(self.directory.glob("*.json")):
            if path.name.startswith(".tmp-"):
                continue
            try:
                key = orjson.loads(path.read_bytes()).get("key")
            except orjson.JSONDecodeError:
                logger.warning("Skipping unreadable store document", extra={"path": str(path)})
                continue
            if isinstance(key, str) and key.startswith(prefix):
                out.append(key)
        return out


__all__ = ["KeyValueStorage", "MemoryStorage", "JsonFileStorage"]
