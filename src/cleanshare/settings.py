"""Process-wide settings read from ``CLEANSHARE_*`` environment variables.

Settings are parsed once and cached; call :func:`reset_settings_cache` after
changing the environment (tests do this through ``monkeypatch``).
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Optional
import os


def _parse_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    v = value.strip().lower()
    if v in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if v in {"0", "false", "f", "no", "n", "off"}:
        return False
    return default


def _parse_int(value: str | None, *, default: int, minimum: int = 1) -> int:
    if value is None or not value.strip():
        return default
    try:
        return max(minimum, int(value))
    except ValueError:
        return default


@dataclass
class Settings:
    """Process-wide defaults; per-run choices live in ``RunConfig``."""

    data_dir: Path = Path.home() / ".cleanshare"
    default_preset: str = "all"
    max_concurrency: int = 3
    log_level: str = "INFO"
    ocr_lang: str = "eng"
    pdf_dpi: int = 150
    hmac_key: Optional[str] = None
    write_audit: bool = True

    @staticmethod
    def from_env() -> "Settings":
        data_dir = os.environ.get("CLEANSHARE_DATA_DIR")
        return Settings(
            data_dir=Path(data_dir).expanduser() if data_dir else Path.home() / ".cleanshare",
            default_preset=os.environ.get("CLEANSHARE_DEFAULT_PRESET") or "all",
            max_concurrency=_parse_int(
                os.environ.get("CLEANSHARE_MAX_CONCURRENCY"), default=3
            ),
            log_level=(os.environ.get("CLEANSHARE_LOG_LEVEL") or "INFO").upper(),
            ocr_lang=os.environ.get("CLEANSHARE_OCR_LANG") or "eng",
            pdf_dpi=_parse_int(os.environ.get("CLEANSHARE_PDF_DPI"), default=150, minimum=36),
            hmac_key=os.environ.get("CLEANSHARE_HMAC_KEY") or None,
            write_audit=_parse_bool(os.environ.get("CLEANSHARE_WRITE_AUDIT"), default=True),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings."""
    return Settings.from_env()


def reset_settings_cache() -> None:
    """Reset cached settings (useful in tests)."""
    get_settings.cache_clear()  # type: ignore[attr-defined]
