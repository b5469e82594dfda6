"""Structured logging helpers (JSON).

Use `get_logger(__name__)` to emit JSON logs; every ``extra=`` field passed to
a logging call is merged into the payload.
"""

from __future__ import annotations

import logging
import orjson

_RESERVED = set(logging.LogRecord("", 0, "", 0, "", None, None).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


def get_logger(name: str = "cleanshare") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        from .settings import get_settings

        h = logging.StreamHandler()
        h.setFormatter(JsonFormatter())
        logger.addHandler(h)
        logger.setLevel(get_settings().log_level)
        logger.propagate = False
    return logger
