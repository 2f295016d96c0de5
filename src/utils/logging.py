"""Shared logging configuration and logger factory."""

from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Mapping


_PROJECT_ROOT = Path(__file__).resolve().parents[2]
_STANDARD_KEYS = frozenset(logging.makeLogRecord({}).__dict__.keys()) | {"stack_info", "asctime", "message"}


def _log_root() -> Path:
    override = os.getenv("FACE_INDEXER_LOG_DIR")
    if override:
        return Path(override).expanduser()
    return _PROJECT_ROOT / "log"


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    """Return the non-standard attributes attached to a record via ``extra=``."""

    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_KEYS}


class _JsonLineFormatter(logging.Formatter):
    """Render records as single-line JSON objects for the rotating log file."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(_record_extras(record))

        try:
            return json.dumps(payload, ensure_ascii=False, sort_keys=True)
        except TypeError:
            # Some extras (exceptions, paths) are not JSON-serializable.
            return json.dumps(
                {key: value if isinstance(value, (str, int, float, bool, type(None))) else str(value) for key, value in payload.items()},
                ensure_ascii=False,
                sort_keys=True,
            )


class _KeyValueFormatter(logging.Formatter):
    """Console formatter that appends ``extra`` fields as sorted key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        extras = _record_extras(record)
        if not extras:
            return base
        return base + " | " + " ".join(f"{key}={value!r}" for key, value in sorted(extras.items()))


def _configure_root_logger() -> None:
    root = logging.getLogger()
    if root.handlers:
        return

    level_name = os.getenv("FACE_INDEXER_LOG_LEVEL", "INFO").upper()
    root.setLevel(getattr(logging, level_name, logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(_KeyValueFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    root.addHandler(console_handler)

    try:
        log_root = _log_root()
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_root / "face_indexer.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(_JsonLineFormatter())
        root.addHandler(file_handler)
    except OSError:
        # Read-only checkouts still get console logging.
        root.debug("file_logging_unavailable")


class _MergingAdapter(logging.LoggerAdapter):
    """Adapter that merges its bound fields with per-call ``extra`` fields."""

    def process(self, msg: Any, kwargs: Any) -> tuple[Any, Any]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs


def get_logger(name: str, extra: Dict[str, Any] | None = None) -> logging.LoggerAdapter:
    """Return a structured logger adapter for the given name.

    The first call configures the root handlers. ``extra`` is attached to every
    record emitted through the adapter; per-call ``extra=`` fields are merged on
    top instead of replacing it.
    """

    _configure_root_logger()
    return _MergingAdapter(logging.getLogger(name), extra or {})


def bind_logger(adapter: logging.LoggerAdapter, **fields: Any) -> logging.LoggerAdapter:
    """Return a child adapter carrying ``fields`` in addition to the adapter's own."""

    base: Mapping[str, Any] = adapter.extra or {}
    return _MergingAdapter(adapter.logger, {**base, **fields})


__all__ = ["get_logger", "bind_logger"]
