"""Logging setup: JSON or human formatter on stderr."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from mail_monitor.config.settings import LoggingSettings

# Attributes every LogRecord carries; anything else came in through `extra=`.
_STANDARD_RECORD_ATTRS: frozenset[str] = frozenset(vars(logging.makeLogRecord({}))) | {
    "message",
    "asctime",
    "taskName",
}

CONTEXT_KEYS: tuple[str, ...] = ("operation", "folder", "item_id")

NOISY_LOGGERS: tuple[str, ...] = ("aioimaplib", "asyncio")


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    """Return the `extra=` fields attached to a record."""
    return {
        key: value
        for key, value in record.__dict__.items()
        if key not in _STANDARD_RECORD_ATTRS and not key.startswith("_")
    }


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line.

    Sync context (operation, folder, item id) is grouped under ``ctx`` so log
    pipelines can filter on it; other extras are emitted at the top level.
    """

    def format(self, record: logging.LogRecord) -> str:
        extras = _record_extras(record)
        ctx = {key: extras.pop(key) for key in CONTEXT_KEYS if extras.get(key) is not None}
        for key in CONTEXT_KEYS:
            extras.pop(key, None)

        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if ctx:
            payload["ctx"] = ctx
        payload.update(extras)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ContextLogFormatter(logging.Formatter):
    """Human formatter that appends operation/folder/item_id when present."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        ]
        return f"{base} [{' '.join(context)}]" if context else base


def configure_logging(*, settings: LoggingSettings) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        settings: Logging settings (level and JSON/human output).
    """
    level = logging.getLevelNamesMapping().get(settings.level.strip().upper(), logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(level)
    if settings.json_logs:
        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(
            ContextLogFormatter(
                fmt="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
                datefmt="%H:%M:%S",
            ),
        )
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
