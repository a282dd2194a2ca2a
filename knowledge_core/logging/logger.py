# ==============================
# Logging Bootstrap
# ==============================
"""
Logging bootstrap.

Goals:
- Centralize logger configuration using Settings.logging.
- JSON lines on stdout with structured knowledge fields
  (compilation_id, version, path, source, status).
- Module loggers live under the "knowledge" namespace
  (knowledge.sources, knowledge.compiler, knowledge.query, ...).

No persistence here.
"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, Optional, TextIO

from knowledge_core.config.schema import Settings

STRUCTURED_FIELDS = ("compilation_id", "version", "path", "source", "status", "mode", "fragment_id")


@dataclass(frozen=True)
class LogContext:
    compilation_id: Optional[str] = None
    version: Optional[int] = None
    mode: Optional[str] = None


class JsonLineFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for k in STRUCTURED_FIELDS:
            if hasattr(record, k):
                payload[k] = getattr(record, k)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def bootstrap_logger(settings: Settings, *, stream: Optional[TextIO] = None) -> logging.Logger:
    """
    Configure the "knowledge" logger tree based on settings.
    The CLI passes stderr so stdout stays a clean JSON document.
    """
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)
    root = logging.getLogger("knowledge")
    root.setLevel(level)

    # clear existing handlers to avoid duplicates in reload
    root.handlers = []

    if settings.logging.console:
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(JsonLineFormatter())
        root.addHandler(handler)
        root.propagate = False

    return root


def with_context(logger: logging.Logger, ctx: LogContext) -> logging.LoggerAdapter:
    extra = {k: v for k, v in vars(ctx).items() if v is not None}
    return logging.LoggerAdapter(logger, extra)
