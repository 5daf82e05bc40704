"""Logging setup: JSON lines tagged with the engine mode and the active correlation id.

Executions run inside ``correlation_scope(opportunity_id)`` and trading cycles
inside ``correlation_scope("cycle<n>-...")``, so every line written while
handling one opportunity can be grepped out of a shared log stream.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

from ..config.settings import AppConfig, get_app_config

_correlation_id: ContextVar[Optional[str]] = ContextVar("engine_correlation_id", default=None)
_configured = False

_RESERVED = frozenset(logging.makeLogRecord({}).__dict__) | {"correlation_id", "engine_mode", "message"}

TEXT_FORMAT = "%(asctime)s %(levelname)-7s [%(engine_mode)s %(correlation_id)s] %(name)s: %(message)s"


class _EngineContextFilter(logging.Filter):
    def __init__(self, mode: str) -> None:
        super().__init__()
        self._mode = mode

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "correlation_id", None) is None:
            record.correlation_id = _correlation_id.get() or "-"
        record.engine_mode = self._mode
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per record; ``extra=`` fields are nested under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        mode = getattr(record, "engine_mode", None)
        if mode:
            payload["mode"] = mode
        extra = {key: value for key, value in record.__dict__.items() if key not in _RESERVED and not key.startswith("_")}
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: Optional[AppConfig] = None, *, force: bool = False) -> None:
    """Replace the root handlers with one stdout handler, once per process unless ``force``."""

    global _configured
    if _configured and not force:
        return
    app_config = config or get_app_config()
    monitoring = app_config.monitoring
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if monitoring.json_logs else logging.Formatter(TEXT_FORMAT))
    handler.addFilter(_EngineContextFilter(app_config.mode.active.value))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.getLevelName(monitoring.log_level.upper()))
    for name, level in monitoring.logger_levels.items():
        logging.getLogger(name).setLevel(logging.getLevelName(level.upper()))
    logging.captureWarnings(True)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    if not _configured:
        configure_logging()
    return logging.getLogger(name)


def new_correlation_id(prefix: str = "") -> str:
    token = uuid.uuid4().hex[:12]
    return f"{prefix}-{token}" if prefix else token


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[Optional[str]]:
    token = _correlation_id.set(correlation_id)
    try:
        yield correlation_id
    finally:
        _correlation_id.reset(token)


__all__ = [
    "StructuredFormatter",
    "TEXT_FORMAT",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "get_logger",
    "new_correlation_id",
]
