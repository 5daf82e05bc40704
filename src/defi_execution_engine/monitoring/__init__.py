"""Observability wiring shared by the CLI and tests."""

from __future__ import annotations

from typing import Optional

from ..config.settings import AppConfig, AppMode, get_app_config
from ..datalake.storage import SQLiteStorage
from .event_bus import EVENT_BUS, EventBus
from .logger import configure_logging, get_logger
from .metrics import METRICS


def bootstrap_observability(
    storage: Optional[SQLiteStorage] = None,
    *,
    config: Optional[AppConfig] = None,
) -> EventBus:
    """Apply the logging config and route bus events into ``METRICS`` and the event log table."""

    app_config = config or get_app_config()
    configure_logging(app_config, force=True)
    EVENT_BUS.attach_metrics(METRICS)
    EVENT_BUS.attach_storage(storage)
    METRICS.gauge("engine.live_mode", 1.0 if app_config.mode.active == AppMode.LIVE else 0.0)
    get_logger(__name__).info(
        "Observability ready",
        extra={"event_log": str(storage.database_path) if storage else None},
    )
    return EVENT_BUS


__all__ = ["bootstrap_observability", "EVENT_BUS", "METRICS"]
