from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from pydantic import ValidationError

from defi_execution_engine.config.settings import AppConfig, MonitoringConfig
from defi_execution_engine.datalake.storage import SQLiteStorage
from defi_execution_engine.monitoring import bootstrap_observability
from defi_execution_engine.monitoring.event_bus import EVENT_BUS, EventSeverity, EventType
from defi_execution_engine.monitoring.logger import (
    StructuredFormatter,
    configure_logging,
    correlation_scope,
    current_correlation_id,
    new_correlation_id,
)
from defi_execution_engine.monitoring.metrics import METRICS


def test_event_bus_persists_events(tmp_path: Path) -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    storage = SQLiteStorage(tmp_path / "state.sqlite3")
    bootstrap_observability(storage, config=AppConfig())
    EVENT_BUS.publish(
        EventType.HEALTH,
        {"message": "heartbeat"},
        severity=EventSeverity.INFO,
        correlation_id="test",
    )
    EVENT_BUS.flush()
    logs = storage.list_event_logs(limit=1)
    assert logs
    assert logs[0].payload["message"] == "heartbeat"
    assert logs[0].correlation_id == "test"
    assert METRICS.get("events.health") == 1
    EVENT_BUS.reset()
    METRICS.reset()


def test_event_bus_counts_rejects_and_latency() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    EVENT_BUS.attach_metrics(METRICS)
    received = []
    EVENT_BUS.subscribe(EventType.REJECT, received.append)

    EVENT_BUS.publish(EventType.REJECT, {"reason": "InsufficientLiquidity"})
    EVENT_BUS.publish("execution", {"latency_seconds": 0.25})
    EVENT_BUS.flush()

    assert [event.payload["reason"] for event in received] == ["InsufficientLiquidity"]
    assert METRICS.get("reject_reason.InsufficientLiquidity") == 1
    histogram = METRICS.snapshot()["histograms"]["execution_latency_seconds"]
    assert histogram["count"] == 1
    assert [event.type for event in EVENT_BUS.history()] == [EventType.REJECT, EventType.EXECUTION]
    EVENT_BUS.reset()
    METRICS.reset()


def test_failing_subscriber_does_not_stop_dispatch() -> None:
    EVENT_BUS.reset()
    received = []

    def broken(event) -> None:
        raise RuntimeError("subscriber bug")

    EVENT_BUS.subscribe(None, broken)
    EVENT_BUS.subscribe(None, received.append)
    EVENT_BUS.publish(EventType.POSITION, {"action": "open"})
    EVENT_BUS.flush()

    assert len(received) == 1
    EVENT_BUS.reset()


def test_unknown_event_type_is_rejected() -> None:
    with pytest.raises(ValueError, match="bogus"):
        EVENT_BUS.publish("bogus", {})


def test_prometheus_export_sanitizes_metric_names() -> None:
    METRICS.reset()
    METRICS.increment("events.health")
    METRICS.increment("execution.deferred.capacity", 2)
    METRICS.gauge("positions.active", 3)
    METRICS.observe("router_latency_ms", 0.5)
    output = METRICS.export_prometheus()
    lines = [line for line in output.splitlines() if line]
    assert any(line.startswith("# TYPE events_health counter") for line in lines)
    assert "events.health" not in output
    assert any("execution_deferred_capacity" in line for line in lines)
    assert any("positions_active" in line for line in lines)
    assert any("router_latency_ms" in line for line in lines)
    METRICS.reset()


def test_correlation_scope_tags_log_records() -> None:
    formatter = StructuredFormatter()
    identifier = new_correlation_id("exec")
    assert identifier.startswith("exec")

    with correlation_scope(identifier):
        assert current_correlation_id() == identifier
        record = logging.LogRecord("engine", logging.INFO, __file__, 1, "filled %s", ("ETH",), None)
        record.correlation_id = current_correlation_id()
        payload = json.loads(formatter.format(record))
    assert current_correlation_id() is None
    assert payload["message"] == "filled ETH"
    assert payload["correlation_id"] == identifier


def test_published_events_inherit_the_correlation_scope() -> None:
    METRICS.reset()
    EVENT_BUS.reset()
    EVENT_BUS.attach_metrics(METRICS)

    with correlation_scope("opp-42"):
        EVENT_BUS.publish(EventType.DEFERRAL, {"reason": "key_busy"})
    EVENT_BUS.publish(EventType.ROUTER, {"efficiency": 0.8})
    EVENT_BUS.flush()

    deferral, routed = EVENT_BUS.history()
    assert deferral.correlation_id == "opp-42"
    assert routed.correlation_id is None
    assert METRICS.counters_with_prefix("deferral_reason.") == {"key_busy": 1.0}
    assert METRICS.snapshot()["histograms"]["route_efficiency"]["max"] == 0.8
    EVENT_BUS.reset()
    METRICS.reset()


def test_monitoring_config_validates_levels() -> None:
    config = MonitoringConfig(log_level="debug", logger_levels={"defi_execution_engine.execution": "warning"})

    assert config.log_level == "DEBUG"
    assert config.logger_levels == {"defi_execution_engine.execution": "WARNING"}
    with pytest.raises(ValidationError):
        MonitoringConfig(log_level="chatty")


def test_text_logs_carry_mode_and_correlation(capsys: pytest.CaptureFixture[str]) -> None:
    config = AppConfig(monitoring=MonitoringConfig(json_logs=False, logger_levels={"noisy.venue": "ERROR"}))
    configure_logging(config, force=True)
    try:
        with correlation_scope("opp-7"):
            logging.getLogger("engine.test").info("filled")
        logging.getLogger("noisy.venue").warning("suppressed")
        output = capsys.readouterr().out
        assert "[dry_run opp-7] engine.test: filled" in output
        assert "suppressed" not in output
    finally:
        logging.getLogger("noisy.venue").setLevel(logging.NOTSET)
        configure_logging(AppConfig(), force=True)
