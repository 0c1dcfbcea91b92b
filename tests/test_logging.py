from __future__ import annotations

import json
import logging

import pytest
import structlog

from tank_telemetry.monitoring.logger_config import CorrelationLogger, IngestionLogger, OperationLogger


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
    structlog.reset_defaults()


def _lines(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_json_file_logging_renders_stdlib_and_correlated_events(tmp_path, restore_logging) -> None:
    log_file = tmp_path / "logs" / "pipeline.log"
    IngestionLogger.setup_logging(log_level="info", log_format="json", log_file=str(log_file))

    logging.getLogger("tank_telemetry.ingestion").info("Plain library message")
    with OperationLogger("ingestion_run", "run-42", sync_type="webhook"):
        pass

    for handler in logging.getLogger().handlers:
        handler.flush()

    lines = _lines(log_file)
    events = [line["event"] for line in lines]
    assert "Logging initialized" in events
    assert "Plain library message" in events

    completed = [line for line in lines if line.get("correlation_id") == "run-42"]
    assert completed
    assert all(line["operation"] == "ingestion_run" for line in completed)
    assert any("duration_seconds" in line for line in completed)


def test_level_filter_drops_debug(tmp_path, restore_logging) -> None:
    log_file = tmp_path / "pipeline.log"
    IngestionLogger.setup_logging(log_level="WARNING", log_format="json", log_file=str(log_file))

    CorrelationLogger("run-7").info("Not written")
    CorrelationLogger("run-7").warning("Written")

    for handler in logging.getLogger().handlers:
        handler.flush()

    events = [line["event"] for line in _lines(log_file)]
    assert "Written" in events
    assert "Not written" not in events
