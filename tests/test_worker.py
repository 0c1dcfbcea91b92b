from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest
import pytz

from tank_telemetry.exceptions import ValidationError
from tank_telemetry.ingestion.worker import RecalculationWorker, recalculation_crashed
from tank_telemetry.models import SyncResult, SyncStatus


@pytest.fixture
def worker(config, orchestrator) -> RecalculationWorker:
    return RecalculationWorker(config, orchestrator=orchestrator)


def _recent(days_ago: int) -> str:
    return (datetime.now(pytz.UTC) - timedelta(days=days_ago, hours=1)).isoformat()


def _scheduled_rows(db):
    return db.execute_query(
        "SELECT sync_status FROM sync_logs WHERE sync_type = %s", ("scheduled_recalculation",)
    )


def test_run_once_recalculates_and_logs(worker, orchestrator, db, make_record) -> None:
    orchestrator.process([
        make_record(serial="SN-1", fill_level=60.0, timestamp=_recent(2)),
        make_record(serial="SN-1", fill_level=50.0, timestamp=_recent(1)),
        make_record(serial="SN-2"),
    ])

    result = worker.run_once()

    assert result.status == SyncStatus.SUCCESS
    assert result.records_received == 2
    assert result.assets_processed == 1
    assert result.errors == []
    assert len(result.warnings) == 1
    assert _scheduled_rows(db) == [{"sync_status": "success"}]


def test_run_once_without_any_updated_asset_is_logged_as_error(worker, orchestrator, db, make_record) -> None:
    orchestrator.process([make_record(serial="SN-1"), make_record(serial="SN-2")])

    result = worker.run_once()

    assert result.status == SyncStatus.ERROR
    assert result.records_received == 2
    assert len(result.warnings) == 2
    assert not recalculation_crashed(result)
    assert _scheduled_rows(db) == [{"sync_status": "error"}]


def test_run_once_with_a_failing_asset_is_partial(worker, orchestrator, db, make_record, monkeypatch) -> None:
    orchestrator.process([
        make_record(serial=serial, timestamp=timestamp)
        for serial in ("SN-1", "SN-2")
        for timestamp in (_recent(2), _recent(1))
    ])
    engine = orchestrator.analytics
    failing_id = engine.assets.list_active()[-1].id
    recalculate_asset = engine.recalculate_asset

    def _recalculate(asset_id, now=None):
        if asset_id == failing_id:
            raise RuntimeError("readings query failed")
        return recalculate_asset(asset_id, now)

    monkeypatch.setattr(engine, "recalculate_asset", _recalculate)

    result = worker.run_once()

    assert result.status == SyncStatus.PARTIAL
    assert result.assets_processed == 1
    assert len(result.errors) == 1
    assert "readings query failed" in result.errors[0].message
    assert _scheduled_rows(db) == [{"sync_status": "partial"}]


def test_empty_fleet_is_a_successful_run(worker) -> None:
    assert worker.run_once().status == SyncStatus.SUCCESS


def test_run_once_reports_store_failure_as_error(worker, monkeypatch) -> None:
    def _boom():
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(worker.orchestrator.analytics, "recalculate_all", _boom)

    result = worker.run_once()

    assert result.status == SyncStatus.ERROR
    assert recalculation_crashed(result)
    assert "store unavailable" in result.errors[0].message


def test_ingest_file_runs_payload_through_pipeline(worker, db, make_record, tmp_path) -> None:
    path = tmp_path / "batch.json"
    path.write_text(json.dumps([make_record(serial="SN-1"), make_record(serial="SN-2")]))

    result = worker.ingest_file(str(path))

    assert result.status == SyncStatus.SUCCESS
    assert result.readings_processed == 2
    assert db.execute_query("SELECT sync_type FROM sync_logs") == [{"sync_type": "file_import"}]


def test_ingest_file_rejects_invalid_json(worker, tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(ValidationError):
        worker.ingest_file(str(path))


def test_health_check_reflects_database(worker) -> None:
    assert worker.health_check() is True


def test_stop_ends_continuous_run_after_current_cycle(worker, monkeypatch) -> None:
    cycles = []
    closed = []

    def _run_once():
        cycles.append(1)
        worker.stop()
        return SyncResult(status=SyncStatus.SUCCESS)

    monkeypatch.setattr(worker, "run_once", _run_once)
    monkeypatch.setattr(worker.orchestrator.db, "close", lambda: closed.append(1))

    worker.run_continuous()

    assert cycles == [1]
    assert closed == [1]
