from __future__ import annotations

from datetime import datetime

import pytest
import pytz
from pydantic import ValidationError

from tank_telemetry.models import Asset, IssueEntry, RawRecord, Reading, SyncResult, SyncStatus


def test_partial_requires_successes_and_errors() -> None:
    with pytest.raises(ValidationError):
        SyncResult(status=SyncStatus.PARTIAL, records_succeeded=0, errors=[IssueEntry(message="bad")])
    with pytest.raises(ValidationError):
        SyncResult(status=SyncStatus.PARTIAL, records_succeeded=3, errors=[])


@pytest.mark.parametrize(
    "succeeded, errors, expected",
    [(0, 0, SyncStatus.ERROR), (0, 2, SyncStatus.ERROR), (3, 1, SyncStatus.PARTIAL), (3, 0, SyncStatus.SUCCESS)],
)
def test_classify(succeeded, errors, expected) -> None:
    issues = [IssueEntry(message="bad") for _ in range(errors)]

    assert SyncResult.classify(succeeded, issues) == expected


def test_asset_level_cannot_exceed_known_capacity() -> None:
    with pytest.raises(ValidationError):
        Asset(external_id="asset-1", capacity_liters=100.0, current_level_liters=150.0)

    assert Asset(external_id="asset-2", capacity_liters=0.0, current_level_liters=150.0).current_level_liters == 150.0


def test_reading_is_immutable() -> None:
    reading = Reading(reading_at=datetime(2024, 6, 1, tzinfo=pytz.UTC), level_liters=10.0, level_percent=1.0)

    with pytest.raises(ValidationError):
        reading.level_liters = 20.0


def test_raw_record_reference_falls_back_to_unknown() -> None:
    assert RawRecord(record_number=1, data={"AssetSerialNumber": "SN-9"}).reference == "SN-9"
    assert RawRecord(record_number=2, data=["x"]).reference == "unknown"


def test_issue_entry_renders_record_context() -> None:
    entry = IssueEntry(message="Missing field", record_number=2, record_reference="West Site")

    assert str(entry) == "Record 2 (West Site): Missing field"
    assert str(IssueEntry(message="Run cancelled")) == "Run cancelled"
