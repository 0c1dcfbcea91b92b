from __future__ import annotations

from datetime import datetime

import pytest
import pytz

from tank_telemetry.exceptions import ValidationError
from tank_telemetry.ingestion.normalizer import TelemetryNormalizer
from tank_telemetry.models import RawRecord

RECEIVED_AT = datetime(2024, 6, 1, 12, 0, tzinfo=pytz.UTC)


def _normalize(data, normalizer=None, number=1):
    normalizer = normalizer or TelemetryNormalizer()
    return normalizer.normalize(RawRecord(record_number=number, data=data), RECEIVED_AT)


def test_split_payload_wraps_single_object_and_numbers_from_one(make_record) -> None:
    normalizer = TelemetryNormalizer()

    single = normalizer.split_payload(make_record())
    batch = normalizer.split_payload([make_record(), make_record(serial="SN-2")])

    assert [r.record_number for r in single] == [1]
    assert [r.record_number for r in batch] == [1, 2]


@pytest.mark.parametrize("payload", ["not json", 42, None, []])
def test_split_payload_rejects_non_record_payloads(payload) -> None:
    with pytest.raises(ValidationError):
        TelemetryNormalizer().split_payload(payload)


def test_vendor_record_maps_to_canonical_triple(make_record) -> None:
    record = _normalize(make_record())

    assert record.location.external_id == "location-north-depot"
    assert record.location.name == "North Depot"
    assert record.location.customer_name == "Acme Mining"
    assert record.asset.external_id == "asset-sn-1001"
    assert record.asset.device_serial == "DEV-SN-1001"
    assert record.asset.is_online is True
    assert record.asset.capacity_liters == 10000.0
    assert record.reading.level_percent == 55.0
    assert record.reading.level_liters == pytest.approx(5500.0)
    assert record.reading.reading_at == datetime(2024, 6, 1, 8, 0, tzinfo=pytz.UTC)
    assert record.warnings == []


def test_guid_identities_take_precedence_over_derived_slugs(make_record) -> None:
    record = _normalize(make_record(LocationGuid="loc-guid-1", AssetGuid="asset-guid-1"))

    assert record.location.external_id == "loc-guid-1"
    assert record.asset.external_id == "asset-guid-1"


def test_camel_case_aliases_are_recognized() -> None:
    record = _normalize({
        "locationId": "South Yard",
        "deviceSerialNumber": "D-77",
        "capacityLiters": "2000",
        "levelLiters": "500",
        "batteryVoltage": "3.4",
        "timestamp": "2024-06-01T08:00:00+00:00",
    })

    assert record.location.external_id == "location-south-yard"
    assert record.asset.external_id == "asset-d-77"
    assert record.reading.level_percent == pytest.approx(25.0)


def test_missing_asset_identifier_rejects_record(make_record) -> None:
    data = make_record(AssetSerialNumber=None, DeviceSerialNumber=None)

    with pytest.raises(ValidationError) as exc_info:
        _normalize(data, number=2)

    assert exc_info.value.field == "AssetSerialNumber"
    assert exc_info.value.record_number == 2


def test_missing_location_identifier_rejects_record(make_record) -> None:
    with pytest.raises(ValidationError) as exc_info:
        _normalize(make_record(LocationId=None))

    assert exc_info.value.field == "LocationId"


def test_non_mapping_record_is_rejected() -> None:
    with pytest.raises(ValidationError):
        _normalize(["not", "a", "record"])


def test_out_of_range_percent_is_clamped_with_warning(make_record) -> None:
    record = _normalize(make_record(fill_level=140.0))

    assert record.reading.level_percent == 100.0
    assert record.asset.current_level_liters == record.asset.capacity_liters
    assert any("level_percent out of range" in w for w in record.warnings)


def test_liters_above_capacity_are_clamped(make_record) -> None:
    record = _normalize(make_record(AssetCalibratedFillLevel=None, AssetReportedLitres=12000))

    assert record.asset.current_level_liters == 10000.0
    assert any("exceeds capacity" in w for w in record.warnings)


def test_missing_numeric_fields_default_to_zero_with_warning(make_record) -> None:
    record = _normalize(make_record(
        AssetProfileWaterCapacity=None,
        AssetCalibratedFillLevel=None,
        DeviceBatteryVoltage=None,
    ))

    assert record.asset.capacity_liters == 0.0
    assert record.reading.level_percent == 0.0
    assert record.reading.level_liters == 0.0
    assert record.reading.battery_voltage == 0.0
    assert len(record.warnings) == 4


def test_invalid_coordinates_become_null_with_warning(make_record) -> None:
    record = _normalize(make_record(LocationLat=123.0, LocationLng="east"))

    assert record.location.latitude is None
    assert record.location.longitude is None
    assert len(record.warnings) == 2


def test_optional_fields_are_null_when_absent(make_record) -> None:
    record = _normalize(make_record())

    assert record.reading.temperature_c is None
    assert record.reading.signal_strength is None
    assert record.asset.daily_consumption_liters is None


def test_naive_timestamp_is_localized_in_source_timezone(make_record) -> None:
    normalizer = TelemetryNormalizer("Australia/Perth")

    record = _normalize(make_record(timestamp="2024-06-01T08:00:00"), normalizer=normalizer)

    assert record.reading.reading_at == datetime(2024, 6, 1, 0, 0, tzinfo=pytz.UTC)


def test_epoch_milliseconds_are_accepted(make_record) -> None:
    data = make_record(
        AssetLastCalibratedTelemetryTimestamp=None,
        AssetLastCalibratedTelemetryEpoch=1717228800000,
    )

    record = _normalize(data)

    assert record.reading.reading_at == datetime(2024, 6, 1, 8, 0, tzinfo=pytz.UTC)


def test_missing_timestamp_uses_ingestion_time(make_record) -> None:
    record = _normalize(make_record(AssetLastCalibratedTelemetryTimestamp=None))

    assert record.reading.reading_at == RECEIVED_AT
    assert any("timestamp missing" in w for w in record.warnings)


def test_canonical_record_renormalizes_to_itself(make_record) -> None:
    normalizer = TelemetryNormalizer()
    original = _normalize(make_record(temperature_c=21.5), normalizer=normalizer)

    again = normalizer.normalize(RawRecord(record_number=1, data=original.to_raw()), RECEIVED_AT)

    assert again.location == original.location
    assert again.asset == original.asset
    assert again.reading == original.reading
