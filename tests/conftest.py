from __future__ import annotations

from datetime import datetime
from typing import Any, Dict

import pytest
import pytz

from tank_telemetry.analytics.alerts import AlertGenerator, AlertRepository
from tank_telemetry.analytics.consumption import ConsumptionAnalyticsEngine
from tank_telemetry.config import PipelineConfig
from tank_telemetry.database.sqlite_connection import SQLiteManager
from tank_telemetry.ingestion.orchestrator import IngestionOrchestrator
from tank_telemetry.ingestion.repositories import AssetRepository, LocationRepository, ReadingRepository
from tank_telemetry.models import Asset, Location

WEBHOOK_SECRET = "test-webhook-secret"
CRON_SECRET = "test-cron-secret"
API_SECRET = "test-api-secret"


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    return PipelineConfig(
        database_backend="sqlite",
        sqlite_db_path=str(tmp_path / "telemetry.db"),
        webhook_secret=WEBHOOK_SECRET,
        cron_secret=CRON_SECRET,
        api_secret=API_SECRET,
        record_concurrency=2,
        analytics_concurrency=2,
    )


@pytest.fixture
def db(config) -> SQLiteManager:
    manager = SQLiteManager(config.sqlite_db_path)
    assert manager.initialize_schema()
    return manager


@pytest.fixture
def locations(db) -> LocationRepository:
    return LocationRepository(db)


@pytest.fixture
def assets(db) -> AssetRepository:
    return AssetRepository(db)


@pytest.fixture
def readings(db) -> ReadingRepository:
    return ReadingRepository(db)


@pytest.fixture
def alert_repo(db) -> AlertRepository:
    return AlertRepository(db)


@pytest.fixture
def engine(config, assets, readings) -> ConsumptionAnalyticsEngine:
    return ConsumptionAnalyticsEngine(config, assets, readings)


@pytest.fixture
def alert_generator(config, alert_repo, assets) -> AlertGenerator:
    return AlertGenerator(config, alert_repo, assets)


@pytest.fixture
def orchestrator(config, db) -> IngestionOrchestrator:
    return IngestionOrchestrator(config, db)


@pytest.fixture
def stored_asset(locations, assets):
    """Persist a location with one asset and return a factory for more."""

    def _create(
        external_id: str = "asset-sn-1001",
        capacity: float = 1000.0,
        level_liters: float = 500.0,
        level_percent: float = 50.0,
        location_external_id: str = "location-north-depot",
        disabled: bool = False,
    ) -> Asset:
        location = locations.upsert_by_external_id(
            Location(external_id=location_external_id, name="North Depot")
        )
        result = assets.upsert_by_external_id(
            Asset(
                external_id=external_id,
                location_id=location.id,
                capacity_liters=capacity,
                current_level_liters=level_liters,
                current_level_percent=level_percent,
                last_telemetry_at=datetime(2024, 6, 1, 8, 0, tzinfo=pytz.UTC),
                disabled=disabled,
            )
        )
        return assets.get(result.id)

    return _create


def vendor_record(
    location: str = "North Depot",
    serial: str = "SN-1001",
    fill_level: float = 55.0,
    capacity: float = 10000.0,
    timestamp: str = "2024-06-01T08:00:00Z",
    **overrides: Any,
) -> Dict[str, Any]:
    """A Gasbot-style record as the vendor posts it."""
    record = {
        "LocationId": location,
        "TenancyName": "Acme Mining",
        "LocationAddress": "1 Pit Road",
        "LocationLat": -31.95,
        "LocationLng": 115.86,
        "AssetSerialNumber": serial,
        "DeviceSerialNumber": f"DEV-{serial}",
        "DeviceOnline": "Y",
        "AssetProfileWaterCapacity": capacity,
        "AssetCalibratedFillLevel": fill_level,
        "DeviceBatteryVoltage": 3.6,
        "AssetProfileCommodity": "Diesel",
        "AssetLastCalibratedTelemetryTimestamp": timestamp,
    }
    record.update(overrides)
    return {k: v for k, v in record.items() if v is not None}


@pytest.fixture
def make_record():
    return vendor_record
