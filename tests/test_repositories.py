from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
import pytz

from tank_telemetry.exceptions import PersistenceError
from tank_telemetry.ingestion.repositories import KeyedLock
from tank_telemetry.models import Asset, Location, Reading

T0 = datetime(2024, 6, 1, 8, 0, tzinfo=pytz.UTC)


def _location(**overrides) -> Location:
    values = {"external_id": "location-north-depot", "name": "North Depot", "last_telemetry_at": T0}
    values.update(overrides)
    return Location(**values)


def test_location_upsert_reports_created_only_once(locations) -> None:
    first = locations.upsert_by_external_id(_location())
    second = locations.upsert_by_external_id(_location(name="North Depot (renamed)"))

    assert first.created is True
    assert second.created is False
    assert second.id == first.id
    assert locations.get_by_external_id("location-north-depot").name == "North Depot (renamed)"


def test_location_last_telemetry_never_moves_backwards(locations) -> None:
    locations.upsert_by_external_id(_location(last_telemetry_at=T0))
    locations.upsert_by_external_id(_location(last_telemetry_at=T0 - timedelta(days=1)))

    stored = locations.get_by_external_id("location-north-depot")

    assert stored.last_telemetry_at == T0


def test_location_upsert_keeps_known_address_when_update_omits_it(locations) -> None:
    locations.upsert_by_external_id(_location(address="1 Pit Road"))
    locations.upsert_by_external_id(_location(address=None))

    assert locations.get_by_external_id("location-north-depot").address == "1 Pit Road"


def test_concurrent_upserts_of_one_location_create_a_single_row(locations) -> None:
    with ThreadPoolExecutor(max_workers=4) as executor:
        results = list(executor.map(
            lambda hour: locations.upsert_by_external_id(_location(last_telemetry_at=T0 + timedelta(hours=hour))),
            range(8),
        ))

    assert len({r.id for r in results}) == 1
    assert sum(1 for r in results if r.created) == 1
    assert locations.get_by_external_id("location-north-depot").last_telemetry_at == T0 + timedelta(hours=7)


def test_asset_level_does_not_regress_on_older_telemetry(stored_asset, assets) -> None:
    asset = stored_asset(level_liters=500.0, level_percent=50.0)

    older = asset.model_copy(update={
        "current_level_liters": 900.0,
        "current_level_percent": 90.0,
        "last_telemetry_at": T0 - timedelta(hours=6),
        "commodity": "Diesel",
    })
    result = assets.upsert_by_external_id(older)

    stored = assets.get(asset.id)
    assert result.created is False
    assert stored.current_level_liters == 500.0
    assert stored.last_telemetry_at == T0
    assert stored.commodity == "Diesel"


def test_asset_level_follows_newer_telemetry(stored_asset, assets) -> None:
    asset = stored_asset(level_liters=500.0, level_percent=50.0)

    newer = asset.model_copy(update={
        "current_level_liters": 450.0,
        "current_level_percent": 45.0,
        "last_telemetry_at": T0 + timedelta(hours=6),
    })
    assets.upsert_by_external_id(newer)

    assert assets.get(asset.id).current_level_liters == 450.0


def test_asset_upsert_requires_owning_location(assets) -> None:
    with pytest.raises(PersistenceError) as exc_info:
        assets.upsert_by_external_id(Asset(external_id="asset-orphan"))

    assert exc_info.value.entity == "asset"


def test_list_active_skips_disabled_assets_and_locations(stored_asset, locations, assets) -> None:
    active = stored_asset(external_id="asset-active")
    stored_asset(external_id="asset-disabled", disabled=True)
    stored_asset(external_id="asset-at-closed-site", location_external_id="location-closed")
    locations.upsert_by_external_id(Location(external_id="location-closed", name="Closed", disabled=True))

    assert [a.id for a in assets.list_active()] == [active.id]


def test_update_consumption_of_unknown_asset_raises(assets) -> None:
    with pytest.raises(PersistenceError):
        assets.update_consumption(999, 10.0, 5.0)


def test_duplicate_reading_is_ignored_not_overwritten(stored_asset, readings) -> None:
    asset = stored_asset()
    reading = Reading(asset_id=asset.id, reading_at=T0, level_liters=500.0, level_percent=50.0)

    first = readings.append_if_absent(reading)
    second = readings.append_if_absent(reading.model_copy(update={"level_liters": 100.0, "level_percent": 10.0}))

    assert first.inserted is True
    assert second.inserted is False
    assert readings.count(asset.id) == 1
    assert readings.latest(asset.id).level_liters == 500.0


def test_list_readings_returns_window_in_ascending_order(stored_asset, readings) -> None:
    asset = stored_asset()
    for hours in (5, 1, 3, 30):
        readings.append_if_absent(Reading(
            asset_id=asset.id,
            reading_at=T0 - timedelta(hours=hours),
            level_liters=500.0 + hours,
            level_percent=50.0,
        ))

    window = readings.list_readings(asset.id, T0 - timedelta(hours=24), T0)

    assert [r.reading_at for r in window] == [T0 - timedelta(hours=h) for h in (5, 3, 1)]


def test_keyed_lock_reuses_a_bounded_set_of_locks() -> None:
    keyed = KeyedLock(stripes=8)

    assert keyed("location-north-depot") is keyed("location-north-depot")
    assert len({id(keyed(f"asset-sn-{i}")) for i in range(1000)}) <= 8
