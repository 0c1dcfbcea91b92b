"""
Entity repositories for locations, assets and readings with idempotency guarantees.
"""

import logging
import threading
from typing import List, Optional
from datetime import datetime

import pytz

from tank_telemetry.exceptions import PersistenceError
from tank_telemetry.models import AppendResult, Asset, Location, Reading, UpsertResult

logger = logging.getLogger(__name__)

# Asset columns that follow the newest telemetry rather than the latest write.
ASSET_LEVEL_COLUMNS = (
    'is_online', 'capacity_liters', 'current_level_liters', 'current_level_percent',
    'daily_consumption_liters', 'battery_voltage', 'last_telemetry_at'
)

ASSET_IDENTITY_COLUMNS = ('location_id', 'device_serial', 'commodity', 'disabled')


def _utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class KeyedLock:
    """Per-key mutual exclusion for upserts that share an identity key.

    Keys hash onto a fixed set of locks, so memory stays bounded however many
    identities pass through; unrelated keys occasionally share a stripe.
    """

    def __init__(self, stripes: int = 64):
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def __call__(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class LocationRepository:
    """Idempotent upserts for locations keyed by external provider ID."""

    def __init__(self, db):
        self.db = db
        self._locks = KeyedLock()

    def upsert_by_external_id(self, location: Location) -> UpsertResult:
        """Create the location on first sighting, otherwise update it in place.

        ``last_telemetry_at`` only moves forward so two records of one batch
        that share a location cannot regress it.
        """
        try:
            with self._locks(location.external_id):
                existing = self.db.execute_query(
                    "SELECT id FROM locations WHERE external_id = %s",
                    (location.external_id,)
                )

                now = _utcnow()
                query = """
                    INSERT INTO locations
                    (external_id, name, address, customer_name, latitude, longitude,
                     last_telemetry_at, disabled, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (external_id)
                    DO UPDATE SET
                        name = EXCLUDED.name,
                        address = COALESCE(EXCLUDED.address, locations.address),
                        customer_name = COALESCE(EXCLUDED.customer_name, locations.customer_name),
                        latitude = COALESCE(EXCLUDED.latitude, locations.latitude),
                        longitude = COALESCE(EXCLUDED.longitude, locations.longitude),
                        last_telemetry_at = CASE
                            WHEN locations.last_telemetry_at IS NULL
                                OR EXCLUDED.last_telemetry_at > locations.last_telemetry_at
                            THEN EXCLUDED.last_telemetry_at
                            ELSE locations.last_telemetry_at
                        END,
                        disabled = EXCLUDED.disabled,
                        updated_at = EXCLUDED.updated_at
                """

                params = (
                    location.external_id,
                    location.name,
                    location.address,
                    location.customer_name,
                    location.latitude,
                    location.longitude,
                    location.last_telemetry_at,
                    location.disabled,
                    now,
                    now
                )

                self.db.execute_query(query, params, fetch=False)

                result = self.db.execute_query(
                    "SELECT id FROM locations WHERE external_id = %s",
                    (location.external_id,)
                )

            if not result:
                raise RuntimeError("Location row missing after upsert")

            location_id = result[0]['id']
            created = not existing
            logger.debug(f"{'Created' if created else 'Updated'} location {location.external_id}: ID {location_id}")
            return UpsertResult(id=location_id, created=created)

        except Exception as e:
            logger.error(f"Error upserting location {location.external_id}: {e}")
            raise PersistenceError(
                f"Location upsert failed: {e}", entity='location', operation='upsert'
            ) from e

    def get_by_external_id(self, external_id: str) -> Optional[Location]:
        try:
            results = self.db.execute_query(
                "SELECT * FROM locations WHERE external_id = %s",
                (external_id,)
            )
        except Exception as e:
            logger.error(f"Error fetching location {external_id}: {e}")
            raise PersistenceError(f"Location lookup failed: {e}", entity='location', operation='get') from e

        return Location.model_validate(results[0]) if results else None


class AssetRepository:
    """Idempotent upserts and derived-field updates for assets."""

    def __init__(self, db):
        self.db = db
        self._locks = KeyedLock()

    def upsert_by_external_id(self, asset: Asset) -> UpsertResult:
        """Create or update an asset; level fields never regress to older telemetry."""
        if asset.location_id is None:
            raise PersistenceError("Asset has no owning location", entity='asset', operation='upsert')

        newer = (
            "assets.last_telemetry_at IS NULL OR EXCLUDED.last_telemetry_at IS NULL "
            "OR EXCLUDED.last_telemetry_at >= assets.last_telemetry_at"
        )
        level_updates = ",\n".join(
            f"{column} = CASE WHEN {newer} THEN EXCLUDED.{column} ELSE assets.{column} END"
            for column in ASSET_LEVEL_COLUMNS
        )
        identity_updates = ",\n".join(
            f"{column} = EXCLUDED.{column}" for column in ASSET_IDENTITY_COLUMNS
        )

        query = f"""
            INSERT INTO assets
            (external_id, location_id, is_online, capacity_liters, current_level_liters,
             current_level_percent, daily_consumption_liters, device_serial, battery_voltage,
             commodity, last_telemetry_at, disabled, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (external_id)
            DO UPDATE SET
                {identity_updates},
                {level_updates},
                updated_at = EXCLUDED.updated_at
        """

        try:
            with self._locks(asset.external_id):
                existing = self.db.execute_query(
                    "SELECT id FROM assets WHERE external_id = %s",
                    (asset.external_id,)
                )

                now = _utcnow()
                params = (
                    asset.external_id,
                    asset.location_id,
                    asset.is_online,
                    asset.capacity_liters,
                    asset.current_level_liters,
                    asset.current_level_percent,
                    asset.daily_consumption_liters,
                    asset.device_serial,
                    asset.battery_voltage,
                    asset.commodity,
                    asset.last_telemetry_at,
                    asset.disabled,
                    now,
                    now
                )

                self.db.execute_query(query, params, fetch=False)

                result = self.db.execute_query(
                    "SELECT id FROM assets WHERE external_id = %s",
                    (asset.external_id,)
                )

            if not result:
                raise RuntimeError("Asset row missing after upsert")

            return UpsertResult(id=result[0]['id'], created=not existing)

        except Exception as e:
            logger.error(f"Error upserting asset {asset.external_id}: {e}")
            raise PersistenceError(
                f"Asset upsert failed: {e}", entity='asset', operation='upsert'
            ) from e

    def get(self, asset_id: int) -> Optional[Asset]:
        try:
            results = self.db.execute_query("SELECT * FROM assets WHERE id = %s", (asset_id,))
        except Exception as e:
            logger.error(f"Error fetching asset {asset_id}: {e}")
            raise PersistenceError(f"Asset lookup failed: {e}", entity='asset', operation='get') from e

        return Asset.model_validate(results[0]) if results else None

    def list_active(self) -> List[Asset]:
        """Assets that are not disabled and whose location is not disabled."""
        query = """
            SELECT a.*
            FROM assets a
            JOIN locations l ON l.id = a.location_id
            WHERE a.disabled = %s AND l.disabled = %s
            ORDER BY a.id
        """

        try:
            results = self.db.execute_query(query, (False, False))
        except Exception as e:
            logger.error(f"Error listing active assets: {e}")
            raise PersistenceError(f"Active asset listing failed: {e}", entity='asset', operation='list') from e

        return [Asset.model_validate(row) for row in results]

    def is_active(self, asset_id: int) -> bool:
        query = """
            SELECT a.disabled AS asset_disabled, l.disabled AS location_disabled
            FROM assets a
            JOIN locations l ON l.id = a.location_id
            WHERE a.id = %s
        """

        try:
            results = self.db.execute_query(query, (asset_id,))
        except Exception as e:
            raise PersistenceError(f"Asset status lookup failed: {e}", entity='asset', operation='get') from e

        if not results:
            return False
        return not results[0]['asset_disabled'] and not results[0]['location_disabled']

    def update_consumption(
        self,
        asset_id: int,
        rolling_avg_liters_per_day: Optional[float],
        days_remaining: Optional[float]
    ) -> None:
        """Write the derived consumption fields back onto the asset."""
        query = """
            UPDATE assets
            SET rolling_avg_liters_per_day = %s,
                days_remaining = %s,
                consumption_calculated_at = %s
            WHERE id = %s
        """

        try:
            updated = self.db.execute_query(
                query,
                (rolling_avg_liters_per_day, days_remaining, _utcnow(), asset_id),
                fetch=False
            )
        except Exception as e:
            logger.error(f"Error updating consumption for asset {asset_id}: {e}")
            raise PersistenceError(
                f"Consumption update failed: {e}", entity='asset', operation='update_consumption'
            ) from e

        if not updated:
            raise PersistenceError(
                f"Asset {asset_id} not found", entity='asset', operation='update_consumption'
            )


class ReadingRepository:
    """Append-only store of readings, deduplicated on (asset_id, reading_at)."""

    def __init__(self, db):
        self.db = db

    def append_if_absent(self, reading: Reading) -> AppendResult:
        """Insert the reading unless one already exists for the same asset and timestamp."""
        if reading.asset_id is None:
            raise PersistenceError("Reading has no asset", entity='reading', operation='append')

        query = """
            INSERT INTO readings
            (asset_id, reading_at, level_liters, level_percent, battery_voltage,
             temperature_c, signal_strength, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (asset_id, reading_at) DO NOTHING
        """

        params = (
            reading.asset_id,
            reading.reading_at,
            reading.level_liters,
            reading.level_percent,
            reading.battery_voltage,
            reading.temperature_c,
            reading.signal_strength,
            _utcnow()
        )

        try:
            inserted = self.db.execute_query(query, params, fetch=False)
        except Exception as e:
            logger.error(f"Error appending reading for asset {reading.asset_id}: {e}")
            raise PersistenceError(
                f"Reading insert failed: {e}", entity='reading', operation='append'
            ) from e

        if not inserted:
            logger.info(f"Duplicate reading ignored: asset {reading.asset_id} at {reading.reading_at.isoformat()}")

        return AppendResult(inserted=bool(inserted))

    def list_readings(self, asset_id: int, since: datetime, until: datetime) -> List[Reading]:
        """Readings for an asset within [since, until], oldest first."""
        query = """
            SELECT id, asset_id, reading_at, level_liters, level_percent,
                   battery_voltage, temperature_c, signal_strength
            FROM readings
            WHERE asset_id = %s AND reading_at >= %s AND reading_at <= %s
            ORDER BY reading_at ASC
        """

        try:
            results = self.db.execute_query(query, (asset_id, since, until))
        except Exception as e:
            logger.error(f"Error listing readings for asset {asset_id}: {e}")
            raise PersistenceError(
                f"Reading listing failed: {e}", entity='reading', operation='list'
            ) from e

        return [Reading.model_validate(row) for row in results]

    def latest(self, asset_id: int) -> Optional[Reading]:
        query = """
            SELECT id, asset_id, reading_at, level_liters, level_percent,
                   battery_voltage, temperature_c, signal_strength
            FROM readings
            WHERE asset_id = %s
            ORDER BY reading_at DESC
            LIMIT 1
        """

        try:
            results = self.db.execute_query(query, (asset_id,))
        except Exception as e:
            raise PersistenceError(f"Latest reading lookup failed: {e}", entity='reading', operation='get') from e

        return Reading.model_validate(results[0]) if results else None

    def count(self, asset_id: int) -> int:
        try:
            results = self.db.execute_query(
                "SELECT COUNT(*) AS reading_count FROM readings WHERE asset_id = %s",
                (asset_id,)
            )
        except Exception as e:
            raise PersistenceError(f"Reading count failed: {e}", entity='reading', operation='count') from e

        return results[0]['reading_count'] if results else 0
