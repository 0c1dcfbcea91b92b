"""
Telemetry normalizer for mapping vendor tank records to canonical shapes.
"""

import re
import math
import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple
from datetime import datetime

import pytz
from pydantic import ValidationError as ModelValidationError

from tank_telemetry.exceptions import ValidationError
from tank_telemetry.models import Asset, CanonicalRecord, Location, RawRecord, Reading

logger = logging.getLogger(__name__)

# Vendors rename fields across firmware versions; first alias present wins.
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    'location_external_id': ('LocationGuid', 'locationGuid', 'location_guid', 'location_external_id'),
    'location_name': ('LocationId', 'locationId', 'LocationName', 'location_name'),
    'address': ('LocationAddress', 'locationAddress', 'address'),
    'customer_name': ('TenancyName', 'CustomerName', 'customerName', 'customer_name'),
    'latitude': ('LocationLat', 'lat', 'latitude'),
    'longitude': ('LocationLng', 'lng', 'longitude'),
    'location_last_telemetry_at': ('LocationLastCalibratedTelemetryTimestamp', 'location_last_telemetry_at'),
    'location_disabled': ('LocationDisabledStatus', 'location_disabled'),
    'asset_external_id': ('AssetGuid', 'assetGuid', 'asset_guid', 'asset_external_id'),
    'asset_serial': ('AssetSerialNumber', 'assetSerialNumber', 'DeviceSerialNumber', 'deviceSerialNumber'),
    'is_online': ('DeviceOnline', 'deviceOnline', 'is_online'),
    'capacity_liters': ('AssetProfileWaterCapacity', 'AssetCapacityLitres', 'capacityLiters', 'capacity_liters'),
    'level_liters': ('AssetReportedLitres', 'AssetLevelLitres', 'levelLiters', 'level_liters'),
    'level_percent': ('AssetCalibratedFillLevel', 'AssetRawFillLevel', 'fillLevel', 'level_percent'),
    'daily_consumption_liters': ('AssetDailyConsumption', 'LocationDailyConsumption', 'daily_consumption_liters'),
    'device_serial': ('DeviceSerialNumber', 'deviceSerialNumber', 'device_serial'),
    'battery_voltage': ('DeviceBatteryVoltage', 'BatteryVoltage', 'batteryVoltage', 'battery_voltage'),
    'commodity': ('AssetProfileCommodity', 'commodity'),
    'asset_disabled': ('AssetDisabledStatus', 'asset_disabled'),
    'reading_at': ('AssetLastCalibratedTelemetryTimestamp', 'ReadingTimestamp', 'timestamp', 'reading_at'),
    'reading_epoch': ('AssetLastCalibratedTelemetryEpoch', 'telemetry_epoch'),
    'temperature_c': ('DeviceTemperature', 'Temperature', 'temperature_c'),
    'signal_strength': ('DeviceSignalStrength', 'SignalStrength', 'signal_strength'),
}

# Fields coerced to 0 (with a warning) rather than rejected when missing.
REQUIRED_NUMERIC_FIELDS = ('capacity_liters', 'level_liters', 'level_percent', 'battery_voltage')

TRUE_VALUES = ('Y', 'YES', 'TRUE', '1', 'ONLINE', 'ACTIVE')
FALSE_VALUES = ('N', 'NO', 'FALSE', '0', 'OFFLINE', 'INACTIVE')

# Epoch values above this are milliseconds.
EPOCH_MILLIS_THRESHOLD = 100_000_000_000


class TelemetryNormalizer:
    """Maps an arbitrary vendor record into a canonical Location/Asset/Reading triple."""

    def __init__(self, source_timezone: str = 'UTC'):
        self.source_tz = pytz.timezone(source_timezone)

    def split_payload(self, payload: Any) -> List[RawRecord]:
        """Split a webhook body into individual raw records.

        Accepts a single object or an array of objects. Anything else is
        rejected as a whole.
        """
        if isinstance(payload, list):
            items = payload
        elif isinstance(payload, Mapping):
            items = [payload]
        else:
            raise ValidationError(
                f"Invalid payload format - expected JSON object or array, got {type(payload).__name__}"
            )

        if not items:
            raise ValidationError("Payload contains no records")

        return [RawRecord(record_number=i + 1, data=item) for i, item in enumerate(items)]

    def normalize(self, raw: RawRecord, received_at: datetime) -> CanonicalRecord:
        """Normalize one raw record or raise ValidationError naming the bad field."""
        data = raw.data
        number = raw.record_number

        if not isinstance(data, Mapping):
            raise ValidationError(
                f"Record must be an object, got {type(data).__name__}",
                record_number=number
            )

        warnings: List[str] = []

        location_external_id, location_name = self._location_identity(data, number)
        asset_external_id = self._asset_identity(data, number)

        reading_at = self._parse_reading_time(data, received_at, warnings)
        capacity, level_liters, level_percent = self._parse_levels(data, warnings)
        battery_voltage = self._required_float(data, 'battery_voltage', warnings)

        latitude = self._parse_coordinate(data, 'latitude', 90, warnings)
        longitude = self._parse_coordinate(data, 'longitude', 180, warnings)
        location_telemetry_at = self._parse_optional_time(data, 'location_last_telemetry_at', warnings) or reading_at

        is_online = self._parse_boolean(self._lookup(data, 'is_online'), default=False)

        try:
            location = Location(
                external_id=location_external_id,
                name=location_name,
                address=self._parse_string(self._lookup(data, 'address')),
                customer_name=self._parse_string(self._lookup(data, 'customer_name')),
                latitude=latitude,
                longitude=longitude,
                last_telemetry_at=location_telemetry_at,
                disabled=self._parse_boolean(self._lookup(data, 'location_disabled'), default=False),
            )

            asset = Asset(
                external_id=asset_external_id,
                is_online=is_online,
                capacity_liters=capacity,
                current_level_liters=level_liters,
                current_level_percent=level_percent,
                daily_consumption_liters=self._optional_float(data, 'daily_consumption_liters', warnings),
                device_serial=self._parse_string(self._lookup(data, 'device_serial')),
                battery_voltage=battery_voltage,
                commodity=self._parse_string(self._lookup(data, 'commodity')),
                last_telemetry_at=reading_at,
                disabled=self._parse_boolean(self._lookup(data, 'asset_disabled'), default=False),
            )

            reading = Reading(
                reading_at=reading_at,
                level_liters=level_liters,
                level_percent=level_percent,
                battery_voltage=battery_voltage,
                temperature_c=self._optional_float(data, 'temperature_c', warnings),
                signal_strength=self._optional_float(data, 'signal_strength', warnings),
            )

        except ModelValidationError as e:
            first = e.errors()[0]
            field = '.'.join(str(part) for part in first.get('loc', ())) or None
            raise ValidationError(
                f"Invalid {field or 'record'}: {first.get('msg')}",
                field=field,
                record_number=number
            ) from e

        for warning in warnings:
            logger.warning(f"Record {number}: {warning}")

        return CanonicalRecord(
            record_number=number,
            location=location,
            asset=asset,
            reading=reading,
            warnings=warnings,
        )

    def _lookup(self, data: Mapping, field: str) -> Any:
        """Return the first non-empty value among the field's aliases."""
        for alias in FIELD_ALIASES[field]:
            value = data.get(alias)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                continue
            return value
        return None

    def _location_identity(self, data: Mapping, number: int) -> Tuple[str, str]:
        external_id = self._parse_string(self._lookup(data, 'location_external_id'))
        name = self._parse_string(self._lookup(data, 'location_name'))

        if not external_id and not name:
            raise ValidationError(
                "Missing required field: LocationId or LocationGuid",
                field='LocationId',
                record_number=number
            )

        if not external_id:
            external_id = f"location-{self._slugify(name)}"

        return external_id, name or external_id

    def _asset_identity(self, data: Mapping, number: int) -> str:
        external_id = self._parse_string(self._lookup(data, 'asset_external_id'))
        if external_id:
            return external_id

        serial = self._parse_string(self._lookup(data, 'asset_serial'))
        if not serial:
            raise ValidationError(
                "Missing required field: AssetSerialNumber, DeviceSerialNumber, or AssetGuid",
                field='AssetSerialNumber',
                record_number=number
            )

        return f"asset-{self._slugify(serial)}"

    def _parse_levels(self, data: Mapping, warnings: List[str]) -> Tuple[float, float, float]:
        """Resolve capacity, liters and percent, deriving whichever side is missing."""
        capacity = self._parse_float(self._lookup(data, 'capacity_liters'))
        liters = self._parse_float(self._lookup(data, 'level_liters'))
        percent = self._parse_float(self._lookup(data, 'level_percent'))

        if capacity is None:
            warnings.append("capacity_liters missing or invalid, defaulting to 0")
            capacity = 0.0
        elif capacity < 0:
            warnings.append(f"capacity_liters is negative ({capacity}), defaulting to 0")
            capacity = 0.0

        if percent is None and liters is not None and capacity > 0:
            percent = liters / capacity * 100
        if liters is None and percent is not None and capacity > 0:
            liters = capacity * min(max(percent, 0.0), 100.0) / 100

        if percent is None:
            warnings.append("level_percent missing or invalid, defaulting to 0")
            percent = 0.0
        if liters is None:
            warnings.append("level_liters missing or invalid, defaulting to 0")
            liters = 0.0

        if percent < 0 or percent > 100:
            clamped = min(max(percent, 0.0), 100.0)
            warnings.append(f"level_percent out of range (0-100): {percent}, clamped to {clamped}")
            percent = clamped

        if liters < 0:
            warnings.append(f"level_liters is negative ({liters}), clamped to 0")
            liters = 0.0
        if capacity > 0 and liters > capacity:
            warnings.append(f"level_liters {liters} exceeds capacity {capacity}, clamped")
            liters = capacity

        return capacity, liters, percent

    def _required_float(self, data: Mapping, field: str, warnings: List[str]) -> float:
        value = self._parse_float(self._lookup(data, field))
        if value is None:
            warnings.append(f"{field} missing or invalid, defaulting to 0")
            return 0.0
        return value

    def _optional_float(self, data: Mapping, field: str, warnings: List[str]) -> Optional[float]:
        raw_value = self._lookup(data, field)
        value = self._parse_float(raw_value)
        if value is None and raw_value is not None:
            warnings.append(f"Invalid {field}: '{raw_value}', ignored")
        return value

    def _parse_coordinate(self, data: Mapping, field: str, limit: float, warnings: List[str]) -> Optional[float]:
        raw_value = self._lookup(data, field)
        value = self._parse_float(raw_value)
        if value is None:
            if raw_value is not None:
                warnings.append(f"Invalid {field}: '{raw_value}', ignored")
            return None
        if value < -limit or value > limit:
            warnings.append(f"{field} out of range: {value}, ignored")
            return None
        return value

    def _parse_float(self, value: Any) -> Optional[float]:
        """Parse a numeric value, returning None for anything unusable."""
        if value is None or isinstance(value, bool):
            return None
        try:
            if isinstance(value, str):
                value = value.strip().replace('L', '').replace('%', '').strip()
            result = float(value)
        except (ValueError, TypeError):
            return None
        if math.isnan(result) or math.isinf(result):
            return None
        return result

    def _parse_string(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    def _parse_boolean(self, value: Any, default: bool) -> bool:
        if value is None:
            return default
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0

        clean_value = str(value).strip().upper()
        if clean_value in TRUE_VALUES:
            return True
        if clean_value in FALSE_VALUES:
            return False
        return default

    def _parse_reading_time(self, data: Mapping, received_at: datetime, warnings: List[str]) -> datetime:
        reading_at = self._parse_optional_time(data, 'reading_at', warnings)
        if reading_at:
            return reading_at

        epoch = self._parse_float(self._lookup(data, 'reading_epoch'))
        if epoch is not None and epoch > 0:
            if epoch > EPOCH_MILLIS_THRESHOLD:
                epoch = epoch / 1000
            return datetime.fromtimestamp(epoch, tz=pytz.UTC)

        warnings.append("Reading timestamp missing, using ingestion time")
        return self._to_utc(received_at)

    def _parse_optional_time(self, data: Mapping, field: str, warnings: List[str]) -> Optional[datetime]:
        value = self._lookup(data, field)
        if value is None:
            return None

        if isinstance(value, datetime):
            return self._to_utc(value)

        if isinstance(value, (int, float)) and not isinstance(value, bool):
            epoch = value / 1000 if value > EPOCH_MILLIS_THRESHOLD else value
            return datetime.fromtimestamp(epoch, tz=pytz.UTC)

        try:
            parsed = datetime.fromisoformat(str(value).strip().replace('Z', '+00:00'))
        except ValueError:
            warnings.append(f"Invalid {field}: '{value}', ignored")
            return None

        return self._to_utc(parsed)

    def _to_utc(self, value: datetime) -> datetime:
        """Localize naive timestamps in the source timezone and convert to UTC."""
        if value.tzinfo is None:
            value = self.source_tz.localize(value)
        return value.astimezone(pytz.UTC)

    @staticmethod
    def _slugify(value: str) -> str:
        slug = re.sub(r'\s+', '-', value.strip()).lower()
        return re.sub(r'[^a-z0-9-]', '', slug)
