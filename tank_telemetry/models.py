"""
Canonical data models shared by the pipeline components.

Vendor payloads enter as RawRecord and only the normalizer turns them into a
CanonicalRecord; nothing past normalization sees untyped data.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


class SyncStatus(str, Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    ERROR = 'error'


class AlertSeverity(str, Enum):
    WARNING = 'warning'
    CRITICAL = 'critical'


class AlertReason(str, Enum):
    LOW_FUEL = 'low_fuel'
    CRITICAL_FUEL = 'critical_fuel'
    DAYS_REMAINING = 'days_remaining'


class Location(BaseModel):
    """A physical site owning zero or more assets."""

    id: Optional[int] = None
    external_id: str
    name: str
    address: Optional[str] = None
    customer_name: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    last_telemetry_at: Optional[datetime] = None
    disabled: bool = False

    @field_validator('external_id', 'name')
    @classmethod
    def validate_required_text(cls, v):
        if not v or not v.strip():
            raise ValueError('value is required')
        return v.strip()


class Asset(BaseModel):
    """A monitored tank/sensor."""

    id: Optional[int] = None
    external_id: str
    location_id: Optional[int] = None
    is_online: bool = False
    capacity_liters: float = 0.0
    current_level_liters: float = 0.0
    current_level_percent: float = 0.0
    daily_consumption_liters: Optional[float] = None
    rolling_avg_liters_per_day: Optional[float] = None
    days_remaining: Optional[float] = None
    device_serial: Optional[str] = None
    battery_voltage: float = 0.0
    commodity: Optional[str] = None
    last_telemetry_at: Optional[datetime] = None
    disabled: bool = False

    @model_validator(mode='after')
    def validate_level_within_capacity(self):
        if self.capacity_liters > 0 and self.current_level_liters > self.capacity_liters:
            raise ValueError(
                f"current_level_liters {self.current_level_liters} exceeds capacity {self.capacity_liters}"
            )
        return self


class Reading(BaseModel):
    """One immutable timestamped observation for an asset."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = None
    asset_id: Optional[int] = None
    reading_at: datetime
    level_liters: float
    level_percent: float
    battery_voltage: float = 0.0
    temperature_c: Optional[float] = None
    signal_strength: Optional[float] = None

    @field_validator('level_percent')
    @classmethod
    def validate_percent(cls, v):
        if v < 0 or v > 100:
            raise ValueError('level_percent must be within 0-100')
        return v


class Alert(BaseModel):
    """Derived threshold alert keyed by (asset_id, reason)."""

    id: Optional[int] = None
    asset_id: int
    severity: AlertSeverity
    reason: AlertReason
    raised_at: datetime
    message: str = ''
    active: bool = True


class RawRecord(BaseModel):
    """An untyped vendor record as received, tagged with its position in the batch."""

    record_number: int
    data: Any

    @property
    def reference(self) -> str:
        """Best-effort human label for log lines and error entries."""
        if isinstance(self.data, dict):
            for key in ('LocationId', 'location_name', 'AssetSerialNumber', 'DeviceSerialNumber'):
                value = self.data.get(key)
                if value:
                    return str(value)
        return 'unknown'


class CanonicalRecord(BaseModel):
    """Normalized, validated Location/Asset/Reading triple."""

    record_number: int
    location: Location
    asset: Asset
    reading: Reading
    warnings: List[str] = []

    @property
    def reference(self) -> str:
        return self.location.name

    def to_raw(self) -> Dict[str, Any]:
        """Render the record using canonical field names.

        Feeding the result back through the normalizer yields an equivalent
        record.
        """
        return {
            'location_external_id': self.location.external_id,
            'location_name': self.location.name,
            'address': self.location.address,
            'customer_name': self.location.customer_name,
            'latitude': self.location.latitude,
            'longitude': self.location.longitude,
            'location_last_telemetry_at': _isoformat(self.location.last_telemetry_at),
            'location_disabled': self.location.disabled,
            'asset_external_id': self.asset.external_id,
            'is_online': self.asset.is_online,
            'capacity_liters': self.asset.capacity_liters,
            'level_liters': self.reading.level_liters,
            'level_percent': self.reading.level_percent,
            'daily_consumption_liters': self.asset.daily_consumption_liters,
            'device_serial': self.asset.device_serial,
            'battery_voltage': self.reading.battery_voltage,
            'commodity': self.asset.commodity,
            'asset_disabled': self.asset.disabled,
            'reading_at': _isoformat(self.reading.reading_at),
            'temperature_c': self.reading.temperature_c,
            'signal_strength': self.reading.signal_strength,
        }


class UpsertResult(BaseModel):
    id: int
    created: bool


class AppendResult(BaseModel):
    inserted: bool
    id: Optional[int] = None


class IssueEntry(BaseModel):
    """A warning or error tagged with the record that caused it."""

    message: str
    record_number: Optional[int] = None
    record_reference: Optional[str] = None
    field: Optional[str] = None

    def __str__(self) -> str:
        if self.record_number is None:
            return self.message
        reference = f" ({self.record_reference})" if self.record_reference else ''
        return f"Record {self.record_number}{reference}: {self.message}"


class SyncResult(BaseModel):
    """Outcome of one ingestion run."""

    status: SyncStatus
    correlation_id: Optional[str] = None
    records_received: int = 0
    records_succeeded: int = 0
    locations_processed: int = 0
    assets_processed: int = 0
    readings_processed: int = 0
    alerts_triggered: int = 0
    duration_ms: int = 0
    cancelled: bool = False
    warnings: List[IssueEntry] = []
    errors: List[IssueEntry] = []

    @model_validator(mode='after')
    def validate_partial(self):
        if self.status == SyncStatus.PARTIAL and (self.records_succeeded == 0 or not self.errors):
            raise ValueError('partial outcome requires both successes and errors')
        return self

    @staticmethod
    def classify(succeeded: int, errors: List[IssueEntry]) -> SyncStatus:
        if succeeded == 0:
            return SyncStatus.ERROR
        if errors:
            return SyncStatus.PARTIAL
        return SyncStatus.SUCCESS


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
