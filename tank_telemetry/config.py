"""
Pipeline configuration loaded from the environment.

A single PipelineConfig instance is built at process start and handed to every
component; nothing reads the environment after that.
"""

import os
import logging
from typing import Optional

import pytz
from dotenv import load_dotenv
from pydantic import BaseModel, field_validator, model_validator

from tank_telemetry.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_BACKENDS = ('postgres', 'sqlite')


class PipelineConfig(BaseModel):
    """Explicit configuration object for the ingestion pipeline."""

    database_backend: str = 'sqlite'
    database_url: Optional[str] = None
    sqlite_db_path: str = 'data/tank_telemetry.db'
    db_min_connections: int = 1
    db_max_connections: int = 10
    store_timeout_seconds: float = 10.0

    webhook_secret: Optional[str] = None
    cron_secret: Optional[str] = None
    api_secret: Optional[str] = None

    low_fuel_pct: float = 30.0
    critical_pct: float = 15.0
    days_remaining_critical: float = 7.0

    analytics_window_days: int = 7
    source_timezone: str = 'UTC'

    record_concurrency: int = 4
    analytics_concurrency: int = 4
    recalculation_interval_seconds: int = 3600

    @field_validator('database_backend')
    @classmethod
    def validate_backend(cls, v):
        v = v.strip().lower()
        if v not in SUPPORTED_BACKENDS:
            raise ValueError(f"Unsupported database backend: {v}")
        return v

    @field_validator('source_timezone')
    @classmethod
    def validate_timezone(cls, v):
        try:
            pytz.timezone(v)
        except pytz.UnknownTimeZoneError:
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @field_validator('record_concurrency', 'analytics_concurrency', 'analytics_window_days')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('must be at least 1')
        return v

    @model_validator(mode='after')
    def validate_thresholds(self):
        if self.critical_pct > self.low_fuel_pct:
            raise ValueError('critical_pct must not exceed low_fuel_pct')
        return self

    @model_validator(mode='after')
    def validate_pool_size(self):
        if self.db_max_connections < max(self.record_concurrency, self.analytics_concurrency):
            raise ValueError('record_concurrency and analytics_concurrency must not exceed db_max_connections')
        return self

    @property
    def timezone(self):
        return pytz.timezone(self.source_timezone)

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> 'PipelineConfig':
        """Build the configuration from environment variables (and .env)."""
        load_dotenv(env_file)

        values = {
            'database_backend': os.getenv('DATABASE_BACKEND', 'postgres' if os.getenv('DATABASE_URL') else 'sqlite'),
            'database_url': os.getenv('DATABASE_URL'),
            'sqlite_db_path': os.getenv('SQLITE_DB_PATH', 'data/tank_telemetry.db'),
            'db_min_connections': os.getenv('DB_MIN_CONNECTIONS', '1'),
            'db_max_connections': os.getenv('DB_MAX_CONNECTIONS', '10'),
            'store_timeout_seconds': os.getenv('STORE_TIMEOUT_SECONDS', '10'),
            'webhook_secret': os.getenv('WEBHOOK_SECRET'),
            'cron_secret': os.getenv('CRON_SECRET'),
            'api_secret': os.getenv('API_SECRET'),
            'low_fuel_pct': os.getenv('ALERT_LOW_FUEL_PCT', '30'),
            'critical_pct': os.getenv('ALERT_CRITICAL_PCT', '15'),
            'days_remaining_critical': os.getenv('ALERT_DAYS_REMAINING_CRITICAL', '7'),
            'analytics_window_days': os.getenv('ANALYTICS_WINDOW_DAYS', '7'),
            'source_timezone': os.getenv('SOURCE_TIMEZONE', 'UTC'),
            'record_concurrency': os.getenv('RECORD_CONCURRENCY', '4'),
            'analytics_concurrency': os.getenv('ANALYTICS_CONCURRENCY', '4'),
            'recalculation_interval_seconds': os.getenv('RECALCULATION_INTERVAL_SECONDS', '3600'),
        }

        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigurationError(f"Invalid pipeline configuration: {e}") from e

    def validate_store(self) -> None:
        """Fail fast when the configured store cannot be reached at all."""
        if self.database_backend == 'postgres' and not self.database_url:
            raise ConfigurationError("DATABASE_URL environment variable is required")
        if self.database_backend == 'sqlite' and not self.sqlite_db_path:
            raise ConfigurationError("SQLITE_DB_PATH environment variable is required")

    def require_webhook_secret(self) -> str:
        if not self.webhook_secret:
            raise ConfigurationError("WEBHOOK_SECRET environment variable is required")
        return self.webhook_secret
