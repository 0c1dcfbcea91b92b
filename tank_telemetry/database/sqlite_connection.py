"""
SQLite database connection for local runs and tests.
"""

import os
import time
import logging
import sqlite3
from typing import List, Dict, Any, Optional
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def _adapt_datetime(value: datetime) -> str:
    # Uniform UTC text so that lexical order matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec='microseconds')


sqlite3.register_adapter(datetime, _adapt_datetime)


SCHEMA_SQL = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS locations (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    address TEXT,
    customer_name TEXT,
    latitude REAL,
    longitude REAL,
    last_telemetry_at TEXT,
    disabled BOOLEAN NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS assets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    external_id TEXT UNIQUE NOT NULL,
    location_id INTEGER NOT NULL,
    is_online BOOLEAN NOT NULL DEFAULT 0,
    capacity_liters REAL NOT NULL DEFAULT 0,
    current_level_liters REAL NOT NULL DEFAULT 0,
    current_level_percent REAL NOT NULL DEFAULT 0,
    daily_consumption_liters REAL,
    rolling_avg_liters_per_day REAL,
    days_remaining REAL,
    device_serial TEXT,
    battery_voltage REAL NOT NULL DEFAULT 0,
    commodity TEXT,
    last_telemetry_at TEXT,
    disabled BOOLEAN NOT NULL DEFAULT 0,
    consumption_calculated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (location_id) REFERENCES locations(id)
);

CREATE TABLE IF NOT EXISTS readings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id INTEGER NOT NULL,
    reading_at TEXT NOT NULL,
    level_liters REAL NOT NULL,
    level_percent REAL NOT NULL,
    battery_voltage REAL NOT NULL DEFAULT 0,
    temperature_c REAL,
    signal_strength REAL,
    created_at TEXT NOT NULL,
    UNIQUE(asset_id, reading_at),
    FOREIGN KEY (asset_id) REFERENCES assets(id)
);

CREATE TABLE IF NOT EXISTS alerts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    asset_id INTEGER NOT NULL,
    reason TEXT NOT NULL CHECK (reason IN ('low_fuel', 'critical_fuel', 'days_remaining')),
    severity TEXT NOT NULL CHECK (severity IN ('warning', 'critical')),
    message TEXT NOT NULL DEFAULT '',
    raised_at TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT 1,
    cleared_at TEXT,
    UNIQUE(asset_id, reason),
    FOREIGN KEY (asset_id) REFERENCES assets(id)
);

CREATE TABLE IF NOT EXISTS sync_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sync_type TEXT NOT NULL,
    sync_status TEXT NOT NULL CHECK (sync_status IN ('success', 'partial', 'error')),
    locations_processed INTEGER NOT NULL DEFAULT 0,
    assets_processed INTEGER NOT NULL DEFAULT 0,
    readings_processed INTEGER NOT NULL DEFAULT 0,
    alerts_triggered INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    warning_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    sync_duration_ms INTEGER NOT NULL DEFAULT 0,
    correlation_id TEXT,
    started_at TEXT NOT NULL,
    completed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_assets_location_id ON assets(location_id);
CREATE INDEX IF NOT EXISTS idx_readings_asset_reading_at ON readings(asset_id, reading_at);
CREATE INDEX IF NOT EXISTS idx_alerts_asset_active ON alerts(asset_id, active);
CREATE INDEX IF NOT EXISTS idx_sync_logs_started_at ON sync_logs(started_at);
"""


class SQLiteManager:
    """SQLite database manager for local runs and tests."""

    placeholder = '?'

    def __init__(self, db_path: str, timeout_seconds: float = 10.0):
        self.db_path = db_path
        self.timeout_seconds = timeout_seconds
        self._ensure_db_directory()

    def _ensure_db_directory(self):
        """Ensure the database directory exists."""
        db_dir = os.path.dirname(self.db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    @contextmanager
    def get_connection(self):
        """Get a database connection whose statements abort after the timeout."""
        conn = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")

            deadline = time.monotonic() + self.timeout_seconds
            conn.set_progress_handler(lambda: 1 if time.monotonic() > deadline else 0, 1000)

            yield conn
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def execute_query(self, query: str, params: Optional[tuple] = None, fetch: bool = True):
        """Execute a query and return rows (fetch) or the affected row count."""
        query = query.replace('%s', self.placeholder)

        with self.get_connection() as conn:
            cursor = conn.cursor()

            if params:
                cursor.execute(query, params)
            else:
                cursor.execute(query)

            if fetch:
                rows = cursor.fetchall()
                conn.commit()
                return [dict(row) for row in rows]

            conn.commit()
            return cursor.rowcount

    def execute_script(self, script: str) -> None:
        """Execute a multi-statement SQL script."""
        with self.get_connection() as conn:
            conn.executescript(script)
            conn.commit()

    def health_check(self) -> bool:
        """Check if database is healthy."""
        try:
            result = self.execute_query("SELECT 1 as health_check")
            return len(result) > 0 and result[0]['health_check'] == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def initialize_schema(self) -> bool:
        """Initialize the database schema."""
        try:
            self.execute_script(SCHEMA_SQL)
            logger.info("SQLite schema initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize SQLite schema: {e}")
            return False

    def close(self) -> None:
        """Connections are per-call; nothing to release."""
