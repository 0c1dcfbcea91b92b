"""
Run history: one sync_logs row per ingestion or recalculation run.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict

import pytz

from tank_telemetry.models import SyncResult

logger = logging.getLogger(__name__)

SYNC_TYPES = ('webhook', 'scheduled_recalculation', 'file_import')

# How many error messages end up in the error_message column.
MAX_LOGGED_ERRORS = 3


class SyncLogRecorder:
    """Best-effort writer of sync_logs rows; a failed write never fails the run."""

    def __init__(self, db):
        self.db = db

    def record(self, sync_type: str, result: SyncResult, started_at: datetime) -> bool:
        try:
            if sync_type not in SYNC_TYPES:
                raise ValueError(f"Unknown sync type: {sync_type}")

            error_message = None
            if result.errors:
                error_message = '; '.join(str(e) for e in result.errors[:MAX_LOGGED_ERRORS])

            query = """
                INSERT INTO sync_logs
                (sync_type, sync_status, locations_processed, assets_processed,
                 readings_processed, alerts_triggered, error_count, warning_count,
                 error_message, sync_duration_ms, correlation_id, started_at, completed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """

            params = (
                sync_type,
                result.status.value,
                result.locations_processed,
                result.assets_processed,
                result.readings_processed,
                result.alerts_triggered,
                len(result.errors),
                len(result.warnings),
                error_message,
                result.duration_ms,
                result.correlation_id,
                started_at,
                datetime.now(pytz.UTC)
            )

            self.db.execute_query(query, params, fetch=False)
            return True

        except Exception as e:
            logger.warning(f"Failed to write {sync_type} sync log: {e}")
            return False

    def recent_summary(self, hours: int = 24) -> Dict[str, Any]:
        """Counts of runs per status over the last ``hours``."""
        since = datetime.now(pytz.UTC) - timedelta(hours=hours)

        query = """
            SELECT
                COUNT(*) AS total_runs,
                SUM(CASE WHEN sync_status = 'success' THEN 1 ELSE 0 END) AS successful_runs,
                SUM(CASE WHEN sync_status = 'partial' THEN 1 ELSE 0 END) AS partial_runs,
                SUM(CASE WHEN sync_status = 'error' THEN 1 ELSE 0 END) AS failed_runs,
                SUM(readings_processed) AS readings_processed,
                SUM(alerts_triggered) AS alerts_triggered,
                MAX(completed_at) AS last_completed_at
            FROM sync_logs
            WHERE started_at >= %s
        """

        results = self.db.execute_query(query, (since,))
        row = results[0] if results else {}

        last_completed = row.get('last_completed_at')
        if isinstance(last_completed, datetime):
            last_completed = last_completed.isoformat()

        return {
            'period_hours': hours,
            'total_runs': int(row.get('total_runs') or 0),
            'successful_runs': int(row.get('successful_runs') or 0),
            'partial_runs': int(row.get('partial_runs') or 0),
            'failed_runs': int(row.get('failed_runs') or 0),
            'readings_processed': int(row.get('readings_processed') or 0),
            'alerts_triggered': int(row.get('alerts_triggered') or 0),
            'last_completed_at': last_completed,
        }
