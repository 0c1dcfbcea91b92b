"""
Health checks and fleet metrics for the telemetry pipeline.
"""

import time
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytz

from tank_telemetry.ingestion.sync_log import SyncLogRecorder

logger = logging.getLogger(__name__)

PROCESS_STARTED = time.monotonic()


def _now() -> str:
    return datetime.now(pytz.UTC).isoformat()


class HealthChecker:
    """Provides health checks for the store and the ingestion history."""

    def __init__(self, db, sync_log: Optional[SyncLogRecorder] = None):
        self.db = db
        self.sync_log = sync_log or SyncLogRecorder(db)

    def check_database_health(self) -> Dict[str, Any]:
        """Check database connectivity and round-trip time."""
        start = time.monotonic()

        try:
            is_healthy = self.db.health_check()
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            is_healthy = False

        response_time_ms = int((time.monotonic() - start) * 1000)

        if not is_healthy:
            return {
                'status': 'unhealthy',
                'error': 'Database connection failed',
                'response_time_ms': response_time_ms,
                'timestamp': _now()
            }

        return {
            'status': 'healthy',
            'response_time_ms': response_time_ms,
            'timestamp': _now()
        }

    def check_sync_health(self, hours: int = 24) -> Dict[str, Any]:
        """Summarize recent runs; degraded when every recent run failed."""
        try:
            summary = self.sync_log.recent_summary(hours)
        except Exception as e:
            logger.error(f"Sync history check failed: {e}")
            return {'status': 'unhealthy', 'error': str(e), 'timestamp': _now()}

        status = 'healthy'
        if summary['total_runs'] and summary['failed_runs'] == summary['total_runs']:
            status = 'degraded'

        return {'status': status, 'timestamp': _now(), **summary}

    def get_fleet_metrics(self) -> Dict[str, Any]:
        """Entity counts and readings received in the last 24 hours."""
        since = datetime.now(pytz.UTC) - timedelta(hours=24)

        try:
            counts = self.db.execute_query("""
                SELECT
                    (SELECT COUNT(*) FROM locations) AS locations,
                    (SELECT COUNT(*) FROM assets) AS assets,
                    (SELECT COUNT(*) FROM assets WHERE is_online = %s) AS assets_online,
                    (SELECT COUNT(*) FROM alerts WHERE active = %s) AS active_alerts,
                    (SELECT COUNT(*) FROM readings WHERE created_at >= %s) AS readings_last_24h
            """, (True, True, since))

            return {
                'timestamp': _now(),
                'uptime_seconds': int(time.monotonic() - PROCESS_STARTED),
                'fleet': counts[0] if counts else {}
            }

        except Exception as e:
            logger.error(f"Failed to get fleet metrics: {e}")
            return {'timestamp': _now(), 'error': str(e)}

    def comprehensive_health_check(self) -> Dict[str, Any]:
        start = time.monotonic()

        db_health = self.check_database_health()
        sync_health = self.check_sync_health()
        metrics = self.get_fleet_metrics()

        return {
            'overall_status': 'healthy' if db_health['status'] == 'healthy' else 'unhealthy',
            'response_time_ms': int((time.monotonic() - start) * 1000),
            'timestamp': _now(),
            'components': {
                'database': db_health,
                'sync': sync_health
            },
            'metrics': metrics
        }


def main():
    """CLI for health checks."""
    import argparse
    import json
    import sys

    from tank_telemetry.config import PipelineConfig
    from tank_telemetry.database.connection import create_database_manager

    parser = argparse.ArgumentParser(description='Health check utility')
    parser.add_argument('--component', choices=['database', 'sync', 'all'], default='all',
                        help='Component to check')
    parser.add_argument('--format', choices=['json', 'text'], default='text',
                        help='Output format')

    args = parser.parse_args()

    db = create_database_manager(PipelineConfig.from_env())
    health_checker = HealthChecker(db)

    try:
        if args.component == 'database':
            result = health_checker.check_database_health()
        elif args.component == 'sync':
            result = health_checker.check_sync_health()
        else:
            result = health_checker.comprehensive_health_check()
    finally:
        db.close()

    if args.format == 'json':
        print(json.dumps(result, indent=2, default=str))
    else:
        status = result.get('overall_status', result.get('status', 'unknown'))
        print(f"Health Status: {status}")
        print(f"Timestamp: {result.get('timestamp', 'unknown')}")

        if 'response_time_ms' in result:
            print(f"Response Time: {result['response_time_ms']}ms")

        if 'error' in result:
            print(f"Error: {result['error']}")

        for component, health in result.get('components', {}).items():
            print(f"\n{component.title()}:")
            print(f"  Status: {health.get('status', 'unknown')}")
            if 'error' in health:
                print(f"  Error: {health['error']}")

        fleet = result.get('metrics', {}).get('fleet')
        if fleet:
            print("\nFleet:")
            for key, value in fleet.items():
                print(f"  {key}: {value}")

    sys.exit(0 if status_ok(result) else 1)


def status_ok(result: Dict[str, Any]) -> bool:
    return result.get('overall_status', result.get('status')) in ('healthy', 'degraded')


if __name__ == "__main__":
    main()
