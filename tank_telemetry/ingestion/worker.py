"""
Scheduled worker: periodic consumption recalculation and file ingestion.
"""

import json
import signal
import sys
import time
import uuid
import logging
import threading
from datetime import datetime
from typing import Optional

import pytz

from tank_telemetry.config import PipelineConfig
from tank_telemetry.exceptions import ValidationError
from tank_telemetry.ingestion.orchestrator import IngestionOrchestrator
from tank_telemetry.models import IssueEntry, SyncResult, SyncStatus
from tank_telemetry.monitoring.logger_config import OperationLogger

logger = logging.getLogger(__name__)


def recalculation_crashed(result: SyncResult) -> bool:
    """True when the run itself failed, as opposed to individual assets."""
    # An empty fleet classifies as success, so an error with nothing processed is a crash.
    return result.status == SyncStatus.ERROR and result.records_received == 0


class RecalculationWorker:
    """Runs the fleet-wide recalculation on a timer and imports payload files."""

    def __init__(self, config: PipelineConfig, orchestrator: Optional[IngestionOrchestrator] = None):
        self.config = config
        self.orchestrator = orchestrator or IngestionOrchestrator.from_config(config)
        self.polling_interval = config.recalculation_interval_seconds
        self._stop_event = threading.Event()

        logger.info("Recalculation worker initialized")

    def run_once(self) -> SyncResult:
        """Recalculate every active asset, refresh their alerts and log the run."""
        correlation_id = str(uuid.uuid4())
        started_at = datetime.now(pytz.UTC)
        start = time.monotonic()

        with OperationLogger('scheduled_recalculation', correlation_id):
            try:
                summary = self.orchestrator.analytics.recalculate_all()
                alert_summary = self.orchestrator.alert_generator.evaluate_assets(summary.updated_asset_ids)

                errors = []
                warnings = []
                for failure in summary.failures:
                    issue = IssueEntry(message=f"Consumption not updated for asset {failure.asset_id}: {failure.error}")
                    (warnings if failure.insufficient_history else errors).append(issue)
                warnings.extend(
                    IssueEntry(message=f"Alerts not evaluated for asset {f.asset_id}: {f.error}")
                    for f in alert_summary.failures
                )

                # An empty fleet is a successful no-op run.
                status = SyncResult.classify(summary.updated, errors) if summary.processed else SyncStatus.SUCCESS

                result = SyncResult(
                    status=status,
                    correlation_id=correlation_id,
                    records_received=summary.processed,
                    records_succeeded=summary.updated,
                    assets_processed=summary.updated,
                    alerts_triggered=alert_summary.triggered,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    warnings=warnings,
                    errors=errors
                )

            except Exception as e:
                logger.error(f"Scheduled recalculation failed: {e}")
                result = SyncResult(
                    status=SyncStatus.ERROR,
                    correlation_id=correlation_id,
                    duration_ms=int((time.monotonic() - start) * 1000),
                    errors=[IssueEntry(message=str(e))]
                )

        self.orchestrator.sync_log.record('scheduled_recalculation', result, started_at)
        return result

    def ingest_file(self, path: str) -> SyncResult:
        """Run a JSON payload file through the same pipeline as the webhook."""
        logger.info(f"Ingesting payload file: {path}")

        try:
            with open(path, 'r', encoding='utf-8') as f:
                payload = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Payload file {path} is not valid JSON: {e}") from e

        return self.orchestrator.process(payload, sync_type='file_import')

    def run_continuous(self) -> None:
        """Run the recalculation until stopped or interrupted."""
        logger.info(f"Starting recalculation worker (interval: {self.polling_interval}s)")

        try:
            while not self._stop_event.is_set():
                try:
                    result = self.run_once()
                    logger.info(f"Recalculation cycle finished with status {result.status.value}")
                except Exception as e:
                    logger.error(f"Recalculation cycle failed: {e}")

                logger.info(f"Waiting {self.polling_interval} seconds for next cycle")
                self._stop_event.wait(self.polling_interval)

        except KeyboardInterrupt:
            logger.info("Recalculation worker stopped by user")
        finally:
            self.orchestrator.db.close()

    def stop(self) -> None:
        """Let the current cycle finish, then leave run_continuous."""
        logger.info("Recalculation worker stop requested")
        self._stop_event.set()

    def health_check(self) -> bool:
        healthy = self.orchestrator.db.health_check()
        logger.info(f"Health check - Database: {healthy}")
        return healthy


def main():
    """Main entry point for the recalculation worker."""
    import argparse

    from tank_telemetry.monitoring.logger_config import IngestionLogger

    parser = argparse.ArgumentParser(description='Run the tank telemetry worker')
    parser.add_argument('--once', action='store_true', help='Run one recalculation and exit')
    parser.add_argument('--ingest-file', metavar='PATH', help='Ingest a JSON payload file and exit')
    parser.add_argument('--health-check', action='store_true', help='Perform health check')

    args = parser.parse_args()

    IngestionLogger.setup_logging()

    try:
        worker = RecalculationWorker(PipelineConfig.from_env())
    except Exception as e:
        print(f"❌ Worker could not start: {e}")
        sys.exit(1)

    if args.health_check:
        sys.exit(0 if worker.health_check() else 1)

    elif args.ingest_file:
        try:
            result = worker.ingest_file(args.ingest_file)
        except Exception as e:
            print(f"❌ File ingestion failed: {e}")
            sys.exit(1)

        print(
            f"{'✅' if result.status == SyncStatus.SUCCESS else '⚠️'} File ingestion {result.status.value}: "
            f"{result.records_succeeded}/{result.records_received} records, "
            f"{result.readings_processed} readings, {len(result.errors)} errors"
        )
        for error in result.errors[:5]:
            print(f"   - {error}")
        sys.exit(0 if result.status != SyncStatus.ERROR else 1)

    elif args.once:
        result = worker.run_once()
        if recalculation_crashed(result):
            print(f"❌ Recalculation failed: {result.errors[0]}")
            sys.exit(1)
        print(
            f"{'✅' if result.status == SyncStatus.SUCCESS else '⚠️'} Recalculation {result.status.value}: "
            f"{result.assets_processed}/{result.records_received} assets updated"
        )

    else:
        signal.signal(signal.SIGTERM, lambda signum, frame: worker.stop())
        worker.run_continuous()


if __name__ == "__main__":
    main()
