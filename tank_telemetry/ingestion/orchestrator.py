"""
Ingestion orchestrator: vendor payload in, aggregated SyncResult out.

A run moves through RECEIVED, NORMALIZING, PERSISTING, ANALYZING, ALERTING,
LOGGED and DONE. Individual records fail in isolation; only a configuration
problem aborts a run.
"""

import time
import uuid
import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import pytz

from tank_telemetry.analytics.alerts import AlertGenerator, AlertRepository
from tank_telemetry.analytics.consumption import ConsumptionAnalyticsEngine
from tank_telemetry.config import PipelineConfig
from tank_telemetry.database.connection import create_database_manager
from tank_telemetry.exceptions import PersistenceError, ValidationError
from tank_telemetry.ingestion.normalizer import TelemetryNormalizer
from tank_telemetry.ingestion.repositories import (
    AssetRepository, LocationRepository, ReadingRepository
)
from tank_telemetry.ingestion.sync_log import SyncLogRecorder
from tank_telemetry.models import IssueEntry, RawRecord, SyncResult, SyncStatus
from tank_telemetry.monitoring.logger_config import CorrelationLogger, OperationLogger


class IngestionState(str, Enum):
    RECEIVED = 'received'
    NORMALIZING = 'normalizing'
    PERSISTING = 'persisting'
    ANALYZING = 'analyzing'
    ALERTING = 'alerting'
    LOGGED = 'logged'
    DONE = 'done'


class RecordOutcome:
    """What happened to one record of the batch."""

    def __init__(self, record_number: int, reference: str):
        self.record_number = record_number
        self.reference = reference
        self.location_id: Optional[int] = None
        self.asset_id: Optional[int] = None
        self.reading_inserted = False
        self.warnings: List[IssueEntry] = []
        self.error: Optional[IssueEntry] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def issue(self, message: str, field: Optional[str] = None) -> IssueEntry:
        return IssueEntry(
            message=message,
            record_number=self.record_number,
            record_reference=self.reference,
            field=field
        )


class IngestionOrchestrator:
    """Runs one batch through normalize, persist, analyze, alert and log."""

    def __init__(
        self,
        config: PipelineConfig,
        db,
        normalizer: Optional[TelemetryNormalizer] = None,
        analytics: Optional[ConsumptionAnalyticsEngine] = None,
        alert_generator: Optional[AlertGenerator] = None,
        sync_log: Optional[SyncLogRecorder] = None
    ):
        self.config = config
        self.db = db
        self.normalizer = normalizer or TelemetryNormalizer(config.source_timezone)
        self.locations = LocationRepository(db)
        self.assets = AssetRepository(db)
        self.readings = ReadingRepository(db)
        self.analytics = analytics or ConsumptionAnalyticsEngine(config, self.assets, self.readings)
        self.alert_generator = alert_generator or AlertGenerator(config, AlertRepository(db), self.assets)
        self.sync_log = sync_log or SyncLogRecorder(db)

    @classmethod
    def from_config(cls, config: PipelineConfig) -> 'IngestionOrchestrator':
        return cls(config, create_database_manager(config))

    def process(
        self,
        payload: Any,
        sync_type: str = 'webhook',
        cancel_event: Optional[threading.Event] = None
    ) -> SyncResult:
        """Ingest a vendor payload (one mapping or a list of them)."""
        self.config.validate_store()

        correlation_id = str(uuid.uuid4())
        started_at = datetime.now(pytz.UTC)
        start = time.monotonic()

        with OperationLogger('ingestion_run', correlation_id, sync_type=sync_type) as log:
            self._transition(log, IngestionState.RECEIVED)

            try:
                records = self.normalizer.split_payload(payload)
            except ValidationError as e:
                log.error("Payload rejected", error=str(e))
                result = SyncResult(
                    status=SyncStatus.ERROR,
                    correlation_id=correlation_id,
                    duration_ms=self._elapsed_ms(start),
                    errors=[IssueEntry(message=str(e))]
                )
                self._finish(log, sync_type, result, started_at)
                return result

            log.info("Payload received", records=len(records))

            # Each record is normalized then persisted on the pool, so both states overlap.
            self._transition(log, IngestionState.NORMALIZING)
            self._transition(log, IngestionState.PERSISTING)
            outcomes, skipped = self._dispatch(records, started_at, cancel_event, log)

            result = self._aggregate(records, outcomes, skipped, correlation_id)

            touched = sorted({o.asset_id for o in outcomes if o.succeeded and o.asset_id is not None})

            if touched:
                self._transition(log, IngestionState.ANALYZING)
                recalculation = self.analytics.recalculate_assets(touched)
                for failure in recalculation.failures:
                    result.warnings.append(IssueEntry(
                        message=f"Consumption not updated for asset {failure.asset_id}: {failure.error}"
                    ))

                self._transition(log, IngestionState.ALERTING)
                alert_summary = self.alert_generator.evaluate_assets(touched)
                result.alerts_triggered = alert_summary.triggered
                for failure in alert_summary.failures:
                    result.warnings.append(IssueEntry(
                        message=f"Alerts not evaluated for asset {failure.asset_id}: {failure.error}"
                    ))

            result.duration_ms = self._elapsed_ms(start)
            self._finish(log, sync_type, result, started_at)

            log.info(
                "Ingestion run finished",
                status=result.status.value,
                records_received=result.records_received,
                records_succeeded=result.records_succeeded,
                errors=len(result.errors),
                warnings=len(result.warnings),
                alerts_triggered=result.alerts_triggered,
                cancelled=result.cancelled
            )
            return result

    def _dispatch(
        self,
        records: List[RawRecord],
        received_at: datetime,
        cancel_event: Optional[threading.Event],
        log: CorrelationLogger
    ):
        """Process records on a bounded pool; stop dispatching once cancelled."""
        outcomes: Dict[int, RecordOutcome] = {}
        skipped = 0
        limit = self.config.record_concurrency

        def collect(done):
            for future in done:
                outcome = future.result()
                outcomes[outcome.record_number] = outcome

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix='ingest') as executor:
            pending = set()

            for index, raw in enumerate(records):
                if len(pending) >= limit:
                    done, pending = wait(pending, return_when=FIRST_COMPLETED)
                    collect(done)

                # Checked after the wait so a cancel raised meanwhile stops this record too.
                if cancel_event is not None and cancel_event.is_set():
                    skipped = len(records) - index
                    log.warning("Run cancelled; remaining records not dispatched", skipped=skipped)
                    break

                pending.add(executor.submit(self._process_record, raw, received_at, log))

            done, _ = wait(pending)
            collect(done)

        return [outcomes[n] for n in sorted(outcomes)], skipped

    def _process_record(self, raw: RawRecord, received_at: datetime, log: CorrelationLogger) -> RecordOutcome:
        outcome = RecordOutcome(raw.record_number, raw.reference)
        log = log.bind(record_number=raw.record_number)

        try:
            record = self.normalizer.normalize(raw, received_at)
        except ValidationError as e:
            log.warning("Record rejected", field=e.field, error=str(e))
            outcome.error = outcome.issue(str(e), field=e.field)
            return outcome
        except Exception as e:
            log.exception("Record normalization crashed", error=str(e))
            outcome.error = outcome.issue(f"Normalization failed: {e}")
            return outcome

        outcome.reference = record.reference
        outcome.warnings.extend(outcome.issue(w) for w in record.warnings)

        try:
            location = self.locations.upsert_by_external_id(record.location)
            outcome.location_id = location.id

            asset = self.assets.upsert_by_external_id(
                record.asset.model_copy(update={'location_id': location.id})
            )
            outcome.asset_id = asset.id

            appended = self.readings.append_if_absent(
                record.reading.model_copy(update={'asset_id': asset.id})
            )
            outcome.reading_inserted = appended.inserted

            if not appended.inserted:
                outcome.warnings.append(outcome.issue(
                    f"Duplicate reading at {record.reading.reading_at.isoformat()} ignored"
                ))

        except PersistenceError as e:
            log.error(
                "Record persistence failed",
                entity=e.entity,
                operation=e.operation,
                error=str(e)
            )
            outcome.error = outcome.issue(str(e))
        except Exception as e:
            log.exception("Record persistence crashed", error=str(e))
            outcome.error = outcome.issue(f"Persistence failed: {e}")

        return outcome

    def _aggregate(
        self,
        records: List[RawRecord],
        outcomes: List[RecordOutcome],
        skipped: int,
        correlation_id: str
    ) -> SyncResult:
        succeeded = [o for o in outcomes if o.succeeded]
        errors = [o.error for o in outcomes if not o.succeeded]
        warnings = [w for o in outcomes for w in o.warnings]

        if skipped:
            errors.append(IssueEntry(message=f"Run cancelled: {skipped} records were not processed"))

        return SyncResult(
            status=SyncResult.classify(len(succeeded), errors),
            correlation_id=correlation_id,
            records_received=len(records),
            records_succeeded=len(succeeded),
            locations_processed=len(succeeded),
            assets_processed=len(succeeded),
            readings_processed=sum(1 for o in succeeded if o.reading_inserted),
            cancelled=bool(skipped),
            warnings=warnings,
            errors=errors
        )

    def _finish(self, log: CorrelationLogger, sync_type: str, result: SyncResult, started_at: datetime) -> None:
        if not self.sync_log.record(sync_type, result, started_at):
            log.warning("Sync log not written", sync_type=sync_type)
        self._transition(log, IngestionState.LOGGED)
        self._transition(log, IngestionState.DONE)

    @staticmethod
    def _transition(log: CorrelationLogger, state: IngestionState) -> None:
        log.debug("Ingestion state changed", state=state.value)

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
