"""
Threshold alerts derived from asset level and projected days remaining.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

import pytz
from pydantic import BaseModel

from tank_telemetry.config import PipelineConfig
from tank_telemetry.exceptions import PersistenceError
from tank_telemetry.ingestion.repositories import AssetRepository
from tank_telemetry.models import Alert, AlertReason, AlertSeverity, Asset

logger = logging.getLogger(__name__)


class AlertFailure(BaseModel):
    asset_id: int
    error: str


class AlertRunSummary(BaseModel):
    evaluated: int = 0
    triggered: int = 0
    cleared: int = 0
    failures: List[AlertFailure] = []


class AlertRepository:
    """Alert rows keyed by (asset_id, reason); re-raising reactivates the row."""

    def __init__(self, db):
        self.db = db

    def list_active(self, asset_id: int) -> List[Alert]:
        query = """
            SELECT id, asset_id, severity, reason, raised_at, message, active
            FROM alerts
            WHERE asset_id = %s AND active = %s
            ORDER BY raised_at DESC
        """

        try:
            results = self.db.execute_query(query, (asset_id, True))
        except Exception as e:
            logger.error(f"Error listing alerts for asset {asset_id}: {e}")
            raise PersistenceError(f"Alert listing failed: {e}", entity='alert', operation='list') from e

        return [Alert.model_validate(row) for row in results]

    def activate(self, alert: Alert) -> bool:
        """Raise the alert unless the same reason is already active.

        Returns True only when a new activation happened.
        """
        query = """
            INSERT INTO alerts (asset_id, reason, severity, message, raised_at, active, cleared_at)
            VALUES (%s, %s, %s, %s, %s, %s, NULL)
            ON CONFLICT (asset_id, reason)
            DO UPDATE SET
                severity = EXCLUDED.severity,
                message = EXCLUDED.message,
                raised_at = EXCLUDED.raised_at,
                active = EXCLUDED.active,
                cleared_at = NULL
            WHERE alerts.active = %s
        """

        params = (
            alert.asset_id,
            alert.reason.value,
            alert.severity.value,
            alert.message,
            alert.raised_at,
            True,
            False
        )

        try:
            activated = self.db.execute_query(query, params, fetch=False)
        except Exception as e:
            logger.error(f"Error activating {alert.reason.value} alert for asset {alert.asset_id}: {e}")
            raise PersistenceError(f"Alert activation failed: {e}", entity='alert', operation='activate') from e

        return bool(activated)

    def clear_except(self, asset_id: int, keep_reason: Optional[AlertReason] = None) -> int:
        """Deactivate every active alert of the asset other than ``keep_reason``."""
        query = """
            UPDATE alerts
            SET active = %s, cleared_at = %s
            WHERE asset_id = %s AND active = %s
        """
        params = [False, datetime.now(pytz.UTC), asset_id, True]

        if keep_reason is not None:
            query += " AND reason <> %s"
            params.append(keep_reason.value)

        try:
            cleared = self.db.execute_query(query, tuple(params), fetch=False)
        except Exception as e:
            logger.error(f"Error clearing alerts for asset {asset_id}: {e}")
            raise PersistenceError(f"Alert clearing failed: {e}", entity='alert', operation='clear') from e

        return cleared or 0


class AlertGenerator:
    """Chooses at most one alert per asset; the most severe condition wins."""

    def __init__(self, config: PipelineConfig, alerts: AlertRepository, assets: AssetRepository):
        self.config = config
        self.alerts = alerts
        self.assets = assets

    def evaluate(self, asset: Asset, now: datetime) -> Optional[Alert]:
        level = asset.current_level_percent

        if level <= self.config.critical_pct:
            return Alert(
                asset_id=asset.id,
                severity=AlertSeverity.CRITICAL,
                reason=AlertReason.CRITICAL_FUEL,
                raised_at=now,
                message=f"Critical fuel level: {level:.1f}% remaining"
            )

        if level <= self.config.low_fuel_pct:
            return Alert(
                asset_id=asset.id,
                severity=AlertSeverity.WARNING,
                reason=AlertReason.LOW_FUEL,
                raised_at=now,
                message=f"Low fuel level: {level:.1f}% remaining"
            )

        if asset.days_remaining is not None and asset.days_remaining <= self.config.days_remaining_critical:
            return Alert(
                asset_id=asset.id,
                severity=AlertSeverity.WARNING,
                reason=AlertReason.DAYS_REMAINING,
                raised_at=now,
                message=f"Approximately {asset.days_remaining:.1f} days of fuel remaining"
            )

        return None

    def apply(self, asset: Asset, now: Optional[datetime] = None) -> bool:
        """Persist the evaluation for one asset; returns whether a new alert fired."""
        now = now or datetime.now(pytz.UTC)
        alert = self.evaluate(asset, now)

        if alert is None:
            self.alerts.clear_except(asset.id)
            return False

        fired = self.alerts.activate(alert)
        self.alerts.clear_except(asset.id, keep_reason=alert.reason)

        if fired:
            logger.warning(f"Alert raised for asset {asset.id}: {alert.reason.value} ({alert.message})")

        return fired

    def evaluate_assets(self, asset_ids: Iterable[int], now: Optional[datetime] = None) -> AlertRunSummary:
        now = now or datetime.now(pytz.UTC)
        summary = AlertRunSummary()

        for asset_id in dict.fromkeys(asset_ids):
            summary.evaluated += 1
            try:
                asset = self.assets.get(asset_id)
                if asset is None:
                    raise PersistenceError(f"Asset {asset_id} not found", entity='asset', operation='get')

                if not self.assets.is_active(asset_id):
                    summary.cleared += self.alerts.clear_except(asset_id)
                    continue

                if self.apply(asset, now):
                    summary.triggered += 1

            except Exception as e:
                logger.error(f"Alert evaluation failed for asset {asset_id}: {e}")
                summary.failures.append(AlertFailure(asset_id=asset_id, error=str(e)))

        return summary
