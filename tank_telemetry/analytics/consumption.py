"""
Consumption analytics: burn rate and days-remaining estimates per asset.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from typing import Dict, Iterable, List, Optional

import pytz
from pydantic import BaseModel

from tank_telemetry.config import PipelineConfig
from tank_telemetry.exceptions import InsufficientReadingsError, PersistenceError
from tank_telemetry.ingestion.repositories import AssetRepository, ReadingRepository
from tank_telemetry.models import Asset, Reading

logger = logging.getLogger(__name__)


class ConsumptionEstimate(BaseModel):
    asset_id: Optional[int] = None
    rolling_avg_liters_per_day: float
    days_remaining: Optional[float] = None
    readings_used: int
    day_pairs: int


class RecalculationFailure(BaseModel):
    asset_id: int
    error: str
    insufficient_history: bool = False


class RecalculationSummary(BaseModel):
    processed: int = 0
    updated: int = 0
    failed: int = 0
    updated_asset_ids: List[int] = []
    failures: List[RecalculationFailure] = []


class ConsumptionAnalyticsEngine:
    """Windowed day-over-day burn-rate estimation.

    Readings in the trailing window are reduced to one level per calendar day
    (the latest reading of that day). Every pair of consecutive calendar days
    between the oldest and newest reading day contributes
    ``older_level - newer_level``; a pair with a day that has no reading
    contributes 0 but still counts toward the average. Refills therefore pull
    the average down instead of being excluded.
    """

    def __init__(self, config: PipelineConfig, assets: AssetRepository, readings: ReadingRepository):
        self.config = config
        self.assets = assets
        self.readings = readings
        self.window = timedelta(days=config.analytics_window_days)
        self.tz = config.timezone

    def estimate(self, asset: Asset, readings: Iterable[Reading], now: datetime) -> ConsumptionEstimate:
        """Pure burn-rate estimate from an asset and its reading history."""
        window_start = now - self.window
        in_window = sorted(
            (r for r in readings if window_start <= r.reading_at <= now),
            key=lambda r: r.reading_at,
            reverse=True
        )

        daily_levels = self._daily_levels(in_window)
        if len(daily_levels) < 2:
            raise InsufficientReadingsError(
                f"Need readings on at least 2 days in the last {self.config.analytics_window_days} days, "
                f"found {len(daily_levels)}",
                asset_id=asset.id
            )

        newest_day = max(daily_levels)
        oldest_day = min(daily_levels)
        day_pairs = (newest_day - oldest_day).days

        diffs = []
        for offset in range(day_pairs):
            newer_day = newest_day - timedelta(days=offset)
            older_day = newer_day - timedelta(days=1)
            if newer_day in daily_levels and older_day in daily_levels:
                diffs.append(daily_levels[older_day] - daily_levels[newer_day])
            else:
                diffs.append(0.0)

        rolling_avg = round(sum(diffs) / len(diffs), 2)

        days_remaining = None
        if rolling_avg > 0:
            days_remaining = round(asset.current_level_liters / rolling_avg, 1)

        return ConsumptionEstimate(
            asset_id=asset.id,
            rolling_avg_liters_per_day=rolling_avg,
            days_remaining=days_remaining,
            readings_used=len(in_window),
            day_pairs=day_pairs
        )

    def _daily_levels(self, readings_newest_first: List[Reading]) -> Dict[date, float]:
        levels: Dict[date, float] = {}
        for reading in readings_newest_first:
            day = reading.reading_at.astimezone(self.tz).date()
            # Newest first, so the first reading seen for a day is the latest one.
            levels.setdefault(day, reading.level_liters)
        return levels

    def recalculate_asset(self, asset_id: int, now: Optional[datetime] = None) -> ConsumptionEstimate:
        """Recompute and persist the derived consumption fields for one asset."""
        now = now or datetime.now(pytz.UTC)

        asset = self.assets.get(asset_id)
        if asset is None:
            raise PersistenceError(f"Asset {asset_id} not found", entity='asset', operation='get')

        history = self.readings.list_readings(asset_id, now - self.window, now)
        estimate = self.estimate(asset, history, now)

        self.assets.update_consumption(asset_id, estimate.rolling_avg_liters_per_day, estimate.days_remaining)

        logger.info(
            f"Asset {asset_id}: {estimate.rolling_avg_liters_per_day} L/day, "
            f"days remaining {estimate.days_remaining} ({estimate.readings_used} readings)"
        )
        return estimate

    def recalculate_assets(self, asset_ids: Iterable[int], now: Optional[datetime] = None) -> RecalculationSummary:
        """Recompute a set of assets in parallel; one failure never stops the rest."""
        asset_ids = list(dict.fromkeys(asset_ids))
        summary = RecalculationSummary()

        if not asset_ids:
            return summary

        now = now or datetime.now(pytz.UTC)
        workers = min(self.config.analytics_concurrency, len(asset_ids))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='consumption') as executor:
            futures = {
                executor.submit(self.recalculate_asset, asset_id, now): asset_id
                for asset_id in asset_ids
            }

            for future in as_completed(futures):
                asset_id = futures[future]
                summary.processed += 1

                try:
                    future.result()
                    summary.updated += 1
                    summary.updated_asset_ids.append(asset_id)
                except InsufficientReadingsError as e:
                    logger.info(f"Skipping consumption for asset {asset_id}: {e}")
                    summary.failed += 1
                    summary.failures.append(
                        RecalculationFailure(asset_id=asset_id, error=str(e), insufficient_history=True)
                    )
                except Exception as e:
                    logger.error(f"Failed to recalculate asset {asset_id}: {e}")
                    summary.failed += 1
                    summary.failures.append(RecalculationFailure(asset_id=asset_id, error=str(e)))

        summary.updated_asset_ids.sort()
        return summary

    def recalculate_all(self, now: Optional[datetime] = None) -> RecalculationSummary:
        """Recompute every active (non-disabled) asset."""
        active = self.assets.list_active()
        logger.info(f"Recalculating consumption for {len(active)} active assets")

        summary = self.recalculate_assets([asset.id for asset in active], now=now)

        logger.info(
            f"Consumption recalculation complete: {summary.updated} updated, "
            f"{summary.failed} failed, {summary.processed} total"
        )
        return summary
