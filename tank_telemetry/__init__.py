"""
Tank Telemetry Ingestion Pipeline

An idempotent ingestion and analytics pipeline for remote tank-monitoring
telemetry: vendor webhook batches are normalized, persisted to an operational
data store, turned into burn-rate / days-remaining estimates and evaluated
against fuel-level alert thresholds.
"""

__version__ = "0.1.0"
