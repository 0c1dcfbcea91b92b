"""
Error taxonomy for the ingestion pipeline.

Record-level errors (ValidationError, PersistenceError) are collected by the
orchestrator and never escape the record they came from. ConfigurationError is
the only error allowed to abort a run outright.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""


class ValidationError(PipelineError):
    """A single vendor record is malformed or missing a required field."""

    def __init__(self, message: str, field: Optional[str] = None, record_number: Optional[int] = None):
        self.field = field
        self.record_number = record_number
        super().__init__(message)


class PersistenceError(PipelineError):
    """A store operation failed (connectivity, constraint violation, timeout)."""

    def __init__(self, message: str, entity: str = "", operation: str = ""):
        self.entity = entity
        self.operation = operation
        super().__init__(message)


class ConfigurationError(PipelineError):
    """Required credentials or settings are missing at process start."""


class AuthorizationError(PipelineError):
    """Caller was rejected at the boundary before the orchestrator ran."""


class InsufficientReadingsError(PipelineError):
    """Not enough reading history to estimate consumption for an asset."""

    def __init__(self, message: str, asset_id: Optional[int] = None):
        self.asset_id = asset_id
        super().__init__(message)
