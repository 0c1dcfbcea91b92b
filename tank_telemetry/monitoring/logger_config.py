"""
Structured logging configuration for the telemetry pipeline.

Library modules log through ``logging.getLogger(__name__)``; the formatter
installed here renders those records through the same structlog chain as
the correlation-aware loggers used by the orchestrator and the worker.
"""

import os
import time
import logging
import logging.handlers
from typing import Any, Dict, Optional

import structlog


class IngestionLogger:
    """Configures structured logging for the pipeline."""

    @staticmethod
    def setup_logging(
        log_level: Optional[str] = None,
        log_format: Optional[str] = None,
        log_file: Optional[str] = None
    ) -> None:
        """Set up structured logging for the application."""
        log_level = (log_level or os.getenv('LOG_LEVEL', 'INFO')).upper()
        log_format = log_format or os.getenv('LOG_FORMAT', 'json')
        log_file = log_file or os.getenv('LOG_FILE')

        level = getattr(logging, log_level, logging.INFO)

        shared_processors = [
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
        ]

        formatter = structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                IngestionLogger._get_renderer(log_format),
            ],
        )

        handlers = []

        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

        if log_file:
            log_dir = os.path.dirname(log_file)
            if log_dir:
                os.makedirs(log_dir, exist_ok=True)

            file_handler = logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                *shared_processors,
                structlog.stdlib.PositionalArgumentsFormatter(),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                IngestionLogger._add_correlation_id,
                structlog.processors.UnicodeDecoder(),
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

        root_logger = logging.getLogger()
        root_logger.setLevel(level)
        root_logger.handlers.clear()
        root_logger.handlers.extend(handlers)

        structlog.get_logger().info(
            "Logging initialized",
            log_level=log_level,
            log_format=log_format,
            log_file=log_file or "console"
        )

    @staticmethod
    def _add_correlation_id(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        """Drop an empty correlation_id so it does not clutter every line."""
        if not event_dict.get('correlation_id'):
            event_dict.pop('correlation_id', None)
        return event_dict

    @staticmethod
    def _get_renderer(log_format: str):
        if log_format.lower() == 'json':
            return structlog.processors.JSONRenderer()
        return structlog.dev.ConsoleRenderer(colors=True)


class CorrelationLogger:
    """Logger with correlation ID support for tracing one run end to end."""

    def __init__(self, correlation_id: Optional[str] = None, **context):
        self.correlation_id = correlation_id
        self.logger = structlog.get_logger('tank_telemetry')

        if correlation_id:
            self.logger = self.logger.bind(correlation_id=correlation_id)
        if context:
            self.logger = self.logger.bind(**context)

    def bind(self, **context) -> 'CorrelationLogger':
        bound = CorrelationLogger(self.correlation_id)
        bound.logger = self.logger.bind(**context)
        return bound

    def info(self, message: str, **kwargs):
        self.logger.info(message, **kwargs)

    def warning(self, message: str, **kwargs):
        self.logger.warning(message, **kwargs)

    def error(self, message: str, **kwargs):
        self.logger.error(message, **kwargs)

    def debug(self, message: str, **kwargs):
        self.logger.debug(message, **kwargs)

    def exception(self, message: str, **kwargs):
        self.logger.exception(message, **kwargs)


class OperationLogger:
    """Context manager logging start, completion and failure of an operation."""

    def __init__(self, operation_name: str, correlation_id: Optional[str] = None, **context):
        self.operation_name = operation_name
        self.correlation_id = correlation_id
        self.context = context
        self.start_time = None
        self.logger = CorrelationLogger(correlation_id)

    def __enter__(self) -> CorrelationLogger:
        self.start_time = time.monotonic()

        self.logger.info(
            f"Operation started: {self.operation_name}",
            operation=self.operation_name,
            **self.context
        )

        return self.logger

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self.start_time

        if exc_type is None:
            self.logger.info(
                f"Operation completed: {self.operation_name}",
                operation=self.operation_name,
                duration_seconds=round(duration, 3),
                **self.context
            )
        else:
            self.logger.error(
                f"Operation failed: {self.operation_name}",
                operation=self.operation_name,
                duration_seconds=round(duration, 3),
                error_type=exc_type.__name__,
                error_message=str(exc_val) if exc_val else None,
                **self.context
            )

        return False
