"""
Structured Logging Configuration

Provides JSON-formatted logging with:
- Webhook event id tracking
- Retry job correlation id tracking
- Link confidence and job transition helpers
- Structured output for log aggregation
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Optional, Any, Dict
from contextvars import ContextVar

# Context variables for event/job tracking
event_id_var: ContextVar[str] = ContextVar('event_id', default='')
correlation_id_var: ContextVar[str] = ContextVar('correlation_id', default='')


class JSONFormatter(logging.Formatter):
    """
    Custom JSON formatter for structured logging.
    Outputs logs in JSON format for easy parsing by log aggregators.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        event_id = event_id_var.get()
        if event_id:
            log_data["event_id"] = event_id

        correlation_id = correlation_id_var.get()
        if correlation_id:
            log_data["correlation_id"] = correlation_id

        log_data["module"] = record.module
        log_data["function"] = record.funcName
        log_data["line"] = record.lineno

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data["data"] = record.extra_data

        if hasattr(record, 'duration_ms'):
            log_data["duration_ms"] = record.duration_ms

        if hasattr(record, 'entity_type'):
            log_data["entity_type"] = record.entity_type
        if hasattr(record, 'entity_id'):
            log_data["entity_id"] = record.entity_id

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger(logging.LoggerAdapter):
    """
    Logger adapter that adds structured context to log messages.
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get('extra', {})
        extra.update(self.extra)
        kwargs['extra'] = extra
        return msg, kwargs

    def log_with_context(
        self,
        level: int,
        msg: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        **extra_data
    ):
        """Log with additional structured context."""
        extra = {}
        if entity_type:
            extra['entity_type'] = entity_type
        if entity_id:
            extra['entity_id'] = entity_id
        if duration_ms is not None:
            extra['duration_ms'] = duration_ms
        if extra_data:
            extra['extra_data'] = extra_data

        self.log(level, msg, extra=extra)

    def entity_persisted(self, entity_type: str, entity_id: str, action: str):
        """Log a durable entity write."""
        self.log_with_context(
            logging.INFO,
            f"{entity_type} {action}",
            entity_type=entity_type,
            entity_id=entity_id,
            action=action
        )

    def link_established(
        self,
        entity_type: str,
        entity_id: str,
        field: str,
        target_id: str,
        confidence: str
    ):
        """Log a deferred link. Low-confidence links are logged as warnings."""
        level = logging.INFO if confidence in ("exact", "service_window") else logging.WARNING
        self.log_with_context(
            level,
            f"Linked {entity_type}.{field} -> {target_id} ({confidence})",
            entity_type=entity_type,
            entity_id=entity_id,
            field=field,
            target_id=target_id,
            confidence=confidence
        )

    def job_transition(self, job_id: str, stage: str, old_status: str, new_status: str, **extra_data):
        """Log a retry job state change."""
        self.log_with_context(
            logging.INFO,
            f"Job {stage} {old_status} -> {new_status}",
            entity_type="retry_job",
            entity_id=job_id,
            stage=stage,
            old_status=old_status,
            new_status=new_status,
            **extra_data
        )


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_uvicorn: bool = True
) -> None:
    """
    Configure application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON format (True for production)
        include_uvicorn: Also configure uvicorn loggers
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    app_logger = logging.getLogger("eventsync")
    app_logger.setLevel(log_level)

    if include_uvicorn:
        for logger_name in ["uvicorn", "uvicorn.access", "uvicorn.error"]:
            uvicorn_logger = logging.getLogger(logger_name)
            uvicorn_logger.handlers = [handler]

    # Reduce noise from third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for the given module."""
    base_logger = logging.getLogger(name)
    return StructuredLogger(base_logger, {})


def set_event_context(event_id: Optional[str]):
    """Set the webhook event id for the current task."""
    event_id_var.set(event_id or '')


def set_job_context(correlation_id: Optional[str]):
    """Set the retry job correlation id for the current task."""
    correlation_id_var.set(correlation_id or '')


def clear_context():
    """Clear event and job context."""
    event_id_var.set('')
    correlation_id_var.set('')
