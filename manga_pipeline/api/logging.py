"""Structured logging infrastructure.

Provides JSON-formatted logging for production and human-readable logging
for development, a filter that stamps the current correlation id on every
record, and a WorkflowLogger helper for pipeline stage events.
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Optional

from ..core.correlation import get_correlation_id

# Extra record attributes copied into JSON output when present
STRUCTURED_FIELDS = (
    "correlation_id",
    "stage",
    "user_id",
    "request_id",
    "story_id",
    "episode_id",
    "episode_number",
    "workflow_id",
    "detail_type",
    "duration",
    "attempt",
    "operation",
    "error_type",
    "error_code",
    "breaker",
    "breaker_state",
    "metric",
)


class CorrelationFilter(logging.Filter):
    """Attach the current correlation id to every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in STRUCTURED_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def configure_logging(json_format: bool = True, level: int | str = logging.INFO) -> None:
    """Configure structured logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(CorrelationFilter())

    if json_format:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s"
            )
        )

    root_logger.addHandler(handler)


class WorkflowLogger:
    """Logger for pipeline stage events with structured fields."""

    def __init__(self):
        self.logger = logging.getLogger("manga_pipeline.workflow")

    def stage_started(self, stage: str, **fields) -> None:
        self.logger.info(f"Stage started: {stage}", extra={"stage": stage, **fields})

    def stage_completed(self, stage: str, duration: Optional[float] = None, **fields) -> None:
        extra = {"stage": stage, **fields}
        if duration is not None:
            extra["duration"] = round(duration, 2)
        self.logger.info(f"Stage completed: {stage}", extra=extra)

    def stage_skipped(self, stage: str, reason: str, **fields) -> None:
        self.logger.info(f"Stage skipped: {stage} ({reason})", extra={"stage": stage, **fields})

    def stage_failed(self, stage: str, error: BaseException, **fields) -> None:
        extra = {
            "stage": stage,
            "error_type": type(error).__name__,
            "error_code": getattr(error, "code", None),
            **fields,
        }
        self.logger.error(f"Stage failed: {stage}: {error}", extra=extra, exc_info=error)

    def cleanup_failed(self, stage: str, error: BaseException, **fields) -> None:
        self.logger.error(
            f"Failed to record failure for {stage}: {error}",
            extra={"stage": stage, "error_type": type(error).__name__, **fields},
        )


# Global workflow logger instance
workflow_logger = WorkflowLogger()
