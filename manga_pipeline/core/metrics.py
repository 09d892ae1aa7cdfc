"""
Metrics for the generation pipeline.

Datapoints are handed to a sink, which by default writes one structured log
line per datapoint on the ``manga_pipeline.metrics`` logger. Whatever ships
logs ships metrics. Recording is fire-and-forget: a failing sink is logged
and never breaks the caller.

Every datapoint carries the common dimensions (Environment, Service) and the
current correlation id when one is set.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .correlation import get_correlation_id

logger = logging.getLogger(__name__)
metrics_logger = logging.getLogger("manga_pipeline.metrics")


class MetricNamespace(str, Enum):
    BUSINESS = "Manga/Business"
    PERFORMANCE = "Manga/Performance"
    ERRORS = "Manga/Errors"
    EXTERNAL_APIS = "Manga/ExternalAPIs"


class MetricName:
    STORY_GENERATION_SUCCESS = "StoryGenerationSuccess"
    STORY_GENERATION_FAILURE = "StoryGenerationFailure"
    EPISODE_GENERATION_SUCCESS = "EpisodeGenerationSuccess"
    EPISODE_GENERATION_FAILURE = "EpisodeGenerationFailure"
    IMAGE_GENERATION_SUCCESS = "ImageGenerationSuccess"
    IMAGE_GENERATION_FAILURE = "ImageGenerationFailure"
    BATCH_WORKFLOW_STARTED = "BatchWorkflowStarted"
    BATCH_WORKFLOW_COMPLETED = "BatchWorkflowCompleted"
    BATCH_WORKFLOW_FAILED = "BatchWorkflowFailed"
    CONTINUE_EPISODE_REQUESTED = "ContinueEpisodeRequested"
    PREFERENCES_SUBMITTED = "PreferencesSubmitted"
    USER_REGISTERED = "UserRegistration"
    EVENT_REJECTED = "EventRejected"
    STATUS_EVENT = "StatusEvent"
    EXTERNAL_API_CALL = "ExternalAPICall"
    EXTERNAL_API_LATENCY = "ExternalAPILatency"
    EXTERNAL_API_ERROR = "ExternalAPIError"
    RETRY_ATTEMPT = "RetryAttempt"
    CIRCUIT_BREAKER_OPEN = "CircuitBreakerOpen"
    HANDLER_DURATION = "HandlerDuration"
    HANDLER_ERROR = "HandlerError"


@dataclass
class MetricDatum:
    namespace: str
    name: str
    value: float
    unit: str
    dimensions: dict[str, str] = field(default_factory=dict)
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "namespace": self.namespace,
            "name": self.name,
            "value": self.value,
            "unit": self.unit,
            "dimensions": dict(self.dimensions),
            "timestamp": self.timestamp,
        }


def log_sink(datum: MetricDatum) -> None:
    """Default sink: one structured log line per datapoint."""
    metrics_logger.info(f"metric {datum.namespace}/{datum.name}", extra={"metric": datum.to_dict()})


class MetricsRecorder:
    """Records pipeline metrics with common dimensions attached."""

    def __init__(
        self,
        environment: str = "development",
        service: str = "manga-pipeline",
        sink: Optional[Callable[[MetricDatum], None]] = None,
    ):
        self.environment = environment
        self.service = service
        self.sink = sink or log_sink

    def common_dimensions(self) -> dict[str, str]:
        dimensions = {"Environment": self.environment, "Service": self.service}
        correlation_id = get_correlation_id()
        if correlation_id:
            dimensions["CorrelationId"] = correlation_id
        return dimensions

    def put(
        self,
        namespace: MetricNamespace,
        name: str,
        value: float = 1,
        unit: str = "Count",
        dimensions: Optional[dict[str, str]] = None,
    ) -> None:
        """Record one datapoint. Never raises."""
        try:
            all_dimensions = self.common_dimensions()
            if dimensions:
                all_dimensions.update({k: str(v) for k, v in dimensions.items()})
            ns = namespace.value if isinstance(namespace, MetricNamespace) else str(namespace)
            self.sink(MetricDatum(ns, name, value, unit, all_dimensions))
        except Exception as e:
            logger.warning(f"Failed to record metric {name}: {e}")

    # Business metrics

    def record_generation(self, stage: str, success: bool, duration_ms: Optional[float] = None) -> None:
        """Record the outcome of a story, episode or image generation."""
        names = {
            "story": (MetricName.STORY_GENERATION_SUCCESS, MetricName.STORY_GENERATION_FAILURE),
            "episode": (MetricName.EPISODE_GENERATION_SUCCESS, MetricName.EPISODE_GENERATION_FAILURE),
            "image": (MetricName.IMAGE_GENERATION_SUCCESS, MetricName.IMAGE_GENERATION_FAILURE),
        }
        success_name, failure_name = names[stage]
        self.put(MetricNamespace.BUSINESS, success_name if success else failure_name)
        if duration_ms is not None:
            self.record_handler_duration(f"{stage}-generation", duration_ms)

    def record_batch_workflow(self, outcome: str, number_of_stories: int) -> None:
        names = {
            "started": MetricName.BATCH_WORKFLOW_STARTED,
            "completed": MetricName.BATCH_WORKFLOW_COMPLETED,
            "failed": MetricName.BATCH_WORKFLOW_FAILED,
        }
        self.put(
            MetricNamespace.BUSINESS,
            names[outcome],
            dimensions={"NumberOfStories": str(number_of_stories)},
        )

    def record_continuation_requested(self, episode_number: int) -> None:
        self.put(
            MetricNamespace.BUSINESS,
            MetricName.CONTINUE_EPISODE_REQUESTED,
            dimensions={"EpisodeNumber": str(episode_number)},
        )

    def record_preferences_submitted(self) -> None:
        self.put(MetricNamespace.BUSINESS, MetricName.PREFERENCES_SUBMITTED)

    def record_user_registered(self) -> None:
        self.put(MetricNamespace.BUSINESS, MetricName.USER_REGISTERED)

    def record_status_event(self, detail_type: str, status: str) -> None:
        self.put(
            MetricNamespace.BUSINESS,
            MetricName.STATUS_EVENT,
            dimensions={"DetailType": detail_type, "Status": status},
        )

    def record_event_rejected(self, detail_type: str) -> None:
        self.put(MetricNamespace.ERRORS, MetricName.EVENT_REJECTED, dimensions={"DetailType": detail_type})

    # External API and resilience metrics

    def record_external_call(
        self,
        service: str,
        operation: str,
        duration_ms: float,
        success: bool,
        error_code: Optional[str] = None,
    ) -> None:
        dimensions = {"ExternalService": service, "Operation": operation}
        self.put(MetricNamespace.EXTERNAL_APIS, MetricName.EXTERNAL_API_CALL, dimensions=dimensions)
        self.put(
            MetricNamespace.EXTERNAL_APIS,
            MetricName.EXTERNAL_API_LATENCY,
            value=duration_ms,
            unit="Milliseconds",
            dimensions=dimensions,
        )
        if not success:
            self.put(
                MetricNamespace.EXTERNAL_APIS,
                MetricName.EXTERNAL_API_ERROR,
                dimensions={**dimensions, "ErrorCode": error_code or "UNKNOWN"},
            )

    def record_retry(self, operation: str, attempt: int) -> None:
        self.put(
            MetricNamespace.ERRORS,
            MetricName.RETRY_ATTEMPT,
            dimensions={"Operation": operation, "Attempt": str(attempt)},
        )

    def record_breaker_open(self, breaker_name: str) -> None:
        self.put(MetricNamespace.ERRORS, MetricName.CIRCUIT_BREAKER_OPEN, dimensions={"Breaker": breaker_name})

    def record_handler_duration(self, handler: str, duration_ms: float) -> None:
        self.put(
            MetricNamespace.PERFORMANCE,
            MetricName.HANDLER_DURATION,
            value=duration_ms,
            unit="Milliseconds",
            dimensions={"Handler": handler},
        )

    def record_handler_error(self, handler: str, error_code: str) -> None:
        self.put(
            MetricNamespace.ERRORS,
            MetricName.HANDLER_ERROR,
            dimensions={"Handler": handler, "ErrorCode": error_code},
        )


class PerformanceTimer:
    """Measures elapsed wall time in milliseconds."""

    def __init__(self, operation: str = "") -> None:
        self.operation = operation
        self._start = time.perf_counter()
        self.duration_ms: Optional[float] = None

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._start) * 1000

    def stop(self) -> float:
        self.duration_ms = round(self.elapsed_ms(), 2)
        return self.duration_ms
