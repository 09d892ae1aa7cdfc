"""
Pipeline events: schemas, validation and publishing.

An event is an envelope ``{id, source, detail-type, detail, timestamp}``.
Every known detail-type has a pydantic schema for its detail. Known events
that fail their schema are rejected with EventValidationError (never
retried); unknown detail-types pass through unvalidated.

Publishing goes through an EventTransport. In production that is arq:
each event becomes a ``handle_event_task`` job, which gives at-least-once
delivery with retries (see worker.py).
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Annotated, Any, Callable, Optional

from arq import ArqRedis
from pydantic import BaseModel, ConfigDict, Field, StringConstraints, model_validator
from pydantic import ValidationError as PydanticValidationError

from ...core.correlation import get_correlation_id
from ...core.errors import EventValidationError
from ...core.types import CamelModel, QlooInsights, UserPreferencesData, utc_timestamp
from ..models.enums import ContinuationStatus, EntityType, WorkflowStatus

logger = logging.getLogger(__name__)

# arq function that consumes every event
EVENT_TASK_NAME = "handle_event_task"

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class EventSource:
    PREFERENCES = "manga.preferences"
    STORY = "manga.story"
    EPISODE = "manga.episode"
    GENERATION = "manga.generation"
    WORKFLOW = "manga.workflow"
    AUTH = "manga.auth"


class DetailType:
    STORY_GENERATION_REQUESTED = "Story Generation Requested"
    BATCH_STORY_GENERATION_REQUESTED = "Batch Story Generation Requested"
    EPISODE_GENERATION_REQUESTED = "Episode Generation Requested"
    CONTINUE_EPISODE_REQUESTED = "Continue Episode Requested"
    IMAGE_GENERATION_REQUESTED = "Image Generation Requested"
    GENERATION_STATUS_UPDATED = "Generation Status Updated"
    BATCH_WORKFLOW_STATUS_UPDATED = "Batch Workflow Status Updated"
    EPISODE_CONTINUATION_STATUS_UPDATED = "Episode Continuation Status Updated"
    USER_REGISTERED = "User Registered"


# Event detail schemas


class StoryGenerationRequested(CamelModel):
    user_id: NonEmptyStr
    request_id: NonEmptyStr
    preferences: UserPreferencesData
    insights: QlooInsights


class BatchStoryGenerationRequested(CamelModel):
    user_id: NonEmptyStr
    workflow_id: NonEmptyStr
    request_id: NonEmptyStr
    number_of_stories: int = Field(..., ge=1, le=10)
    current_batch: int = Field(..., ge=1)
    total_batches: int = Field(..., ge=1)
    preferences: Optional[UserPreferencesData] = None
    insights: Optional[QlooInsights] = None

    @model_validator(mode="after")
    def _batch_in_range(self):
        if self.current_batch > self.total_batches:
            raise ValueError("currentBatch cannot exceed totalBatches")
        # One story per batch item
        if self.total_batches != self.number_of_stories:
            raise ValueError("totalBatches must equal numberOfStories")
        return self


class EpisodeGenerationRequested(CamelModel):
    user_id: NonEmptyStr
    story_id: NonEmptyStr
    story_content_path: NonEmptyStr
    episode_number: int = Field(..., ge=1)
    request_id: Optional[str] = None


class ContinueEpisodeRequested(CamelModel):
    user_id: NonEmptyStr
    story_id: NonEmptyStr
    next_episode_number: int = Field(..., ge=1)
    original_preferences: UserPreferencesData
    story_content_path: NonEmptyStr
    episode_id: Optional[str] = None
    continuation_id: Optional[str] = None
    request_id: Optional[str] = None


class ImageGenerationRequested(CamelModel):
    user_id: NonEmptyStr
    episode_id: NonEmptyStr
    episode_content_path: NonEmptyStr


class GenerationStatusUpdated(CamelModel):
    user_id: NonEmptyStr
    request_id: NonEmptyStr
    entity_type: EntityType
    status: NonEmptyStr
    related_entity_id: Optional[str] = None
    error_message: Optional[str] = None


class BatchWorkflowStatusUpdated(CamelModel):
    user_id: NonEmptyStr
    workflow_id: NonEmptyStr
    status: WorkflowStatus
    number_of_stories: int = Field(..., ge=1, le=10)
    completed_stories: int = Field(0, ge=0)
    failed_stories: int = Field(0, ge=0)
    current_batch: Optional[int] = Field(None, ge=1)
    error_message: Optional[str] = None


class EpisodeContinuationStatusUpdated(CamelModel):
    user_id: NonEmptyStr
    story_id: NonEmptyStr
    continuation_id: NonEmptyStr
    episode_number: int = Field(..., ge=1)
    status: ContinuationStatus
    error_message: Optional[str] = None


class UserRegistered(CamelModel):
    user_id: NonEmptyStr
    email: Optional[str] = None


# detail-type -> (source, schema)
EVENT_SCHEMAS: dict[str, tuple[str, type[CamelModel]]] = {
    DetailType.STORY_GENERATION_REQUESTED: (EventSource.PREFERENCES, StoryGenerationRequested),
    DetailType.BATCH_STORY_GENERATION_REQUESTED: (EventSource.WORKFLOW, BatchStoryGenerationRequested),
    DetailType.EPISODE_GENERATION_REQUESTED: (EventSource.STORY, EpisodeGenerationRequested),
    DetailType.CONTINUE_EPISODE_REQUESTED: (EventSource.STORY, ContinueEpisodeRequested),
    DetailType.IMAGE_GENERATION_REQUESTED: (EventSource.EPISODE, ImageGenerationRequested),
    DetailType.GENERATION_STATUS_UPDATED: (EventSource.GENERATION, GenerationStatusUpdated),
    DetailType.BATCH_WORKFLOW_STATUS_UPDATED: (EventSource.WORKFLOW, BatchWorkflowStatusUpdated),
    DetailType.EPISODE_CONTINUATION_STATUS_UPDATED: (EventSource.EPISODE, EpisodeContinuationStatusUpdated),
    DetailType.USER_REGISTERED: (EventSource.AUTH, UserRegistered),
}

_DETAIL_TYPE_BY_MODEL = {model: (detail_type, source) for detail_type, (source, model) in EVENT_SCHEMAS.items()}


class Event(BaseModel):
    """Event envelope as carried by the bus."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    source: str
    detail_type: str = Field(alias="detail-type")
    detail: dict[str, Any]
    timestamp: str = Field(default_factory=utc_timestamp)

    def to_message(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_message(cls, message: dict[str, Any]) -> "Event":
        try:
            return cls.model_validate(message)
        except PydanticValidationError as e:
            raise EventValidationError(
                f"Malformed event envelope: {_summarize(e)}",
                details={"errors": e.errors(include_url=False)},
            ) from e


def _summarize(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors(include_url=False):
        location = ".".join(str(p) for p in item["loc"]) or "detail"
        parts.append(f"{location}: {item['msg']}")
    return "; ".join(parts)


def validate_event(event: Event) -> Optional[CamelModel]:
    """Validate an event's detail against its schema.

    Returns the parsed detail for known detail-types and None for unknown
    ones. Raises EventValidationError when a known event is invalid.
    """
    schema = EVENT_SCHEMAS.get(event.detail_type)
    if schema is None:
        return None

    source, model = schema
    if event.source != source:
        raise EventValidationError(
            f"Invalid source '{event.source}' for '{event.detail_type}', expected '{source}'"
        )
    try:
        return model.model_validate(event.detail)
    except PydanticValidationError as e:
        raise EventValidationError(
            f"Invalid '{event.detail_type}' event: {_summarize(e)}",
            details={"errors": e.errors(include_url=False)},
        ) from e


class EventTransport(ABC):
    """Delivers events to their consumers."""

    @abstractmethod
    async def send(self, event: Event) -> None: ...


class ArqEventTransport(EventTransport):
    """Delivers events as arq jobs. The event id doubles as the job id."""

    def __init__(self, pool_provider: Callable[[], ArqRedis]):
        self._pool_provider = pool_provider

    async def send(self, event: Event) -> None:
        pool = self._pool_provider()
        await pool.enqueue_job(EVENT_TASK_NAME, event.to_message(), _job_id=event.id)


class EventPublisher:
    """Validates and publishes pipeline events."""

    def __init__(self, transport: EventTransport):
        self.transport = transport

    async def publish(
        self,
        source: str,
        detail_type: str,
        detail: dict[str, Any] | CamelModel,
        event_id: Optional[str] = None,
    ) -> Event:
        """Validate and send an event. A fixed ``event_id`` makes redelivery idempotent."""
        payload = detail.to_wire() if isinstance(detail, CamelModel) else dict(detail)
        correlation_id = get_correlation_id()
        if correlation_id:
            payload.setdefault("correlationId", correlation_id)

        event = Event(source=source, detail_type=detail_type, detail=payload)
        if event_id:
            event.id = event_id
        validate_event(event)
        await self.transport.send(event)
        logger.info(
            f"Published {detail_type} event {event.id}",
            extra={"detail_type": detail_type},
        )
        return event

    async def emit(self, detail: CamelModel, event_id: Optional[str] = None) -> Event:
        """Publish a known detail model under its registered source and detail-type."""
        detail_type, source = _DETAIL_TYPE_BY_MODEL[type(detail)]
        return await self.publish(source, detail_type, detail, event_id)

    async def try_emit(self, detail: CamelModel) -> Optional[Event]:
        """Publish a non-critical event. Failures are logged, not raised."""
        try:
            return await self.emit(detail)
        except Exception as e:
            logger.warning(f"Failed to publish {type(detail).__name__} event: {e}")
            return None

    async def publish_status(
        self,
        user_id: str,
        request_id: str,
        entity_type: EntityType,
        status: str,
        related_entity_id: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> Optional[Event]:
        """Publish a generation status event (non-critical)."""
        return await self.try_emit(
            GenerationStatusUpdated(
                user_id=user_id,
                request_id=request_id,
                entity_type=entity_type,
                status=str(status.value if hasattr(status, "value") else status),
                related_entity_id=related_entity_id,
                error_message=error_message,
            )
        )
