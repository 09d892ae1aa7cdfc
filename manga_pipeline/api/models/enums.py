"""Shared enums for entities, events and API models."""

from enum import Enum


class GenerationStatus(str, Enum):
    """Status of a Story, Episode or GenerationRequest."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RequestType(str, Enum):
    """Kind of work a GenerationRequest tracks."""

    STORY = "STORY"
    EPISODE = "EPISODE"
    IMAGE = "IMAGE"


class WorkflowStatus(str, Enum):
    STARTED = "STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ContinuationStatus(str, Enum):
    REQUESTED = "REQUESTED"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class EntityType(str, Enum):
    """Entity named by a generation status event."""

    STORY = "STORY"
    EPISODE = "EPISODE"
    IMAGE = "IMAGE"


# Handlers never move an entity out of these
TERMINAL_REQUEST_STATUSES = (GenerationStatus.COMPLETED.value, GenerationStatus.CANCELLED.value)
TERMINAL_WORKFLOW_STATUSES = (
    WorkflowStatus.COMPLETED.value,
    WorkflowStatus.FAILED.value,
    WorkflowStatus.CANCELLED.value,
)
