"""Stored entity models.

Each model reads a store item (camelCase attributes plus key attributes,
which are ignored) and exposes snake_case fields. ``version`` is the store's
optimistic-concurrency counter.
"""

from typing import Optional

from pydantic import Field

from ...core.types import CamelModel, QlooInsights, UserPreferencesData
from .enums import ContinuationStatus, GenerationStatus, RequestType, WorkflowStatus


class StoredEntity(CamelModel):
    created_at: str
    updated_at: Optional[str] = None
    version: int = 0

    def to_public(self, exclude: Optional[set[str]] = None) -> dict:
        """Wire shape for API responses, without store bookkeeping."""
        return self.model_dump(
            mode="json", by_alias=True, exclude_none=True, exclude={"version"} | (exclude or set())
        )


class UserProfile(StoredEntity):
    user_id: str
    email: Optional[str] = None


class UserPreferences(StoredEntity):
    user_id: str
    preferences: UserPreferencesData
    insights: QlooInsights = Field(default_factory=QlooInsights)


class Story(StoredEntity):
    story_id: str
    user_id: str
    title: str
    status: GenerationStatus
    content_path: Optional[str] = None
    request_id: Optional[str] = None
    workflow_id: Optional[str] = None
    error_message: Optional[str] = None


class Episode(StoredEntity):
    episode_id: str
    story_id: str
    user_id: str
    episode_number: int
    status: GenerationStatus
    title: Optional[str] = None
    content_path: Optional[str] = None
    is_continue_episode: bool = False
    image_status: Optional[GenerationStatus] = None
    pdf_path: Optional[str] = None
    image_count: Optional[int] = None
    image_error_message: Optional[str] = None
    error_message: Optional[str] = None


class GenerationRequest(StoredEntity):
    request_id: str
    user_id: str
    type: RequestType
    status: GenerationStatus
    related_entity_id: Optional[str] = None
    workflow_id: Optional[str] = None
    error_message: Optional[str] = None


class BatchWorkflow(StoredEntity):
    workflow_id: str
    user_id: str
    request_id: str
    number_of_stories: int
    status: WorkflowStatus
    completed_stories: int = 0
    failed_stories: int = 0
    processed_batches: list[int] = Field(default_factory=list)
    error_message: Optional[str] = None

    @property
    def finished_stories(self) -> int:
        return self.completed_stories + self.failed_stories


class EpisodeContinuation(StoredEntity):
    continuation_id: str
    story_id: str
    user_id: str
    episode_id: str
    episode_number: int
    request_id: str
    status: ContinuationStatus
    error_message: Optional[str] = None
