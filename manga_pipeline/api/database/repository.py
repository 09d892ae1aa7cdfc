"""Typed access patterns over the entity store.

One access class per entity. Each knows its key layout (keys.py) and turns
store items into entity models. Status changes go through ``transition``,
which hands the new status to the store so ``status`` and the status index
key are written together. Other field changes are typed partial updates.
"""

import dataclasses
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional, Sequence, TypeVar

from pydantic.alias_generators import to_camel

from ...core.errors import AlreadyExistsError, ConflictError
from ...core.types import QlooInsights, UserPreferencesData, utc_timestamp
from ..models.entities import (
    BatchWorkflow,
    Episode,
    EpisodeContinuation,
    GenerationRequest,
    Story,
    StoredEntity,
    UserPreferences,
    UserProfile,
)
from ..models.enums import GenerationStatus, TERMINAL_WORKFLOW_STATUSES, WorkflowStatus
from . import keys
from .store import EntityStore

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=StoredEntity)


# Typed partial updates


@dataclass
class PartialUpdate:
    """Base for typed partial updates. Unset (None) fields are left untouched."""

    def to_fields(self) -> dict[str, Any]:
        fields = {}
        for f in dataclasses.fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            fields[to_camel(f.name)] = value.value if isinstance(value, Enum) else value
        return fields


@dataclass
class StoryUpdate(PartialUpdate):
    title: Optional[str] = None
    content_path: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class EpisodeUpdate(PartialUpdate):
    title: Optional[str] = None
    content_path: Optional[str] = None
    is_continue_episode: Optional[bool] = None
    image_status: Optional[GenerationStatus] = None
    pdf_path: Optional[str] = None
    image_count: Optional[int] = None
    image_error_message: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class RequestUpdate(PartialUpdate):
    related_entity_id: Optional[str] = None
    error_message: Optional[str] = None


@dataclass
class WorkflowUpdate(PartialUpdate):
    error_message: Optional[str] = None


@dataclass
class ContinuationUpdate(PartialUpdate):
    error_message: Optional[str] = None


def _fields_of(update: Optional[PartialUpdate]) -> dict[str, Any]:
    return update.to_fields() if update is not None else {}


def _status_value(status: Any) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def _build_item(
    entity: StoredEntity,
    entity_type: str,
    pk: str,
    sk: str,
    gsi1pk: str,
    gsi1sk: str,
    with_status_index: bool = True,
) -> dict[str, Any]:
    item = entity.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"version"})
    item.update(
        {
            keys.PK: pk,
            keys.SK: sk,
            keys.GSI1PK: gsi1pk,
            keys.GSI1SK: gsi1sk,
            "entityType": entity_type,
        }
    )
    if with_status_index:
        item[keys.GSI2PK] = keys.status_key(item["status"])
        item[keys.GSI2SK] = item["createdAt"]
    return item


class _Access:
    entity_type = ""

    def __init__(self, store: EntityStore):
        self.store = store

    def _first(self, model: type[E], items: list[dict[str, Any]]) -> Optional[E]:
        return model.model_validate(items[0]) if items else None

    def _of_type(self, items: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
        return [item for item in items if item.get("entityType") == self.entity_type]


class UserProfileAccess(_Access):
    entity_type = "UserProfile"

    async def create(self, user_id: str, email: Optional[str] = None) -> bool:
        """Create the profile once. Returns False when it already exists."""
        profile = UserProfile(user_id=user_id, email=email, created_at=utc_timestamp())
        pk = keys.user_pk(user_id)
        item = _build_item(
            profile, self.entity_type, pk, keys.PROFILE_SK, pk, keys.PROFILE_SK, with_status_index=False
        )
        try:
            await self.store.create(item)
        except AlreadyExistsError:
            logger.info(f"User profile already exists for {user_id}")
            return False
        return True

    async def get(self, user_id: str) -> Optional[UserProfile]:
        item = await self.store.get(keys.user_pk(user_id), keys.PROFILE_SK)
        return UserProfile.model_validate(item) if item else None


class UserPreferencesAccess(_Access):
    """Append-only preference history. The latest version is the current one."""

    entity_type = "UserPreferences"

    async def create(
        self,
        user_id: str,
        preferences: UserPreferencesData,
        insights: QlooInsights,
    ) -> UserPreferences:
        pk = keys.user_pk(user_id)
        # Two writes in the same microsecond would collide on SK; take a fresh timestamp
        for _ in range(3):
            record = UserPreferences(
                user_id=user_id,
                preferences=preferences,
                insights=insights,
                created_at=utc_timestamp(),
            )
            sk = keys.preferences_sk(record.created_at)
            item = _build_item(record, self.entity_type, pk, sk, pk, sk, with_status_index=False)
            try:
                await self.store.create(item)
                return record
            except AlreadyExistsError:
                continue
        raise ConflictError(f"Could not store preferences for user {user_id}")

    async def get_latest(self, user_id: str) -> Optional[UserPreferences]:
        items = await self.store.query_by_prefix(
            keys.user_pk(user_id), keys.PREFERENCES_PREFIX, scan_forward=False, limit=1
        )
        return self._first(UserPreferences, items)

    async def get_history(self, user_id: str, limit: int = 10) -> list[UserPreferences]:
        items = await self.store.query_by_prefix(
            keys.user_pk(user_id), keys.PREFERENCES_PREFIX, scan_forward=False, limit=limit
        )
        return [UserPreferences.model_validate(item) for item in items]


class StoryAccess(_Access):
    entity_type = "Story"

    async def create(self, story: Story) -> None:
        key = keys.story_key(story.story_id)
        item = _build_item(
            story,
            self.entity_type,
            keys.user_pk(story.user_id),
            key,
            key,
            keys.METADATA_SK,
        )
        await self.store.create(item)

    async def get(self, user_id: str, story_id: str) -> Optional[Story]:
        item = await self.store.get(keys.user_pk(user_id), keys.story_key(story_id))
        return Story.model_validate(item) if item else None

    async def get_by_story_id(self, story_id: str) -> Optional[Story]:
        items = await self.store.query_index(keys.GSI1, keys.story_key(story_id), keys.METADATA_SK, limit=1)
        return self._first(Story, items)

    async def list_for_user(self, user_id: str, limit: Optional[int] = None) -> list[Story]:
        """A user's stories, newest first."""
        items = await self.store.query_by_prefix(keys.user_pk(user_id), keys.STORY_PREFIX)
        stories = [Story.model_validate(item) for item in items]
        stories.sort(key=lambda s: s.created_at, reverse=True)
        return stories[:limit] if limit else stories

    async def list_by_status(self, status: GenerationStatus, limit: Optional[int] = None) -> list[Story]:
        items = await self.store.query_index(keys.GSI2, keys.status_key(_status_value(status)), scan_forward=False)
        stories = [Story.model_validate(item) for item in self._of_type(items)]
        return stories[:limit] if limit else stories

    async def transition(
        self,
        user_id: str,
        story_id: str,
        status: GenerationStatus,
        update: Optional[StoryUpdate] = None,
        *,
        guard: Sequence[str] = (),
    ) -> bool:
        return await self.store.update_fields(
            keys.user_pk(user_id),
            keys.story_key(story_id),
            _fields_of(update),
            status=_status_value(status),
            status_not_in=guard,
        )


class EpisodeAccess(_Access):
    entity_type = "Episode"

    async def create(self, episode: Episode) -> None:
        item = _build_item(
            episode,
            self.entity_type,
            keys.story_key(episode.story_id),
            keys.episode_sk(episode.episode_number),
            keys.episode_key(episode.episode_id),
            keys.METADATA_SK,
        )
        await self.store.create(item)

    async def get(self, story_id: str, episode_number: int) -> Optional[Episode]:
        item = await self.store.get(keys.story_key(story_id), keys.episode_sk(episode_number))
        return Episode.model_validate(item) if item else None

    async def get_by_episode_id(self, episode_id: str) -> Optional[Episode]:
        items = await self.store.query_index(keys.GSI1, keys.episode_key(episode_id), keys.METADATA_SK, limit=1)
        return self._first(Episode, items)

    async def list_for_story(self, story_id: str) -> list[Episode]:
        """Episodes of a story in episode-number order."""
        items = await self.store.query_by_prefix(keys.story_key(story_id), keys.EPISODE_PREFIX, scan_forward=True)
        episodes = [Episode.model_validate(item) for item in items]
        episodes.sort(key=lambda e: e.episode_number)
        return episodes

    async def next_episode_number(self, story_id: str) -> int:
        """1 + the highest existing episode number, or 1 for a story without episodes."""
        episodes = await self.list_for_story(story_id)
        return max((e.episode_number for e in episodes), default=0) + 1

    async def transition(
        self,
        story_id: str,
        episode_number: int,
        status: GenerationStatus,
        update: Optional[EpisodeUpdate] = None,
        *,
        guard: Sequence[str] = (),
    ) -> bool:
        return await self.store.update_fields(
            keys.story_key(story_id),
            keys.episode_sk(episode_number),
            _fields_of(update),
            status=_status_value(status),
            status_not_in=guard,
        )

    async def update(self, story_id: str, episode_number: int, update: EpisodeUpdate) -> bool:
        """Change non-status fields (image stage bookkeeping)."""
        return await self.store.update_fields(
            keys.story_key(story_id), keys.episode_sk(episode_number), update.to_fields()
        )


class GenerationRequestAccess(_Access):
    entity_type = "GenerationRequest"

    async def create(self, request: GenerationRequest) -> None:
        item = _build_item(
            request,
            self.entity_type,
            keys.user_pk(request.user_id),
            keys.request_key(request.request_id),
            keys.request_key(request.request_id),
            keys.REQUEST_STATUS_SK,
        )
        await self.store.create(item)

    async def ensure(self, request: GenerationRequest) -> GenerationRequest:
        """Create the request unless it already exists; return the stored one."""
        try:
            await self.create(request)
        except AlreadyExistsError:
            existing = await self.get(request.user_id, request.request_id)
            if existing is not None:
                return existing
        return request

    async def get(self, user_id: str, request_id: str) -> Optional[GenerationRequest]:
        item = await self.store.get(keys.user_pk(user_id), keys.request_key(request_id))
        return GenerationRequest.model_validate(item) if item else None

    async def get_by_request_id(self, request_id: str) -> Optional[GenerationRequest]:
        items = await self.store.query_index(
            keys.GSI1, keys.request_key(request_id), keys.REQUEST_STATUS_SK, limit=1
        )
        return self._first(GenerationRequest, items)

    async def transition(
        self,
        user_id: str,
        request_id: str,
        status: GenerationStatus,
        update: Optional[RequestUpdate] = None,
        *,
        guard: Sequence[str] = (),
    ) -> bool:
        return await self.store.update_fields(
            keys.user_pk(user_id),
            keys.request_key(request_id),
            _fields_of(update),
            status=_status_value(status),
            status_not_in=guard,
        )

    async def fail_stale(self, cutoff: str, limit: int = 100) -> int:
        """Mark requests stuck in PROCESSING since before ``cutoff`` as FAILED."""
        items = await self.store.query_index(
            keys.GSI2, keys.status_key(GenerationStatus.PROCESSING.value), scan_forward=True
        )
        count = 0
        for item in self._of_type(items)[:limit]:
            last_touched = item.get("updatedAt") or item.get("createdAt", "")
            if last_touched >= cutoff:
                continue
            failed = await self.store.update_fields(
                item[keys.PK],
                item[keys.SK],
                {"errorMessage": "Generation timed out"},
                status=GenerationStatus.FAILED.value,
                expected_version=item.get("version"),
            )
            if failed:
                count += 1
        return count


class BatchWorkflowAccess(_Access):
    entity_type = "BatchWorkflow"

    # Optimistic update attempts before giving up on a contended workflow record
    MAX_UPDATE_ATTEMPTS = 5

    async def create(self, workflow: BatchWorkflow) -> None:
        key = keys.workflow_key(workflow.workflow_id)
        item = _build_item(
            workflow,
            self.entity_type,
            keys.user_pk(workflow.user_id),
            key,
            key,
            keys.METADATA_SK,
        )
        await self.store.create(item)

    async def ensure(self, workflow: BatchWorkflow) -> BatchWorkflow:
        try:
            await self.create(workflow)
        except AlreadyExistsError:
            existing = await self.get(workflow.user_id, workflow.workflow_id)
            if existing is not None:
                return existing
        return workflow

    async def get(self, user_id: str, workflow_id: str) -> Optional[BatchWorkflow]:
        item = await self.store.get(keys.user_pk(user_id), keys.workflow_key(workflow_id))
        return BatchWorkflow.model_validate(item) if item else None

    async def get_by_workflow_id(self, workflow_id: str) -> Optional[BatchWorkflow]:
        items = await self.store.query_index(keys.GSI1, keys.workflow_key(workflow_id), keys.METADATA_SK, limit=1)
        return self._first(BatchWorkflow, items)

    async def transition(
        self,
        user_id: str,
        workflow_id: str,
        status: WorkflowStatus,
        update: Optional[WorkflowUpdate] = None,
        *,
        guard: Sequence[str] = (),
    ) -> bool:
        return await self.store.update_fields(
            keys.user_pk(user_id),
            keys.workflow_key(workflow_id),
            _fields_of(update),
            status=_status_value(status),
            status_not_in=guard,
        )

    async def record_outcome(
        self,
        user_id: str,
        workflow_id: str,
        batch_numbers: Sequence[int],
        *,
        succeeded: bool,
        error_message: Optional[str] = None,
    ) -> Optional[BatchWorkflow]:
        """Count finished batch items against the workflow.

        Each batch number is counted at most once, and the counters never
        exceed ``numberOfStories``. When every story is accounted for the
        workflow becomes terminal: FAILED when the last recorded item failed
        or nothing succeeded, otherwise COMPLETED. Uses the version counter
        so concurrent recorders cannot lose an increment.
        """
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            workflow = await self.get(user_id, workflow_id)
            if workflow is None:
                return None
            if workflow.status in TERMINAL_WORKFLOW_STATUSES:
                return workflow

            new_batches = [n for n in batch_numbers if n not in workflow.processed_batches]
            remaining = workflow.number_of_stories - workflow.finished_stories
            new_batches = new_batches[:max(remaining, 0)]
            if not new_batches:
                return workflow

            completed = workflow.completed_stories + (len(new_batches) if succeeded else 0)
            failed = workflow.failed_stories + (0 if succeeded else len(new_batches))
            finished = completed + failed == workflow.number_of_stories
            if not finished:
                status = WorkflowStatus.IN_PROGRESS
            elif not succeeded or completed == 0:
                status = WorkflowStatus.FAILED
            else:
                status = WorkflowStatus.COMPLETED

            fields: dict[str, Any] = {
                "completedStories": completed,
                "failedStories": failed,
                "processedBatches": sorted(workflow.processed_batches + new_batches),
            }
            if error_message and not succeeded:
                fields["errorMessage"] = error_message

            updated = await self.store.update_fields(
                keys.user_pk(user_id),
                keys.workflow_key(workflow_id),
                fields,
                status=status.value,
                expected_version=workflow.version,
            )
            if updated:
                return await self.get(user_id, workflow_id)

        raise ConflictError(f"Batch workflow {workflow_id} is too contended to update")


class ContinuationAccess(_Access):
    entity_type = "EpisodeContinuation"

    async def create(self, continuation: EpisodeContinuation) -> None:
        key = keys.continuation_key(continuation.continuation_id)
        item = _build_item(
            continuation,
            self.entity_type,
            keys.story_key(continuation.story_id),
            key,
            key,
            keys.METADATA_SK,
        )
        await self.store.create(item)

    async def get(self, story_id: str, continuation_id: str) -> Optional[EpisodeContinuation]:
        item = await self.store.get(keys.story_key(story_id), keys.continuation_key(continuation_id))
        return EpisodeContinuation.model_validate(item) if item else None

    async def get_by_continuation_id(self, continuation_id: str) -> Optional[EpisodeContinuation]:
        items = await self.store.query_index(
            keys.GSI1, keys.continuation_key(continuation_id), keys.METADATA_SK, limit=1
        )
        return self._first(EpisodeContinuation, items)

    async def list_for_story(self, story_id: str) -> list[EpisodeContinuation]:
        items = await self.store.query_by_prefix(keys.story_key(story_id), keys.CONTINUATION_PREFIX)
        return [EpisodeContinuation.model_validate(item) for item in items]

    async def transition(
        self,
        story_id: str,
        continuation_id: str,
        status: Any,
        update: Optional[ContinuationUpdate] = None,
        *,
        guard: Sequence[str] = (),
    ) -> bool:
        return await self.store.update_fields(
            keys.story_key(story_id),
            keys.continuation_key(continuation_id),
            _fields_of(update),
            status=_status_value(status),
            status_not_in=guard,
        )


@dataclass
class Repositories:
    """All access classes over one store."""

    store: EntityStore
    profiles: UserProfileAccess
    preferences: UserPreferencesAccess
    stories: StoryAccess
    episodes: EpisodeAccess
    requests: GenerationRequestAccess
    workflows: BatchWorkflowAccess
    continuations: ContinuationAccess

    @classmethod
    def from_store(cls, store: EntityStore) -> "Repositories":
        return cls(
            store=store,
            profiles=UserProfileAccess(store),
            preferences=UserPreferencesAccess(store),
            stories=StoryAccess(store),
            episodes=EpisodeAccess(store),
            requests=GenerationRequestAccess(store),
            workflows=BatchWorkflowAccess(store),
            continuations=ContinuationAccess(store),
        )
