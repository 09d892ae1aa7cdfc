"""
Episode generation stage.

Handles "Episode Generation Requested" (episode 1 of a freshly written
story) and "Continue Episode Requested" (episode N+1 of a finished story).

Both paths create or reuse the Episode record, read the story from the
content store, write the episode, store it, mark it COMPLETED and publish
"Image Generation Requested". An episode that is already COMPLETED is not
written again; its image event is republished instead. Failures mark the
episode FAILED and are re-raised.
"""

import logging
import uuid
from typing import Any, Optional

from ...core.content_parsing import parse_episode_content
from ...core.errors import AlreadyExistsError, NotFoundError, ValidationError
from ...core.metrics import PerformanceTimer
from ...core.types import UserPreferencesData, utc_timestamp
from ..database.repository import ContinuationUpdate, EpisodeUpdate, RequestUpdate
from ..logging import workflow_logger
from ..models.entities import Episode
from ..models.enums import (
    ContinuationStatus,
    EntityType,
    GenerationStatus,
    TERMINAL_REQUEST_STATUSES,
)
from .content_store import episode_path
from .context import PipelineContext
from .events import (
    ContinueEpisodeRequested,
    EpisodeContinuationStatusUpdated,
    EpisodeGenerationRequested,
    ImageGenerationRequested,
)

logger = logging.getLogger(__name__)

STAGE = "episode_generation"
FINISHED_CONTINUATION = (ContinuationStatus.COMPLETED.value,)


async def handle_episode_generation(ctx: PipelineContext, detail: EpisodeGenerationRequested) -> dict[str, Any]:
    return await generate_episode(
        ctx,
        user_id=detail.user_id,
        story_id=detail.story_id,
        story_content_path=detail.story_content_path,
        episode_number=detail.episode_number,
        request_id=detail.request_id,
    )


async def handle_continue_episode(ctx: PipelineContext, detail: ContinueEpisodeRequested) -> dict[str, Any]:
    return await generate_episode(
        ctx,
        user_id=detail.user_id,
        story_id=detail.story_id,
        story_content_path=detail.story_content_path,
        episode_number=detail.next_episode_number,
        request_id=detail.request_id,
        preferences=detail.original_preferences,
        is_continuation=True,
        episode_id=detail.episode_id,
        continuation_id=detail.continuation_id,
    )


async def generate_episode(
    ctx: PipelineContext,
    *,
    user_id: str,
    story_id: str,
    story_content_path: str,
    episode_number: int,
    request_id: Optional[str] = None,
    preferences: Optional[UserPreferencesData] = None,
    is_continuation: bool = False,
    episode_id: Optional[str] = None,
    continuation_id: Optional[str] = None,
) -> dict[str, Any]:
    repos = ctx.repos
    fields = {
        "user_id": user_id,
        "story_id": story_id,
        "episode_number": episode_number,
        "request_id": request_id,
    }
    track_request = bool(is_continuation and request_id)
    tracked_request_id = request_id if track_request else None

    try:
        episode = await _check_preconditions(ctx, user_id, story_id, episode_number, is_continuation)
    except Exception as e:
        workflow_logger.stage_failed(STAGE, e, **fields)
        await _record_episode_failure(
            ctx,
            user_id,
            story_id,
            episode_number,
            None,
            tracked_request_id,
            continuation_id,
            e,
            status_request_id=request_id,
        )
        raise

    if episode is not None and episode.status == GenerationStatus.COMPLETED:
        workflow_logger.stage_skipped(STAGE, "episode already completed", **fields)
        await _request_images(ctx, user_id, episode.episode_id, episode.content_path)
        return {"status": "skipped", "episodeId": episode.episode_id, "episodeNumber": episode_number}

    timer = PerformanceTimer(STAGE)
    episode_ref: Optional[Episode] = None
    try:
        episode_ref = await _start_episode(ctx, episode, user_id, story_id, episode_number, episode_id, is_continuation)
        if episode_ref is None:
            return await _stop_cancelled(
                ctx, user_id, story_id, episode_number, episode_id, tracked_request_id, continuation_id, fields
            )
        fields["episode_id"] = episode_ref.episode_id
        workflow_logger.stage_started(STAGE, **fields)

        if track_request and not await repos.requests.transition(
            user_id,
            request_id,
            GenerationStatus.PROCESSING,
            RequestUpdate(related_entity_id=episode_ref.episode_id),
            guard=TERMINAL_REQUEST_STATUSES,
        ):
            return await _stop_cancelled(
                ctx, user_id, story_id, episode_number, episode_ref.episode_id, None, continuation_id, fields
            )
        if continuation_id:
            await _move_continuation(ctx, user_id, story_id, continuation_id, episode_number, ContinuationStatus.GENERATING)

        story_content = await ctx.content.get_text(story_content_path)
        if preferences is None:
            latest = await repos.preferences.get_latest(user_id)
            if latest is None:
                raise ValidationError(
                    f"No preferences found for user {user_id}", code="PREFERENCES_NOT_FOUND"
                )
            preferences = latest.preferences

        content = await ctx.text_generator.generate_episode(
            story_content, preferences, episode_number, is_continuation
        )
        parsed = parse_episode_content(content, episode_number)

        path = episode_path(user_id, story_id, episode_number)
        await ctx.content.put(
            path,
            parsed.body,
            content_type="text/markdown",
            metadata={
                "title": parsed.title,
                "storyId": story_id,
                "episodeId": episode_ref.episode_id,
                "episodeNumber": str(episode_number),
            },
        )
        if not await repos.episodes.transition(
            story_id,
            episode_number,
            GenerationStatus.COMPLETED,
            EpisodeUpdate(title=parsed.title, content_path=path, image_status=GenerationStatus.PENDING),
            guard=TERMINAL_REQUEST_STATUSES,
        ):
            return await _stop_cancelled(
                ctx, user_id, story_id, episode_number, episode_ref.episode_id, tracked_request_id, continuation_id, fields
            )
        if track_request and not await repos.requests.transition(
            user_id, request_id, GenerationStatus.COMPLETED, guard=TERMINAL_REQUEST_STATUSES
        ):
            return await _stop_cancelled(
                ctx, user_id, story_id, episode_number, episode_ref.episode_id, None, continuation_id, fields
            )
        if continuation_id:
            await _move_continuation(ctx, user_id, story_id, continuation_id, episode_number, ContinuationStatus.COMPLETED)

        await _request_images(ctx, user_id, episode_ref.episode_id, path)
        await ctx.publisher.publish_status(
            user_id,
            request_id or episode_ref.episode_id,
            EntityType.EPISODE,
            GenerationStatus.COMPLETED,
            episode_ref.episode_id,
        )
    except Exception as e:
        workflow_logger.stage_failed(STAGE, e, **fields)
        ctx.metrics.record_generation("episode", False, timer.stop())
        await _record_episode_failure(
            ctx,
            user_id,
            story_id,
            episode_number,
            episode_ref.episode_id if episode_ref else None,
            tracked_request_id,
            continuation_id,
            e,
            status_request_id=request_id,
        )
        raise

    duration_ms = timer.stop()
    ctx.metrics.record_generation("episode", True, duration_ms)
    workflow_logger.stage_completed(STAGE, duration_ms / 1000, **fields)
    return {
        "status": "completed",
        "episodeId": episode_ref.episode_id,
        "episodeNumber": episode_number,
        "contentPath": path,
    }


async def _check_preconditions(
    ctx: PipelineContext,
    user_id: str,
    story_id: str,
    episode_number: int,
    is_continuation: bool,
) -> Optional[Episode]:
    """Validate the story and episode number; return the existing episode, if any."""
    story = await ctx.repos.stories.get(user_id, story_id)
    if story is None:
        raise NotFoundError(f"Story {story_id} not found", code="STORY_NOT_FOUND")
    if story.status != GenerationStatus.COMPLETED:
        raise ValidationError(
            f"Story {story_id} is {story.status}, episodes need a completed story",
            code="STORY_NOT_COMPLETED",
        )

    episode = await ctx.repos.episodes.get(story_id, episode_number)
    if episode is None and is_continuation:
        expected = await ctx.repos.episodes.next_episode_number(story_id)
        if episode_number != expected:
            raise ValidationError(
                f"Cannot continue story {story_id} with episode {episode_number}, next episode is {expected}"
            )
    return episode


async def _start_episode(
    ctx: PipelineContext,
    existing: Optional[Episode],
    user_id: str,
    story_id: str,
    episode_number: int,
    episode_id: Optional[str],
    is_continuation: bool,
) -> Optional[Episode]:
    """Create the PROCESSING episode, or move an unfinished one back to PROCESSING.

    Returns None when the existing episode is cancelled.
    """
    if existing is None:
        episode = Episode(
            episode_id=episode_id or str(uuid.uuid4()),
            story_id=story_id,
            user_id=user_id,
            episode_number=episode_number,
            status=GenerationStatus.PROCESSING,
            is_continue_episode=is_continuation,
            created_at=utc_timestamp(),
        )
        try:
            await ctx.repos.episodes.create(episode)
            return episode
        except AlreadyExistsError:
            # Another delivery created it first
            existing = await ctx.repos.episodes.get(story_id, episode_number)
            if existing is None:
                raise

    restarted = await ctx.repos.episodes.transition(
        story_id,
        episode_number,
        GenerationStatus.PROCESSING,
        EpisodeUpdate(is_continue_episode=existing.is_continue_episode or is_continuation),
        guard=TERMINAL_REQUEST_STATUSES,
    )
    return existing if restarted else None


async def _stop_cancelled(
    ctx: PipelineContext,
    user_id: str,
    story_id: str,
    episode_number: int,
    episode_id: Optional[str],
    request_id: Optional[str],
    continuation_id: Optional[str],
    fields: dict[str, Any],
) -> dict[str, Any]:
    """The episode or its request was cancelled: close what is still open and publish nothing further."""
    message = f"Episode {episode_number} of story {story_id} was cancelled"
    workflow_logger.stage_skipped(STAGE, "cancelled", **fields)
    await ctx.repos.episodes.transition(
        story_id,
        episode_number,
        GenerationStatus.CANCELLED,
        EpisodeUpdate(error_message=message),
        guard=TERMINAL_REQUEST_STATUSES,
    )
    if request_id:
        await ctx.repos.requests.transition(
            user_id,
            request_id,
            GenerationStatus.CANCELLED,
            RequestUpdate(error_message=message),
            guard=TERMINAL_REQUEST_STATUSES,
        )
    if continuation_id:
        await _move_continuation(
            ctx, user_id, story_id, continuation_id, episode_number, ContinuationStatus.FAILED, message
        )
    return {"status": "cancelled", "episodeId": episode_id, "episodeNumber": episode_number}


async def _move_continuation(
    ctx: PipelineContext,
    user_id: str,
    story_id: str,
    continuation_id: str,
    episode_number: int,
    status: ContinuationStatus,
    error_message: Optional[str] = None,
) -> None:
    moved = await ctx.repos.continuations.transition(
        story_id,
        continuation_id,
        status,
        ContinuationUpdate(error_message=error_message),
        guard=FINISHED_CONTINUATION,
    )
    if moved:
        await ctx.publisher.try_emit(
            EpisodeContinuationStatusUpdated(
                user_id=user_id,
                story_id=story_id,
                continuation_id=continuation_id,
                episode_number=episode_number,
                status=status,
                error_message=error_message,
            )
        )


async def _request_images(
    ctx: PipelineContext,
    user_id: str,
    episode_id: str,
    content_path: Optional[str],
) -> None:
    if not content_path:
        logger.warning(f"Episode {episode_id} has no content path, not requesting images")
        return
    await ctx.publisher.emit(
        ImageGenerationRequested(user_id=user_id, episode_id=episode_id, episode_content_path=content_path)
    )


async def _record_episode_failure(
    ctx: PipelineContext,
    user_id: str,
    story_id: str,
    episode_number: int,
    episode_id: Optional[str],
    request_id: Optional[str],
    continuation_id: Optional[str],
    error: BaseException,
    status_request_id: Optional[str] = None,
) -> None:
    """Mark everything this attempt touched as FAILED. Never raises."""
    message = str(error) or type(error).__name__
    try:
        if episode_id:
            await ctx.repos.episodes.transition(
                story_id,
                episode_number,
                GenerationStatus.FAILED,
                EpisodeUpdate(error_message=message),
                guard=TERMINAL_REQUEST_STATUSES,
            )
        if request_id:
            await ctx.repos.requests.transition(
                user_id,
                request_id,
                GenerationStatus.FAILED,
                RequestUpdate(error_message=message),
                guard=TERMINAL_REQUEST_STATUSES,
            )
        if continuation_id:
            await _move_continuation(
                ctx, user_id, story_id, continuation_id, episode_number, ContinuationStatus.FAILED, message
            )
    except Exception as cleanup_error:
        workflow_logger.cleanup_failed(STAGE, cleanup_error, user_id=user_id, story_id=story_id)

    status_request_id = status_request_id or request_id or episode_id
    if status_request_id:
        await ctx.publisher.publish_status(
            user_id,
            status_request_id,
            EntityType.EPISODE,
            GenerationStatus.FAILED,
            episode_id,
            message,
        )
