"""
Episode continuation: start episode N+1 of a finished story.

Preconditions are checked in order (story owned by the caller, story
COMPLETED, stored preferences present, no continuation already running).
On success a GenerationRequest and an EpisodeContinuation are recorded and
"Continue Episode Requested" is published. Generation itself happens in
the episode stage.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from ...core.errors import ConflictError, ValidationError
from ...core.types import to_timestamp, utc_timestamp
from ..config import EPISODE_ESTIMATE_MINUTES
from ..database.repository import ContinuationUpdate, RequestUpdate
from ..models.entities import EpisodeContinuation, GenerationRequest
from ..models.enums import ContinuationStatus, GenerationStatus, RequestType, TERMINAL_REQUEST_STATUSES
from .context import PipelineContext
from .events import ContinueEpisodeRequested
from .status import evaluate_continuation, get_owned_story

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "Episode generation started successfully"


async def request_continuation(ctx: PipelineContext, user_id: str, story_id: str) -> dict[str, Any]:
    """Accept a continuation request and hand it to the pipeline.

    Raises:
        NotFoundError: STORY_NOT_FOUND
        ValidationError: STORY_NOT_COMPLETED or PREFERENCES_NOT_FOUND
        ConflictError: CONTINUATION_IN_PROGRESS
    """
    repos = ctx.repos
    story = await get_owned_story(ctx, user_id, story_id)

    eligibility = await evaluate_continuation(ctx, story)
    if not eligibility.can_continue:
        if eligibility.reason_code == "CONTINUATION_IN_PROGRESS":
            raise ConflictError(eligibility.reason, code=eligibility.reason_code)
        raise ValidationError(eligibility.reason, code=eligibility.reason_code)

    latest = await repos.preferences.get_latest(user_id)
    if latest is None:
        raise ValidationError(
            "User preferences not found. Cannot continue episode without original preferences.",
            code="PREFERENCES_NOT_FOUND",
        )
    if not story.content_path:
        raise ValidationError(f"Story {story_id} has no stored content", code="STORY_NOT_COMPLETED")

    next_number = eligibility.next_episode_number
    episode_id = str(uuid.uuid4())
    request_id = str(uuid.uuid4())
    continuation_id = str(uuid.uuid4())
    now = utc_timestamp()

    await repos.requests.create(
        GenerationRequest(
            request_id=request_id,
            user_id=user_id,
            type=RequestType.EPISODE,
            status=GenerationStatus.PROCESSING,
            related_entity_id=episode_id,
            created_at=now,
        )
    )
    await repos.continuations.create(
        EpisodeContinuation(
            continuation_id=continuation_id,
            story_id=story_id,
            user_id=user_id,
            episode_id=episode_id,
            episode_number=next_number,
            request_id=request_id,
            status=ContinuationStatus.REQUESTED,
            created_at=now,
        )
    )

    try:
        await ctx.publisher.emit(
            ContinueEpisodeRequested(
                user_id=user_id,
                story_id=story_id,
                next_episode_number=next_number,
                original_preferences=latest.preferences,
                story_content_path=story.content_path,
                episode_id=episode_id,
                continuation_id=continuation_id,
                request_id=request_id,
            )
        )
    except Exception as e:
        message = f"Failed to start episode generation: {e}"
        try:
            await repos.requests.transition(
                user_id,
                request_id,
                GenerationStatus.FAILED,
                RequestUpdate(error_message=message),
                guard=TERMINAL_REQUEST_STATUSES,
            )
            await repos.continuations.transition(
                story_id, continuation_id, ContinuationStatus.FAILED, ContinuationUpdate(error_message=message)
            )
        except Exception as cleanup_error:
            logger.error(f"Failed to record continuation failure for story {story_id}: {cleanup_error}")
        raise

    ctx.metrics.record_continuation_requested(next_number)
    logger.info(
        f"Continuation requested for story {story_id}, episode {next_number}",
        extra={"user_id": user_id, "story_id": story_id, "episode_number": next_number, "request_id": request_id},
    )

    estimated = datetime.now(timezone.utc) + timedelta(minutes=EPISODE_ESTIMATE_MINUTES)
    return {
        "episodeId": episode_id,
        "episodeNumber": next_number,
        "status": ContinuationStatus.GENERATING.value,
        "estimatedCompletionTime": to_timestamp(estimated),
        "message": ACCEPTED_MESSAGE,
        "requestId": request_id,
        "continuationId": continuation_id,
    }
