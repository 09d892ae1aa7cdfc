"""
Read-side views assembled from several store queries.

Request progress, a story with its episodes, workflow progress and
continuation eligibility. Nothing here writes.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from ...core.errors import AuthorizationError, NotFoundError
from ...core.types import ContinuationEligibility, to_timestamp
from ..config import STALE_REQUEST_MINUTES
from ..models.entities import GenerationRequest, Story
from ..models.enums import ContinuationStatus, GenerationStatus, RequestType
from .context import PipelineContext

logger = logging.getLogger(__name__)

STORY_TOTAL_STEPS = 3
EPISODE_TOTAL_STEPS = 2

# Continuations that have not reached a terminal state yet. Ones older than
# STALE_REQUEST_MINUTES are treated as abandoned.
IN_FLIGHT_CONTINUATION = (ContinuationStatus.REQUESTED.value, ContinuationStatus.GENERATING.value)


def _progress(current_step: str, total_steps: int, completed_steps: int) -> dict[str, Any]:
    return {"currentStep": current_step, "totalSteps": total_steps, "completedSteps": completed_steps}


async def _story_progress(ctx: PipelineContext, request: GenerationRequest) -> dict[str, Any]:
    if not request.related_entity_id:
        return {"progress": _progress("Initializing story generation", STORY_TOTAL_STEPS, 0)}

    story = await ctx.repos.stories.get_by_story_id(request.related_entity_id)
    if story is None:
        return {"progress": _progress("Story generation in progress", STORY_TOTAL_STEPS, 1)}

    episodes = await ctx.repos.episodes.list_for_story(story.story_id)
    completed = sum(1 for e in episodes if e.status == GenerationStatus.COMPLETED)
    total = len(episodes) or 1

    if story.status == GenerationStatus.PROCESSING:
        progress = _progress("Generating story content", STORY_TOTAL_STEPS, 1)
    elif story.status == GenerationStatus.COMPLETED:
        if not episodes:
            progress = _progress("Story completed, preparing episodes", STORY_TOTAL_STEPS, 2)
        elif completed == total:
            progress = _progress("All episodes completed", STORY_TOTAL_STEPS, 3)
        else:
            progress = _progress(f"Generating episodes ({completed}/{total})", STORY_TOTAL_STEPS, 2)
    elif story.status == GenerationStatus.FAILED:
        progress = _progress("Story generation failed", STORY_TOTAL_STEPS, 0)
    else:
        progress = _progress("Initializing story generation", STORY_TOTAL_STEPS, 0)

    result: dict[str, Any] = {"storyId": story.story_id}
    if story.status == GenerationStatus.COMPLETED and story.content_path:
        result["downloadUrl"] = f"/stories/{story.story_id}"
    return {"progress": progress, "result": result}


async def _episode_progress(ctx: PipelineContext, request: GenerationRequest) -> dict[str, Any]:
    if not request.related_entity_id:
        return {"progress": _progress("Initializing episode generation", EPISODE_TOTAL_STEPS, 0)}

    episode = await ctx.repos.episodes.get_by_episode_id(request.related_entity_id)
    if episode is None:
        return {"progress": _progress("Episode generation in progress", EPISODE_TOTAL_STEPS, 1)}

    if episode.status == GenerationStatus.PROCESSING:
        progress = _progress("Generating episode content and images", EPISODE_TOTAL_STEPS, 1)
    elif episode.status == GenerationStatus.COMPLETED:
        progress = _progress("Episode completed", EPISODE_TOTAL_STEPS, 2)
    elif episode.status == GenerationStatus.FAILED:
        progress = _progress("Episode generation failed", EPISODE_TOTAL_STEPS, 0)
    else:
        progress = _progress("Initializing episode generation", EPISODE_TOTAL_STEPS, 0)

    result: dict[str, Any] = {"episodeId": episode.episode_id}
    if episode.status == GenerationStatus.COMPLETED and episode.content_path:
        result["downloadUrl"] = f"/stories/{episode.story_id}/episodes/{episode.episode_number}/content"
    if episode.pdf_path:
        result["pdfPath"] = episode.pdf_path
    return {"progress": progress, "result": result}


async def get_request_status(ctx: PipelineContext, user_id: str, request_id: str) -> dict[str, Any]:
    """Status of one GenerationRequest with progress for the caller.

    Raises:
        NotFoundError: REQUEST_NOT_FOUND
        AuthorizationError: the request belongs to another user
    """
    request = await ctx.repos.requests.get_by_request_id(request_id)
    if request is None:
        raise NotFoundError("Generation request not found", code="REQUEST_NOT_FOUND")
    if request.user_id != user_id:
        raise AuthorizationError("Access denied to this generation request")

    response: dict[str, Any] = {
        "requestId": request.request_id,
        "status": request.status,
        "type": request.type,
        "timestamp": request.updated_at or request.created_at,
    }
    if request.workflow_id:
        response["workflowId"] = request.workflow_id

    if request.status == GenerationStatus.FAILED:
        response["error"] = request.error_message or "Generation failed"
        return response

    try:
        if request.type == RequestType.STORY:
            response.update(await _story_progress(ctx, request))
        elif request.type == RequestType.EPISODE:
            response.update(await _episode_progress(ctx, request))
    except Exception as e:
        logger.error(f"Error getting progress for request {request_id}: {e}")
        total = STORY_TOTAL_STEPS if request.type == RequestType.STORY else EPISODE_TOTAL_STEPS
        response["progress"] = _progress("Error retrieving progress", total, 0)
    return response


async def get_owned_story(ctx: PipelineContext, user_id: str, story_id: str) -> Story:
    story = await ctx.repos.stories.get(user_id, story_id)
    if story is None:
        raise NotFoundError("Story not found or you don't have access to it", code="STORY_NOT_FOUND")
    return story


async def evaluate_continuation(
    ctx: PipelineContext,
    story: Story,
) -> ContinuationEligibility:
    """Whether a new episode can be started for ``story`` right now."""
    if story.status != GenerationStatus.COMPLETED:
        return ContinuationEligibility(
            can_continue=False,
            reason_code="STORY_NOT_COMPLETED",
            reason=f"Cannot continue episodes for story with status: {story.status}. Story must be completed first.",
        )

    next_number = await ctx.repos.episodes.next_episode_number(story.story_id)
    if await ctx.repos.preferences.get_latest(story.user_id) is None:
        return ContinuationEligibility(
            can_continue=False,
            next_episode_number=next_number,
            reason_code="PREFERENCES_NOT_FOUND",
            reason="User preferences not found. Cannot continue episode without original preferences.",
        )

    continuations = await ctx.repos.continuations.list_for_story(story.story_id)
    cutoff = to_timestamp(datetime.now(timezone.utc) - timedelta(minutes=STALE_REQUEST_MINUTES))
    if any(c.status in IN_FLIGHT_CONTINUATION and c.created_at >= cutoff for c in continuations):
        return ContinuationEligibility(
            can_continue=False,
            next_episode_number=next_number,
            reason_code="CONTINUATION_IN_PROGRESS",
            reason="An episode is already being generated for this story",
        )

    return ContinuationEligibility(can_continue=True, next_episode_number=next_number)


async def get_story_details(ctx: PipelineContext, user_id: str, story_id: str) -> dict[str, Any]:
    """Story metadata, its episodes in order and continuation eligibility."""
    story = await get_owned_story(ctx, user_id, story_id)
    episodes = await ctx.repos.episodes.list_for_story(story_id)
    eligibility = await evaluate_continuation(ctx, story)
    return {
        "story": story.to_public(),
        "episodes": [episode.to_public() for episode in episodes],
        "continuation": eligibility.to_wire(),
    }


async def get_workflow_progress(ctx: PipelineContext, user_id: str, workflow_id: str) -> dict[str, Any]:
    workflow = await ctx.repos.workflows.get_by_workflow_id(workflow_id)
    if workflow is None:
        raise NotFoundError("Workflow not found", code="WORKFLOW_NOT_FOUND")
    if workflow.user_id != user_id:
        raise AuthorizationError("Access denied to this workflow")

    body = workflow.to_public(exclude={"processed_batches"})
    body["progress"] = {
        "finishedStories": workflow.finished_stories,
        "remainingStories": workflow.number_of_stories - workflow.finished_stories,
    }
    return body
