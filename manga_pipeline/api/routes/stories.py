"""Story, episode and continuation endpoints."""

from typing import Optional

from fastapi import APIRouter, Query, status
from fastapi.responses import Response

from ...core.errors import NotFoundError
from ..dependencies import CurrentUser, Pipeline
from ..models.enums import GenerationStatus
from ..services.continuation import request_continuation
from ..services.status import evaluate_continuation, get_owned_story, get_story_details

router = APIRouter()


@router.get(
    "",
    summary="List stories",
    description="The caller's stories, newest first, optionally filtered by status.",
)
async def list_stories(
    user: CurrentUser,
    pipeline: Pipeline,
    limit: int = Query(default=20, ge=1, le=100, description="Maximum number of stories to return"),
    status_filter: Optional[GenerationStatus] = Query(default=None, alias="status", description="Filter by status"),
):
    stories = await pipeline.repos.stories.list_for_user(user)
    if status_filter is not None:
        stories = [story for story in stories if story.status == status_filter]
    stories.sort(key=lambda story: story.created_at, reverse=True)
    return {"stories": [story.to_public() for story in stories[:limit]], "total": len(stories)}


@router.get(
    "/{story_id}",
    summary="Get a story",
    description="Story metadata with its episodes in order and whether it can be continued.",
)
async def get_story(story_id: str, user: CurrentUser, pipeline: Pipeline):
    return await get_story_details(pipeline, user, story_id)


@router.get(
    "/{story_id}/content",
    summary="Get story text",
    responses={200: {"content": {"text/markdown": {}}}, 404: {"description": "Content not found"}},
)
async def get_story_content(story_id: str, user: CurrentUser, pipeline: Pipeline):
    story = await get_owned_story(pipeline, user, story_id)
    if not story.content_path:
        raise NotFoundError(f"Story {story_id} has no content yet", code="CONTENT_NOT_FOUND")
    data = await pipeline.content.get(story.content_path)
    return Response(content=data, media_type="text/markdown")


@router.get(
    "/{story_id}/continuation",
    summary="Continuation eligibility",
    description="Whether a new episode can be generated for this story right now.",
)
async def get_continuation(story_id: str, user: CurrentUser, pipeline: Pipeline):
    story = await get_owned_story(pipeline, user, story_id)
    eligibility = await evaluate_continuation(pipeline, story)
    return eligibility.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"reason_code"})


@router.post(
    "/{story_id}/episodes",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Continue a story",
    description="Start generating the next episode. Returns immediately; poll the request status.",
)
async def continue_story(story_id: str, user: CurrentUser, pipeline: Pipeline):
    return await request_continuation(pipeline, user, story_id)


async def _owned_episode(pipeline, user: str, story_id: str, episode_number: int):
    await get_owned_story(pipeline, user, story_id)
    episode = await pipeline.repos.episodes.get(story_id, episode_number)
    if episode is None:
        raise NotFoundError(f"Episode {episode_number} not found", code="EPISODE_NOT_FOUND")
    return episode


@router.get(
    "/{story_id}/episodes/{episode_number}/content",
    summary="Get episode text",
    responses={200: {"content": {"text/markdown": {}}}, 404: {"description": "Content not found"}},
)
async def get_episode_content(story_id: str, episode_number: int, user: CurrentUser, pipeline: Pipeline):
    episode = await _owned_episode(pipeline, user, story_id, episode_number)
    if not episode.content_path:
        raise NotFoundError(f"Episode {episode_number} has no content yet", code="CONTENT_NOT_FOUND")
    data = await pipeline.content.get(episode.content_path)
    return Response(content=data, media_type="text/markdown")


@router.get(
    "/{story_id}/episodes/{episode_number}/pdf",
    summary="Get illustrated episode",
    responses={200: {"content": {"application/pdf": {}}}, 404: {"description": "PDF not found"}},
)
async def get_episode_pdf(story_id: str, episode_number: int, user: CurrentUser, pipeline: Pipeline):
    episode = await _owned_episode(pipeline, user, story_id, episode_number)
    if not episode.pdf_path:
        raise NotFoundError(f"Episode {episode_number} has no illustrations yet", code="CONTENT_NOT_FOUND")
    data = await pipeline.content.get(episode.pdf_path)
    return Response(content=data, media_type="application/pdf")
