"""
Story generation stage.

Single mode handles "Story Generation Requested": one story for one
request, failures re-raised so the worker's retry and dead-letter handling
applies.

Batch mode handles "Batch Story Generation Requested": one story per batch
item, self-chaining to the next item until totalBatches is reached. A
failed item is recorded against its own GenerationRequest and counted in
the workflow's failedStories, then the chain moves on. The workflow
becomes terminal when every item is accounted for.
"""

import logging
import re
import uuid
from typing import Any, Optional

from ...core.content_parsing import parse_story_content
from ...core.errors import ValidationError
from ...core.metrics import PerformanceTimer
from ...core.types import QlooInsights, UserPreferencesData, utc_timestamp
from ..database.repository import RequestUpdate, StoryUpdate
from ..logging import workflow_logger
from ..models.entities import BatchWorkflow, GenerationRequest, Story
from ..models.enums import (
    EntityType,
    GenerationStatus,
    RequestType,
    TERMINAL_REQUEST_STATUSES,
    TERMINAL_WORKFLOW_STATUSES,
    WorkflowStatus,
)
from .content_store import story_path
from .context import PipelineContext
from .events import (
    BatchStoryGenerationRequested,
    BatchWorkflowStatusUpdated,
    EpisodeGenerationRequested,
    StoryGenerationRequested,
)

logger = logging.getLogger(__name__)

STAGE = "story_generation"
PENDING_TITLE = "Generating..."
MISSING_PREFERENCES_MESSAGE = "No preferences found for user. Submit preferences before starting a workflow."

_BATCH_SUFFIX = re.compile(r"-batch-\d+$")


def batch_request_id(request_id: str, batch_number: int) -> str:
    """Request id for a batch item: the root request id suffixed ``-batch-{n}``."""
    return f"{_BATCH_SUFFIX.sub('', request_id)}-batch-{batch_number}"


def batch_event_id(workflow_id: str, batch_number: int) -> str:
    return f"{workflow_id}-batch-{batch_number}"


async def generate_story(
    ctx: PipelineContext,
    *,
    user_id: str,
    request_id: str,
    preferences: UserPreferencesData,
    insights: QlooInsights,
    workflow_id: Optional[str] = None,
) -> Optional[Story]:
    """Generate, store and announce one story.

    Returns None when the request is already COMPLETED or CANCELLED, or
    when the story or request is cancelled while it is being written; no
    new episode is requested then. A redelivered COMPLETED request only
    re-requests episode 1 of its story. On failure the story and request
    are marked FAILED and the error is re-raised.
    """
    if not user_id:
        raise ValidationError("userId is required")

    repos = ctx.repos
    story_id = str(uuid.uuid4())
    timer = PerformanceTimer(STAGE)
    fields = {"user_id": user_id, "request_id": request_id, "story_id": story_id}

    await repos.requests.ensure(
        GenerationRequest(
            request_id=request_id,
            user_id=user_id,
            type=RequestType.STORY,
            status=GenerationStatus.PENDING,
            workflow_id=workflow_id,
            created_at=utc_timestamp(),
        )
    )
    started = await repos.requests.transition(
        user_id,
        request_id,
        GenerationStatus.PROCESSING,
        RequestUpdate(related_entity_id=story_id),
        guard=TERMINAL_REQUEST_STATUSES,
    )
    if not started:
        workflow_logger.stage_skipped(STAGE, "request already finished", **fields)
        await _request_first_episode_again(ctx, user_id, request_id)
        return None

    workflow_logger.stage_started(STAGE, **fields)
    story_created = False
    try:
        await repos.stories.create(
            Story(
                story_id=story_id,
                user_id=user_id,
                title=PENDING_TITLE,
                status=GenerationStatus.PROCESSING,
                request_id=request_id,
                workflow_id=workflow_id,
                created_at=utc_timestamp(),
            )
        )
        story_created = True

        content = await ctx.text_generator.generate_story(preferences, insights)
        parsed = parse_story_content(content)

        path = story_path(user_id, story_id)
        await ctx.content.put(
            path,
            parsed.body,
            content_type="text/markdown",
            metadata={"title": parsed.title, "storyId": story_id, "userId": user_id},
        )
        completed = await repos.stories.transition(
            user_id,
            story_id,
            GenerationStatus.COMPLETED,
            StoryUpdate(title=parsed.title, content_path=path),
            guard=TERMINAL_REQUEST_STATUSES,
        )
        if not completed:
            await _cancel_request(ctx, user_id, request_id, story_id)
            workflow_logger.stage_skipped(STAGE, "story was cancelled", **fields)
            return None
        if not await repos.requests.transition(
            user_id,
            request_id,
            GenerationStatus.COMPLETED,
            guard=TERMINAL_REQUEST_STATUSES,
        ):
            workflow_logger.stage_skipped(STAGE, "request was cancelled", **fields)
            return None

        await ctx.publisher.emit(
            EpisodeGenerationRequested(
                user_id=user_id,
                story_id=story_id,
                story_content_path=path,
                episode_number=1,
                request_id=request_id,
            )
        )
        await ctx.publisher.publish_status(
            user_id, request_id, EntityType.STORY, GenerationStatus.COMPLETED, story_id
        )
    except Exception as e:
        workflow_logger.stage_failed(STAGE, e, **fields)
        ctx.metrics.record_generation("story", False, timer.stop())
        await _record_story_failure(ctx, user_id, request_id, story_id if story_created else None, e)
        raise

    duration_ms = timer.stop()
    ctx.metrics.record_generation("story", True, duration_ms)
    workflow_logger.stage_completed(STAGE, duration_ms / 1000, **fields)
    return await repos.stories.get(user_id, story_id)


async def _request_first_episode_again(ctx: PipelineContext, user_id: str, request_id: str) -> None:
    """Republish episode 1 for a COMPLETED request whose story is COMPLETED.

    Covers a delivery that completed the request but failed to publish.
    The episode stage skips an episode that is already COMPLETED.
    """
    request = await ctx.repos.requests.get(user_id, request_id)
    if request is None or request.status != GenerationStatus.COMPLETED or not request.related_entity_id:
        return
    story = await ctx.repos.stories.get(user_id, request.related_entity_id)
    if story is None or story.status != GenerationStatus.COMPLETED or not story.content_path:
        return
    await ctx.publisher.emit(
        EpisodeGenerationRequested(
            user_id=user_id,
            story_id=story.story_id,
            story_content_path=story.content_path,
            episode_number=1,
            request_id=request_id,
        )
    )


async def _cancel_request(ctx: PipelineContext, user_id: str, request_id: str, story_id: str) -> None:
    """The story was cancelled mid-run: close its request as CANCELLED too."""
    message = f"Story {story_id} was cancelled"
    cancelled = await ctx.repos.requests.transition(
        user_id,
        request_id,
        GenerationStatus.CANCELLED,
        RequestUpdate(error_message=message),
        guard=TERMINAL_REQUEST_STATUSES,
    )
    if cancelled:
        await ctx.publisher.publish_status(
            user_id, request_id, EntityType.STORY, GenerationStatus.CANCELLED, story_id, message
        )


async def _record_story_failure(
    ctx: PipelineContext,
    user_id: str,
    request_id: str,
    story_id: Optional[str],
    error: BaseException,
) -> None:
    """Mark the story and request FAILED. Never raises."""
    message = str(error) or type(error).__name__
    try:
        if story_id:
            await ctx.repos.stories.transition(
                user_id,
                story_id,
                GenerationStatus.FAILED,
                StoryUpdate(error_message=message),
                guard=TERMINAL_REQUEST_STATUSES,
            )
        await ctx.repos.requests.transition(
            user_id,
            request_id,
            GenerationStatus.FAILED,
            RequestUpdate(error_message=message),
            guard=TERMINAL_REQUEST_STATUSES,
        )
    except Exception as cleanup_error:
        workflow_logger.cleanup_failed(STAGE, cleanup_error, user_id=user_id, request_id=request_id)
    await ctx.publisher.publish_status(
        user_id, request_id, EntityType.STORY, GenerationStatus.FAILED, story_id, message
    )


async def handle_story_generation(ctx: PipelineContext, detail: StoryGenerationRequested) -> dict[str, Any]:
    story = await generate_story(
        ctx,
        user_id=detail.user_id,
        request_id=detail.request_id,
        preferences=detail.preferences,
        insights=detail.insights,
    )
    if story is None:
        return {"status": "skipped", "requestId": detail.request_id}
    return {"status": "completed", "requestId": detail.request_id, "storyId": story.story_id}


async def handle_batch_story_generation(
    ctx: PipelineContext,
    detail: BatchStoryGenerationRequested,
) -> dict[str, Any]:
    """Generate one batch item and advance the workflow."""
    repos = ctx.repos
    user_id, workflow_id = detail.user_id, detail.workflow_id
    batch = detail.current_batch
    fields = {"user_id": user_id, "workflow_id": workflow_id, "request_id": detail.request_id}

    workflow = await repos.workflows.ensure(
        BatchWorkflow(
            workflow_id=workflow_id,
            user_id=user_id,
            request_id=detail.request_id,
            number_of_stories=detail.number_of_stories,
            status=WorkflowStatus.STARTED,
            created_at=utc_timestamp(),
        )
    )
    if workflow.status in TERMINAL_WORKFLOW_STATUSES:
        workflow_logger.stage_skipped("batch_story_generation", f"workflow is {workflow.status}", **fields)
        return {"status": "skipped", "workflowId": workflow_id, "currentBatch": batch}

    if workflow.status == WorkflowStatus.STARTED:
        await repos.workflows.transition(
            user_id, workflow_id, WorkflowStatus.IN_PROGRESS, guard=TERMINAL_WORKFLOW_STATUSES
        )

    preferences, insights = detail.preferences, detail.insights
    if preferences is None:
        latest = await repos.preferences.get_latest(user_id)
        if latest is None:
            return await _fail_workflow_without_preferences(ctx, detail)
        preferences = latest.preferences
        insights = insights or latest.insights
    insights = insights or QlooInsights()

    if batch in workflow.processed_batches:
        # Redelivery after this item was counted: only make sure the chain advanced
        workflow_logger.stage_skipped("batch_story_generation", f"batch {batch} already processed", **fields)
        outcome = workflow
        succeeded = True
    else:
        succeeded, error_message = True, None
        try:
            story = await generate_story(
                ctx,
                user_id=user_id,
                request_id=detail.request_id,
                preferences=preferences,
                insights=insights,
                workflow_id=workflow_id,
            )
            if story is None:
                request = await repos.requests.get(user_id, detail.request_id)
                if request is None or request.status != GenerationStatus.COMPLETED:
                    succeeded, error_message = False, "Generation request was cancelled"
        except Exception as e:
            succeeded, error_message = False, str(e) or type(e).__name__
            logger.warning(
                f"Batch {batch}/{detail.total_batches} of workflow {workflow_id} failed, continuing: {error_message}",
                extra=fields,
            )
        outcome = await repos.workflows.record_outcome(
            user_id,
            workflow_id,
            [batch],
            succeeded=succeeded,
            error_message=error_message,
        )

    if batch < detail.total_batches:
        next_batch = batch + 1
        next_request_id = batch_request_id(detail.request_id, next_batch)
        await repos.requests.ensure(
            GenerationRequest(
                request_id=next_request_id,
                user_id=user_id,
                type=RequestType.STORY,
                status=GenerationStatus.PENDING,
                workflow_id=workflow_id,
                created_at=utc_timestamp(),
            )
        )
        await ctx.publisher.emit(
            BatchStoryGenerationRequested(
                user_id=user_id,
                workflow_id=workflow_id,
                request_id=next_request_id,
                number_of_stories=detail.number_of_stories,
                current_batch=next_batch,
                total_batches=detail.total_batches,
                preferences=preferences,
                insights=insights,
            ),
            event_id=batch_event_id(workflow_id, next_batch),
        )
        return {
            "status": "completed" if succeeded else "failed",
            "workflowId": workflow_id,
            "currentBatch": batch,
            "nextBatch": next_batch,
        }

    final = outcome or workflow
    await _announce_workflow(ctx, final, batch)
    return {
        "status": "completed" if succeeded else "failed",
        "workflowId": workflow_id,
        "currentBatch": batch,
        "workflowStatus": final.status,
    }


async def _announce_workflow(ctx: PipelineContext, workflow: BatchWorkflow, batch: Optional[int]) -> None:
    if workflow.status == WorkflowStatus.COMPLETED:
        ctx.metrics.record_batch_workflow("completed", workflow.number_of_stories)
    elif workflow.status == WorkflowStatus.FAILED:
        ctx.metrics.record_batch_workflow("failed", workflow.number_of_stories)

    await ctx.publisher.try_emit(
        BatchWorkflowStatusUpdated(
            user_id=workflow.user_id,
            workflow_id=workflow.workflow_id,
            status=workflow.status,
            number_of_stories=workflow.number_of_stories,
            completed_stories=workflow.completed_stories,
            failed_stories=workflow.failed_stories,
            current_batch=batch,
            error_message=workflow.error_message,
        )
    )


async def _fail_workflow_without_preferences(
    ctx: PipelineContext,
    detail: BatchStoryGenerationRequested,
) -> dict[str, Any]:
    """No stored preferences: every remaining item fails and the workflow ends FAILED."""
    user_id, workflow_id = detail.user_id, detail.workflow_id
    error = ValidationError(MISSING_PREFERENCES_MESSAGE, code="PREFERENCES_NOT_FOUND")
    workflow_logger.stage_failed("batch_story_generation", error, user_id=user_id, workflow_id=workflow_id)

    await ctx.repos.requests.ensure(
        GenerationRequest(
            request_id=detail.request_id,
            user_id=user_id,
            type=RequestType.STORY,
            status=GenerationStatus.PENDING,
            workflow_id=workflow_id,
            created_at=utc_timestamp(),
        )
    )
    await ctx.repos.requests.transition(
        user_id,
        detail.request_id,
        GenerationStatus.FAILED,
        RequestUpdate(error_message=MISSING_PREFERENCES_MESSAGE),
        guard=TERMINAL_REQUEST_STATUSES,
    )
    remaining = list(range(detail.current_batch, detail.total_batches + 1))
    outcome = await ctx.repos.workflows.record_outcome(
        user_id,
        workflow_id,
        remaining,
        succeeded=False,
        error_message=MISSING_PREFERENCES_MESSAGE,
    )
    await ctx.publisher.publish_status(
        user_id, detail.request_id, EntityType.STORY, GenerationStatus.FAILED, None, MISSING_PREFERENCES_MESSAGE
    )
    if outcome is not None:
        await _announce_workflow(ctx, outcome, detail.current_batch)
    return {"status": "failed", "workflowId": workflow_id, "error": MISSING_PREFERENCES_MESSAGE}
