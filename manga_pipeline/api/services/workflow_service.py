"""Batch workflow start: N stories generated one after another."""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from ...core.errors import ValidationError
from ...core.types import to_timestamp, utc_timestamp
from ..config import STORY_ESTIMATE_MINUTES
from ..database.repository import RequestUpdate
from ..models.entities import BatchWorkflow, GenerationRequest
from ..models.enums import GenerationStatus, RequestType, TERMINAL_REQUEST_STATUSES, WorkflowStatus
from .context import PipelineContext
from .events import BatchStoryGenerationRequested
from .story_generation import batch_event_id

logger = logging.getLogger(__name__)

ACCEPTED_MESSAGE = "Batch workflow started successfully"


async def start_workflow(ctx: PipelineContext, user_id: str, number_of_stories: int) -> dict[str, Any]:
    """Record a BatchWorkflow and publish its first batch item.

    Raises:
        ValidationError: PREFERENCES_NOT_FOUND when the user has not
            submitted preferences yet
    """
    repos = ctx.repos
    latest = await repos.preferences.get_latest(user_id)
    if latest is None:
        raise ValidationError(
            "User preferences not found. Please submit preferences before starting a workflow.",
            code="PREFERENCES_NOT_FOUND",
        )

    workflow_id = str(uuid.uuid4())
    request_id = str(uuid.uuid4())
    now = utc_timestamp()

    await repos.requests.create(
        GenerationRequest(
            request_id=request_id,
            user_id=user_id,
            type=RequestType.STORY,
            status=GenerationStatus.PROCESSING,
            related_entity_id=workflow_id,
            workflow_id=workflow_id,
            created_at=now,
        )
    )
    await repos.workflows.create(
        BatchWorkflow(
            workflow_id=workflow_id,
            user_id=user_id,
            request_id=request_id,
            number_of_stories=number_of_stories,
            status=WorkflowStatus.STARTED,
            created_at=now,
        )
    )

    try:
        await ctx.publisher.emit(
            BatchStoryGenerationRequested(
                user_id=user_id,
                workflow_id=workflow_id,
                request_id=request_id,
                number_of_stories=number_of_stories,
                current_batch=1,
                total_batches=number_of_stories,
                preferences=latest.preferences,
                insights=latest.insights,
            ),
            event_id=batch_event_id(workflow_id, 1),
        )
    except Exception as e:
        message = f"Failed to start batch workflow: {e}"
        try:
            await repos.requests.transition(
                user_id,
                request_id,
                GenerationStatus.FAILED,
                RequestUpdate(error_message=message),
                guard=TERMINAL_REQUEST_STATUSES,
            )
            # Every item counts as failed so the workflow ends terminal
            await repos.workflows.record_outcome(
                user_id,
                workflow_id,
                list(range(1, number_of_stories + 1)),
                succeeded=False,
                error_message=message,
            )
        except Exception as cleanup_error:
            logger.error(f"Failed to record workflow start failure for {workflow_id}: {cleanup_error}")
        raise

    ctx.metrics.record_batch_workflow("started", number_of_stories)
    logger.info(
        f"Batch workflow {workflow_id} started with {number_of_stories} stories",
        extra={"user_id": user_id, "workflow_id": workflow_id, "request_id": request_id},
    )

    estimated = datetime.now(timezone.utc) + timedelta(minutes=STORY_ESTIMATE_MINUTES * number_of_stories)
    return {
        "workflowId": workflow_id,
        "requestId": request_id,
        "numberOfStories": number_of_stories,
        "status": WorkflowStatus.STARTED.value,
        "estimatedCompletionTime": to_timestamp(estimated),
        "message": ACCEPTED_MESSAGE,
    }
