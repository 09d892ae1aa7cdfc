"""Batch workflow endpoints."""

from fastapi import APIRouter, status

from ..dependencies import CurrentUser, Pipeline
from ..models.requests import StartWorkflowRequest
from ..services.status import get_workflow_progress
from ..services.workflow_service import start_workflow

router = APIRouter()


@router.post(
    "/start",
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a batch workflow",
    description="Generate several stories from the caller's latest preferences, one after another.",
)
async def start(request: StartWorkflowRequest, user: CurrentUser, pipeline: Pipeline):
    return await start_workflow(pipeline, user, request.number_of_stories)


@router.get("/{workflow_id}", summary="Get workflow progress")
async def get_workflow(workflow_id: str, user: CurrentUser, pipeline: Pipeline):
    return await get_workflow_progress(pipeline, user, workflow_id)
