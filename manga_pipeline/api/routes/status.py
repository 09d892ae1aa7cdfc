"""Generation request status endpoint."""

from fastapi import APIRouter

from ..dependencies import CurrentUser, Pipeline
from ..services.status import get_request_status

router = APIRouter()


@router.get(
    "/{request_id}",
    summary="Get request status",
    description="Status of a generation request with step-by-step progress. Poll until COMPLETED or FAILED.",
)
async def get_status(request_id: str, user: CurrentUser, pipeline: Pipeline):
    return await get_request_status(pipeline, user, request_id)
