"""Taste-profile endpoints."""

from fastapi import APIRouter

from ..dependencies import CurrentUser, Pipeline
from ..models.requests import PreferencesRequest
from ..services.preferences_service import get_current_preferences, submit_preferences

router = APIRouter()


@router.post("", summary="Submit preferences")
async def post_preferences(request: PreferencesRequest, user: CurrentUser, pipeline: Pipeline):
    """Store a new version of the caller's preferences together with fresh insights."""
    return await submit_preferences(pipeline, user, request.to_preferences())


@router.get("", summary="Get current preferences")
async def get_preferences(user: CurrentUser, pipeline: Pipeline):
    return await get_current_preferences(pipeline, user)
