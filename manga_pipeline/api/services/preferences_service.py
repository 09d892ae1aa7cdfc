"""
Taste-profile submission and retrieval.

A submission fetches cultural insights for the profile and appends a new
UserPreferences version. Earlier versions are never modified.
"""

import logging
from typing import Any

from ...core.errors import ExternalServiceError, InternalError
from ...core.metrics import PerformanceTimer
from ...core.types import QlooInsights, UserPreferencesData
from .context import PipelineContext

logger = logging.getLogger(__name__)


async def submit_preferences(
    ctx: PipelineContext,
    user_id: str,
    preferences: UserPreferencesData,
) -> dict[str, Any]:
    """Fetch insights and store a new preferences version.

    Raises:
        ExternalServiceError: QLOO_API_ERROR when insights cannot be fetched
        InternalError: PREFERENCES_STORAGE_ERROR when the store write fails
    """
    timer = PerformanceTimer("submit_preferences")
    logger.info(
        f"Processing preferences for user {user_id}",
        extra={"user_id": user_id, "operation": "submit_preferences"},
    )

    try:
        insights: QlooInsights = await ctx.insights.fetch_insights(preferences)
    except Exception as e:
        logger.error(f"Failed to fetch insights for user {user_id}: {e}", extra={"user_id": user_id})
        raise ExternalServiceError(
            "Failed to fetch insights. Please try again later.",
            service="insights",
            code="QLOO_API_ERROR",
        ) from e

    try:
        record = await ctx.repos.preferences.create(user_id, preferences, insights)
    except Exception as e:
        logger.error(f"Failed to store preferences for user {user_id}: {e}", extra={"user_id": user_id})
        raise InternalError("Failed to save preferences", code="PREFERENCES_STORAGE_ERROR") from e

    ctx.metrics.record_preferences_submitted()
    logger.info(
        f"Stored preferences for user {user_id} in {timer.stop():.0f}ms",
        extra={"user_id": user_id, "operation": "submit_preferences"},
    )
    return {
        "message": "Preferences saved successfully",
        "preferences": record.preferences.to_wire(),
        "insights": record.insights.to_wire(),
        "lastUpdated": record.created_at,
    }


async def get_current_preferences(ctx: PipelineContext, user_id: str) -> dict[str, Any]:
    """The latest preferences version, or ``preferences: null`` when none exist."""
    try:
        latest = await ctx.repos.preferences.get_latest(user_id)
    except Exception as e:
        logger.error(f"Failed to retrieve preferences for user {user_id}: {e}", extra={"user_id": user_id})
        raise InternalError("Failed to retrieve preferences", code="PREFERENCES_RETRIEVAL_ERROR") from e

    if latest is None:
        return {"preferences": None, "message": "No preferences found for user"}
    return {
        "preferences": latest.preferences.to_wire(),
        "insights": latest.insights.to_wire(),
        "lastUpdated": latest.created_at,
    }
