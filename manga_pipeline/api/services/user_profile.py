"""User profile creation on first sign-in."""

import logging
from typing import Any, Optional

from .context import PipelineContext
from .events import UserRegistered

logger = logging.getLogger(__name__)


async def ensure_user_profile(ctx: PipelineContext, user_id: str, email: Optional[str] = None) -> dict[str, Any]:
    """Create the profile if it does not exist yet.

    A duplicate create is ignored. "User Registered" is only published by
    the call that actually created the profile.
    """
    created = await ctx.repos.profiles.create(user_id, email)
    if created:
        logger.info(f"Created user profile for {user_id}", extra={"user_id": user_id})
        ctx.metrics.record_user_registered()
        await ctx.publisher.try_emit(UserRegistered(user_id=user_id, email=email))

    profile = await ctx.repos.profiles.get(user_id)
    return {
        "userId": user_id,
        "created": created,
        "profile": profile.to_public() if profile else None,
    }
