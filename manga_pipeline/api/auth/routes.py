"""Authentication routes: session start for a verified bearer token."""

from typing import Optional

from fastapi import APIRouter

from ..dependencies import Pipeline, TokenClaims
from ..models.requests import SessionRequest
from ..services.user_profile import ensure_user_profile

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post("/session", summary="Start a session")
async def start_session(
    claims: TokenClaims,
    pipeline: Pipeline,
    request: Optional[SessionRequest] = None,
):
    """Make sure the caller has a user profile.

    Called by the client after every successful sign-in. The first call for
    a user creates the profile and publishes "User Registered"; later calls
    are no-ops.
    """
    email = claims.get("email") or (request.email if request else None)
    return await ensure_user_profile(pipeline, claims["sub"], email)
