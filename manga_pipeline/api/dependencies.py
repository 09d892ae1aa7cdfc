"""FastAPI dependency injection for the pipeline and the caller's identity."""

from typing import Annotated, Any, Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..core.errors import AuthenticationError
from .auth.tokens import verify_token
from .services.context import PipelineContext

# Missing credentials are reported through the error handlers, not FastAPI's 403
security = HTTPBearer(auto_error=False)


def get_pipeline(request: Request) -> PipelineContext:
    """The PipelineContext built during application startup."""
    return request.app.state.pipeline


Pipeline = Annotated[PipelineContext, Depends(get_pipeline)]


async def get_token_claims(
    credentials: Annotated[Optional[HTTPAuthorizationCredentials], Depends(security)],
) -> dict[str, Any]:
    """Verify the bearer token and return its claims.

    Raises:
        AuthenticationError: 401 if the token is missing, invalid or expired
    """
    if credentials is None:
        raise AuthenticationError("User not authenticated")
    payload = verify_token(credentials.credentials)
    if payload is None or not payload.get("sub"):
        raise AuthenticationError("Invalid or expired token")
    return payload


TokenClaims = Annotated[dict[str, Any], Depends(get_token_claims)]


async def get_current_user(claims: TokenClaims) -> str:
    return claims["sub"]


# Type alias for authenticated user id
CurrentUser = Annotated[str, Depends(get_current_user)]
