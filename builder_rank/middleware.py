"""
Auth dependencies. Builder API keys and the admin key.
"""

import os
from typing import Annotated

from fastapi import Depends, Request

from builder_rank.api_errors import APIError
from builder_rank.auth import User


ADMIN_KEY = os.environ.get("BUILDER_RANK_ADMIN_KEY", "")


def _get_bearer_token(request: Request) -> str | None:
    """Extract Bearer token from Authorization header."""
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        return auth[7:]
    return None


async def require_auth(request: Request) -> User:
    """Require a valid builder API key. Returns the authenticated User."""
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")

    if token == ADMIN_KEY and ADMIN_KEY:
        raise APIError(401, "invalid_api_key",
                       "Admin key cannot be used for builder endpoints. "
                       "Use a builder API key from /v1/auth/register.")

    user = request.app.state.auth_store.authenticate(token)
    if user is None:
        raise APIError(401, "invalid_api_key", "Invalid or rotated API key")
    return user


async def require_admin(request: Request) -> None:
    """Require the admin API key."""
    if not ADMIN_KEY:
        raise APIError(500, "admin_required",
                       "BUILDER_RANK_ADMIN_KEY not configured")
    token = _get_bearer_token(request)
    if not token:
        raise APIError(401, "auth_required", "Authorization header required")
    if token != ADMIN_KEY:
        raise APIError(403, "admin_required", "Admin API key required")


AuthUser = Annotated[User, Depends(require_auth)]
AdminDep = Annotated[None, Depends(require_admin)]
