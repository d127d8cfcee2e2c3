"""Shared FastAPI dependencies for authenticated routes."""

from __future__ import annotations

from typing import Any

import structlog
from fastapi import Cookie, Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from timehug.context import RequestContext
from timehug.exceptions import Unauthorized
from timehug.services.auth_service import context_from_token

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_request_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Cookie(default=None),
) -> RequestContext:
    """Resolve the caller once per request.

    Token sources (checked in order):
      1. Authorization: Bearer <token> header
      2. ``access_token`` cookie

    Raises Unauthorized if no valid token is found.
    """
    token: str | None = None

    if credentials is not None:
        token = credentials.credentials
    elif access_token is not None:
        token = access_token

    if token is None:
        raise Unauthorized()

    ctx = context_from_token(token)
    request.state.user_id = str(ctx.user_id)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(user_id=str(ctx.user_id))
    return ctx


def get_redis(request: Request) -> Any:
    """Redis client from app state, or None when it was never connected."""
    return getattr(request.app.state, "redis", None)
