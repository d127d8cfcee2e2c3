"""Session token verification for tokens issued by the identity provider."""

from __future__ import annotations

from uuid import UUID

from jose import JWTError, jwt

from timehug.config import settings
from timehug.context import RequestContext
from timehug.exceptions import Unauthorized

_ALGORITHMS = ["HS256"]


def verify_token(token: str) -> dict:
    """Decode and validate an access token.

    Raises:
        Unauthorized if the token is invalid, expired, for another audience,
        or carries no subject.
    """
    try:
        payload = jwt.decode(
            token,
            settings.AUTH_JWT_SECRET,
            algorithms=_ALGORITHMS,
            audience=settings.AUTH_JWT_AUDIENCE,
        )
    except JWTError:
        raise Unauthorized("Invalid or expired token")

    if not payload.get("sub"):
        raise Unauthorized("Token has no subject")
    return payload


def context_from_token(token: str) -> RequestContext:
    """Build the request context for a verified access token."""
    payload = verify_token(token)
    try:
        user_id = UUID(payload["sub"])
    except ValueError:
        raise Unauthorized("Token subject is not a user id")
    return RequestContext(
        user_id=user_id,
        email=payload.get("email"),
        role=payload.get("role"),
    )
